import unittest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Añadir el directorio raíz al path para poder importar 'rootly' y 'config'
sys.path.insert(0, str(Path(__file__).parent.parent))

from rootly.crypto_backend import CryptoBackend
from rootly.errors import CryptoError
from rootly.metadata import describe_certificate, extract_ca_info, extract_cert_info
from rootly.models import SubjectDN
from cryptography.hazmat.primitives import serialization


class TestMetadata(unittest.TestCase):
    """Tests de la extracción de metadatos de certificados."""

    @classmethod
    def setUpClass(cls):
        cls.backend = CryptoBackend(key_size=2048)
        cls.ca_key = cls.backend.generate_key_pair()
        cls.ca_cert = cls.backend.self_sign(cls.ca_key, SubjectDN("Acme Root", "Acme", "Ops"), 365)
        leaf_key = cls.backend.generate_key_pair()
        cls.leaf_cert = cls.backend.sign(
            cls.ca_key, cls.ca_cert, leaf_key.public_key(), "api.acme.local", 0x1234,
            datetime.now(timezone.utc) + timedelta(days=30)
        )

    def test_extract_ca_info(self):
        print("\n[TEST] Metadatos de una CA")

        info = extract_ca_info(self.backend.cert_to_pem(self.ca_cert))

        self.assertEqual(info.subject_dn, SubjectDN("Acme Root", "Acme", "Ops"))
        self.assertEqual(info.not_after, self.ca_cert.not_valid_after_utc)
        self.assertEqual(info.serial, self.ca_cert.serial_number)
        print("   ✓ Sujeto, fin de validez y serie correctos.")

    def test_extract_cert_info_from_der(self):
        print("\n[TEST] Metadatos de un certificado de host en DER")

        der = self.leaf_cert.public_bytes(serialization.Encoding.DER)
        info = extract_cert_info(der)

        self.assertEqual(info.hostname, "api.acme.local")
        self.assertEqual(info.serial, 0x1234)
        self.assertEqual(info.issuer_subject_dn.common_name, "Acme Root")
        print("   ✓ Nombre de host y emisor correctos.")

    def test_describe_certificate(self):
        print("\n[TEST] Descripción estructurada de un certificado")

        details = describe_certificate(self.backend.cert_to_pem(self.leaf_cert))

        self.assertEqual(details['serial'], "1234")
        self.assertEqual(details['dnsNames'], ["api.acme.local"])
        self.assertFalse(details['isCA'])
        self.assertIn("CN=Acme Root", details['issuer'])
        self.assertEqual(len(details['fingerprintSHA256'].split(':')), 32)

        self.assertTrue(describe_certificate(self.backend.cert_to_pem(self.ca_cert))['isCA'])
        print("   ✓ Campos completos.")

    def test_invalid_certificate(self):
        print("\n[TEST] Metadatos de contenido no válido")
        with self.assertRaises(CryptoError):
            extract_ca_info(b"-----BEGIN CERTIFICATE-----\nbasura\n-----END CERTIFICATE-----\n")
        with self.assertRaises(CryptoError):
            extract_cert_info(b"\x00\x01\x02")
        print("   ✓ CryptoError lanzado.")


if __name__ == '__main__':
    unittest.main(verbosity=2)
