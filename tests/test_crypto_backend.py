import unittest
import sys
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Añadir el directorio raíz al path para poder importar 'rootly' y 'config'
sys.path.insert(0, str(Path(__file__).parent.parent))

from rootly.crypto_backend import CryptoBackend, build_name, subject_dn_from_name
from rootly.errors import CryptoError, ValidationError
from rootly.models import SubjectDN
from cryptography import x509


class TestCryptoBackend(unittest.TestCase):
    """Tests para la clase CryptoBackend."""

    @classmethod
    def setUpClass(cls):
        cls.backend = CryptoBackend(key_size=2048)
        cls.ca_key = cls.backend.generate_key_pair()
        cls.ca_cert = cls.backend.self_sign(cls.ca_key, SubjectDN("Acme Root", "Acme"), 365)

    def test_build_name(self):
        print("\n[TEST] Construcción de nombres distinguidos")

        name = build_name(SubjectDN("Acme Root", "Acme", None))
        self.assertEqual(subject_dn_from_name(name), SubjectDN("Acme Root", "Acme", None))
        print("   ✓ Los atributos vacíos se omiten.")

    def test_build_name_invalid_length(self):
        """Test: Atributos vacíos o de más de 64 caracteres dan ValidationError."""
        print("\n[TEST] Nombres fuera del límite X.509")

        with self.assertRaises(ValidationError):
            build_name(SubjectDN("C" * 65))
        with self.assertRaises(ValidationError):
            build_name(SubjectDN("Acme", None, "U" * 65))
        with self.assertRaises(ValidationError):
            build_name(SubjectDN(""))
        print("   ✓ ValidationError en lugar de ValueError.")

    def test_sign_long_hostname(self):
        print("\n[TEST] Firma directa con hostname demasiado largo")

        leaf_key = self.backend.generate_key_pair()
        not_after = datetime.now(timezone.utc) + timedelta(days=30)
        with self.assertRaises(ValidationError):
            self.backend.sign(self.ca_key, self.ca_cert, leaf_key.public_key(), "a" * 65, 1, not_after)

        cert = self.backend.sign(self.ca_key, self.ca_cert, leaf_key.public_key(), "a" * 64, 1, not_after)
        self.backend.verify_issued_by(cert, self.ca_cert)
        print("   ✓ 65 caracteres rechazados; 64 firmados y verificados.")

    def test_verify_issued_by_other_ca(self):
        print("\n[TEST] Verificación contra otra CA")

        other_key = self.backend.generate_key_pair()
        other_cert = self.backend.self_sign(other_key, SubjectDN("Other Root"), 365)
        leaf_key = self.backend.generate_key_pair()
        cert = self.backend.sign(self.ca_key, self.ca_cert, leaf_key.public_key(), "web", 2,
                                 datetime.now(timezone.utc) + timedelta(days=30))

        with self.assertRaises(CryptoError):
            self.backend.verify_issued_by(cert, other_cert)
        self.assertTrue(self.backend.is_ca_certificate(self.ca_cert))
        self.assertFalse(self.backend.is_ca_certificate(cert))
        self.assertIsInstance(cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value,
                              x509.SubjectAlternativeName)
        print("   ✓ CryptoError con un emisor distinto.")


if __name__ == '__main__':
    unittest.main(verbosity=2)
