import unittest
import sys
import shutil
import tempfile
from datetime import datetime, timedelta, timezone
from pathlib import Path

# Añadir el directorio raíz al path para poder importar 'rootly' y 'config'
sys.path.insert(0, str(Path(__file__).parent.parent))

from rootly.ca_store import CAStore, format_serial
from rootly.cert_store import CertStore
from rootly.crypto_backend import CryptoBackend
from rootly.errors import ValidationError
from rootly.key_protection import KeyProtector
from rootly.models import SubjectDN
from rootly.upload_validator import UploadValidator


class UploadTestCase(unittest.TestCase):
    """Base común: almacenes en un directorio temporal y material de prueba."""

    @classmethod
    def setUpClass(cls):
        cls.backend = CryptoBackend(key_size=2048)
        cls.subject = SubjectDN("Acme Root", "Acme", "Ops")
        cls.ca_key = cls.backend.generate_key_pair()
        cls.ca_cert = cls.backend.self_sign(cls.ca_key, cls.subject, 365)
        cls.other_key = cls.backend.generate_key_pair()

    def setUp(self):
        self.test_dir = Path(tempfile.mkdtemp())
        self.ca_store = CAStore(self.test_dir / "ca", self.backend, lock_timeout=5)
        self.cert_store = CertStore(self.test_dir / "certs", lock_timeout=5)
        self.validator = UploadValidator(self.ca_store, self.cert_store)
        self.protector = KeyProtector(self.backend)
        self.passphrase = "CaPassphrase123"

    def tearDown(self):
        shutil.rmtree(self.test_dir, ignore_errors=True)

    def pem(self, obj) -> bytes:
        if hasattr(obj, 'public_bytes'):
            return self.backend.cert_to_pem(obj)
        return self.backend.key_to_pem(obj)

    def leaf(self, hostname, ca_key=None, ca_cert=None, key=None):
        key = key or self.backend.generate_key_pair()
        cert = self.backend.sign(
            ca_key or self.ca_key, ca_cert or self.ca_cert, key.public_key(), hostname, 0x42,
            datetime.now(timezone.utc) + timedelta(days=30)
        )
        return key, cert

    def rejected_names(self, result):
        return sorted(entry['filename'] for entry in result.rejected)


class TestCAUpload(UploadTestCase):
    """Tests de la subida de ficheros de CA."""

    def test_upload_unencrypted_pair(self):
        """Test: Una pareja válida se guarda con la clave cifrada."""
        print("\n[TEST] Subida de CA con clave sin cifrar")

        result = self.validator.validate_ca_artifacts(
            [("root_ca.crt", self.pem(self.ca_cert)), ("root_ca.key", self.pem(self.ca_key))],
            "imported", self.passphrase
        )

        self.assertEqual(sorted(result.accepted), ["root_ca.crt", "root_ca.key"])
        self.assertEqual(result.rejected, [])
        stored = self.ca_store.get_ca("imported")
        self.assertTrue(KeyProtector.is_encrypted(stored.encrypted_key))
        unlocked = self.protector.unlock(stored.encrypted_key, self.passphrase)
        self.assertEqual(unlocked.private_numbers(), self.ca_key.private_numbers())
        print("   ✓ CA importada y clave protegida con la contraseña.")

    def test_upload_encrypted_pair_with_serial(self):
        """Test: Una clave ya cifrada se verifica con la contraseña; el .srl se respeta."""
        print("\n[TEST] Subida de CA con clave cifrada y contador")

        blob = self.protector.protect_private_key(self.ca_key, self.passphrase)
        result = self.validator.validate_ca_artifacts(
            [("ca.crt", self.pem(self.ca_cert)), ("ca.key", blob), ("ca.srl", b"1000\n")],
            "imported", self.passphrase
        )

        self.assertEqual(sorted(result.accepted), ["ca.crt", "ca.key", "ca.srl"])
        self.assertEqual(self.ca_store.get_ca("imported").serial_counter, 0x1000)
        self.assertEqual(self.ca_store.key_path("imported").read_bytes(), blob)
        print("   ✓ Clave guardada tal cual y contador 1000.")

    def test_mismatched_pair_rejected(self):
        """Test: Una clave que no corresponde al certificado se rechaza, se llame como se llame."""
        print("\n[TEST] Subida de CA con pareja incorrecta")

        result = self.validator.validate_ca_artifacts(
            [("root_ca.crt", self.pem(self.ca_cert)), ("root_ca.key", self.pem(self.other_key))],
            "imported", self.passphrase
        )

        self.assertEqual(result.accepted, [])
        self.assertEqual(self.rejected_names(result), ["root_ca.crt", "root_ca.key"])
        self.assertFalse(self.ca_store.exists("imported"))
        self.assertFalse((self.test_dir / "ca" / "imported").exists())
        print("   ✓ Ambos ficheros rechazados y nada escrito.")

    def test_bad_extension_and_lone_files(self):
        """Test: Extensiones no permitidas y ficheros sueltos se rechazan."""
        print("\n[TEST] Subida de CA con ficheros incompletos")

        result = self.validator.validate_ca_artifacts(
            [("notes.txt", b"hola"), ("root_ca.crt", self.pem(self.ca_cert))],
            "imported", self.passphrase
        )

        self.assertEqual(self.rejected_names(result), ["notes.txt", "root_ca.crt"])
        self.assertFalse(self.ca_store.exists("imported"))
        print("   ✓ Extensión inválida y certificado sin clave rechazados.")

    def test_leaf_certificate_is_not_a_ca(self):
        print("\n[TEST] Subida de un certificado de host como CA")

        key, cert = self.leaf("web")
        result = self.validator.validate_ca_artifacts(
            [("root_ca.crt", self.pem(cert)), ("root_ca.key", self.pem(key))],
            "imported", self.passphrase
        )

        self.assertIn("root_ca.crt", self.rejected_names(result))
        self.assertFalse(self.ca_store.exists("imported"))
        print("   ✓ Certificado sin BasicConstraints ca=True rechazado.")

    def test_passphrase_required(self):
        print("\n[TEST] Subida de CA sin contraseña")

        result = self.validator.validate_ca_artifacts(
            [("root_ca.crt", self.pem(self.ca_cert)), ("root_ca.key", self.pem(self.ca_key))],
            "imported", None
        )

        self.assertEqual(result.accepted, [])
        self.assertFalse(self.ca_store.exists("imported"))
        print("   ✓ Rechazada: la clave no se guarda sin proteger.")

    def test_existing_ca_conflict(self):
        print("\n[TEST] Subida sobre una CA existente")

        self.ca_store.create_ca("prod", SubjectDN("Prod Root"), self.passphrase, 365)
        before = self.ca_store.cert_path("prod").read_bytes()

        result = self.validator.validate_ca_artifacts(
            [("root_ca.crt", self.pem(self.ca_cert)), ("root_ca.key", self.pem(self.ca_key))],
            "prod", self.passphrase
        )

        self.assertEqual(result.accepted, [])
        self.assertEqual(self.ca_store.cert_path("prod").read_bytes(), before)
        print("   ✓ La CA existente no se sobrescribe.")

    def test_serial_only_upload(self):
        """Test: Un .srl suelto solo puede hacer avanzar el contador."""
        print("\n[TEST] Subida de contador suelto")

        self.ca_store.create_ca("prod", SubjectDN("Prod Root"), self.passphrase, 365)
        current = self.ca_store.get_ca("prod").serial_counter

        higher = format_serial(current + 10).encode('ascii')
        result = self.validator.validate_ca_artifacts([("root_ca.srl", higher)], "prod")
        self.assertEqual(result.accepted, ["root_ca.srl"])
        self.assertEqual(self.ca_store.get_ca("prod").serial_counter, current + 10)

        lower = format_serial(current + 5).encode('ascii')
        result = self.validator.validate_ca_artifacts([("root_ca.srl", lower)], "prod")
        self.assertEqual(self.rejected_names(result), ["root_ca.srl"])

        result = self.validator.validate_ca_artifacts([("root_ca.srl", b"zz")], "prod")
        self.assertEqual(self.rejected_names(result), ["root_ca.srl"])
        self.assertEqual(self.ca_store.get_ca("prod").serial_counter, current + 10)
        print("   ✓ Contador avanzado; valores menores o inválidos rechazados.")

    def test_invalid_ca_id_and_empty_batch(self):
        print("\n[TEST] Subida con identificador inválido o sin ficheros")
        with self.assertRaises(ValidationError):
            self.validator.validate_ca_artifacts([("root_ca.srl", b"01")], "../x")
        with self.assertRaises(ValidationError):
            self.validator.validate_ca_artifacts([], "prod")
        print("   ✓ ValidationError lanzado.")


class TestCertUpload(UploadTestCase):
    """Tests de la subida de certificados de host."""

    def setUp(self):
        super().setUp()
        blob = self.protector.protect_private_key(self.ca_key, self.passphrase)
        self.ca_store.import_ca("prod", blob, self.pem(self.ca_cert))

    def test_upload_host_bundle(self):
        """Test: Certificado, clave y fullchain coherentes se guardan."""
        print("\n[TEST] Subida de certificado de host completo")

        key, cert = self.leaf("web.acme.local")
        files = [
            ("web.acme.local.crt", self.pem(cert)),
            ("web.acme.local.pem", self.pem(key)),
            ("web.acme.local_fullchain.crt", self.pem(cert) + self.pem(self.ca_cert)),
        ]
        result = self.validator.validate_cert_artifacts(files)

        self.assertEqual(result.rejected, [])
        self.assertEqual(len(result.accepted), 3)
        self.assertTrue(self.cert_store.exists("web.acme.local"))
        self.assertEqual(self.cert_store.read("web.acme.local", "key"), self.pem(key))
        print("   ✓ Tres ficheros aceptados; el .pem se reconoce como clave.")

    def test_mismatched_host_key(self):
        print("\n[TEST] Subida de certificado con clave ajena")

        _, cert = self.leaf("web")
        result = self.validator.validate_cert_artifacts(
            [("web.crt", self.pem(cert)), ("web.key", self.pem(self.other_key))]
        )

        self.assertEqual(self.rejected_names(result), ["web.crt", "web.key"])
        self.assertFalse(self.cert_store.exists("web"))
        print("   ✓ Pareja rechazada y nada escrito.")

    def test_key_checked_against_stored_certificate(self):
        print("\n[TEST] Subida de clave suelta para un certificado ya guardado")

        key, cert = self.leaf("web")
        self.validator.validate_cert_artifacts([("web.crt", self.pem(cert))])

        result = self.validator.validate_cert_artifacts([("web.key", self.pem(self.other_key))])
        self.assertEqual(self.rejected_names(result), ["web.key"])

        result = self.validator.validate_cert_artifacts([("web.key", self.pem(key))])
        self.assertEqual(result.accepted, ["web.key"])
        print("   ✓ La clave debe corresponder al certificado en disco.")

    def test_fullchain_checked_against_stored_certificate(self):
        """Test: Un fullchain suelto debe empezar por el certificado ya guardado."""
        print("\n[TEST] Subida de fullchain suelto para un host existente")

        key, cert = self.leaf("web")
        self.validator.validate_cert_artifacts([("web.crt", self.pem(cert)), ("web.key", self.pem(key))])

        _, other_cert = self.leaf("web")
        result = self.validator.validate_cert_artifacts(
            [("web_fullchain.crt", self.pem(other_cert) + self.pem(self.ca_cert))]
        )
        self.assertEqual(self.rejected_names(result), ["web_fullchain.crt"])
        self.assertFalse(self.cert_store.exists("web", "fullchain"))

        result = self.validator.validate_cert_artifacts(
            [("web_fullchain.crt", self.pem(cert) + self.pem(self.ca_cert))]
        )
        self.assertEqual(result.accepted, ["web_fullchain.crt"])
        print("   ✓ Solo se acepta la cadena del certificado guardado.")

    def test_certificate_checked_against_stored_fullchain(self):
        print("\n[TEST] Subida de certificado suelto con un fullchain guardado")

        _, cert = self.leaf("web")
        self.validator.validate_cert_artifacts(
            [("web.crt", self.pem(cert)), ("web_fullchain.crt", self.pem(cert) + self.pem(self.ca_cert))]
        )

        _, other_cert = self.leaf("web")
        result = self.validator.validate_cert_artifacts([("web.crt", self.pem(other_cert))])
        self.assertEqual(self.rejected_names(result), ["web.crt"])
        self.assertEqual(self.cert_store.read("web", "certificate"), self.pem(cert))

        result = self.validator.validate_cert_artifacts([
            ("web.crt", self.pem(other_cert)),
            ("web_fullchain.crt", self.pem(other_cert) + self.pem(self.ca_cert)),
        ])
        self.assertEqual(len(result.accepted), 2)
        print("   ✓ Certificado y cadena siempre del mismo host.")

    def test_forged_issuer_rejected(self):
        """Test: Un certificado que dice venir de una CA conocida debe estar firmado por ella."""
        print("\n[TEST] Subida de certificado con emisor falsificado")

        forged_cert = self.backend.self_sign(self.other_key, self.subject, 365)
        key, cert = self.leaf("web", ca_key=self.other_key, ca_cert=forged_cert)

        result = self.validator.validate_cert_artifacts(
            [("web.crt", self.pem(cert)), ("web.key", self.pem(key))]
        )

        self.assertEqual(self.rejected_names(result), ["web.crt", "web.key"])
        print("   ✓ Firma no corresponde a la CA 'prod': rechazado.")

    def test_unknown_issuer_accepted(self):
        print("\n[TEST] Subida de certificado de una CA externa")

        external_cert = self.backend.self_sign(self.other_key, SubjectDN("External Root"), 365)
        key, cert = self.leaf("web", ca_key=self.other_key, ca_cert=external_cert)

        result = self.validator.validate_cert_artifacts(
            [("web.crt", self.pem(cert)), ("web.key", self.pem(key))]
        )

        self.assertEqual(sorted(result.accepted), ["web.crt", "web.key"])
        print("   ✓ Emisor desconocido aceptado.")

    def test_broken_fullchain(self):
        print("\n[TEST] Subida de fullchain con eslabón roto")

        _, cert = self.leaf("web")
        other_ca = self.backend.self_sign(self.other_key, SubjectDN("Other"), 365)
        result = self.validator.validate_cert_artifacts(
            [("web_fullchain.crt", self.pem(cert) + self.pem(other_ca))]
        )

        self.assertEqual(self.rejected_names(result), ["web_fullchain.crt"])
        print("   ✓ Cadena rechazada.")

    def test_invalid_files(self):
        print("\n[TEST] Subida de ficheros de host inválidos")

        encrypted = self.protector.protect_private_key(self.other_key, self.passphrase)
        result = self.validator.validate_cert_artifacts([
            ("web.txt", b"hola"),
            ("web.crt", b"no es un certificado"),
            ("db.key", encrypted),
            ("bad name.crt", self.pem(self.ca_cert)),
            ("empty.crt", b""),
        ])

        self.assertEqual(result.accepted, [])
        self.assertEqual(len(result.rejected), 5)
        print("   ✓ Los cinco ficheros rechazados.")


if __name__ == '__main__':
    unittest.main(verbosity=2)
