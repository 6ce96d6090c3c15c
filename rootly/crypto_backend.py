# -*- coding: utf-8 -*-

"""
Backend criptográfico de la PKI.

Sustituye a la herramienta de línea de comandos externa y al análisis de su
salida en texto: todas las operaciones (generación de claves, certificados
autofirmados de CA, firma de certificados de host y lectura de claves y
certificados) se hacen en memoria con la librería `cryptography`.

Los certificados emitidos siguen una jerarquía de un nivel:

1.  **CA raíz:** certificado autofirmado con BasicConstraints ca=True.
    Es el ancla de confianza y firma directamente los certificados de host.
2.  **Certificado de host:** firmado por la CA raíz, con el nombre de host
    como Common Name y como SubjectAlternativeName (los clientes TLS
    modernos solo comprueban el SAN).
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import List, Optional

from cryptography import x509
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.x509.oid import NameOID, ExtendedKeyUsageOID
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.backends import default_backend

from config import PKI_CONFIG
from rootly.errors import CryptoError, ValidationError
from rootly.models import SubjectDN

logger = logging.getLogger(__name__)

_PEM_CERT_MARKER = b"-----BEGIN CERTIFICATE-----"


def build_name(subject_dn: SubjectDN) -> x509.Name:
    """
    Convierte un SubjectDN en un x509.Name (CN, O, OU; los vacíos se omiten).

    Raises:
        ValidationError: Si algún atributo está vacío o supera la longitud X.509.
    """
    try:
        attributes = [x509.NameAttribute(NameOID.COMMON_NAME, subject_dn.common_name)]
        if subject_dn.organization:
            attributes.append(x509.NameAttribute(NameOID.ORGANIZATION_NAME, subject_dn.organization))
        if subject_dn.organizational_unit:
            attributes.append(x509.NameAttribute(NameOID.ORGANIZATIONAL_UNIT_NAME, subject_dn.organizational_unit))
    except (ValueError, TypeError) as e:
        raise ValidationError(f"Nombre distinguido no válido: {e}") from e
    return x509.Name(attributes)


def _name_value(name: x509.Name, oid) -> Optional[str]:
    values = name.get_attributes_for_oid(oid)
    return str(values[0].value) if values else None


def subject_dn_from_name(name: x509.Name) -> SubjectDN:
    return SubjectDN(
        common_name=_name_value(name, NameOID.COMMON_NAME) or "",
        organization=_name_value(name, NameOID.ORGANIZATION_NAME),
        organizational_unit=_name_value(name, NameOID.ORGANIZATIONAL_UNIT_NAME),
    )


class CryptoBackend:
    """
    Capacidades criptográficas usadas por el resto del motor.

    Proporciona métodos para:
    - Generar pares de claves RSA.
    - Crear el certificado autofirmado de una CA raíz.
    - Firmar certificados de host con la clave de una CA.
    - Leer certificados y claves (PEM o DER) y comprobar su correspondencia.
    """

    def __init__(self, key_size: int = PKI_CONFIG['KEY_SIZE'],
                 public_exponent: int = PKI_CONFIG['PUBLIC_EXPONENT']):
        self.key_size = key_size
        self.public_exponent = public_exponent
        self.hash_algorithm = getattr(hashes, PKI_CONFIG['HASH_ALGORITHM'])()

    def generate_key_pair(self) -> rsa.RSAPrivateKey:
        """
        Genera una nueva clave privada RSA.

        Returns:
            rsa.RSAPrivateKey: La clave privada; la pública se obtiene con public_key().
        """
        private_key = rsa.generate_private_key(
            public_exponent=self.public_exponent,
            key_size=self.key_size,
            backend=default_backend()
        )
        logger.debug(f"Clave privada RSA de {self.key_size} bits generada")
        return private_key

    def self_sign(self, private_key, subject_dn: SubjectDN, validity_days: int,
                  serial: Optional[int] = None) -> x509.Certificate:
        """
        Crea el certificado autofirmado de una CA raíz.

        El emisor y el sujeto son el mismo nombre. Se añaden las extensiones
        que la identifican como CA (BasicConstraints y KeyUsage, ambas
        críticas) y el SubjectKeyIdentifier, que luego se referencia desde el
        AuthorityKeyIdentifier de los certificados que firme.

        Args:
            private_key: Clave privada de la CA.
            subject_dn (SubjectDN): Datos de identidad de la CA.
            validity_days (int): Días de validez desde ahora.
            serial (Optional[int]): Número de serie; aleatorio si no se indica.

        Returns:
            x509.Certificate: El certificado raíz firmado.
        """
        if validity_days <= 0:
            raise ValidationError("validityDays debe ser un entero positivo")

        public_key = private_key.public_key()
        subject = issuer = build_name(subject_dn)
        now = datetime.now(timezone.utc)

        cert_builder = x509.CertificateBuilder()
        cert_builder = cert_builder.subject_name(subject)
        cert_builder = cert_builder.issuer_name(issuer)
        cert_builder = cert_builder.public_key(public_key)
        cert_builder = cert_builder.serial_number(serial or x509.random_serial_number())
        cert_builder = cert_builder.not_valid_before(now)
        cert_builder = cert_builder.not_valid_after(now + timedelta(days=validity_days))

        # path_length=0: la CA solo firma certificados finales, no otras CAs.
        cert_builder = cert_builder.add_extension(
            x509.BasicConstraints(ca=True, path_length=0),
            critical=True,
        )
        cert_builder = cert_builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_cert_sign=True,
                crl_sign=True,
                key_encipherment=False,
                content_commitment=False,
                data_encipherment=False,
                key_agreement=False,
                encipher_only=False,
                decipher_only=False,
            ),
            critical=True,
        )
        cert_builder = cert_builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key),
            critical=False,
        )

        try:
            cert = cert_builder.sign(private_key, self.hash_algorithm, default_backend())
        except (ValueError, TypeError) as e:
            raise CryptoError(f"No se pudo autofirmar el certificado de la CA: {e}") from e

        logger.info(f"Certificado raíz autofirmado: {subject.rfc4514_string()} ({validity_days} días)")
        return cert

    def sign(self, ca_key, ca_cert: x509.Certificate, public_key, hostname: str,
             serial: int, not_after: datetime) -> x509.Certificate:
        """
        Firma un certificado de host con la clave de la CA.

        Args:
            ca_key: Clave privada (descifrada) de la CA emisora.
            ca_cert (x509.Certificate): Certificado de la CA emisora.
            public_key: Clave pública del host.
            hostname (str): Nombre de host (CN y SAN).
            serial (int): Número de serie asignado por el almacén de la CA.
            not_after (datetime): Fin de validez, ya ajustado a la vida de la CA.

        Returns:
            x509.Certificate: El certificado de host firmado.
        """
        now = datetime.now(timezone.utc)
        if not_after <= now:
            raise ValidationError("El periodo de validez solicitado ya ha expirado")

        cert_builder = x509.CertificateBuilder()
        cert_builder = cert_builder.subject_name(build_name(SubjectDN(hostname)))
        # El issuer es el subject de la CA: esto es lo que forma la cadena.
        cert_builder = cert_builder.issuer_name(ca_cert.subject)
        cert_builder = cert_builder.public_key(public_key)
        cert_builder = cert_builder.serial_number(serial)
        cert_builder = cert_builder.not_valid_before(now)
        cert_builder = cert_builder.not_valid_after(not_after)

        cert_builder = cert_builder.add_extension(
            x509.BasicConstraints(ca=False, path_length=None),
            critical=True,
        )
        cert_builder = cert_builder.add_extension(
            x509.KeyUsage(
                digital_signature=True,
                key_encipherment=True,
                content_commitment=False,
                data_encipherment=False, key_agreement=False, key_cert_sign=False, crl_sign=False,
                encipher_only=False, decipher_only=False
            ),
            critical=True,
        )
        cert_builder = cert_builder.add_extension(
            x509.ExtendedKeyUsage([
                ExtendedKeyUsageOID.SERVER_AUTH,
                ExtendedKeyUsageOID.CLIENT_AUTH,
            ]),
            critical=False,
        )
        cert_builder = cert_builder.add_extension(
            x509.SubjectAlternativeName([x509.DNSName(hostname)]),
            critical=False,
        )
        cert_builder = cert_builder.add_extension(
            x509.SubjectKeyIdentifier.from_public_key(public_key),
            critical=False,
        )
        cert_builder = cert_builder.add_extension(
            x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
            critical=False,
        )

        try:
            cert = cert_builder.sign(ca_key, self.hash_algorithm, default_backend())
        except (ValueError, TypeError) as e:
            raise CryptoError(f"No se pudo firmar el certificado de {hostname}: {e}") from e

        logger.debug(f"Certificado de {hostname} firmado con serie {serial:X}")
        return cert

    def parse_certificate(self, data: bytes) -> x509.Certificate:
        """Lee un certificado X.509 en PEM o DER."""
        try:
            if data.lstrip().startswith(b"-----"):
                return x509.load_pem_x509_certificate(data, default_backend())
            return x509.load_der_x509_certificate(data, default_backend())
        except (ValueError, TypeError) as e:
            raise CryptoError(f"El contenido no es un certificado X.509 válido: {e}") from e

    def parse_certificates(self, data: bytes) -> List[x509.Certificate]:
        """Lee todos los certificados PEM concatenados (p. ej. un fullchain)."""
        if _PEM_CERT_MARKER not in data:
            return [self.parse_certificate(data)]
        try:
            return x509.load_pem_x509_certificates(data)
        except ValueError as e:
            raise CryptoError(f"La cadena de certificados no es válida: {e}") from e

    def parse_key(self, data: bytes, password: Optional[bytes] = None):
        """
        Lee una clave privada en PEM o DER.

        Args:
            data (bytes): La clave serializada.
            password (Optional[bytes]): Contraseña si la clave está cifrada.

        Raises:
            CryptoError: Si el contenido no es una clave, está cifrado y no se
                         dio contraseña (o al revés) o la contraseña no sirve.
        """
        try:
            if data.lstrip().startswith(b"-----"):
                return serialization.load_pem_private_key(data, password=password, backend=default_backend())
            return serialization.load_der_private_key(data, password=password, backend=default_backend())
        except (ValueError, TypeError, UnsupportedAlgorithm) as e:
            raise CryptoError(f"El contenido no es una clave privada legible: {e}") from e

    def key_to_pem(self, private_key) -> bytes:
        """Serializa una clave privada sin cifrar (solo para claves de host)."""
        return private_key.private_bytes(
            encoding=serialization.Encoding.PEM,
            format=serialization.PrivateFormat.PKCS8,
            encryption_algorithm=serialization.NoEncryption()
        )

    def cert_to_pem(self, cert: x509.Certificate) -> bytes:
        return cert.public_bytes(serialization.Encoding.PEM)

    def key_matches_certificate(self, private_key, cert: x509.Certificate) -> bool:
        """La clave pública derivada de la privada debe ser la del certificado."""
        fmt = serialization.PublicFormat.SubjectPublicKeyInfo
        derived = private_key.public_key().public_bytes(serialization.Encoding.DER, fmt)
        certified = cert.public_key().public_bytes(serialization.Encoding.DER, fmt)
        return derived == certified

    def verify_issued_by(self, cert: x509.Certificate, issuer_cert: x509.Certificate):
        """
        Verifica que `cert` fue firmado directamente por `issuer_cert`.

        Comprueba que el issuer coincide con el subject del emisor y que la
        firma es válida con su clave pública.

        Raises:
            CryptoError: Si la comprobación falla.
        """
        try:
            cert.verify_directly_issued_by(issuer_cert)
        except (ValueError, TypeError, InvalidSignature) as e:
            raise CryptoError(
                f"El certificado {cert.subject.rfc4514_string()} no está firmado por "
                f"{issuer_cert.subject.rfc4514_string()}"
            ) from e

    def is_ca_certificate(self, cert: x509.Certificate) -> bool:
        try:
            return cert.extensions.get_extension_for_class(x509.BasicConstraints).value.ca
        except x509.ExtensionNotFound:
            # Sin BasicConstraints solo se acepta si es autofirmado.
            return cert.issuer == cert.subject
