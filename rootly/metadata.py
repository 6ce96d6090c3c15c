"""
Extracción de metadatos de certificados.

Decodifica la estructura X.509 directamente, en lugar de lanzar una
herramienta externa y recortar su salida en texto.
"""

import logging

from cryptography import x509
from cryptography.hazmat.primitives import hashes

from rootly.crypto_backend import CryptoBackend, subject_dn_from_name
from rootly.models import CAInfo, CertInfo

logger = logging.getLogger(__name__)

_backend = CryptoBackend()


def extract_ca_info(cert_bytes: bytes) -> CAInfo:
    """
    Devuelve sujeto, fin de validez y número de serie de un certificado de CA.

    Raises:
        CryptoError: Si el contenido no es un certificado válido.
    """
    cert = _backend.parse_certificate(cert_bytes)
    return CAInfo(
        subject_dn=subject_dn_from_name(cert.subject),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        serial=cert.serial_number,
    )


def _hostname_of(cert: x509.Certificate) -> str:
    dn = subject_dn_from_name(cert.subject)
    if dn.common_name:
        return dn.common_name
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    except x509.ExtensionNotFound:
        return ""
    names = san.get_values_for_type(x509.DNSName)
    return names[0] if names else ""


def extract_cert_info(cert_bytes: bytes) -> CertInfo:
    """Devuelve nombre de host, fin de validez y sujeto del emisor de un certificado de host."""
    cert = _backend.parse_certificate(cert_bytes)
    return CertInfo(
        hostname=_hostname_of(cert),
        not_before=cert.not_valid_before_utc,
        not_after=cert.not_valid_after_utc,
        issuer_subject_dn=subject_dn_from_name(cert.issuer),
        serial=cert.serial_number,
    )


def describe_certificate(cert_bytes: bytes) -> dict:
    """Vista estructurada de un certificado para mostrar al operador."""
    cert = _backend.parse_certificate(cert_bytes)
    try:
        san = cert.extensions.get_extension_for_class(x509.SubjectAlternativeName).value
        dns_names = san.get_values_for_type(x509.DNSName)
    except x509.ExtensionNotFound:
        dns_names = []
    return {
        'subject': cert.subject.rfc4514_string(),
        'issuer': cert.issuer.rfc4514_string(),
        'serial': format(cert.serial_number, 'X'),
        'notBefore': cert.not_valid_before_utc.isoformat(),
        'notAfter': cert.not_valid_after_utc.isoformat(),
        'dnsNames': dns_names,
        'isCA': _backend.is_ca_certificate(cert),
        'fingerprintSHA256': cert.fingerprint(hashes.SHA256()).hex(':').upper(),
    }
