"""
Modelos de datos de la PKI.
"""

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional, Set

from cryptography import x509


@dataclass(frozen=True)
class SubjectDN:
    """Nombre distinguido reducido que manejan las CAs."""
    common_name: str
    organization: Optional[str] = None
    organizational_unit: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'commonName': self.common_name,
            'organization': self.organization,
            'organizationalUnit': self.organizational_unit,
        }


@dataclass
class CAInfo:
    """Datos de listado de una CA."""
    subject_dn: SubjectDN
    not_before: datetime
    not_after: datetime
    serial: int
    id: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            'id': self.id,
            'subjectDN': self.subject_dn.to_dict(),
            'notAfter': self.not_after.isoformat(),
        }


@dataclass
class CertInfo:
    """Datos de estado de un certificado de host."""
    hostname: str
    not_before: datetime
    not_after: datetime
    issuer_subject_dn: SubjectDN
    serial: int
    ca_id: Optional[str] = None


@dataclass
class CertificateAuthority:
    """
    Estado completo de una CA tal y como está en disco.

    La clave privada se mantiene cifrada; solo la Protección de Claves
    la descifra durante una firma.
    """
    id: str
    subject_dn: SubjectDN
    encrypted_key: bytes
    certificate: x509.Certificate
    certificate_pem: bytes
    serial_counter: int
    issued_serials: Set[int] = field(default_factory=set)
    pending_serials: Set[int] = field(default_factory=set)

    @property
    def not_before(self) -> datetime:
        return self.certificate.not_valid_before_utc

    @property
    def not_after(self) -> datetime:
        return self.certificate.not_valid_after_utc


@dataclass
class UploadResult:
    """Resultado de validar un lote de ficheros subidos."""
    accepted: List[str] = field(default_factory=list)
    rejected: List[dict] = field(default_factory=list)

    def reject(self, filename: str, reason: str):
        self.rejected.append({'filename': filename, 'reason': reason})

    def to_dict(self) -> dict:
        return {'accepted': list(self.accepted), 'rejected': list(self.rejected)}
