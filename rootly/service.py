# -*- coding: utf-8 -*-

"""
Fachada de operaciones del motor de CA.

Es el contrato que usan los llamantes externos (la consola de operador o una
capa de transporte): recibe tipos simples, devuelve diccionarios listos para
serializar y nunca expone material de clave de una CA salvo su fichero
cifrado a través de la exportación.
"""

import logging
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from config import CA_DIR, CERTS_DIR, CA_DEFAULTS, PKI_CONFIG, STORE_CONFIG
from rootly.ca_store import CAStore, format_serial
from rootly.cert_store import CertStore
from rootly.crypto_backend import CryptoBackend
from rootly.errors import RootlyError, ValidationError
from rootly.export_service import ExportService, SCOPE_CA, SCOPE_CERT
from rootly.key_protection import KeyProtector
from rootly.metadata import describe_certificate
from rootly.models import SubjectDN
from rootly.signing_engine import SigningEngine
from rootly.upload_validator import UploadValidator

logger = logging.getLogger(__name__)

DEFAULT_CA_ID = PKI_CONFIG['DEFAULT_CA_ID']


def _as_days(value) -> int:
    try:
        days = int(value)
    except (TypeError, ValueError):
        raise ValidationError("validityDays debe ser un entero positivo")
    if days <= 0:
        raise ValidationError("validityDays debe ser un entero positivo")
    return days


def error_payload(exc: Exception) -> dict:
    """
    Convierte una excepción en la respuesta que ve el llamante.

    Los errores del motor conservan su tipo y mensaje; cualquier otro se
    registra completo en el log y se devuelve como error interno genérico.
    """
    if isinstance(exc, RootlyError):
        return exc.to_dict()
    logger.error(f"Error inesperado: {exc}", exc_info=exc)
    return {'error': 'InternalError', 'message': 'Error interno del servidor'}


class CertificateService:
    """Punto de entrada a todas las operaciones de CA y certificados."""

    def __init__(self, ca_dir: Path = CA_DIR, certs_dir: Path = CERTS_DIR,
                 key_size: int = PKI_CONFIG['KEY_SIZE'],
                 lock_timeout: Optional[float] = STORE_CONFIG['LOCK_TIMEOUT']):
        self.backend = CryptoBackend(key_size=key_size)
        self.protector = KeyProtector(self.backend)
        self.ca_store = CAStore(ca_dir, self.backend, self.protector, lock_timeout)
        self.cert_store = CertStore(certs_dir, lock_timeout)
        self.signing_engine = SigningEngine(self.ca_store, self.cert_store)
        self.upload_validator = UploadValidator(self.ca_store, self.cert_store)
        self.export_service = ExportService(self.ca_store, self.cert_store)

    def create_ca(self, ca_id: str = DEFAULT_CA_ID,
                  common_name: str = CA_DEFAULTS['COMMON_NAME'],
                  organization: str = CA_DEFAULTS['ORGANIZATION'],
                  organizational_unit: str = CA_DEFAULTS['ORGANIZATIONAL_UNIT'],
                  passphrase: Optional[str] = None,
                  validity_days=PKI_CONFIG['CA_VALIDITY_DAYS'],
                  timeout: Optional[float] = None) -> dict:
        subject_dn = SubjectDN(common_name, organization or None, organizational_unit or None)
        self.ca_store.create_ca(ca_id, subject_dn, passphrase, _as_days(validity_days), timeout)
        return {'id': ca_id, 'message': f"CA '{ca_id}' created successfully"}

    def sign_certificate(self, hostname: str, ca_id: str = DEFAULT_CA_ID,
                         passphrase: Optional[str] = None,
                         validity_days=PKI_CONFIG['CERT_VALIDITY_DAYS'],
                         timeout: Optional[float] = None) -> dict:
        info = self.signing_engine.sign_certificate(hostname, ca_id, passphrase, _as_days(validity_days), timeout)
        return {
            'hostname': hostname,
            'caId': ca_id,
            'serial': format_serial(info.serial),
            'notAfter': info.not_after.isoformat(),
            'message': f"Certificate for '{hostname}' signed successfully with CA '{ca_id}'",
        }

    def list_cas(self) -> List[dict]:
        return [info.to_dict() for info in self.ca_store.list_cas()]

    def get_ca_status(self) -> dict:
        """Vista heredada de una única CA (la CA `default`)."""
        return self.ca_store.get_status(DEFAULT_CA_ID)

    def list_certificates(self) -> List[dict]:
        return self.cert_store.list_certificates()

    def upload_artifacts(self, scope: str, files: Sequence[Tuple[str, bytes]],
                         ca_id: str = DEFAULT_CA_ID, passphrase: Optional[str] = None,
                         timeout: Optional[float] = None) -> dict:
        files = list(files)
        if scope == SCOPE_CA:
            result = self.upload_validator.validate_ca_artifacts(files, ca_id, passphrase, timeout)
        elif scope == SCOPE_CERT:
            result = self.upload_validator.validate_cert_artifacts(files, timeout)
        else:
            raise ValidationError(f"Tipo de subida no válido: {scope!r}")
        payload = result.to_dict()
        payload['message'] = f"Successfully uploaded {len(result.accepted)} file(s)"
        return payload

    def export_artifact(self, scope: str, artifact_id: str, kind: str) -> bytes:
        return self.export_service.export_artifact(scope, artifact_id, kind)

    def export_filename(self, scope: str, artifact_id: str, kind: str) -> str:
        return self.export_service.export_filename(scope, artifact_id, kind)

    def describe_certificate(self, scope: str, artifact_id: str) -> dict:
        return describe_certificate(self.export_service.export_artifact(scope, artifact_id, 'certificate'))
