# -*- coding: utf-8 -*-

"""
Motor de firma de certificados de host.

Cada petición recorre los estados:

    REQUESTED -> VALIDATED -> KEY_UNLOCKED -> SERIAL_ALLOCATED -> CERT_BUILT -> PERSISTED

y termina en REJECTED (error de validación) o FAILED (error criptográfico,
de disco o de autenticación) si algo falla.

La asignación de la serie y la publicación de los ficheros forman una única
transacción bajo el bloqueo de la CA: si el certificado no llega a
escribirse se deshace la asignación; si la publicación falla, los ficheros
anteriores del host se restauran y la serie queda consumida (pendiente en el
índice) sin reutilizarse.
"""

import enum
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Optional

from config import PKI_CONFIG
from rootly.atomic_io import validate_hostname, validate_identifier
from rootly.ca_store import CAStore, format_serial
from rootly.cert_store import CertStore, CERTIFICATE, FULLCHAIN, KEY
from rootly.crypto_backend import CryptoBackend
from rootly.errors import RootlyError, ValidationError
from rootly.key_protection import KeyProtector
from rootly.models import CertificateAuthority, CertInfo

logger = logging.getLogger(__name__)


class SigningState(enum.Enum):
    REQUESTED = "requested"
    VALIDATED = "validated"
    KEY_UNLOCKED = "key_unlocked"
    SERIAL_ALLOCATED = "serial_allocated"
    CERT_BUILT = "cert_built"
    PERSISTED = "persisted"
    REJECTED = "rejected"
    FAILED = "failed"


@dataclass
class SigningRequest:
    """Una petición de firma y el estado hasta el que ha llegado."""
    hostname: str
    ca_id: str
    validity_days: int
    state: SigningState = SigningState.REQUESTED

    def advance(self, state: SigningState):
        logger.debug(f"Firma de {self.hostname}: {self.state.value} -> {state.value}")
        self.state = state


class SigningEngine:
    """Firma certificados de host con cualquiera de las CAs del almacén."""

    def __init__(self, ca_store: CAStore, cert_store: CertStore,
                 backend: Optional[CryptoBackend] = None,
                 protector: Optional[KeyProtector] = None):
        self.ca_store = ca_store
        self.cert_store = cert_store
        self.backend = backend or ca_store.backend
        self.protector = protector or ca_store.protector

    def sign_certificate(self, hostname: str, ca_id: str, passphrase: str,
                         validity_days: int = PKI_CONFIG['CERT_VALIDITY_DAYS'],
                         timeout: Optional[float] = None) -> CertInfo:
        """
        Emite un certificado para `hostname` firmado por la CA `ca_id`.

        Args:
            hostname (str): Nombre de host (CN y SAN del certificado).
            ca_id (str): Identificador de la CA emisora.
            passphrase (str): Contraseña de la clave de la CA.
            validity_days (int): Días de validez pedidos; se recortan para no
                                 superar el fin de validez de la CA.
            timeout (Optional[float]): Espera máxima por los bloqueos; vence
                                       siempre antes de modificar nada.

        Returns:
            CertInfo: Datos del certificado emitido.

        Raises:
            ValidationError, NotFoundError, AuthError, CryptoError,
            StorageError, LockTimeoutError
        """
        request = SigningRequest(hostname, ca_id, validity_days)
        try:
            validate_hostname(hostname)
            validate_identifier(ca_id, "caId")
            if not passphrase:
                raise ValidationError("La contraseña es obligatoria")
            if not isinstance(validity_days, int) or validity_days <= 0:
                raise ValidationError("validityDays debe ser un entero positivo")
        except ValidationError as e:
            request.advance(SigningState.REJECTED)
            logger.warning(f"Petición de firma rechazada: {e.message}")
            raise
        request.advance(SigningState.VALIDATED)

        logger.info("=" * 60)
        logger.info(f"EMITIENDO CERTIFICADO PARA {hostname} CON LA CA '{ca_id}'")
        logger.info("=" * 60)

        try:
            with self.ca_store.lock(ca_id, timeout):
                ca = self.ca_store.get_ca(ca_id)
                ca_key = self.protector.unlock(ca.encrypted_key, passphrase)
                request.advance(SigningState.KEY_UNLOCKED)
                try:
                    not_after = self._clamp_validity(ca, validity_days)
                    with self.cert_store.lock(hostname, timeout):
                        info = self._issue(request, ca, ca_key, not_after)
                finally:
                    del ca_key
        except ValidationError as e:
            failed_at = request.state
            request.advance(SigningState.REJECTED)
            logger.warning(f"Firma de {hostname} rechazada en estado {failed_at.value}: {e.message}")
            raise
        except RootlyError as e:
            failed_at = request.state
            request.advance(SigningState.FAILED)
            logger.error(f"Firma de {hostname} fallida en estado {failed_at.value}: {e.kind}: {e.message}")
            raise

        logger.info(f"✅ Certificado emitido para {hostname}")
        logger.info(f"  - CA: {ca_id}")
        logger.info(f"  - Serie: {format_serial(info.serial)}")
        logger.info(f"  - Válido hasta: {info.not_after.isoformat()}")
        return info

    def _clamp_validity(self, ca: CertificateAuthority, validity_days: int) -> datetime:
        now = datetime.now(timezone.utc)
        if ca.not_after <= now:
            raise ValidationError(f"La CA '{ca.id}' ha expirado")
        requested = now + timedelta(days=validity_days)
        if requested > ca.not_after:
            logger.info(f"Validez de {validity_days} días recortada al fin de validez de la CA '{ca.id}'")
            return ca.not_after
        return requested

    def _issue(self, request: SigningRequest, ca: CertificateAuthority, ca_key,
               not_after: datetime) -> CertInfo:
        # Se ejecuta con los bloqueos de la CA y del host ya adquiridos.
        hostname = request.hostname
        serial = self.ca_store.allocate_serial(ca.id, hostname)
        request.advance(SigningState.SERIAL_ALLOCATED)
        try:
            leaf_key = self.backend.generate_key_pair()
            cert = self.backend.sign(ca_key, ca.certificate, leaf_key.public_key(), hostname, serial, not_after)
            self.backend.verify_issued_by(cert, ca.certificate)
            request.advance(SigningState.CERT_BUILT)
            cert_pem = self.backend.cert_to_pem(cert)
            staged = self.cert_store.stage(hostname, {
                KEY: self.backend.key_to_pem(leaf_key),
                CERTIFICATE: cert_pem,
                FULLCHAIN: cert_pem + ca.certificate_pem,
            })
            del leaf_key
        except BaseException:
            self.ca_store.release_serial(ca.id, serial)
            raise

        with staged:
            staged.publish()
        self.ca_store.commit_serial(ca.id, serial)
        request.advance(SigningState.PERSISTED)

        return CertInfo(
            hostname=hostname,
            not_before=cert.not_valid_before_utc,
            not_after=cert.not_valid_after_utc,
            issuer_subject_dn=ca.subject_dn,
            serial=serial,
            ca_id=ca.id,
        )
