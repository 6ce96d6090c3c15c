# -*- coding: utf-8 -*-

"""
Validación de ficheros subidos por el operador.

A diferencia de limitarse a mirar la extensión y avisar si el nombre no
parece de una CA, aquí se comprueba la estructura de cada fichero y la
correspondencia entre clave y certificado: la clave pública derivada de la
clave privada debe ser exactamente la del certificado. Un fichero rechazado
nunca se escribe en disco.
"""

import logging
import os
from typing import Dict, Iterable, List, Optional, Tuple

from cryptography import x509

from config import PKI_CONFIG, STORE_CONFIG, UPLOAD_CONFIG
from rootly.atomic_io import validate_hostname, validate_identifier
from rootly.ca_store import CAStore, parse_serial
from rootly.cert_store import CertStore, CERTIFICATE, FULLCHAIN, KEY
from rootly.crypto_backend import CryptoBackend
from rootly.errors import CryptoError, RootlyError, ValidationError
from rootly.key_protection import KeyProtector
from rootly.models import UploadResult

logger = logging.getLogger(__name__)

UploadedFile = Tuple[str, bytes]


class UploadValidator:
    """Valida lotes de ficheros de CA o de host y entrega los aceptados a los almacenes."""

    def __init__(self, ca_store: CAStore, cert_store: CertStore,
                 backend: Optional[CryptoBackend] = None,
                 protector: Optional[KeyProtector] = None):
        self.ca_store = ca_store
        self.cert_store = cert_store
        self.backend = backend or ca_store.backend
        self.protector = protector or ca_store.protector

    def _precheck(self, filename: str, data: bytes, allowed: Iterable[str]) -> Optional[str]:
        """Devuelve el motivo de rechazo por nombre, extensión o tamaño, o None."""
        if not filename or os.path.basename(filename) != filename or filename.startswith('.'):
            return "Nombre de fichero no válido"
        ext = os.path.splitext(filename)[1].lower()
        if ext not in allowed:
            return f"Tipo de fichero no válido. Se esperaba {', '.join(allowed)}"
        if not data:
            return "El fichero está vacío"
        if len(data) > UPLOAD_CONFIG['MAX_FILE_SIZE']:
            return "El fichero supera el tamaño máximo permitido"
        return None

    # ------------------------------------------------------------------
    # Ficheros de CA
    # ------------------------------------------------------------------

    def validate_ca_artifacts(self, files: List[UploadedFile], ca_id: str = PKI_CONFIG['DEFAULT_CA_ID'],
                              passphrase: Optional[str] = None,
                              timeout: Optional[float] = None) -> UploadResult:
        """
        Valida y guarda los ficheros de una CA (.crt, .key, .srl).

        - El certificado debe ser de CA y la clave una clave privada legible.
        - Clave y certificado se suben juntos y deben formar pareja.
        - Una clave sin cifrar se cifra con la contraseña antes de guardarse;
          una cifrada se desbloquea con ella para poder comprobar la pareja.
        - Un .srl suelto actualiza el contador de una CA existente, sin
          hacerlo retroceder.

        Args:
            files: Lista de (nombre de fichero, contenido).
            ca_id (str): CA de destino.
            passphrase (Optional[str]): Contraseña de la clave de la CA.
            timeout (Optional[float]): Espera máxima por el bloqueo de la CA.

        Returns:
            UploadResult: Ficheros aceptados y rechazados con su motivo.
        """
        validate_identifier(ca_id, "caId")
        if not files:
            raise ValidationError("No se han subido ficheros")

        result = UploadResult()
        certs: List[Tuple[str, x509.Certificate]] = []
        keys: List[Tuple[str, bytes]] = []
        serials: List[Tuple[str, int]] = []

        for filename, data in files:
            reason = self._precheck(filename, data, UPLOAD_CONFIG['CA_EXTENSIONS'])
            if reason:
                result.reject(filename, reason)
                continue
            ext = os.path.splitext(filename)[1].lower()
            try:
                if ext == '.crt':
                    cert = self.backend.parse_certificate(data)
                    if not self.backend.is_ca_certificate(cert):
                        raise ValidationError("El certificado no es de una autoridad de certificación")
                    certs.append((filename, cert))
                elif ext == '.key':
                    if not self.protector.is_encrypted(data):
                        self.backend.parse_key(data)
                    keys.append((filename, data))
                else:
                    serials.append((filename, parse_serial(data.decode('ascii'))))
            except RootlyError as e:
                result.reject(filename, e.message)
            except (ValueError, UnicodeDecodeError):
                result.reject(filename, "El contador de serie no es un número hexadecimal positivo")

        for group in (certs, keys, serials):
            for filename, _ in group[1:]:
                result.reject(filename, "Solo se admite un fichero de cada tipo por CA")
            del group[1:]

        pair_failed = False
        if certs or keys:
            pair_failed = not self._import_ca_pair(ca_id, certs, keys, serials, passphrase, timeout, result)
        elif serials:
            filename, value = serials[0]
            try:
                self.ca_store.import_serial(ca_id, value, timeout)
                result.accepted.append(filename)
            except RootlyError as e:
                result.reject(filename, e.message)

        if pair_failed:
            for filename, _ in serials:
                result.reject(filename, "No se guarda el contador porque la CA fue rechazada")

        logger.info(f"Subida de CA '{ca_id}': {len(result.accepted)} aceptados, {len(result.rejected)} rechazados")
        return result

    def _import_ca_pair(self, ca_id, certs, keys, serials, passphrase, timeout, result: UploadResult) -> bool:
        if not (certs and keys):
            for filename, _ in certs + keys:
                result.reject(filename, "El certificado y la clave privada de la CA deben subirse juntos")
            return False

        cert_file, cert = certs[0]
        key_file, key_data = keys[0]
        try:
            if not passphrase:
                raise ValidationError("Se necesita la contraseña de la CA para verificar y proteger la clave")
            if self.protector.is_encrypted(key_data):
                private_key = self.protector.unlock(key_data, passphrase)
                key_blob = key_data
            else:
                private_key = self.backend.parse_key(key_data)
                key_blob = self.protector.protect_private_key(private_key, passphrase)
            matches = self.backend.key_matches_certificate(private_key, cert)
            del private_key
            if not matches:
                raise CryptoError("La clave privada no corresponde al certificado de la CA")

            serial = serials[0][1] if serials else None
            self.ca_store.import_ca(ca_id, key_blob, self.backend.cert_to_pem(cert), serial, timeout)
        except RootlyError as e:
            result.reject(cert_file, e.message)
            result.reject(key_file, e.message)
            return False

        result.accepted.extend([cert_file, key_file] + [filename for filename, _ in serials])
        return True

    # ------------------------------------------------------------------
    # Ficheros de certificados de host
    # ------------------------------------------------------------------

    def _classify(self, filename: str, data: bytes) -> Tuple[str, str]:
        """Devuelve (hostname, tipo) a partir del nombre y, para .pem, del contenido."""
        stem, ext = os.path.splitext(filename)
        ext = ext.lower()
        suffix = STORE_CONFIG['FULLCHAIN_SUFFIX']
        if ext == '.key' or (ext == '.pem' and b"PRIVATE KEY" in data):
            kind = KEY
        elif stem.endswith(suffix):
            kind = FULLCHAIN
        else:
            kind = CERTIFICATE
        hostname = stem[:-len(suffix)] if kind == FULLCHAIN else stem
        validate_hostname(hostname)
        return hostname, kind

    def validate_cert_artifacts(self, files: List[UploadedFile],
                                timeout: Optional[float] = None) -> UploadResult:
        """
        Valida y guarda ficheros de certificados de host (.crt, .key, .pem).

        Los ficheros se agrupan por nombre de host. Dentro de un grupo la clave
        debe corresponder al certificado (también al que ya esté en disco si no
        se sube otro), el fullchain debe empezar por el certificado (subido o
        guardado) y cada
        eslabón debe estar firmado por el siguiente. Si el emisor coincide con
        una CA conocida, la firma se verifica contra ella.
        """
        if not files:
            raise ValidationError("No se han subido ficheros")

        result = UploadResult()
        groups: Dict[str, Dict[str, Tuple[str, object]]] = {}

        for filename, data in files:
            reason = self._precheck(filename, data, UPLOAD_CONFIG['CERT_EXTENSIONS'])
            if reason:
                result.reject(filename, reason)
                continue
            try:
                hostname, kind = self._classify(filename, data)
                if kind == KEY:
                    if self.protector.is_encrypted(data):
                        raise ValidationError("Las claves de host se guardan sin cifrar")
                    parsed = self.backend.parse_key(data)
                elif kind == FULLCHAIN:
                    parsed = self.backend.parse_certificates(data)
                else:
                    parsed = self.backend.parse_certificate(data)
            except RootlyError as e:
                result.reject(filename, e.message)
                continue

            group = groups.setdefault(hostname, {})
            if kind in group:
                result.reject(filename, f"Fichero {kind} duplicado para {hostname}")
                continue
            group[kind] = (filename, parsed)

        for hostname, group in groups.items():
            filenames = [filename for filename, _ in group.values()]
            try:
                artifacts = self._check_cert_group(hostname, group)
                self.cert_store.save(hostname, artifacts, timeout)
            except RootlyError as e:
                for filename in filenames:
                    result.reject(filename, e.message)
                continue
            result.accepted.extend(filenames)

        logger.info(f"Subida de certificados: {len(result.accepted)} aceptados, {len(result.rejected)} rechazados")
        return result

    def _check_cert_group(self, hostname: str, group: Dict[str, Tuple[str, object]]) -> Dict[str, bytes]:
        cert = group[CERTIFICATE][1] if CERTIFICATE in group else None
        chain = group[FULLCHAIN][1] if FULLCHAIN in group else None
        private_key = group[KEY][1] if KEY in group else None

        if chain is not None:
            if cert is not None and chain[0] != cert:
                raise CryptoError("El fullchain no empieza por el certificado subido")
            for child, parent in zip(chain, chain[1:]):
                self.backend.verify_issued_by(child, parent)

        # Un fichero subido sin su pareja debe encajar con el que ya está en disco.
        if chain is not None and cert is None and self.cert_store.exists(hostname, CERTIFICATE):
            stored = self.backend.parse_certificate(self.cert_store.read(hostname, CERTIFICATE))
            if chain[0] != stored:
                raise CryptoError(f"El fullchain no empieza por el certificado guardado de {hostname}")
        if cert is not None and chain is None and self.cert_store.exists(hostname, FULLCHAIN):
            stored_chain = self.backend.parse_certificates(self.cert_store.read(hostname, FULLCHAIN))
            if stored_chain[0] != cert:
                raise CryptoError(
                    f"El certificado no coincide con el fullchain guardado de {hostname}; súbalos juntos"
                )
        leaf = cert if cert is not None else (chain[0] if chain else None)

        if leaf is None and private_key is not None and self.cert_store.exists(hostname, CERTIFICATE):
            leaf = self.backend.parse_certificate(self.cert_store.read(hostname, CERTIFICATE))
        if private_key is None and leaf is not None and self.cert_store.exists(hostname, KEY):
            private_key = self.backend.parse_key(self.cert_store.read(hostname, KEY))

        if leaf is not None and private_key is not None:
            if not self.backend.key_matches_certificate(private_key, leaf):
                raise CryptoError(f"La clave privada no corresponde al certificado de {hostname}")
        if leaf is not None:
            self._verify_known_issuer(leaf)

        artifacts = {}
        if cert is not None:
            artifacts[CERTIFICATE] = self.backend.cert_to_pem(cert)
        if chain is not None:
            artifacts[FULLCHAIN] = b"".join(self.backend.cert_to_pem(c) for c in chain)
        if KEY in group:
            artifacts[KEY] = self.backend.key_to_pem(group[KEY][1])
        return artifacts

    def _verify_known_issuer(self, cert: x509.Certificate):
        """Si alguna CA del almacén tiene el sujeto del emisor, una de ellas debe haberlo firmado."""
        candidates = []
        for info in self.ca_store.list_cas():
            try:
                ca_cert = self.ca_store.load_certificate(info.id)
            except RootlyError:
                continue
            if ca_cert.subject == cert.issuer:
                candidates.append((info.id, ca_cert))

        if not candidates:
            logger.info(f"Emisor {cert.issuer.rfc4514_string()} no corresponde a ninguna CA conocida")
            return
        for ca_id, ca_cert in candidates:
            try:
                self.backend.verify_issued_by(cert, ca_cert)
                logger.debug(f"Certificado verificado contra la CA '{ca_id}'")
                return
            except CryptoError:
                continue
        raise CryptoError(
            f"El certificado dice estar emitido por {cert.issuer.rfc4514_string()} pero su firma no corresponde a esa CA"
        )
