"""
Almacén de certificados de host.

Cada host tiene tres ficheros en el directorio de certificados:
`{hostname}.crt`, `{hostname}.key` (sin cifrar: el servidor que lo usa
necesita la clave) y `{hostname}_fullchain.crt` (certificado + CA emisora).
Volver a emitir un host sobrescribe sus ficheros.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional

from config import STORE_CONFIG
from rootly.atomic_io import LockRegistry, StagedFiles, read_file, validate_hostname
from rootly.errors import CryptoError, StorageError, ValidationError
from rootly.metadata import extract_cert_info

logger = logging.getLogger(__name__)

CERTIFICATE = 'certificate'
KEY = 'key'
FULLCHAIN = 'fullchain'

# Orden de publicación: el .crt, que es lo que se lista, nunca aparece sin su clave.
ARTIFACT_KINDS = (KEY, CERTIFICATE, FULLCHAIN)


class CertStore:
    """Gestiona los ficheros de los certificados de host."""

    def __init__(self, certs_dir: Path, lock_timeout: Optional[float] = STORE_CONFIG['LOCK_TIMEOUT']):
        self.certs_dir = Path(certs_dir)
        try:
            self.certs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"No se pudo crear el directorio de certificados: {e.strerror}") from e
        self.lock_timeout = lock_timeout
        self._locks = LockRegistry(self.certs_dir / STORE_CONFIG['LOCKS_DIRNAME'])
        logger.info(f"CertStore inicializado en {self.certs_dir}")

    def path_for(self, hostname: str, kind: str) -> Path:
        validate_hostname(hostname)
        if kind == CERTIFICATE:
            return self.certs_dir / f"{hostname}.crt"
        if kind == KEY:
            return self.certs_dir / f"{hostname}.key"
        if kind == FULLCHAIN:
            return self.certs_dir / f"{hostname}{STORE_CONFIG['FULLCHAIN_SUFFIX']}.crt"
        raise ValidationError(f"Tipo de fichero no válido: {kind}")

    @contextmanager
    def lock(self, hostname: str, timeout: Optional[float] = None):
        validate_hostname(hostname)
        with self._locks.hold(hostname, self.lock_timeout if timeout is None else timeout):
            yield

    def stage(self, hostname: str, artifacts: Dict[str, bytes]) -> StagedFiles:
        """
        Escribe los ficheros de un host en temporales, sin publicarlos.

        El llamante decide cuándo publicar (publish) o descartar (discard).
        """
        staged = StagedFiles()
        try:
            for kind in ARTIFACT_KINDS:
                if kind in artifacts:
                    mode = 0o600 if kind == KEY else 0o644
                    staged.add(self.path_for(hostname, kind), artifacts[kind], mode)
        except BaseException:
            staged.discard()
            raise
        return staged

    def save(self, hostname: str, artifacts: Dict[str, bytes], timeout: Optional[float] = None):
        """Publica de forma atómica los ficheros indicados de un host."""
        with self.lock(hostname, timeout):
            with self.stage(hostname, artifacts) as staged:
                staged.publish()
        logger.info(f"Ficheros guardados para {hostname}: {', '.join(k for k in ARTIFACT_KINDS if k in artifacts)}")

    def read(self, hostname: str, kind: str) -> bytes:
        return read_file(self.path_for(hostname, kind), f"Fichero {kind} de {hostname}")

    def exists(self, hostname: str, kind: str = CERTIFICATE) -> bool:
        return self.path_for(hostname, kind).exists()

    def list_certificates(self) -> List[dict]:
        """
        Lista los certificados de host publicados.

        Returns:
            Lista de diccionarios con hostname, keyExists, fullchainExists y,
            si el certificado se puede leer, notAfter y el emisor.
        """
        suffix = f"{STORE_CONFIG['FULLCHAIN_SUFFIX']}.crt"
        try:
            files = sorted(self.certs_dir.glob("*.crt"))
        except OSError as e:
            raise StorageError(f"No se pudo leer el directorio de certificados: {e.strerror}") from e

        certificates = []
        for cert_file in files:
            if cert_file.name.endswith(suffix) or cert_file.name.startswith('.'):
                continue
            hostname = cert_file.name[:-len(".crt")]
            try:
                validate_hostname(hostname)
            except ValidationError:
                continue

            entry = {
                'hostname': hostname,
                'certFile': cert_file.name,
                'keyExists': self.exists(hostname, KEY),
                'fullchainExists': self.exists(hostname, FULLCHAIN),
                'notAfter': None,
                'issuer': None,
            }
            try:
                info = extract_cert_info(cert_file.read_bytes())
                entry['notAfter'] = info.not_after.isoformat()
                entry['issuer'] = info.issuer_subject_dn.to_dict()
            except FileNotFoundError:
                continue
            except CryptoError as e:
                logger.warning(f"Error leyendo el certificado {cert_file.name}: {e}")
            certificates.append(entry)
        return certificates
