"""
Exportación de artefactos almacenados para su descarga.

Solo lectura: devuelve los bytes tal y como están en disco.
"""

import logging

from config import STORE_CONFIG
from rootly.atomic_io import read_file
from rootly.ca_store import CAStore
from rootly.cert_store import CertStore, CERTIFICATE, FULLCHAIN, KEY
from rootly.errors import ValidationError

logger = logging.getLogger(__name__)

SCOPE_CA = 'ca'
SCOPE_CERT = 'cert'

# Alias aceptados para el tipo de fichero ('cert' es el nombre que usaba la API de descargas).
_KIND_ALIASES = {
    'certificate': CERTIFICATE,
    'cert': CERTIFICATE,
    'crt': CERTIFICATE,
    'key': KEY,
    'fullchain': FULLCHAIN,
}


def normalize_kind(kind: str) -> str:
    try:
        return _KIND_ALIASES[kind]
    except (KeyError, TypeError):
        raise ValidationError(f"Tipo de fichero no válido: {kind!r}")


class ExportService:
    """Sirve el certificado, la clave o la cadena completa de una CA o de un host."""

    def __init__(self, ca_store: CAStore, cert_store: CertStore):
        self.ca_store = ca_store
        self.cert_store = cert_store

    def export_artifact(self, scope: str, artifact_id: str, kind: str) -> bytes:
        """
        Devuelve el contenido de un artefacto.

        Args:
            scope (str): 'ca' o 'cert'.
            artifact_id (str): Identificador de la CA o nombre de host.
            kind (str): 'certificate', 'key' o 'fullchain'.

        Raises:
            ValidationError: Ámbito, tipo o identificador no válidos.
            NotFoundError: El fichero no existe.
        """
        kind = normalize_kind(kind)
        if scope == SCOPE_CA:
            data = self._export_ca(artifact_id, kind)
        elif scope == SCOPE_CERT:
            data = self.cert_store.read(artifact_id, kind)
        else:
            raise ValidationError(f"Ámbito no válido: {scope!r}")
        logger.info(f"Exportado {kind} de {scope} '{artifact_id}' ({len(data)} bytes)")
        return data

    def _export_ca(self, ca_id: str, kind: str) -> bytes:
        if kind == KEY:
            # La clave de una CA sale tal y como está guardada: cifrada.
            return read_file(self.ca_store.key_path(ca_id), f"Clave de la CA '{ca_id}'")
        # Una CA raíz es su propia cadena completa.
        return read_file(self.ca_store.cert_path(ca_id), f"Certificado de la CA '{ca_id}'")

    def export_filename(self, scope: str, artifact_id: str, kind: str) -> str:
        """Nombre con el que se ofrece la descarga."""
        kind = normalize_kind(kind)
        if scope == SCOPE_CA:
            if kind == KEY:
                return STORE_CONFIG['CA_KEY_FILENAME']
            return STORE_CONFIG['CA_CERT_FILENAME']
        if scope == SCOPE_CERT:
            return self.cert_store.path_for(artifact_id, kind).name
        raise ValidationError(f"Ámbito no válido: {scope!r}")
