# -*- coding: utf-8 -*-

"""
Almacén de Autoridades de Certificación.

Es el único escritor de los ficheros de una CA. La disposición en disco es:

- CA heredada `default`: root_ca.key, root_ca.crt, root_ca.srl e index.txt
  directamente en el directorio de CAs.
- CA con nombre `<id>`: los mismos ficheros dentro de `<directorio>/<id>/`.

root_ca.srl guarda el contador de números de serie en hexadecimal (convención
de OpenSSL). index.txt guarda una línea por serie asignada:
`<V|P>\\t<serie hex>\\t<hostname>`, donde V es emitido y P pendiente de
persistir. Una serie pendiente que quede tras una caída no se reutiliza nunca.

Toda mutación de una CA se hace con su bloqueo exclusivo; los listados no
bloquean y solo leen ficheros ya renombrados a su sitio.
"""

import logging
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from cryptography import x509

from config import PKI_CONFIG, STORE_CONFIG
from rootly.atomic_io import (
    LockRegistry,
    StagedFiles,
    atomic_write,
    make_staging_dir,
    publish_dir,
    remove_staging_dir,
    read_file,
    validate_identifier,
)
from rootly.crypto_backend import CryptoBackend, subject_dn_from_name
from rootly.errors import (
    ConflictError,
    CryptoError,
    NotFoundError,
    RootlyError,
    StorageError,
    ValidationError,
)
from rootly.key_protection import KeyProtector
from rootly.metadata import extract_ca_info
from rootly.models import CAInfo, CertificateAuthority, SubjectDN

logger = logging.getLogger(__name__)

DEFAULT_CA_ID = PKI_CONFIG['DEFAULT_CA_ID']

ISSUED = 'V'
PENDING = 'P'


def format_serial(value: int) -> str:
    """Hexadecimal en mayúsculas con un número par de dígitos, como OpenSSL."""
    text = format(value, 'X')
    return text if len(text) % 2 == 0 else '0' + text


def parse_serial(text: str) -> int:
    value = int(text.strip(), 16)
    if value <= 0:
        raise ValueError("el número de serie debe ser positivo")
    return value


def initial_serial_counter() -> int:
    # Valor de partida aleatorio de 63 bits; a partir de aquí solo crece.
    return max(x509.random_serial_number() >> 96, 1)


class CAStore:
    """
    Gestor del almacenamiento de las CAs.

    Proporciona métodos para:
    - Crear una CA raíz nueva (clave cifrada, certificado, contador e índice).
    - Cargar y listar CAs.
    - Asignar números de serie de forma exclusiva y persistente.
    - Importar CAs y contadores ya validados por el validador de subidas.
    """

    def __init__(self, ca_dir: Path, backend: Optional[CryptoBackend] = None,
                 protector: Optional[KeyProtector] = None,
                 lock_timeout: Optional[float] = STORE_CONFIG['LOCK_TIMEOUT']):
        self.ca_dir = Path(ca_dir)
        try:
            self.ca_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            raise StorageError(f"No se pudo crear el directorio de CAs: {e.strerror}") from e
        self.backend = backend or CryptoBackend()
        self.protector = protector or KeyProtector(self.backend)
        self.lock_timeout = lock_timeout
        self._locks = LockRegistry(self.ca_dir / STORE_CONFIG['LOCKS_DIRNAME'])
        logger.info(f"CAStore inicializado en {self.ca_dir}")

    # ------------------------------------------------------------------
    # Rutas
    # ------------------------------------------------------------------

    def ca_path(self, ca_id: str) -> Path:
        validate_identifier(ca_id, "caId")
        if ca_id == DEFAULT_CA_ID:
            return self.ca_dir
        return self.ca_dir / ca_id

    def key_path(self, ca_id: str) -> Path:
        return self.ca_path(ca_id) / STORE_CONFIG['CA_KEY_FILENAME']

    def cert_path(self, ca_id: str) -> Path:
        return self.ca_path(ca_id) / STORE_CONFIG['CA_CERT_FILENAME']

    def serial_path(self, ca_id: str) -> Path:
        return self.ca_path(ca_id) / STORE_CONFIG['SERIAL_FILENAME']

    def index_path(self, ca_id: str) -> Path:
        return self.ca_path(ca_id) / STORE_CONFIG['INDEX_FILENAME']

    def exists(self, ca_id: str) -> bool:
        # El certificado es lo último que se publica: marca la CA como completa.
        return self.cert_path(ca_id).exists()

    # ------------------------------------------------------------------
    # Bloqueo
    # ------------------------------------------------------------------

    @contextmanager
    def lock(self, ca_id: str, timeout: Optional[float] = None):
        """
        Adquiere el bloqueo exclusivo de la CA.

        Es reentrante para el hilo que ya lo tiene y se libera en cualquier
        salida del bloque with, también con excepciones.

        Args:
            ca_id (str): Identificador de la CA.
            timeout (Optional[float]): Segundos máximos de espera; por defecto
                                       el configurado en el almacén.
        """
        validate_identifier(ca_id, "caId")
        with self._locks.hold(ca_id, self.lock_timeout if timeout is None else timeout):
            yield

    def holds_lock(self, ca_id: str) -> bool:
        return self._locks.is_held(ca_id)

    # ------------------------------------------------------------------
    # Creación e importación
    # ------------------------------------------------------------------

    def create_ca(self, ca_id: str, subject_dn: SubjectDN, passphrase: str,
                  validity_days: int = PKI_CONFIG['CA_VALIDITY_DAYS'],
                  timeout: Optional[float] = None) -> CAInfo:
        """
        Crea una CA raíz nueva.

        1. Valida el identificador y los datos de entrada.
        2. Con el bloqueo de la CA, comprueba que no existe.
        3. Genera el par de claves y el certificado autofirmado.
        4. Cifra la clave con la contraseña.
        5. Publica clave, contador, índice vacío y certificado de forma atómica.

        Raises:
            ValidationError: Datos de entrada no válidos.
            ConflictError: Ya existe una CA con ese identificador.
        """
        validate_identifier(ca_id, "caId")
        if not passphrase:
            raise ValidationError("La contraseña es obligatoria")
        if not subject_dn.common_name:
            raise ValidationError("commonName es obligatorio")
        limit = PKI_CONFIG['MAX_NAME_LENGTH']
        for field_name, value in subject_dn.to_dict().items():
            if value and len(value) > limit:
                raise ValidationError(f"{field_name} no puede superar {limit} caracteres")
        if not isinstance(validity_days, int) or validity_days <= 0:
            raise ValidationError("validityDays debe ser un entero positivo")

        with self.lock(ca_id, timeout):
            if self.exists(ca_id) or (ca_id != DEFAULT_CA_ID and self.ca_path(ca_id).exists()):
                raise ConflictError(f"La CA '{ca_id}' ya existe")

            logger.info("=" * 60)
            logger.info(f"CREANDO AUTORIDAD DE CERTIFICACIÓN '{ca_id}'")
            logger.info("=" * 60)

            private_key = self.backend.generate_key_pair()
            cert = self.backend.self_sign(private_key, subject_dn, validity_days)
            key_blob = self.protector.protect_private_key(private_key, passphrase)
            del private_key

            self._publish_ca(ca_id, key_blob, self.backend.cert_to_pem(cert), initial_serial_counter())

        logger.info(f"✅ CA '{ca_id}' creada exitosamente")
        logger.info(f"  - Common Name: {subject_dn.common_name}")
        logger.info(f"  - Validez: {validity_days} días")
        logger.info(f"  - Tamaño de clave: {self.backend.key_size} bits")

        info = extract_ca_info(self.backend.cert_to_pem(cert))
        info.id = ca_id
        return info

    def import_ca(self, ca_id: str, key_blob: bytes, cert_pem: bytes,
                  serial_counter: Optional[int] = None, timeout: Optional[float] = None):
        """
        Guarda una CA subida y ya validada (clave cifrada y certificado).

        Raises:
            ConflictError: Ya existe una CA con ese identificador.
        """
        validate_identifier(ca_id, "caId")
        with self.lock(ca_id, timeout):
            if self.exists(ca_id) or (ca_id != DEFAULT_CA_ID and self.ca_path(ca_id).exists()):
                raise ConflictError(f"La CA '{ca_id}' ya existe")
            self._publish_ca(ca_id, key_blob, cert_pem, serial_counter or initial_serial_counter())
        logger.info(f"CA '{ca_id}' importada")

    def import_serial(self, ca_id: str, serial_counter: int, timeout: Optional[float] = None):
        """Sustituye el contador de una CA existente; nunca lo hace retroceder."""
        with self.lock(ca_id, timeout):
            if not self.exists(ca_id):
                raise NotFoundError(f"La CA '{ca_id}' no existe")
            current = self._read_counter(ca_id, self._read_index(ca_id))
            if serial_counter < current:
                raise ValidationError(
                    f"El contador subido ({format_serial(serial_counter)}) es menor que el actual "
                    f"({format_serial(current)})"
                )
            self._write_counter(ca_id, serial_counter)
        logger.info(f"Contador de serie de la CA '{ca_id}' actualizado")

    def _publish_ca(self, ca_id: str, key_blob: bytes, cert_pem: bytes, serial_counter: int):
        files = [
            (STORE_CONFIG['CA_KEY_FILENAME'], key_blob, 0o600),
            (STORE_CONFIG['SERIAL_FILENAME'], (format_serial(serial_counter) + "\n").encode('ascii'), 0o644),
            (STORE_CONFIG['INDEX_FILENAME'], b"", 0o644),
            (STORE_CONFIG['CA_CERT_FILENAME'], cert_pem, 0o644),
        ]

        if ca_id == DEFAULT_CA_ID:
            # La CA heredada vive en la raíz: el certificado se publica el último.
            with StagedFiles() as staged:
                for name, data, mode in files:
                    staged.add(self.ca_dir / name, data, mode)
                staged.publish()
            return

        # Una CA con nombre se construye en un directorio oculto y se renombra
        # entera, así nunca es visible a medias.
        staging = make_staging_dir(self.ca_dir)
        try:
            for name, data, mode in files:
                atomic_write(staging / name, data, mode)
        except RootlyError:
            remove_staging_dir(staging)
            raise
        publish_dir(staging, self.ca_path(ca_id))

    # ------------------------------------------------------------------
    # Lectura
    # ------------------------------------------------------------------

    def get_ca(self, ca_id: str) -> CertificateAuthority:
        """
        Carga una CA completa.

        Raises:
            NotFoundError: Si la CA no existe.
        """
        validate_identifier(ca_id, "caId")
        if not self.exists(ca_id):
            raise NotFoundError(f"La CA '{ca_id}' no existe")

        cert_pem = read_file(self.cert_path(ca_id), f"Certificado de la CA '{ca_id}'")
        key_blob = read_file(self.key_path(ca_id), f"Clave de la CA '{ca_id}'")
        cert = self.backend.parse_certificate(cert_pem)
        entries = self._read_index(ca_id)

        return CertificateAuthority(
            id=ca_id,
            subject_dn=subject_dn_from_name(cert.subject),
            encrypted_key=key_blob,
            certificate=cert,
            certificate_pem=cert_pem,
            serial_counter=self._read_counter(ca_id, entries),
            issued_serials={s for s, (flag, _) in entries.items() if flag == ISSUED},
            pending_serials={s for s, (flag, _) in entries.items() if flag == PENDING},
        )

    def load_certificate(self, ca_id: str) -> x509.Certificate:
        return self.backend.parse_certificate(
            read_file(self.cert_path(ca_id), f"Certificado de la CA '{ca_id}'")
        )

    def list_cas(self) -> List[CAInfo]:
        """
        Lista las CAs completas, sin bloquear.

        Solo se consideran las CAs cuyo certificado ya está en su sitio; los
        directorios temporales ocultos se ignoran.
        """
        candidates = []
        if (self.ca_dir / STORE_CONFIG['CA_CERT_FILENAME']).exists():
            candidates.append(DEFAULT_CA_ID)
        try:
            entries = sorted(self.ca_dir.iterdir())
        except OSError as e:
            raise StorageError(f"No se pudo leer el directorio de CAs: {e.strerror}") from e
        for entry in entries:
            if entry.name.startswith('.') or not entry.is_dir():
                continue
            try:
                validate_identifier(entry.name)
            except ValidationError:
                continue
            if entry.name != DEFAULT_CA_ID:
                candidates.append(entry.name)

        infos = []
        for ca_id in candidates:
            try:
                info = extract_ca_info(read_file(self.cert_path(ca_id), ca_id))
            except NotFoundError:
                continue
            except CryptoError as e:
                logger.warning(f"Certificado ilegible para la CA '{ca_id}': {e}")
                continue
            info.id = ca_id
            infos.append(info)
        return infos

    def get_status(self, ca_id: str = DEFAULT_CA_ID) -> dict:
        key_exists = self.key_path(ca_id).exists()
        cert_exists = self.cert_path(ca_id).exists()
        return {
            'exists': key_exists and cert_exists,
            'keyExists': key_exists,
            'certExists': cert_exists,
        }

    # ------------------------------------------------------------------
    # Números de serie
    # ------------------------------------------------------------------

    def allocate_serial(self, ca_id: str, hostname: str, timeout: Optional[float] = None) -> int:
        """
        Asigna el siguiente número de serie de la CA.

        Es el único camino que incrementa el contador. Con el bloqueo de la CA:
        lee contador e índice, calcula la siguiente serie, la registra como
        pendiente en el índice y persiste el contador antes de devolverla.

        Si el índice contiene series por encima del contador (contador
        restaurado o caída a medias) se salta por encima de ellas.
        """
        with self.lock(ca_id, timeout):
            if not self.exists(ca_id):
                raise NotFoundError(f"La CA '{ca_id}' no existe")
            entries = self._read_index(ca_id)
            counter = self._read_counter(ca_id, entries)
            highest = max(entries, default=0)
            if highest > counter:
                logger.warning(
                    f"Índice de la CA '{ca_id}' por delante del contador "
                    f"({format_serial(highest)} > {format_serial(counter)}); se salta la colisión"
                )
                counter = highest
            serial = counter + 1

            entries[serial] = (PENDING, hostname)
            self._write_index(ca_id, entries)
            self._write_counter(ca_id, serial)

        logger.info(f"Serie {format_serial(serial)} asignada en la CA '{ca_id}' para {hostname}")
        return serial

    def commit_serial(self, ca_id: str, serial: int):
        """Marca como emitida una serie cuyos ficheros ya están publicados."""
        with self.lock(ca_id):
            entries = self._read_index(ca_id)
            if serial not in entries:
                raise StorageError(f"La serie {format_serial(serial)} no está en el índice de '{ca_id}'")
            entries[serial] = (ISSUED, entries[serial][1])
            self._write_index(ca_id, entries)

    def release_serial(self, ca_id: str, serial: int):
        """
        Deshace una asignación cuyo certificado no llegó a publicarse.

        Solo se hace retroceder el contador si la serie es la última asignada;
        si no, queda consumida.
        """
        with self.lock(ca_id):
            entries = self._read_index(ca_id)
            if self._read_counter(ca_id, entries) == serial:
                self._write_counter(ca_id, serial - 1)
            entries.pop(serial, None)
            self._write_index(ca_id, entries)
        logger.info(f"Serie {format_serial(serial)} liberada en la CA '{ca_id}'")

    def _read_counter(self, ca_id: str, entries: Dict[int, Tuple[str, str]]) -> int:
        path = self.serial_path(ca_id)
        if not path.exists():
            # CA subida sin .srl: se continúa desde la mayor serie conocida.
            return max(entries, default=0)
        text = read_file(path, f"Contador de serie de '{ca_id}'").decode('ascii', errors='replace')
        try:
            return parse_serial(text)
        except ValueError:
            raise StorageError(f"El contador de serie de la CA '{ca_id}' está corrupto")

    def _write_counter(self, ca_id: str, value: int):
        atomic_write(self.serial_path(ca_id), (format_serial(value) + "\n").encode('ascii'))

    def _read_index(self, ca_id: str) -> Dict[int, Tuple[str, str]]:
        path = self.index_path(ca_id)
        if not path.exists():
            return {}
        entries = {}
        content = read_file(path, f"Índice de series de '{ca_id}'").decode('utf-8', errors='replace')
        for number, line in enumerate(content.splitlines(), start=1):
            if not line.strip():
                continue
            try:
                flag, serial_hex, hostname = line.split("\t", 2)
                serial = parse_serial(serial_hex)
            except ValueError:
                raise StorageError(f"Índice de series de la CA '{ca_id}' corrupto (línea {number})")
            if flag not in (ISSUED, PENDING) or serial in entries:
                raise StorageError(f"Índice de series de la CA '{ca_id}' corrupto (línea {number})")
            entries[serial] = (flag, hostname)
        return entries

    def _write_index(self, ca_id: str, entries: Dict[int, Tuple[str, str]]):
        lines = [f"{flag}\t{format_serial(serial)}\t{hostname}\n" for serial, (flag, hostname) in entries.items()]
        atomic_write(self.index_path(ca_id), "".join(lines).encode('utf-8'))
