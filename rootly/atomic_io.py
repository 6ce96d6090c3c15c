"""
Primitivas de sistema de ficheros compartidas por los almacenes.

- Validación de identificadores y nombres de host antes de tocar el disco.
- Escritura atómica: fichero temporal en el mismo directorio + os.replace.
- Bloqueos exclusivos por identificador: threading.RLock para los hilos del
  proceso y fcntl.flock sobre un fichero de bloqueo para otros procesos.
"""

import fcntl
import logging
import os
import re
import shutil
import tempfile
import threading
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Dict, Optional

from config import IDENTIFIER_PATTERN, HOSTNAME_PATTERN, PKI_CONFIG, STORE_CONFIG
from rootly.errors import (
    ValidationError,
    NotFoundError,
    StorageError,
    LockTimeoutError,
)

logger = logging.getLogger(__name__)

_IDENTIFIER_RE = re.compile(IDENTIFIER_PATTERN)
_HOSTNAME_RE = re.compile(HOSTNAME_PATTERN)


def validate_identifier(value, field_name: str = "id") -> str:
    """Comprueba que `value` cumple ^[A-Za-z0-9_-]+$ y lo devuelve."""
    if not isinstance(value, str) or not _IDENTIFIER_RE.fullmatch(value):
        raise ValidationError(
            f"{field_name} es obligatorio y solo puede contener letras, números, guiones y guiones bajos"
        )
    return value


def validate_hostname(value) -> str:
    """Etiquetas separadas por puntos con el mismo alfabeto que los identificadores."""
    if not isinstance(value, str) or not value:
        raise ValidationError("hostname es obligatorio")
    if not _HOSTNAME_RE.fullmatch(value):
        raise ValidationError(f"hostname no válido: {value!r}")
    # El hostname es el Common Name del certificado.
    if len(value) > PKI_CONFIG['MAX_NAME_LENGTH']:
        raise ValidationError(f"hostname no puede superar {PKI_CONFIG['MAX_NAME_LENGTH']} caracteres")
    return value


def read_file(path: Path, what: str) -> bytes:
    try:
        with open(path, 'rb') as f:
            return f.read()
    except FileNotFoundError:
        raise NotFoundError(f"{what} no encontrado")
    except OSError as e:
        raise StorageError(f"No se pudo leer {what}: {e.strerror}") from e


def _replace(src: str, dst: Path):
    # Un fallo en el renombrado se reintenta una única vez.
    try:
        os.replace(src, dst)
    except OSError as e:
        logger.warning(f"Fallo al renombrar {Path(src).name} -> {dst}: {e}. Reintentando...")
        os.replace(src, dst)


class StagedFiles:
    """
    Conjunto de ficheros escritos en temporales y publicados después.

    add() escribe y sincroniza cada contenido en un temporal oculto del mismo
    directorio que el destino; publish() los renombra en el orden en que se
    añadieron. Un lector ve el fichero anterior o el nuevo completo, nunca uno
    a medias. Los temporales no publicados se borran al salir del bloque with.

    La publicación es todo o nada: antes de renombrar, cada destino existente
    se enlaza (hard link) a una copia oculta; si un renombrado falla, los ya
    publicados se restauran desde su copia o se borran si no existían.
    """

    def __init__(self):
        self._staged = []
        self.published = []

    def add(self, path: Path, data: bytes, mode: int = 0o644):
        path = Path(path)
        tmp = None
        try:
            fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=STORE_CONFIG['TEMP_PREFIX'], suffix='.part')
            with os.fdopen(fd, 'wb') as f:
                f.write(data)
                f.flush()
                os.fsync(f.fileno())
            os.chmod(tmp, mode)
        except OSError as e:
            if tmp is not None and os.path.exists(tmp):
                os.unlink(tmp)
            raise StorageError(f"No se pudo escribir {path.name}: {e.strerror or e}") from e
        self._staged.append((tmp, path))

    def publish(self):
        backups = self._backup_targets()
        try:
            while self._staged:
                tmp, path = self._staged[0]
                try:
                    _replace(tmp, path)
                except OSError as e:
                    self._rollback(backups)
                    raise StorageError(f"No se pudo escribir {path.name}: {e.strerror or e}") from e
                self._staged.pop(0)
                self.published.append(path)
                logger.debug(f"Fichero escrito atómicamente: {path}")
        finally:
            _remove_backups(backups)

    def _backup_targets(self) -> Dict[Path, Path]:
        backups = {}
        for _, path in self._staged:
            if not path.exists():
                continue
            backup = path.with_name(f"{STORE_CONFIG['TEMP_PREFIX']}{path.name}.{os.urandom(4).hex()}.bak")
            try:
                os.link(path, backup)
            except OSError as e:
                _remove_backups(backups)
                raise StorageError(f"No se pudo preparar la copia de {path.name}: {e.strerror or e}") from e
            backups[path] = backup
        return backups

    def _rollback(self, backups: Dict[Path, Path]):
        for path in reversed(self.published):
            backup = backups.pop(path, None)
            try:
                if backup is not None:
                    os.replace(backup, path)
                else:
                    os.unlink(path)
            except OSError as e:
                logger.error(f"No se pudo restaurar {path}: {e}")
        logger.warning(f"Publicación deshecha: {len(self.published)} fichero(s) restaurados")
        self.published = []

    def discard(self):
        for tmp, _ in self._staged:
            if os.path.exists(tmp):
                os.unlink(tmp)
        self._staged = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.discard()
        return False


def _remove_backups(backups: Dict[Path, Path]):
    for backup in backups.values():
        if os.path.exists(backup):
            os.unlink(backup)


def atomic_write(path: Path, data: bytes, mode: int = 0o644):
    """Escribe `data` en `path` de forma atómica (temporal + os.replace)."""
    with StagedFiles() as staged:
        staged.add(path, data, mode)
        staged.publish()


def make_staging_dir(parent: Path) -> Path:
    """Crea un directorio temporal oculto dentro de `parent`."""
    try:
        return Path(tempfile.mkdtemp(dir=parent, prefix=STORE_CONFIG['TEMP_PREFIX']))
    except OSError as e:
        raise StorageError(f"No se pudo crear un directorio temporal: {e.strerror}") from e


def remove_staging_dir(staging: Path):
    shutil.rmtree(staging, ignore_errors=True)


def publish_dir(staging: Path, target: Path):
    """Renombra un directorio ya completo a su nombre definitivo."""
    try:
        try:
            os.rename(staging, target)
        except OSError as e:
            if target.exists():
                raise
            logger.warning(f"Fallo al publicar {target}: {e}. Reintentando...")
            os.rename(staging, target)
    except OSError as e:
        shutil.rmtree(staging, ignore_errors=True)
        raise StorageError(f"No se pudo publicar {target.name}: {e.strerror}") from e


class _IdLock:
    """Bloqueo exclusivo y reentrante (para el hilo propietario) de un identificador."""

    def __init__(self, path: Path, poll_interval: float):
        self.path = path
        self.poll_interval = poll_interval
        self._rlock = threading.RLock()
        self._depth = 0
        self._owner = None
        self._fh = None

    def acquire(self, timeout: Optional[float] = None):
        deadline = None if timeout is None else time.monotonic() + timeout
        acquired = self._rlock.acquire(timeout=-1 if timeout is None else max(timeout, 0))
        if not acquired:
            raise LockTimeoutError(f"Tiempo de espera agotado esperando el bloqueo de '{self.path.stem}'")
        try:
            if self._depth == 0:
                self._fh = self._lock_file(deadline)
                self._owner = threading.get_ident()
            self._depth += 1
        except BaseException:
            self._rlock.release()
            raise

    def _lock_file(self, deadline: Optional[float]):
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            fh = open(self.path, 'a+')
        except OSError as e:
            raise StorageError(f"No se pudo abrir el fichero de bloqueo: {e.strerror}") from e
        try:
            if deadline is None:
                fcntl.flock(fh.fileno(), fcntl.LOCK_EX)
                return fh
            while True:
                try:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                    return fh
                except BlockingIOError:
                    if time.monotonic() >= deadline:
                        raise LockTimeoutError(
                            f"Tiempo de espera agotado esperando el bloqueo de '{self.path.stem}'"
                        )
                    time.sleep(self.poll_interval)
        except BaseException:
            fh.close()
            raise

    def release(self):
        self._depth -= 1
        if self._depth == 0:
            fh, self._fh = self._fh, None
            self._owner = None
            try:
                fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
            finally:
                fh.close()
        self._rlock.release()

    def held_by_current_thread(self) -> bool:
        return self._owner == threading.get_ident()


class LockRegistry:
    """Un bloqueo por identificador, creado bajo demanda."""

    def __init__(self, locks_dir: Path, poll_interval: float = STORE_CONFIG['LOCK_POLL_INTERVAL']):
        self.locks_dir = Path(locks_dir)
        self.poll_interval = poll_interval
        self._locks: Dict[str, _IdLock] = {}
        self._guard = threading.Lock()

    def _get(self, key: str) -> _IdLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = _IdLock(self.locks_dir / f"{key}.lock", self.poll_interval)
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: str, timeout: Optional[float] = None):
        lock = self._get(key)
        lock.acquire(timeout)
        try:
            yield lock
        finally:
            lock.release()

    def is_held(self, key: str) -> bool:
        return self._get(key).held_by_current_thread()
