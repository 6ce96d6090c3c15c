"""
Configuración global de Rootly
Contiene las rutas por defecto y los parámetros de las operaciones de la PKI.
Los almacenes reciben sus directorios de forma explícita; estos valores solo
son los que usa la consola cuando no se indica otra cosa.
"""

import os
from pathlib import Path

# Directorios base (sobrescribibles por variables de entorno)
BASE_DIR = Path(__file__).parent
DATA_DIR = Path(os.environ.get('ROOTLY_DATA_DIR', BASE_DIR / "data"))
CA_DIR = Path(os.environ.get('ROOTLY_CA_DIR', DATA_DIR / "ca"))
CERTS_DIR = Path(os.environ.get('ROOTLY_CERTS_DIR', DATA_DIR / "certs"))
LOGS_DIR = Path(os.environ.get('ROOTLY_LOG_DIR', DATA_DIR / "logs"))

# Gramática de identificadores de CA y de nombres de host
IDENTIFIER_PATTERN = r'^[A-Za-z0-9_-]+$'
HOSTNAME_PATTERN = r'^[A-Za-z0-9_-]+(\.[A-Za-z0-9_-]+)*$'

# Configuración de PKI
PKI_CONFIG = {
    'KEY_SIZE': 2048,  # bits
    'PUBLIC_EXPONENT': 65537,
    'HASH_ALGORITHM': 'SHA256',
    'CA_VALIDITY_DAYS': 3650,  # 10 años
    'CERT_VALIDITY_DAYS': 825,  # máximo aceptado por los navegadores
    'DEFAULT_CA_ID': 'default',  # CA heredada en la raíz del directorio
    'MAX_NAME_LENGTH': 64,  # límite X.509 (ub-common-name) para CN, O y OU
}

# Valores por defecto del sujeto de una CA nueva
CA_DEFAULTS = {
    'COMMON_NAME': 'rootly network',
    'ORGANIZATION': 'rootly',
    'ORGANIZATIONAL_UNIT': 'IT',
}

# Configuración del almacenamiento en disco
STORE_CONFIG = {
    'CA_KEY_FILENAME': 'root_ca.key',
    'CA_CERT_FILENAME': 'root_ca.crt',
    'SERIAL_FILENAME': 'root_ca.srl',  # contador hexadecimal, convención OpenSSL
    'INDEX_FILENAME': 'index.txt',
    'LOCKS_DIRNAME': '.locks',
    'TEMP_PREFIX': '.tmp-',
    'LOCK_TIMEOUT': 30,  # segundos
    'LOCK_POLL_INTERVAL': 0.01,  # segundos
    'FULLCHAIN_SUFFIX': '_fullchain',
}

# Configuración de subida de artefactos
UPLOAD_CONFIG = {
    'CA_EXTENSIONS': ('.crt', '.key', '.srl'),
    'CERT_EXTENSIONS': ('.crt', '.key', '.pem'),
    'MAX_FILE_SIZE': 5 * 1024 * 1024,  # 5 MB
}

# Configuración de logging
LOG_CONFIG = {
    'LOG_FILE': LOGS_DIR / 'rootly.log',
    'LOG_LEVEL': 'INFO',
    'LOG_FORMAT': '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    'DATE_FORMAT': '%Y-%m-%d %H:%M:%S',
}
