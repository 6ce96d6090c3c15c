"""
Rootly - Consola de operador de la PKI privada.
Este fichero actúa como controlador: recoge los datos por terminal y delega
cada operación en CertificateService, que es quien toca el disco.
"""

import sys
import logging
import getpass
from pathlib import Path

from config import LOG_CONFIG, CA_DIR, CERTS_DIR, CA_DEFAULTS, PKI_CONFIG
from rootly.errors import RootlyError
from rootly.service import CertificateService, error_payload


def setup_logging():
    """
    Configura el sistema de logging de la aplicación.
    Establece dos salidas:
    1. Archivo de log: Registra todos los eventos (nivel DEBUG).
    2. Consola: Muestra mensajes desde el nivel configurado (INFO).
    """
    log_file = LOG_CONFIG['LOG_FILE']
    log_file.parent.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(
        LOG_CONFIG['LOG_FORMAT'],
        datefmt=LOG_CONFIG['DATE_FORMAT']
    )

    file_handler = logging.FileHandler(log_file, encoding='utf-8')
    file_handler.setFormatter(formatter)
    file_handler.setLevel(logging.DEBUG)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)
    console_handler.setLevel(LOG_CONFIG['LOG_LEVEL'])

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    root_logger.addHandler(file_handler)
    root_logger.addHandler(console_handler)

    logging.info("=" * 60)
    logging.info("Rootly - Consola iniciada")
    logging.info(f"Directorio de CAs: {CA_DIR}")
    logging.info(f"Directorio de certificados: {CERTS_DIR}")
    logging.info("=" * 60)


def _ask(prompt: str, default: str = "") -> str:
    suffix = f" [{default}]" if default else ""
    value = input(f"{prompt}{suffix}: ").strip()
    return value or default


class RootlyConsole:
    """
    Clase controladora principal.
    Mantiene la instancia del servicio y traduce cada opción del menú en una
    llamada a la API del motor.
    """

    def __init__(self, service: CertificateService = None):
        self.service = service or CertificateService()
        self.logger = logging.getLogger(__name__)

    def show_banner(self):
        """Renderiza el banner ASCII de bienvenida."""
        banner = """
╔═══════════════════════════════════════════════════════════╗
║                                                           ║
║               ROOTLY - Autoridades de Certificación       ║
║                     para redes privadas                   ║
║                                                           ║
╚═══════════════════════════════════════════════════════════╝
        """
        print(banner)

    def show_main_menu(self):
        print("\n" + "=" * 50)
        print("MENÚ PRINCIPAL")
        print("=" * 50)
        print("1. Crear CA")
        print("2. Listar CAs")
        print("3. Firmar certificado de host")
        print("4. Listar certificados")
        print("5. Subir ficheros")
        print("6. Exportar fichero")
        print("7. Ver detalle de un certificado")
        print("0. Salir")
        print("=" * 50)

    # -------------------------------------------------------------------------
    # Controladores
    # -------------------------------------------------------------------------

    def create_ca(self):
        print("\n" + "-" * 50)
        print("CREACIÓN DE CA")
        print("-" * 50)
        ca_id = _ask("Identificador de la CA", PKI_CONFIG['DEFAULT_CA_ID'])
        common_name = _ask("Common Name", CA_DEFAULTS['COMMON_NAME'])
        organization = _ask("Organización", CA_DEFAULTS['ORGANIZATION'])
        unit = _ask("Unidad organizativa", CA_DEFAULTS['ORGANIZATIONAL_UNIT'])
        validity = _ask("Días de validez", str(PKI_CONFIG['CA_VALIDITY_DAYS']))

        # getpass evita que la contraseña se vea en la terminal
        passphrase = getpass.getpass("Contraseña de la clave de la CA: ")
        if passphrase != getpass.getpass("Confirmar contraseña: "):
            print("\n❌ Error: Las contraseñas no coinciden.")
            return

        response = self.service.create_ca(ca_id, common_name, organization, unit, passphrase, validity)
        print(f"\n✅ {response['message']}")

    def list_cas(self):
        cas = self.service.list_cas()
        print("\n" + "=" * 50)
        print(f"AUTORIDADES DE CERTIFICACIÓN ({len(cas)})")
        print("=" * 50)
        if not cas:
            print("No hay CAs creadas.")
        for ca in cas:
            dn = ca['subjectDN']
            print(f"  ✅ {ca['id']}")
            print(f"     Subject: CN={dn['commonName']}, O={dn['organization']}, OU={dn['organizationalUnit']}")
            print(f"     Expires: {ca['notAfter']}")
        status = self.service.get_ca_status()
        print(f"\n  CA heredada: clave {'✓' if status['keyExists'] else '✗'}, "
              f"certificado {'✓' if status['certExists'] else '✗'}")

    def sign_certificate(self):
        print("\n" + "-" * 50)
        print("FIRMA DE CERTIFICADO DE HOST")
        print("-" * 50)
        hostname = _ask("Nombre de host")
        ca_id = _ask("CA emisora", PKI_CONFIG['DEFAULT_CA_ID'])
        validity = _ask("Días de validez", str(PKI_CONFIG['CERT_VALIDITY_DAYS']))
        passphrase = getpass.getpass("Contraseña de la CA: ")

        response = self.service.sign_certificate(hostname, ca_id, passphrase, validity)
        print(f"\n✅ {response['message']}")
        print(f"   Serie: {response['serial']}")
        print(f"   Válido hasta: {response['notAfter']}")

    def list_certificates(self):
        certificates = self.service.list_certificates()
        print("\n" + "=" * 50)
        print(f"CERTIFICADOS DE HOST ({len(certificates)})")
        print("=" * 50)
        if not certificates:
            print("No hay certificados.")
        for cert in certificates:
            print(f"  {cert['hostname']}")
            print(f"     Clave: {'✓' if cert['keyExists'] else '✗'}  "
                  f"Fullchain: {'✓' if cert['fullchainExists'] else '✗'}  "
                  f"Expira: {cert['notAfter'] or '¿?'}")

    def upload_files(self):
        print("\n" + "-" * 50)
        print("SUBIDA DE FICHEROS")
        print("-" * 50)
        scope = _ask("Tipo (ca/cert)", "cert")
        paths = _ask("Rutas de los ficheros separadas por espacios").split()
        files = []
        for path in paths:
            path = Path(path).expanduser()
            try:
                files.append((path.name, path.read_bytes()))
            except OSError as e:
                print(f"  ⚠️  No se pudo leer {path}: {e.strerror}")

        ca_id = PKI_CONFIG['DEFAULT_CA_ID']
        passphrase = None
        if scope == 'ca':
            ca_id = _ask("Identificador de la CA", ca_id)
            passphrase = getpass.getpass("Contraseña de la clave de la CA: ") or None

        response = self.service.upload_artifacts(scope, files, ca_id, passphrase)
        print(f"\n{response['message']}")
        for name in response['accepted']:
            print(f"  ✓ {name}")
        for rejected in response['rejected']:
            print(f"  ✗ {rejected['filename']}: {rejected['reason']}")

    def export_file(self):
        print("\n" + "-" * 50)
        print("EXPORTACIÓN")
        print("-" * 50)
        scope = _ask("Ámbito (ca/cert)", "cert")
        artifact_id = _ask("Identificador de la CA o nombre de host")
        kind = _ask("Tipo (certificate/key/fullchain)", "certificate")
        data = self.service.export_artifact(scope, artifact_id, kind)
        target = Path(_ask("Guardar en", self.service.export_filename(scope, artifact_id, kind))).expanduser()
        target.write_bytes(data)
        print(f"\n✅ {len(data)} bytes guardados en {target}")

    def show_certificate(self):
        scope = _ask("Ámbito (ca/cert)", "cert")
        artifact_id = _ask("Identificador de la CA o nombre de host")
        details = self.service.describe_certificate(scope, artifact_id)
        print("\n" + "=" * 50)
        for field, value in details.items():
            print(f"  {field}: {value}")
        print("=" * 50)

    def run(self):
        """Bucle principal del menú."""
        actions = {
            "1": self.create_ca,
            "2": self.list_cas,
            "3": self.sign_certificate,
            "4": self.list_certificates,
            "5": self.upload_files,
            "6": self.export_file,
            "7": self.show_certificate,
        }
        self.show_banner()
        while True:
            self.show_main_menu()
            choice = input("\nSeleccione una opción: ").strip()
            if choice == "0":
                print("\n👋 Finalizando aplicación. Hasta pronto.")
                self.logger.info("Aplicación finalizada por el usuario.")
                break
            action = actions.get(choice)
            if action is None:
                print("\n❌ Opción no reconocida.")
                continue
            try:
                action()
            except RootlyError as e:
                payload = error_payload(e)
                print(f"\n❌ {payload['error']}: {payload['message']}")
            except OSError as e:
                print(f"\n❌ Error de fichero: {e.strerror}")
            input("\nPresione Enter para continuar...")


def main():
    """Función de arranque y manejo de excepciones globales."""
    try:
        setup_logging()
        console = RootlyConsole()
        console.run()
    except KeyboardInterrupt:
        print("\n\n⚠️  Interrupción detectada. Saliendo...")
        logging.info("Salida forzada por teclado (Ctrl+C).")
        sys.exit(0)
    except Exception as e:
        print(f"\n❌ Error Crítico: {e}")
        logging.critical(f"Excepción no controlada: {e}", exc_info=True)
        sys.exit(1)


if __name__ == "__main__":
    main()
