"""
Taxonomía de errores del motor de CA.

Cada excepción lleva un `kind` distinguible por máquina y un mensaje legible.
Ningún mensaje incluye contraseñas, material de clave ni trazas.
"""


class RootlyError(Exception):
    """Excepción base de todos los errores del motor"""

    kind = 'RootlyError'

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {'error': self.kind, 'message': self.message}


class ValidationError(RootlyError):
    """Identificador, nombre de host o campo obligatorio inválido"""
    kind = 'ValidationError'


class ConflictError(RootlyError):
    """La CA ya existe"""
    kind = 'ConflictError'


class NotFoundError(RootlyError):
    """CA, certificado o fichero desconocido"""
    kind = 'NotFoundError'


class AuthError(RootlyError):
    """Contraseña incorrecta (o clave cifrada ilegible, indistinguible a propósito)"""
    kind = 'AuthError'


class CryptoError(RootlyError):
    """Clave o certificado mal codificado, o fallo al construir la cadena"""
    kind = 'CryptoError'


class StorageError(RootlyError):
    """Fallo de disco o permiso denegado"""
    kind = 'IOError'


class LockTimeoutError(RootlyError):
    """No se obtuvo el bloqueo de la CA antes del plazo indicado"""
    kind = 'TimeoutError'
