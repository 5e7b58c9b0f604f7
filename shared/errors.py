"""Errores de dominio del sistema de validación de tickets.

Conjunto cerrado: cada error lleva un código estable (``ErrorCode``) y un
mensaje apto para el usuario. Los bordes (motor de validación, rutas HTTP)
manejan exhaustivamente estas clases.
"""
from enum import Enum
from typing import Optional


class ErrorCode(Enum):
    """Códigos de error de dominio."""

    NOT_FOUND = "NOT_FOUND"
    ALREADY_USED = "ALREADY_USED"
    EXPIRED = "EXPIRED"
    INTEGRITY_ERROR = "INTEGRITY_ERROR"
    VALIDATION_ERROR = "VALIDATION_ERROR"
    BUSINESS_LOGIC_ERROR = "BUSINESS_LOGIC_ERROR"
    KEY_UNAVAILABLE = "KEY_UNAVAILABLE"


class DomainError(Exception):
    """Error base con código y mensaje seguro para el usuario."""

    code: ErrorCode = ErrorCode.VALIDATION_ERROR

    def __init__(self, message: str, code: Optional[ErrorCode] = None) -> None:
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def __str__(self) -> str:
        return f"{self.code.value}: {self.message}"


class NotFoundError(DomainError):
    """La entidad no existe."""

    code = ErrorCode.NOT_FOUND


class AlreadyUsedError(DomainError):
    """La credencial o sesión ya fue consumida."""

    code = ErrorCode.ALREADY_USED

    def __init__(self, message: str = "Credencial ya utilizada", used_at=None) -> None:
        super().__init__(message)
        self.used_at = used_at


class ExpiredError(DomainError):
    """La credencial o sesión está vencida."""

    code = ErrorCode.EXPIRED

    def __init__(self, message: str = "Credencial expirada", expired_at=None) -> None:
        super().__init__(message)
        self.expired_at = expired_at


class IntegrityError(DomainError):
    """Manipulación o corrupción detectada (tag de autenticación inválido)."""

    code = ErrorCode.INTEGRITY_ERROR


class ValidationError(DomainError):
    """Entrada inválida del llamador."""

    code = ErrorCode.VALIDATION_ERROR


class BusinessLogicError(DomainError):
    """Entrada válida que viola una regla de negocio."""

    code = ErrorCode.BUSINESS_LOGIC_ERROR


class KeyUnavailableError(DomainError):
    """Llave de cifrado inaccesible. Siempre fatal, nunca se convierte en veredicto."""

    code = ErrorCode.KEY_UNAVAILABLE
