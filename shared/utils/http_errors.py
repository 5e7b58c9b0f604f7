"""Traducción de errores de dominio a respuestas HTTP"""
from fastapi import HTTPException, status

from shared.errors import DomainError, ErrorCode

STATUS_BY_CODE = {
    ErrorCode.VALIDATION_ERROR: status.HTTP_400_BAD_REQUEST,
    ErrorCode.NOT_FOUND: status.HTTP_404_NOT_FOUND,
    ErrorCode.BUSINESS_LOGIC_ERROR: status.HTTP_409_CONFLICT,
    ErrorCode.ALREADY_USED: status.HTTP_409_CONFLICT,
    ErrorCode.EXPIRED: status.HTTP_409_CONFLICT,
    ErrorCode.INTEGRITY_ERROR: status.HTTP_422_UNPROCESSABLE_ENTITY,
    ErrorCode.KEY_UNAVAILABLE: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def status_for(error: DomainError) -> int:
    return STATUS_BY_CODE.get(error.code, status.HTTP_400_BAD_REQUEST)


def error_body(error: DomainError) -> dict:
    if error.code == ErrorCode.KEY_UNAVAILABLE:
        # No exponer detalles de las llaves
        return {"code": error.code.value, "message": "Servicio de cifrado no disponible"}
    return {"code": error.code.value, "message": error.message}


def to_http_exception(error: DomainError) -> HTTPException:
    return HTTPException(status_code=status_for(error), detail=error_body(error))
