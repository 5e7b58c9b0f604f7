"""Rutas de biometría"""
from fastapi import APIRouter, Depends, Request, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Optional

from shared.crypto.key_manager import KeyManager, get_key_manager
from shared.database.session import get_db
from shared.auth.dependencies import get_current_user, get_current_admin
from shared.errors import DomainError
from shared.utils.http_errors import to_http_exception
from services.biometric.models.biometric import (
    EnrollRequest,
    EnrollResponse,
    VerifyRequest,
    VerifyResponse,
    BiometricStatusResponse,
    SupportedTypesResponse,
    ConsentInfoResponse
)
from services.biometric.services.biometric_service import BiometricVerifier, consent_info, supported_types


router = APIRouter()


def get_biometric_verifier(key_manager: KeyManager = Depends(get_key_manager)) -> BiometricVerifier:
    return BiometricVerifier(key_manager)


@router.post("/enroll", response_model=EnrollResponse)
async def enroll(
    request: EnrollRequest,
    db: AsyncSession = Depends(get_db),
    verifier: BiometricVerifier = Depends(get_biometric_verifier),
    current_user: Dict = Depends(get_current_user)
):
    """
    Enrolar una plantilla biométrica del usuario autenticado

    Registra el consentimiento biométrico en el perfil del usuario.
    """
    try:
        result = await verifier.enroll(
            db,
            current_user["user_id"],
            request.biometric_type,
            request.template,
            request.quality_score,
            request.metadata
        )
    except DomainError as e:
        raise to_http_exception(e)
    return EnrollResponse(**result.to_dict())


@router.post("/verify", response_model=VerifyResponse)
async def verify(
    request: VerifyRequest,
    http_request: Request,
    db: AsyncSession = Depends(get_db),
    verifier: BiometricVerifier = Depends(get_biometric_verifier),
    current_user: Dict = Depends(get_current_user)
):
    """Verificar una muestra contra la plantilla enrolada"""
    request_info = {
        "ip_address": http_request.client.host if http_request.client else None,
        "user_agent": http_request.headers.get("user-agent"),
    }
    try:
        result = await verifier.verify(
            db,
            current_user["user_id"],
            request.biometric_type,
            request.template,
            session_id=request.session_id,
            request_info=request_info
        )
    except DomainError as e:
        raise to_http_exception(e)
    return VerifyResponse(**result.to_dict())


@router.get("/supported-types", response_model=SupportedTypesResponse)
async def get_supported_types():
    """Tipos biométricos soportados"""
    return SupportedTypesResponse(supported_types=supported_types())


@router.get("/consent-info", response_model=ConsentInfoResponse)
async def get_consent_info():
    """Información del consentimiento biométrico vigente"""
    return ConsentInfoResponse(**consent_info())


@router.get("/status", response_model=BiometricStatusResponse)
async def get_status(
    db: AsyncSession = Depends(get_db),
    verifier: BiometricVerifier = Depends(get_biometric_verifier),
    current_user: Dict = Depends(get_current_user)
):
    """Estado de enrolamiento del usuario autenticado"""
    try:
        data = await verifier.get_status(db, current_user["user_id"])
    except DomainError as e:
        raise to_http_exception(e)
    return BiometricStatusResponse(**data)


@router.delete("/{biometric_type}")
async def deactivate(
    biometric_type: str,
    db: AsyncSession = Depends(get_db),
    verifier: BiometricVerifier = Depends(get_biometric_verifier),
    current_user: Dict = Depends(get_current_user)
):
    """Eliminar (desactivar) la biometría de un tipo"""
    try:
        await verifier.deactivate(db, current_user["user_id"], biometric_type)
    except DomainError as e:
        raise to_http_exception(e)
    return {"biometric_type": biometric_type, "active": False}


@router.get("/statistics")
async def get_statistics(
    user_id: Optional[str] = Query(None),
    biometric_type: Optional[str] = Query(None),
    db: AsyncSession = Depends(get_db),
    verifier: BiometricVerifier = Depends(get_biometric_verifier),
    current_user: Dict = Depends(get_current_admin)
):
    """Estadísticas de verificación (solo admin)"""
    try:
        return await verifier.get_verification_statistics(db, user_id, biometric_type)
    except DomainError as e:
        raise to_http_exception(e)
