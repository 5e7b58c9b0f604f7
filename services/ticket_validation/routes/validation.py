"""Rutas de validación de tickets"""
from fastapi import APIRouter, Depends, HTTPException, Request, status, Query
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, Optional
import logging

from shared.crypto.credential_codec import CredentialCodec
from shared.crypto.key_manager import KeyManager, get_key_manager, QR_KEY_TYPE, BIOMETRIC_KEY_TYPE
from shared.database.session import get_db
from shared.auth.dependencies import get_current_user, get_current_scanner, get_current_admin, is_privileged
from shared.errors import DomainError
from shared.utils.http_errors import to_http_exception
from services.ble.services.proximity_service import ProximitySessionManager
from services.biometric.services.biometric_service import BiometricVerifier
from services.ticket_validation.models.validation import (
    TicketValidationRequest,
    TicketValidationResponse,
    IssueCredentialRequest,
    CredentialResponse,
    TransferTicketRequest,
    CancelTicketRequest,
    ValidationRequirementsResponse,
    ValidationHistoryResponse
)
from services.ticket_validation.services.credential_store import CredentialStore
from services.ticket_validation.services.ticket_service import TicketService
from services.ticket_validation.services.validation_engine import TicketValidationEngine, ValidationOptions

logger = logging.getLogger(__name__)

router = APIRouter()


def get_credential_store(key_manager: KeyManager = Depends(get_key_manager)) -> CredentialStore:
    return CredentialStore(CredentialCodec(key_manager, QR_KEY_TYPE))


def get_validation_engine(
    store: CredentialStore = Depends(get_credential_store),
    key_manager: KeyManager = Depends(get_key_manager)
) -> TicketValidationEngine:
    return TicketValidationEngine(
        store=store,
        proximity=ProximitySessionManager(),
        biometric=BiometricVerifier(key_manager),
    )


def get_ticket_service(store: CredentialStore = Depends(get_credential_store)) -> TicketService:
    return TicketService(store)


def _credential_response(credential) -> CredentialResponse:
    return CredentialResponse(
        ticket_id=str(credential.ticket_id),
        qr_token=credential.public_token,
        issued_at=credential.issued_at.isoformat(),
        expires_at=credential.expires_at.isoformat(),
    )


@router.post("/validate", response_model=TicketValidationResponse, response_model_exclude_none=True)
async def validate_ticket(
    request: TicketValidationRequest,
    http_request: Request,
    db: AsyncSession = Depends(get_db),
    engine: TicketValidationEngine = Depends(get_validation_engine),
    current_user: Dict = Depends(get_current_scanner)
):
    """
    Validar un ticket en el punto de acceso (QR + BLE + biometría según la política)

    Los rechazos se devuelven con valid=false y un código; solo una falla de
    llaves de cifrado termina en error HTTP (503).
    """
    options = ValidationOptions(
        session_token=request.ble_session_token,
        device_id=request.device_id,
        beacon_id=request.beacon_id,
        biometric_type=request.biometric_data.type if request.biometric_data else None,
        biometric_template=request.biometric_data.template if request.biometric_data else None,
        validator_id=current_user["user_id"],
        location=request.location,
        device_info=request.device_info,
        ip_address=http_request.client.host if http_request.client else None,
        user_agent=http_request.headers.get("user-agent"),
    )
    try:
        verdict = await engine.validate(db, request.qr_token, options)
    except DomainError as e:
        raise to_http_exception(e)

    return TicketValidationResponse(**verdict.to_dict())


@router.post("/tickets/{ticket_id}/credential", response_model=CredentialResponse)
async def issue_credential(
    ticket_id: str,
    request: Optional[IssueCredentialRequest] = None,
    db: AsyncSession = Depends(get_db),
    service: TicketService = Depends(get_ticket_service),
    current_user: Dict = Depends(get_current_user)
):
    """Emitir (o re-emitir) el QR de un ticket propio"""
    try:
        ticket = await service.get_ticket(db, ticket_id)
        if str(ticket.user_id) != current_user["user_id"] and not is_privileged(current_user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="El ticket no te pertenece")
        credential = await service.issue_credential(db, ticket, rotating=bool(request and request.rotating))
    except DomainError as e:
        raise to_http_exception(e)
    return _credential_response(credential)


@router.post("/tickets/{ticket_id}/cancel")
async def cancel_ticket(
    ticket_id: str,
    request: Optional[CancelTicketRequest] = None,
    db: AsyncSession = Depends(get_db),
    service: TicketService = Depends(get_ticket_service),
    current_user: Dict = Depends(get_current_admin)
):
    """Cancelar un ticket (solo admin)"""
    try:
        ticket = await service.cancel_ticket(db, ticket_id, reason=request.reason if request else None)
    except DomainError as e:
        raise to_http_exception(e)
    return {"ticket_id": str(ticket.id), "status": ticket.status}


@router.post("/tickets/{ticket_id}/transfer", response_model=CredentialResponse)
async def transfer_ticket(
    ticket_id: str,
    request: TransferTicketRequest,
    db: AsyncSession = Depends(get_db),
    service: TicketService = Depends(get_ticket_service),
    current_user: Dict = Depends(get_current_user)
):
    """Transferir un ticket propio a otro usuario; devuelve la nueva credencial"""
    try:
        ticket = await service.get_ticket(db, ticket_id)
        if str(ticket.user_id) != current_user["user_id"] and not is_privileged(current_user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="El ticket no te pertenece")
        ticket, credential = await service.transfer_ticket(
            db, ticket_id, request.new_user_id, request.holder_name
        )
    except DomainError as e:
        raise to_http_exception(e)
    return _credential_response(credential)


@router.get("/tickets/{ticket_id}/requirements", response_model=ValidationRequirementsResponse)
async def get_validation_requirements(
    ticket_id: str,
    db: AsyncSession = Depends(get_db),
    service: TicketService = Depends(get_ticket_service),
    current_user: Dict = Depends(get_current_user)
):
    """Factores que exige la validación del ticket (BLE, biometría)"""
    try:
        requirements = await service.get_validation_requirements(db, ticket_id)
    except DomainError as e:
        raise to_http_exception(e)
    return ValidationRequirementsResponse(**requirements)


@router.get("/tickets/{ticket_id}/history", response_model=ValidationHistoryResponse)
async def get_validation_history(
    ticket_id: str,
    limit: int = Query(50, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
    service: TicketService = Depends(get_ticket_service),
    current_user: Dict = Depends(get_current_scanner)
):
    """Historial de intentos de validación del ticket"""
    try:
        validations = await service.get_validation_history(db, ticket_id, limit=limit)
    except DomainError as e:
        raise to_http_exception(e)
    return ValidationHistoryResponse(ticket_id=ticket_id, validations=validations)


@router.get("/statistics")
async def get_credential_statistics(
    db: AsyncSession = Depends(get_db),
    store: CredentialStore = Depends(get_credential_store),
    current_user: Dict = Depends(get_current_admin)
):
    """Totales de credenciales emitidas, usadas, activas y vencidas"""
    return await store.get_statistics(db)


@router.post("/keys/{key_type}/rotate")
async def rotate_key(
    key_type: str,
    db: AsyncSession = Depends(get_db),
    key_manager: KeyManager = Depends(get_key_manager),
    current_user: Dict = Depends(get_current_admin)
):
    """Rotar la llave de cifrado de un tipo; las versiones anteriores siguen descifrando"""
    if key_type not in (QR_KEY_TYPE, BIOMETRIC_KEY_TYPE):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Tipo de llave desconocido: {key_type}")
    try:
        version = await key_manager.rotate(db, key_type)
    except DomainError as e:
        raise to_http_exception(e)
    logger.info(f"Llave {key_type} rotada a v{version} por {current_user['user_id']}")
    return {"key_type": key_type, "key_version": version}
