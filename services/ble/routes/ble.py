"""Rutas de proximidad BLE"""
from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import Dict, List, Optional

from shared.database.session import get_db
from shared.auth.dependencies import get_current_user, get_current_admin, get_current_staff, is_privileged
from shared.errors import DomainError
from shared.utils.http_errors import to_http_exception
from services.ble.models.ble import (
    BeaconCreate,
    BeaconResponse,
    StartSessionRequest,
    SessionResponse,
    ValidateSessionRequest,
    ProximityResultResponse,
    BleStatisticsResponse,
    CleanupRequest,
    CleanupResponse
)
from services.ble.services.proximity_service import ProximitySessionManager


router = APIRouter()


def get_proximity_manager() -> ProximitySessionManager:
    return ProximitySessionManager()


def _beacon_response(beacon) -> BeaconResponse:
    return BeaconResponse(
        id=str(beacon.id),
        festival_id=str(beacon.festival_id),
        name=beacon.name,
        location_name=beacon.location_name,
        latitude=beacon.latitude,
        longitude=beacon.longitude,
        mac_address=beacon.mac_address,
        uuid=beacon.uuid,
        major=beacon.major,
        minor=beacon.minor,
        tx_power=beacon.tx_power,
        rssi_threshold=beacon.rssi_threshold,
    )


def _session_response(session) -> SessionResponse:
    return SessionResponse(
        session_token=session.session_token,
        session_id=str(session.id),
        beacon_id=str(session.beacon_id),
        state=session.state,
        expires_at=session.expires_at.isoformat(),
    )


def _ensure_owner(session, current_user: Dict) -> None:
    if session is not None and session.user_id is not None:
        if str(session.user_id) != current_user["user_id"] and not is_privileged(current_user):
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="La sesión no te pertenece")


@router.post("/festivals/{festival_id}/beacons", response_model=BeaconResponse, status_code=status.HTTP_201_CREATED)
async def register_beacon(
    festival_id: str,
    request: BeaconCreate,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_admin)
):
    """Registrar un beacon en un festival (solo admin)"""
    try:
        beacon = await manager.register_beacon(db, festival_id, request.model_dump())
    except DomainError as e:
        raise to_http_exception(e)
    return _beacon_response(beacon)


@router.get("/festivals/{festival_id}/beacons", response_model=List[BeaconResponse])
async def list_festival_beacons(
    festival_id: str,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_user)
):
    """Beacons activos del festival"""
    try:
        beacons = await manager.list_festival_beacons(db, festival_id)
    except DomainError as e:
        raise to_http_exception(e)
    return [_beacon_response(b) for b in beacons]


@router.get("/beacons/{beacon_id}", response_model=BeaconResponse)
async def get_beacon(
    beacon_id: str,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_user)
):
    """Obtener un beacon por ID"""
    try:
        beacon = await manager.get_beacon(db, beacon_id)
    except DomainError as e:
        raise to_http_exception(e)
    return _beacon_response(beacon)


@router.post("/sessions", response_model=SessionResponse, status_code=status.HTTP_201_CREATED)
async def start_session(
    request: StartSessionRequest,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_user)
):
    """Iniciar una sesión de proximidad entre el dispositivo y un beacon"""
    evidence = request.proximity.model_dump(exclude_none=True) if request.proximity else {}
    try:
        session = await manager.start(db, request.beacon_id, current_user["user_id"], request.device_id, evidence)
    except DomainError as e:
        raise to_http_exception(e)
    return _session_response(session)


@router.post("/sessions/validate", response_model=ProximityResultResponse, response_model_exclude_none=True)
async def validate_session(
    request: ValidateSessionRequest,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_user)
):
    """Confirmar la proximidad de una sesión pendiente"""
    evidence = request.proximity.model_dump(exclude_none=True) if request.proximity else None
    _ensure_owner(await manager.get_by_token(db, request.session_token), current_user)

    result = await manager.validate(db, request.session_token, evidence)
    return ProximityResultResponse(**result.to_dict())


@router.get("/sessions/user/{user_id}", response_model=List[SessionResponse])
async def list_user_sessions(
    user_id: str,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_user)
):
    """Sesiones activas de un usuario (el propio usuario, staff o admin)"""
    if user_id != current_user["user_id"] and not is_privileged(current_user):
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Acceso denegado")
    try:
        sessions = await manager.list_user_active_sessions(db, user_id)
    except DomainError as e:
        raise to_http_exception(e)
    return [_session_response(s) for s in sessions]


@router.delete("/sessions/{session_token}")
async def cancel_session(
    session_token: str,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_user)
):
    """Cancelar una sesión pendiente"""
    _ensure_owner(await manager.get_by_token(db, session_token), current_user)

    cancelled = await manager.cancel(db, session_token)
    if not cancelled:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Sesión no encontrada o ya finalizada"
        )
    return {"session_token": session_token, "state": "cancelled"}


@router.get("/statistics/{festival_id}", response_model=BleStatisticsResponse)
async def get_statistics(
    festival_id: str,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_staff)
):
    """Estadísticas BLE del festival (staff o admin)"""
    try:
        statistics = await manager.get_beacon_statistics(db, festival_id)
    except DomainError as e:
        raise to_http_exception(e)
    return BleStatisticsResponse(festival_id=festival_id, **statistics)


@router.post("/cleanup", response_model=CleanupResponse)
async def cleanup_sessions(
    request: Optional[CleanupRequest] = None,
    db: AsyncSession = Depends(get_db),
    manager: ProximitySessionManager = Depends(get_proximity_manager),
    current_user: Dict = Depends(get_current_admin)
):
    """Expirar sesiones pendientes fuera de TTL, de todos o de un usuario (solo admin)"""
    user_id = request.user_id if request else None
    try:
        expired = await manager.sweep_expired(db, user_id=user_id)
    except DomainError as e:
        raise to_http_exception(e)
    return CleanupResponse(expired_sessions=expired)
