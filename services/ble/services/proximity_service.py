"""Sesiones de validación de proximidad BLE.

Máquina de estados:
    pending --validate--> validated
    pending --timeout---> expired
    pending --cancel----> cancelled

validated, expired y cancelled son terminales. La expiración se evalúa al
acceder (no hay timer), por lo que cualquier lectura vuelve a revisar el TTL.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func, case
from datetime import timedelta
from typing import Any, Dict, List, Optional, Union
from dataclasses import dataclass
import logging
import secrets
import uuid

from shared.config import settings
from shared.database.models import BleBeacon, Festival, ProximitySession
from shared.errors import BusinessLogicError, NotFoundError, ValidationError
from shared.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)

PENDING = "pending"
VALIDATED = "validated"
EXPIRED = "expired"
CANCELLED = "cancelled"


@dataclass
class ProximityResult:
    valid: bool
    code: str
    message: str
    session: Optional[ProximitySession] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {"valid": self.valid, "code": self.code, "message": self.message}
        if self.session is not None:
            data.update({
                "session_id": str(self.session.id),
                "beacon_id": str(self.session.beacon_id),
                "device_id": self.session.device_id,
                "state": self.session.state,
                "expires_at": self.session.expires_at.isoformat(),
            })
        return data


def _as_uuid(value: Union[uuid.UUID, str, None]) -> Optional[uuid.UUID]:
    if value is None or isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError("ID inválido") from None


def generate_session_token() -> str:
    return secrets.token_hex(8).upper()


class ProximitySessionManager:
    """Sesiones BLE de corta duración entre un dispositivo y un beacon"""

    def __init__(
        self,
        ttl_seconds: Optional[int] = None,
        max_sessions_per_user: Optional[int] = None,
        clock: Clock = utcnow
    ):
        self.ttl = timedelta(seconds=ttl_seconds or settings.BLE_SESSION_TTL_SECONDS)
        self.max_sessions_per_user = max_sessions_per_user or settings.BLE_MAX_SESSIONS_PER_USER
        self.clock = clock

    # ---------- Beacons ----------

    async def register_beacon(
        self,
        db: AsyncSession,
        festival_id: Union[uuid.UUID, str],
        beacon_data: Dict[str, Any]
    ) -> BleBeacon:
        """
        Registrar un beacon para un festival

        Raises:
            NotFoundError: festival inexistente o inactivo
            BusinessLogicError: BLE deshabilitado para el festival
            ValidationError: MAC duplicada o datos faltantes
        """
        festival_id = _as_uuid(festival_id)
        stmt = select(Festival).where(Festival.id == festival_id, Festival.is_active.is_(True))
        festival = (await db.execute(stmt)).scalar_one_or_none()
        if not festival:
            raise NotFoundError("Festival no encontrado o inactivo")
        if not festival.ble_enabled:
            raise BusinessLogicError("BLE no está habilitado para este festival")

        required = ("name", "location_name", "latitude", "longitude", "mac_address", "uuid", "major", "minor")
        missing = [field for field in required if beacon_data.get(field) is None]
        if missing:
            raise ValidationError(f"Faltan campos del beacon: {', '.join(missing)}")

        stmt_mac = select(BleBeacon.id).where(BleBeacon.mac_address == beacon_data["mac_address"])
        if (await db.execute(stmt_mac)).scalar_one_or_none():
            raise ValidationError("Ya existe un beacon con esa MAC")

        beacon = BleBeacon(
            id=uuid.uuid4(),
            festival_id=festival_id,
            name=beacon_data["name"],
            location_name=beacon_data["location_name"],
            latitude=beacon_data["latitude"],
            longitude=beacon_data["longitude"],
            mac_address=beacon_data["mac_address"],
            uuid=beacon_data["uuid"],
            major=beacon_data["major"],
            minor=beacon_data["minor"],
            tx_power=beacon_data.get("tx_power", -59),
            rssi_threshold=beacon_data.get("rssi_threshold", -70),
            is_active=True,
        )
        db.add(beacon)
        await db.commit()
        logger.info(f"Beacon {beacon.id} registrado en festival {festival_id}")
        return beacon

    async def list_festival_beacons(self, db: AsyncSession, festival_id: Union[uuid.UUID, str]) -> List[BleBeacon]:
        stmt = (
            select(BleBeacon)
            .where(BleBeacon.festival_id == _as_uuid(festival_id), BleBeacon.is_active.is_(True))
            .order_by(BleBeacon.name)
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def get_beacon(self, db: AsyncSession, beacon_id: Union[uuid.UUID, str]) -> BleBeacon:
        beacon = await db.get(BleBeacon, _as_uuid(beacon_id))
        if not beacon:
            raise NotFoundError("Beacon no encontrado")
        return beacon

    async def get_beacon_statistics(self, db: AsyncSession, festival_id: Union[uuid.UUID, str]) -> Dict[str, Any]:
        """
        Beacons y sesiones de un festival.

        Las sesiones pendientes fuera de TTL cuentan como expiradas aunque
        todavía no se hayan barrido.
        """
        festival_id = _as_uuid(festival_id)
        now = self.clock()

        stmt_beacons = select(
            func.count(BleBeacon.id),
            func.sum(case((BleBeacon.is_active.is_(True), 1), else_=0)),
        ).where(BleBeacon.festival_id == festival_id)
        total_beacons, active_beacons = (await db.execute(stmt_beacons)).one()

        lapsed = (ProximitySession.state == PENDING) & (ProximitySession.expires_at <= now)
        stmt_sessions = (
            select(
                func.count(ProximitySession.id),
                func.sum(case(((ProximitySession.state == PENDING) & (ProximitySession.expires_at > now), 1), else_=0)),
                func.sum(case((ProximitySession.state == VALIDATED, 1), else_=0)),
                func.sum(case(((ProximitySession.state == EXPIRED) | lapsed, 1), else_=0)),
                func.sum(case((ProximitySession.state == CANCELLED, 1), else_=0)),
            )
            .select_from(ProximitySession)
            .join(BleBeacon, BleBeacon.id == ProximitySession.beacon_id)
            .where(BleBeacon.festival_id == festival_id)
        )
        total, pending, validated, expired, cancelled = (await db.execute(stmt_sessions)).one()

        total_beacons = total_beacons or 0
        active_beacons = active_beacons or 0
        return {
            "beacons": {
                "total": total_beacons,
                "active": active_beacons,
                "inactive": total_beacons - active_beacons,
            },
            "sessions": {
                "total": total or 0,
                "pending": pending or 0,
                "validated": validated or 0,
                "expired": expired or 0,
                "cancelled": cancelled or 0,
            },
        }

    # ---------- Sesiones ----------

    async def start(
        self,
        db: AsyncSession,
        beacon_id: Union[uuid.UUID, str],
        user_id: Union[uuid.UUID, str, None],
        device_id: str,
        evidence: Optional[Dict[str, Any]] = None
    ) -> ProximitySession:
        """
        Iniciar una sesión pendiente para el par beacon/dispositivo.

        Raises:
            NotFoundError: beacon desconocido o inactivo
            BusinessLogicError: dispositivo lejos del beacon o demasiadas sesiones
        """
        evidence = evidence or {}
        beacon_id = _as_uuid(beacon_id)
        user_id = _as_uuid(user_id)
        if not device_id:
            raise ValidationError("device_id es requerido")

        stmt = select(BleBeacon).where(BleBeacon.id == beacon_id, BleBeacon.is_active.is_(True))
        beacon = (await db.execute(stmt)).scalar_one_or_none()
        if not beacon:
            raise NotFoundError("Beacon no encontrado o inactivo")

        if not self._proximity_ok(beacon, evidence):
            raise BusinessLogicError("Dispositivo demasiado lejos del beacon")

        if user_id:
            await self.sweep_expired(db, user_id=user_id)
            stmt_count = select(func.count(ProximitySession.id)).where(
                ProximitySession.user_id == user_id,
                ProximitySession.state == PENDING,
            )
            active_sessions = (await db.execute(stmt_count)).scalar() or 0
            if active_sessions >= self.max_sessions_per_user:
                raise BusinessLogicError("Máximo de sesiones activas alcanzado")

        now = self.clock()
        session = ProximitySession(
            id=uuid.uuid4(),
            session_token=generate_session_token(),
            beacon_id=beacon.id,
            user_id=user_id,
            device_id=device_id,
            state=PENDING,
            proximity_data=evidence,
            created_at=now,
            expires_at=now + self.ttl,
        )
        db.add(session)
        await db.commit()
        logger.info(f"Sesión BLE {session.id} iniciada (beacon={beacon.id}, device={device_id})")
        return session

    async def get_by_token(self, db: AsyncSession, session_token: str) -> Optional[ProximitySession]:
        stmt = (
            select(ProximitySession)
            .where(ProximitySession.session_token == session_token)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def validate(
        self,
        db: AsyncSession,
        session_token: str,
        evidence: Optional[Dict[str, Any]] = None
    ) -> ProximityResult:
        """
        Transición pending -> validated. Idempotente: una sesión ya validada
        devuelve el resultado cacheado sin volver a evaluar proximidad.
        """
        session = await self.get_by_token(db, session_token)
        if session is None:
            return ProximityResult(False, "SESSION_NOT_FOUND", "Sesión no encontrada")

        now = self.clock()

        if session.state == VALIDATED:
            if session.expires_at <= now:
                return ProximityResult(False, "SESSION_EXPIRED", "Sesión expirada", session)
            return ProximityResult(True, "SESSION_VALID", "Sesión ya validada", session)

        if session.state == CANCELLED:
            return ProximityResult(False, "SESSION_CANCELLED", "Sesión cancelada", session)

        if session.state == EXPIRED or session.expires_at <= now:
            await self._expire(db, session)
            return ProximityResult(False, "SESSION_EXPIRED", "Sesión expirada", session)

        beacon = await db.get(BleBeacon, session.beacon_id)
        proximity_evidence = evidence if evidence is not None else (session.proximity_data or {})
        if beacon is None or not beacon.is_active:
            return ProximityResult(False, "BEACON_UNAVAILABLE", "Beacon no disponible", session)
        if not self._proximity_ok(beacon, proximity_evidence):
            return ProximityResult(False, "PROXIMITY_TOO_WEAK", "Dispositivo demasiado lejos del beacon", session)

        stmt = (
            update(ProximitySession)
            .where(
                ProximitySession.id == session.id,
                ProximitySession.state == PENDING,
                ProximitySession.expires_at > now,
            )
            .values(state=VALIDATED, validated_at=now)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        await db.refresh(session)

        if result.rowcount == 1:
            logger.info(f"Sesión BLE {session.id} validada")
            return ProximityResult(True, "SESSION_VALID", "Sesión validada", session)

        # Otra petición cambió el estado primero
        if session.state == VALIDATED:
            return ProximityResult(True, "SESSION_VALID", "Sesión ya validada", session)
        return ProximityResult(False, f"SESSION_{session.state.upper()}", "Sesión no disponible", session)

    async def cancel(self, db: AsyncSession, session_token: str) -> bool:
        """Cancelar una sesión pendiente; False si no existe o ya terminó"""
        stmt = (
            update(ProximitySession)
            .where(ProximitySession.session_token == session_token, ProximitySession.state == PENDING)
            .values(state=CANCELLED)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        return result.rowcount == 1

    async def list_user_active_sessions(
        self,
        db: AsyncSession,
        user_id: Union[uuid.UUID, str]
    ) -> List[ProximitySession]:
        """Sesiones pendientes y dentro de TTL del usuario, la más reciente primero"""
        stmt = (
            select(ProximitySession)
            .where(
                ProximitySession.user_id == _as_uuid(user_id),
                ProximitySession.state == PENDING,
                ProximitySession.expires_at > self.clock(),
            )
            .order_by(ProximitySession.created_at.desc())
        )
        result = await db.execute(stmt)
        return list(result.scalars().all())

    async def sweep_expired(self, db: AsyncSession, user_id: Union[uuid.UUID, str, None] = None) -> int:
        """Marcar como expiradas las sesiones pendientes fuera de TTL"""
        stmt = (
            update(ProximitySession)
            .where(ProximitySession.state == PENDING, ProximitySession.expires_at <= self.clock())
            .values(state=EXPIRED)
            .execution_options(synchronize_session=False)
        )
        if user_id:
            stmt = stmt.where(ProximitySession.user_id == _as_uuid(user_id))
        result = await db.execute(stmt)
        await db.commit()
        return result.rowcount

    async def _expire(self, db: AsyncSession, session: ProximitySession) -> None:
        if session.state != PENDING:
            return
        stmt = (
            update(ProximitySession)
            .where(ProximitySession.id == session.id, ProximitySession.state == PENDING)
            .values(state=EXPIRED)
            .execution_options(synchronize_session=False)
        )
        await db.execute(stmt)
        await db.commit()
        await db.refresh(session)

    @staticmethod
    def _proximity_ok(beacon: BleBeacon, evidence: Dict[str, Any]) -> bool:
        rssi = evidence.get("rssi")
        if rssi is None:
            return True
        return rssi >= beacon.rssi_threshold
