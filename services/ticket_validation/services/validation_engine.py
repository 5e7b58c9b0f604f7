"""Motor de validación de tickets (QR + BLE + biometría).

Por cada intento de canje:
1. Inspeccionar la credencial (existe, sin usar, vigente, íntegra)
2. Ticket activo y dentro de su ventana de validez
3. Sesión BLE validada si la política lo exige
4. Verificación biométrica si la política lo exige
5. En una sola transacción: ticket -> used, credencial canjeada y registro de validación

Todo error termina en un veredicto estructurado, salvo KeyUnavailableError,
que es una falla de infraestructura y se propaga.
"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import update
from dataclasses import dataclass, field
from typing import Any, Dict, Optional
import logging
import uuid

from shared.config import settings
from shared.crypto.credential_codec import is_stale_slot
from shared.database.models import BleBeacon, Festival, Ticket, TicketValidation
from shared.errors import (
    AlreadyUsedError, ExpiredError, IntegrityError, KeyUnavailableError, NotFoundError
)
from shared.utils.clock import Clock, utcnow
from services.ble.services.proximity_service import ProximitySessionManager
from services.biometric.services.biometric_service import BiometricVerifier
from services.ticket_validation.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


@dataclass
class ValidationOptions:
    session_token: Optional[str] = None
    device_id: Optional[str] = None
    beacon_id: Optional[str] = None
    biometric_type: Optional[str] = None
    biometric_template: Optional[str] = None
    validator_id: Optional[str] = None
    location: Optional[str] = None
    device_info: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


@dataclass
class ValidationVerdict:
    valid: bool
    code: str
    message: str
    ticket: Optional[Dict[str, Any]] = None
    validation: Optional[Dict[str, Any]] = None
    details: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        data = {"valid": self.valid, "code": self.code, "message": self.message}
        if self.ticket is not None:
            data["ticket"] = self.ticket
        if self.validation is not None:
            data["validation"] = self.validation
        data.update(self.details)
        return data


class Rejection(Exception):
    """Corte del flujo de validación con código estable"""

    def __init__(self, code: str, message: str, **details):
        super().__init__(message)
        self.code = code
        self.message = message
        self.details = details


def validation_method(ble: bool, biometric: bool) -> str:
    if ble and biometric:
        return "qr_ble_biometric"
    if ble:
        return "qr_ble"
    if biometric:
        return "qr_biometric"
    return "qr_only"


def format_ticket(ticket: Ticket, festival: Optional[Festival] = None) -> Dict[str, Any]:
    data = {
        "id": str(ticket.id),
        "user_id": str(ticket.user_id),
        "festival_id": str(ticket.festival_id),
        "holder_name": ticket.holder_name,
        "status": ticket.status,
        "valid_from": ticket.valid_from.isoformat(),
        "valid_to": ticket.valid_to.isoformat(),
    }
    if festival is not None:
        data["festival_name"] = festival.name
    return data


class TicketValidationEngine:
    """Orquesta credencial, proximidad y biometría para decidir la admisión"""

    def __init__(
        self,
        store: CredentialStore,
        proximity: ProximitySessionManager,
        biometric: BiometricVerifier,
        rotation_tolerance_slots: Optional[int] = None,
        clock: Clock = utcnow
    ):
        self.store = store
        self.proximity = proximity
        self.biometric = biometric
        self.rotation_tolerance_slots = (
            rotation_tolerance_slots if rotation_tolerance_slots is not None
            else settings.CREDENTIAL_ROTATION_TOLERANCE_SLOTS
        )
        self.clock = clock

    async def validate(
        self,
        db: AsyncSession,
        token: str,
        options: Optional[ValidationOptions] = None
    ) -> ValidationVerdict:
        """
        Decidir si el ticket es admisible ahora y registrar el resultado.

        Nunca lanza excepciones de validación; solo KeyUnavailableError.
        """
        options = options or ValidationOptions()
        # Valores planos: el veredicto no lee instancias ORM que un savepoint pudo expirar
        context: Dict[str, Any] = {"token": token, "method": "qr_only"}

        try:
            return await self._run(db, token, options, context)
        except KeyUnavailableError:
            logger.critical("Llave de cifrado no disponible durante la validación de tickets")
            raise
        except Rejection as rejection:
            await self._record_rejection(db, context, rejection.code, options)
            return ValidationVerdict(
                valid=False,
                code=rejection.code,
                message=rejection.message,
                ticket=context.get("ticket"),
                details=rejection.details,
            )
        except Exception as e:
            logger.error(f"Error validando ticket con token {token}: {type(e).__name__}: {e}", exc_info=True)
            await self._record_rejection(db, context, "VALIDATION_ERROR", options)
            return ValidationVerdict(
                valid=False,
                code="VALIDATION_ERROR",
                message="No se pudo validar el ticket",
                ticket=context.get("ticket"),
            )

    async def _run(
        self,
        db: AsyncSession,
        token: str,
        options: ValidationOptions,
        context: Dict[str, Any]
    ) -> ValidationVerdict:
        # 1. Credencial
        try:
            credential, payload = await self.store.inspect(db, token)
        except NotFoundError:
            raise Rejection("QR_NOT_FOUND", "Código QR no encontrado")
        except (ExpiredError, AlreadyUsedError, IntegrityError) as e:
            existing = await self.store.get_by_token(db, token)
            if existing is not None:
                context["ticket_id"] = existing.ticket_id
            if isinstance(e, ExpiredError):
                raise Rejection("QR_EXPIRED", "Código QR expirado", expired_at=_iso(e.expired_at))
            if isinstance(e, AlreadyUsedError):
                raise Rejection("QR_ALREADY_USED", "Código QR ya utilizado", used_at=_iso(e.used_at))
            logger.warning(f"[SECURITY] Credencial manipulada o corrupta presentada (token {token})")
            raise Rejection("QR_INTEGRITY_ERROR", "Código QR inválido")

        credential_id = credential.id
        context["ticket_id"] = credential.ticket_id

        # 2. Ticket y ventana de validez
        ticket = await db.get(Ticket, credential.ticket_id, populate_existing=True)
        if ticket is None:
            raise Rejection("TICKET_NOT_FOUND", "Ticket no encontrado")
        festival = await db.get(Festival, ticket.festival_id)
        context["ticket"] = format_ticket(ticket, festival)
        ticket_id = ticket.id
        ticket_user_id = ticket.user_id
        ticket_festival_id = ticket.festival_id

        ble_required = bool(ticket.ble_validation_required and festival is not None and festival.ble_enabled)
        biometric_required = bool(
            ticket.biometric_required and festival is not None and festival.biometric_enabled
        )
        context["method"] = validation_method(ble_required, biometric_required)

        if ticket.status != "active":
            raise Rejection("TICKET_INVALID_STATUS", f"El ticket está {ticket.status}")

        now = self.clock()
        if now < ticket.valid_from:
            raise Rejection(
                "FESTIVAL_NOT_STARTED", "El festival aún no comienza",
                festival_start=ticket.valid_from.isoformat()
            )
        if now > ticket.valid_to:
            raise Rejection("FESTIVAL_ENDED", "El festival ya terminó", festival_end=ticket.valid_to.isoformat())

        if "time_slot" in payload:
            interval = int(payload.get("rotation_interval") or settings.CREDENTIAL_ROTATION_INTERVAL_SECONDS)
            if is_stale_slot(int(payload["time_slot"]), now, interval, self.rotation_tolerance_slots):
                raise Rejection("QR_STALE", "Código QR desactualizado, genera uno nuevo")

        # 3. Proximidad BLE
        ble_session_id = None
        beacon_id = None
        if ble_required:
            if not options.session_token:
                raise Rejection("BLE_SESSION_REQUIRED", "Se requiere sesión BLE para validar")

            ble_result = await self.proximity.validate(db, options.session_token)
            if not ble_result.valid:
                raise Rejection("BLE_VALIDATION_FAILED", "Validación BLE fallida", ble_error=ble_result.code)

            session = ble_result.session
            beacon = await db.get(BleBeacon, session.beacon_id)
            bound = (
                beacon is not None
                and beacon.festival_id == ticket_festival_id
                and (session.user_id is None or session.user_id == ticket_user_id)
                and (options.device_id is None or options.device_id == session.device_id)
                and (options.beacon_id is None or options.beacon_id == str(session.beacon_id))
            )
            if not bound:
                raise Rejection(
                    "BLE_VALIDATION_FAILED", "La sesión BLE no corresponde a este ticket",
                    ble_error="SESSION_MISMATCH"
                )
            ble_session_id = session.id
            beacon_id = session.beacon_id
            context["proximity_session_id"] = ble_session_id
            context["beacon_id"] = beacon_id

        # 4. Biometría
        confidence = None
        if biometric_required:
            if not options.biometric_type or not options.biometric_template:
                raise Rejection("BIOMETRIC_REQUIRED", "Se requiere verificación biométrica")
            try:
                verification = await self.biometric.verify(
                    db,
                    ticket_user_id,
                    options.biometric_type,
                    options.biometric_template,
                    session_id=str(ble_session_id) if ble_session_id else None,
                    request_info={"ip_address": options.ip_address, "user_agent": options.user_agent},
                )
            except (NotFoundError, IntegrityError) as e:
                raise Rejection("BIOMETRIC_VERIFICATION_FAILED", "Verificación biométrica fallida", biometric_error=e.message)
            confidence = verification.confidence_score
            context["biometric_confidence"] = confidence
            if not verification.verified:
                raise Rejection(
                    "BIOMETRIC_VERIFICATION_FAILED", "Verificación biométrica fallida",
                    confidence_score=confidence
                )

        # 5. Canje atómico
        method = context["method"]
        validation_id = uuid.uuid4()
        # Savepoint: un rechazo deshace solo este grupo, no la sesión del llamador
        try:
            async with db.begin_nested():
                used_at = await self.store.mark_redeemed(db, credential_id, options.validator_id, options.location)

                stmt = (
                    update(Ticket)
                    .where(Ticket.id == ticket_id, Ticket.status == "active")
                    .values(status="used", updated_at=used_at)
                    .execution_options(synchronize_session=False)
                )
                result = await db.execute(stmt)
                if result.rowcount != 1:
                    raise Rejection("TICKET_INVALID_STATUS", "El ticket ya no está activo")

                db.add(TicketValidation(
                    id=validation_id,
                    ticket_id=ticket_id,
                    credential_token=token,
                    validated_at=used_at,
                    status="used",
                    result_code="TICKET_VALID",
                    method=method,
                    biometric_confidence=confidence,
                    proximity_session_id=ble_session_id,
                    beacon_id=beacon_id,
                    validator_id=options.validator_id,
                    location=options.location,
                    device_info=self._device_info(context, options),
                ))
        except AlreadyUsedError as e:
            raise Rejection("QR_ALREADY_USED", "Código QR ya utilizado", used_at=_iso(e.used_at))
        except ExpiredError as e:
            raise Rejection("QR_EXPIRED", "Código QR expirado", expired_at=_iso(e.expired_at))
        await db.commit()

        logger.info(f"Ticket {ticket_id} validado ({method})")
        ticket_data = {**context["ticket"], "status": "used"}
        return ValidationVerdict(
            valid=True,
            code="TICKET_VALID",
            message="Ticket válido",
            ticket=ticket_data,
            validation={
                "id": str(validation_id),
                "method": method,
                "ble_validated": ble_required,
                "biometric_verified": biometric_required,
                "confidence_score": confidence,
                "validated_at": used_at.isoformat(),
            },
        )

    @staticmethod
    def _device_info(context: Dict[str, Any], options: ValidationOptions) -> Dict[str, Any]:
        return {
            "ble_session_id": str(context["proximity_session_id"]) if context.get("proximity_session_id") else None,
            "biometric_type": options.biometric_type,
            "device_id": options.device_id,
            "device_info": options.device_info,
        }

    async def _record_rejection(
        self,
        db: AsyncSession,
        context: Dict[str, Any],
        code: str,
        options: ValidationOptions
    ) -> None:
        """Registrar el intento rechazado si el ticket es conocido; nunca interrumpe el veredicto"""
        ticket_id = context.get("ticket_id")
        if ticket_id is None:
            return
        try:
            async with db.begin_nested():
                db.add(TicketValidation(
                    id=uuid.uuid4(),
                    ticket_id=ticket_id,
                    credential_token=context["token"],
                    validated_at=self.clock(),
                    status="rejected",
                    result_code=code,
                    method=context["method"],
                    biometric_confidence=context.get("biometric_confidence"),
                    proximity_session_id=context.get("proximity_session_id"),
                    beacon_id=context.get("beacon_id"),
                    validator_id=options.validator_id,
                    location=options.location,
                    device_info=self._device_info(context, options),
                ))
            await db.commit()
        except Exception as e:
            logger.error(f"Error registrando intento de validación rechazado: {e}")
            if not db.is_active:
                await db.rollback()


def _iso(value) -> Optional[str]:
    return value.isoformat() if value is not None else None
