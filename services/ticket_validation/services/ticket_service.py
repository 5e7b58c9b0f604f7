"""Servicio de ciclo de vida de tickets: emisión de credenciales, cancelación y transferencia"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update
from typing import Any, Dict, List, Optional, Tuple, Union
import logging
import uuid

from shared.config import settings
from shared.cache.redis_client import cache_get, cache_set, cache_delete
from shared.database.models import Festival, SecureCredential, Ticket, TicketValidation, User
from shared.errors import BusinessLogicError, NotFoundError, ValidationError
from shared.utils.clock import Clock, utcnow
from services.ticket_validation.services.credential_store import CredentialStore

logger = logging.getLogger(__name__)


def _as_uuid(value: Union[uuid.UUID, str]) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError("ID de ticket inválido") from None


def requirements_cache_key(ticket_id: Union[uuid.UUID, str]) -> str:
    return f"ticket:requirements:{ticket_id}"


class TicketService:
    """Operaciones sobre tickets que afectan a sus credenciales"""

    def __init__(self, store: CredentialStore, clock: Clock = utcnow):
        self.store = store
        self.clock = clock

    async def get_ticket(self, db: AsyncSession, ticket_id: Union[uuid.UUID, str]) -> Ticket:
        ticket = await db.get(Ticket, _as_uuid(ticket_id))
        if not ticket:
            raise NotFoundError("Ticket no encontrado")
        return ticket

    async def issue_credential(
        self,
        db: AsyncSession,
        ticket: Ticket,
        rotating: bool = False
    ) -> SecureCredential:
        """
        Emitir una credencial para un ticket activo.

        Se usa al confirmar la compra y al re-emitir (transferencia, QR dinámico).
        """
        if ticket.status != "active":
            raise BusinessLogicError(f"No se puede emitir credencial para un ticket {ticket.status}")

        payload = {
            "user_id": str(ticket.user_id),
            "festival_id": str(ticket.festival_id),
            "template_id": str(ticket.template_id) if ticket.template_id else None,
            "holder_name": ticket.holder_name,
            "valid_from": ticket.valid_from.isoformat(),
            "valid_to": ticket.valid_to.isoformat(),
        }
        if rotating:
            return await self.store.issue_rotating(db, ticket.id, payload)
        return await self.store.issue(db, ticket.id, payload)

    async def cancel_ticket(
        self,
        db: AsyncSession,
        ticket_id: Union[uuid.UUID, str],
        reason: Optional[str] = None
    ) -> Ticket:
        """Cancelar un ticket activo; sus credenciales quedan sin efecto por el estado del ticket"""
        ticket_id = _as_uuid(ticket_id)
        stmt = (
            update(Ticket)
            .where(Ticket.id == ticket_id, Ticket.status == "active")
            .values(status="cancelled", updated_at=self.clock())
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount != 1:
            ticket = await db.get(Ticket, ticket_id, populate_existing=True)
            if not ticket:
                raise NotFoundError("Ticket no encontrado")
            raise BusinessLogicError(f"No se puede cancelar un ticket {ticket.status}")

        await db.commit()
        await cache_delete(requirements_cache_key(ticket_id))
        logger.info(f"Ticket {ticket_id} cancelado" + (f": {reason}" if reason else ""))
        return await db.get(Ticket, ticket_id, populate_existing=True)

    async def transfer_ticket(
        self,
        db: AsyncSession,
        ticket_id: Union[uuid.UUID, str],
        new_user_id: Union[uuid.UUID, str],
        holder_name: str
    ) -> Tuple[Ticket, SecureCredential]:
        """
        Transferir un ticket activo a otro usuario.

        Las credenciales sin usar del titular anterior vencen de inmediato y
        se emite una nueva para el nuevo titular.
        """
        ticket = await self.get_ticket(db, ticket_id)
        if ticket.status != "active":
            raise BusinessLogicError(f"No se puede transferir un ticket {ticket.status}")
        if not holder_name:
            raise ValidationError("holder_name es requerido")

        new_user = await db.get(User, _as_uuid(new_user_id))
        if not new_user:
            raise NotFoundError("Usuario destino no encontrado")
        if new_user.id == ticket.user_id:
            raise BusinessLogicError("El ticket ya pertenece a ese usuario")

        # Crear la llave activa hace commit: resolverla antes de modificar el ticket
        codec = self.store.codec
        await codec.key_manager.get_active_key(db, codec.key_type)

        now = self.clock()
        await db.execute(
            update(SecureCredential)
            .where(SecureCredential.ticket_id == ticket.id, SecureCredential.is_used.is_(False))
            .values(expires_at=now)
            .execution_options(synchronize_session=False)
        )
        previous_user_id = ticket.user_id
        ticket.user_id = new_user.id
        ticket.holder_name = holder_name
        ticket.updated_at = now

        credential = await self.issue_credential(db, ticket)
        await cache_delete(requirements_cache_key(ticket.id))
        logger.info(f"Ticket {ticket.id} transferido de {previous_user_id} a {new_user.id}")
        return ticket, credential

    async def get_validation_requirements(
        self,
        db: AsyncSession,
        ticket_id: Union[uuid.UUID, str]
    ) -> Dict[str, Any]:
        """Qué factores exige la validación de este ticket (cacheado en Redis)"""
        ticket_id = _as_uuid(ticket_id)
        cache_key = requirements_cache_key(ticket_id)
        cached = await cache_get(cache_key)
        if cached:
            return cached

        stmt = (
            select(Ticket, Festival)
            .join(Festival, Festival.id == Ticket.festival_id)
            .where(Ticket.id == ticket_id)
        )
        row = (await db.execute(stmt)).one_or_none()
        if row is None:
            raise NotFoundError("Ticket no encontrado")
        ticket, festival = row

        requirements = {
            "ticket_id": str(ticket.id),
            "status": ticket.status,
            "ble_required": bool(ticket.ble_validation_required and festival.ble_enabled),
            "biometric_required": bool(ticket.biometric_required and festival.biometric_enabled),
            "valid_from": ticket.valid_from.isoformat(),
            "valid_to": ticket.valid_to.isoformat(),
            "festival": {
                "id": str(festival.id),
                "name": festival.name,
                "ble_enabled": festival.ble_enabled,
                "biometric_enabled": festival.biometric_enabled,
            },
        }
        await cache_set(cache_key, requirements, expire=settings.REQUIREMENTS_CACHE_SECONDS)
        return requirements

    async def get_validation_history(
        self,
        db: AsyncSession,
        ticket_id: Union[uuid.UUID, str],
        limit: int = 50
    ) -> List[Dict[str, Any]]:
        """Intentos de validación del ticket, del más reciente al más antiguo"""
        ticket_id = _as_uuid(ticket_id)
        stmt = (
            select(TicketValidation)
            .where(TicketValidation.ticket_id == ticket_id)
            .order_by(TicketValidation.validated_at.desc())
            .limit(limit)
        )
        records = (await db.execute(stmt)).scalars().all()
        return [
            {
                "id": str(r.id),
                "status": r.status,
                "result_code": r.result_code,
                "method": r.method,
                "validated_at": r.validated_at.isoformat(),
                "validator_id": r.validator_id,
                "location": r.location,
                "biometric_confidence": r.biometric_confidence,
                "beacon_id": str(r.beacon_id) if r.beacon_id else None,
            }
            for r in records
        ]
