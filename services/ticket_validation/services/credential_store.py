"""Persistencia y estado de uso único de credenciales QR"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, delete, func, case
from datetime import datetime, timedelta
from typing import Any, Dict, NamedTuple, Optional, Union
import logging
import uuid

from shared.config import settings
from shared.crypto.credential_codec import (
    CredentialCodec, encode_payload, decode_payload, current_time_slot
)
from shared.database.models import SecureCredential
from shared.errors import NotFoundError, AlreadyUsedError, ExpiredError, IntegrityError
from shared.utils.clock import Clock, utcnow

logger = logging.getLogger(__name__)


class RedemptionResult(NamedTuple):
    ok: bool
    credential: SecureCredential
    payload: Dict[str, Any]


class CredentialStore:
    """Emisión, inspección y canje atómico de credenciales"""

    def __init__(
        self,
        codec: CredentialCodec,
        ttl_hours: Optional[int] = None,
        clock: Clock = utcnow
    ):
        self.codec = codec
        self.ttl = timedelta(hours=ttl_hours if ttl_hours is not None else settings.CREDENTIAL_TTL_HOURS)
        self.clock = clock

    async def issue(
        self,
        db: AsyncSession,
        ticket_id: Union[uuid.UUID, str],
        payload: Dict[str, Any]
    ) -> SecureCredential:
        """Sellar el payload y guardar una credencial nueva (vigencia fija desde la emisión)"""
        if isinstance(ticket_id, str):
            ticket_id = uuid.UUID(ticket_id)

        payload = {**payload, "ticket_id": str(ticket_id)}
        sealed = await self.codec.seal(db, ticket_id, encode_payload(payload))
        now = self.clock()

        credential = SecureCredential(
            id=uuid.uuid4(),
            ticket_id=ticket_id,
            public_token=sealed.token,
            ciphertext=sealed.ciphertext,
            auth_tag=sealed.auth_tag,
            nonce=sealed.nonce,
            key_id=sealed.key_id,
            issued_at=now,
            expires_at=now + self.ttl,
            is_used=False,
        )
        db.add(credential)
        await db.commit()

        logger.info(f"Credencial emitida para ticket {ticket_id}, expira {credential.expires_at.isoformat()}")
        return credential

    async def issue_rotating(
        self,
        db: AsyncSession,
        ticket_id: Union[uuid.UUID, str],
        payload: Dict[str, Any],
        rotation_interval: Optional[int] = None
    ) -> SecureCredential:
        """Emitir una credencial con la ventana de rotación embebida en el payload"""
        rotation_interval = rotation_interval or settings.CREDENTIAL_ROTATION_INTERVAL_SECONDS
        now = self.clock()
        dynamic_payload = {
            **payload,
            "time_slot": current_time_slot(now, rotation_interval),
            "rotation_interval": rotation_interval,
            "generated_at": now.isoformat(),
        }
        return await self.issue(db, ticket_id, dynamic_payload)

    async def get_by_token(self, db: AsyncSession, token: str) -> Optional[SecureCredential]:
        stmt = (
            select(SecureCredential)
            .where(SecureCredential.public_token == token)
            .execution_options(populate_existing=True)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    def check_eligibility(self, credential: SecureCredential, now: datetime) -> None:
        """
        Checks baratos antes de cualquier operación criptográfica.

        Raises:
            ExpiredError: vencida (sin importar si fue usada)
            AlreadyUsedError: ya canjeada
        """
        if credential.expires_at <= now:
            raise ExpiredError("Credencial expirada", expired_at=credential.expires_at)
        if credential.is_used:
            raise AlreadyUsedError("Credencial ya utilizada", used_at=credential.used_at)

    async def inspect(self, db: AsyncSession, token: str):
        """
        Buscar, verificar estado y descifrar sin modificar nada.

        Returns:
            (credential, payload)

        Raises:
            NotFoundError, ExpiredError, AlreadyUsedError, IntegrityError
        """
        credential = await self.get_by_token(db, token)
        if credential is None:
            raise NotFoundError("Credencial no encontrada")

        self.check_eligibility(credential, self.clock())

        plaintext = await self.codec.open(
            db,
            ciphertext=credential.ciphertext,
            nonce=credential.nonce,
            auth_tag=credential.auth_tag,
            key_id=credential.key_id,
            associated_data=credential.ticket_id,
        )
        try:
            payload = decode_payload(plaintext)
        except ValueError:
            # Autenticado pero ilegible: se trata como corrupción
            raise IntegrityError("Payload de credencial corrupto") from None

        if str(payload.get("ticket_id")) != str(credential.ticket_id):
            logger.warning(f"[SECURITY] Payload de credencial {credential.id} no corresponde a su ticket")
            raise IntegrityError("Credencial no corresponde al ticket")

        return credential, payload

    async def mark_redeemed(
        self,
        db: AsyncSession,
        credential_id: uuid.UUID,
        validator_id: Optional[str] = None,
        location: Optional[str] = None
    ) -> datetime:
        """
        Único UPDATE condicional que consume la credencial. No hace commit.

        Raises:
            AlreadyUsedError: otro canje ganó la carrera
            ExpiredError: venció entre la inspección y el canje
        """
        now = self.clock()
        stmt = (
            update(SecureCredential)
            .where(
                SecureCredential.id == credential_id,
                SecureCredential.is_used.is_(False),
                SecureCredential.expires_at > now,
            )
            .values(is_used=True, used_at=now, used_by=validator_id, used_location=location)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount == 1:
            return now

        # Perdimos: releer para devolver el motivo correcto
        stmt_current = select(SecureCredential.is_used, SecureCredential.used_at, SecureCredential.expires_at).where(
            SecureCredential.id == credential_id
        )
        current = (await db.execute(stmt_current)).one_or_none()
        if current is None:
            raise NotFoundError("Credencial no encontrada")
        if current.expires_at <= now:
            raise ExpiredError("Credencial expirada", expired_at=current.expires_at)
        raise AlreadyUsedError("Credencial ya utilizada", used_at=current.used_at)

    async def redeem_once(
        self,
        db: AsyncSession,
        token: str,
        validator_id: Optional[str] = None,
        location: Optional[str] = None
    ) -> RedemptionResult:
        """
        Canjear una credencial exactamente una vez.

        Raises:
            NotFoundError, AlreadyUsedError, ExpiredError, IntegrityError
        """
        credential, payload = await self.inspect(db, token)
        async with db.begin_nested():
            used_at = await self.mark_redeemed(db, credential.id, validator_id, location)
        await db.commit()

        await db.refresh(credential)
        logger.info(f"Credencial {credential.id} canjeada a las {used_at.isoformat()}")
        return RedemptionResult(ok=True, credential=credential, payload=payload)

    async def sweep_expired(self, db: AsyncSession) -> int:
        """Borrar credenciales vencidas y sin usar (las usadas se conservan para auditoría)"""
        stmt = (
            delete(SecureCredential)
            .where(SecureCredential.expires_at < self.clock(), SecureCredential.is_used.is_(False))
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        logger.info(f"Cleaned up {result.rowcount} expired credentials")
        return result.rowcount

    async def get_statistics(self, db: AsyncSession) -> Dict[str, int]:
        """Totales de credenciales: usadas, activas y vencidas"""
        now = self.clock()
        stmt = select(
            func.count(SecureCredential.id),
            func.sum(case((SecureCredential.is_used.is_(True), 1), else_=0)),
            func.sum(case(
                ((SecureCredential.is_used.is_(False)) & (SecureCredential.expires_at > now), 1), else_=0
            )),
            func.sum(case(
                ((SecureCredential.is_used.is_(False)) & (SecureCredential.expires_at <= now), 1), else_=0
            )),
        )
        total, used, active, expired = (await db.execute(stmt)).one()
        return {
            "total": total or 0,
            "used": used or 0,
            "active": active or 0,
            "expired": expired or 0,
        }
