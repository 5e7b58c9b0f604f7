"""Gestión de llaves de cifrado versionadas.

Las llaves de datos se guardan siempre envueltas (AES-GCM) bajo una llave
maestra que viene de la configuración del proceso. La decisión de qué hacer
cuando falta la llave maestra se toma al iniciar (``resolve_master_key``),
nunca en el primer uso.
"""
import binascii
import hashlib
import logging
import os
import uuid
import warnings
from typing import Dict, NamedTuple, Optional, Union

from sqlalchemy import select, func, update
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from shared.config import Settings
from shared.crypto import aead
from shared.database.models import EncryptionKey
from shared.errors import IntegrityError, KeyUnavailableError, ValidationError
from shared.utils.clock import utcnow

logger = logging.getLogger(__name__)

QR_KEY_TYPE = "qr_encryption"
BIOMETRIC_KEY_TYPE = "biometric_encryption"

MASTER_KEY_POLICIES = ("strict", "ephemeral")


class EphemeralMasterKeyWarning(RuntimeWarning):
    """Se generó una llave maestra temporal: las llaves envueltas no sobreviven un reinicio."""


class KeyHandle(NamedTuple):
    id: uuid.UUID
    version: int
    material: bytes


def resolve_master_key(settings: Settings) -> bytes:
    """
    Resolver la llave maestra al iniciar el proceso.

    MASTER_ENCRYPTION_KEY puede ser hex de 64 caracteres (32 bytes) o una
    frase; las frases se derivan con SHA-256.

    Raises:
        KeyUnavailableError: si falta la llave y MASTER_KEY_POLICY=strict
    """
    policy = settings.MASTER_KEY_POLICY
    if policy not in MASTER_KEY_POLICIES:
        raise ValidationError(f"MASTER_KEY_POLICY inválida: {policy}")

    raw = settings.MASTER_ENCRYPTION_KEY
    if raw:
        try:
            decoded = binascii.unhexlify(raw)
            if len(decoded) == aead.KEY_LENGTH:
                return decoded
        except (binascii.Error, ValueError):
            pass
        return hashlib.sha256(raw.encode("utf-8")).digest()

    if policy == "strict":
        raise KeyUnavailableError("MASTER_ENCRYPTION_KEY no configurada")

    message = (
        "MASTER_ENCRYPTION_KEY no configurada: usando llave maestra temporal. "
        "Las llaves envueltas no podrán descifrarse después de reiniciar el proceso"
    )
    logger.warning(message)
    warnings.warn(message, EphemeralMasterKeyWarning, stacklevel=2)
    return os.urandom(aead.KEY_LENGTH)


class KeyManager:
    """Llaves simétricas versionadas por tipo, envueltas bajo la llave maestra"""

    def __init__(self, master_key: bytes):
        if len(master_key) != aead.KEY_LENGTH:
            raise KeyUnavailableError("Llave maestra con largo inválido")
        self._master_key = master_key
        # Material desenvuelto por id de llave; las filas son inmutables
        self._cache: Dict[uuid.UUID, KeyHandle] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "KeyManager":
        return cls(resolve_master_key(settings))

    @staticmethod
    def _wrap_aad(key_type: str, version: int) -> bytes:
        return f"{key_type}:{version}".encode("utf-8")

    def _unwrap(self, record: EncryptionKey) -> KeyHandle:
        cached = self._cache.get(record.id)
        if cached is not None:
            return cached
        try:
            material = aead.unwrap(
                self._master_key,
                record.wrapped_key,
                self._wrap_aad(record.key_type, record.key_version)
            )
        except IntegrityError:
            logger.error(
                f"No se pudo desenvolver la llave {record.id} ({record.key_type} v{record.key_version}): "
                "la llave maestra no corresponde"
            )
            raise KeyUnavailableError("Llave de cifrado no disponible") from None

        handle = KeyHandle(id=record.id, version=record.key_version, material=material)
        self._cache[record.id] = handle
        return handle

    async def get_active_key(self, db: AsyncSession, key_type: str) -> KeyHandle:
        """Llave activa de mayor versión; se genera si no existe ninguna"""
        record = await self._select_active(db, key_type)
        if record is None:
            return await self._create_key(db, key_type)
        return self._unwrap(record)

    async def get_key_by_id(self, db: AsyncSession, key_id: Union[uuid.UUID, str]) -> KeyHandle:
        """Llave por id, activa o no (para descifrar datos antiguos)"""
        if isinstance(key_id, str):
            key_id = uuid.UUID(key_id)

        cached = self._cache.get(key_id)
        if cached is not None:
            return cached

        stmt = select(EncryptionKey).where(EncryptionKey.id == key_id)
        result = await db.execute(stmt)
        record = result.scalar_one_or_none()
        if record is None:
            logger.error(f"Llave de cifrado {key_id} no encontrada")
            raise KeyUnavailableError("Llave de cifrado no disponible")
        return self._unwrap(record)

    async def rotate(self, db: AsyncSession, key_type: str) -> int:
        """Crear una nueva versión de llave; las anteriores siguen sirviendo para descifrar"""
        handle = await self._create_key(db, key_type)
        logger.info(f"Llave {key_type} rotada a versión {handle.version}")
        return handle.version

    async def deactivate(self, db: AsyncSession, key_id: Union[uuid.UUID, str]) -> bool:
        """Desactivar una llave (nunca se borra)"""
        if isinstance(key_id, str):
            key_id = uuid.UUID(key_id)
        stmt = (
            update(EncryptionKey)
            .where(EncryptionKey.id == key_id, EncryptionKey.is_active.is_(True))
            .values(is_active=False)
        )
        result = await db.execute(stmt)
        await db.commit()
        return result.rowcount == 1

    async def _select_active(self, db: AsyncSession, key_type: str) -> Optional[EncryptionKey]:
        stmt = (
            select(EncryptionKey)
            .where(EncryptionKey.key_type == key_type, EncryptionKey.is_active.is_(True))
            .order_by(EncryptionKey.key_version.desc())
            .limit(1)
        )
        result = await db.execute(stmt)
        return result.scalar_one_or_none()

    async def _create_key(self, db: AsyncSession, key_type: str) -> KeyHandle:
        stmt = select(func.max(EncryptionKey.key_version)).where(EncryptionKey.key_type == key_type)
        result = await db.execute(stmt)
        version = (result.scalar() or 0) + 1

        material = aead.generate_key()
        record = EncryptionKey(
            id=uuid.uuid4(),
            key_type=key_type,
            key_version=version,
            wrapped_key=aead.wrap(self._master_key, material, self._wrap_aad(key_type, version)),
            is_active=True,
            created_at=utcnow(),
        )
        try:
            async with db.begin_nested():
                db.add(record)
        except DBIntegrityError:
            # Otra instancia creó la misma versión primero: usar la suya
            logger.info(f"Llave {key_type} v{version} creada concurrentemente, releyendo")
            existing = await self._select_active(db, key_type)
            if existing is None:
                raise KeyUnavailableError("Llave de cifrado no disponible")
            return self._unwrap(existing)
        await db.commit()

        logger.info(f"Nueva llave de cifrado generada para {key_type}, versión {version}")
        handle = KeyHandle(id=record.id, version=version, material=material)
        self._cache[record.id] = handle
        return handle


key_manager: Optional[KeyManager] = None


def init_key_manager(settings: Settings) -> KeyManager:
    """Inicializar el KeyManager del proceso (se llama en el startup)"""
    global key_manager
    if key_manager is None:
        key_manager = KeyManager.from_settings(settings)
    return key_manager


def get_key_manager() -> KeyManager:
    if key_manager is None:
        raise RuntimeError("KeyManager not initialized. Please check application startup.")
    return key_manager
