"""Codec de credenciales QR con cifrado autenticado.

El token público es solo una llave de búsqueda: no contiene nada
descifrable. El payload cifrado, el nonce y el tag quedan en el servidor.
El id del ticket va como dato asociado, así un ciphertext no sirve para otro
ticket aunque se intercambien filas.
"""
import json
import logging
import secrets
import time
import uuid
from datetime import datetime
from typing import Any, Dict, NamedTuple, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession

from shared.crypto import aead
from shared.crypto.key_manager import KeyManager, QR_KEY_TYPE
from shared.errors import IntegrityError, ValidationError

logger = logging.getLogger(__name__)

MAX_PAYLOAD_BYTES = 4096

_BASE36 = "0123456789ABCDEFGHIJKLMNOPQRSTUVWXYZ"


class SealedCredential(NamedTuple):
    token: str
    ciphertext: bytes
    nonce: bytes
    auth_tag: bytes
    key_id: uuid.UUID


def to_base36(value: int) -> str:
    if value < 0:
        raise ValueError("value must be non-negative")
    digits = []
    while True:
        value, rem = divmod(value, 36)
        digits.append(_BASE36[rem])
        if value == 0:
            break
    return "".join(reversed(digits))


def generate_token(ticket_id: Union[uuid.UUID, str], now_ms: Optional[int] = None) -> str:
    """
    Token corto para el QR: {prefijo ticket}-{aleatorio}-{tiempo base36}

    Ejemplo: 3F2A9C1B-7E41D0AA-LZ8K2M1Q
    """
    ticket_prefix = str(ticket_id).replace("-", "")[:8].upper()
    random_part = secrets.token_hex(4).upper()
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    return f"{ticket_prefix}-{random_part}-{to_base36(now_ms)}"


def encode_payload(data: Dict[str, Any]) -> bytes:
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str).encode("utf-8")


def decode_payload(plaintext: bytes) -> Dict[str, Any]:
    """Parsear un payload ya autenticado (nunca llamar antes de verificar el tag)"""
    return json.loads(plaintext.decode("utf-8"))


def current_time_slot(now: datetime, rotation_interval: int) -> int:
    """Ventana de rotación actual (epoch / intervalo)"""
    epoch = int((now - datetime(1970, 1, 1)).total_seconds())
    return epoch // rotation_interval


def is_stale_slot(time_slot: int, now: datetime, rotation_interval: int, tolerance: int = 1) -> bool:
    """Un QR rotativo es viejo si su ventana quedó más de `tolerance` ventanas atrás"""
    return current_time_slot(now, rotation_interval) - time_slot > tolerance


class CredentialCodec:
    """Sella/abre payloads de credenciales con la llave QR activa"""

    def __init__(self, key_manager: KeyManager, key_type: str = QR_KEY_TYPE):
        self.key_manager = key_manager
        self.key_type = key_type

    @staticmethod
    def _associated_data(ticket_id: Union[uuid.UUID, str]) -> bytes:
        return str(ticket_id).encode("utf-8")

    async def seal(
        self,
        db: AsyncSession,
        ticket_id: Union[uuid.UUID, str],
        payload: bytes
    ) -> SealedCredential:
        """
        Cifrar el payload ligado al ticket.

        Raises:
            ValidationError: si el payload supera MAX_PAYLOAD_BYTES
        """
        if len(payload) > MAX_PAYLOAD_BYTES:
            raise ValidationError(f"Payload demasiado grande (máximo {MAX_PAYLOAD_BYTES} bytes)")

        key = await self.key_manager.get_active_key(db, self.key_type)
        box = aead.encrypt(key.material, payload, self._associated_data(ticket_id))

        return SealedCredential(
            token=generate_token(ticket_id),
            ciphertext=box.ciphertext,
            nonce=box.nonce,
            auth_tag=box.tag,
            key_id=key.id,
        )

    async def open(
        self,
        db: AsyncSession,
        ciphertext: bytes,
        nonce: bytes,
        auth_tag: bytes,
        key_id: Union[uuid.UUID, str],
        associated_data: Union[uuid.UUID, str]
    ) -> bytes:
        """
        Descifrar con la llave registrada junto al ciphertext (no la activa).

        Raises:
            IntegrityError: tag inválido o datos manipulados
            KeyUnavailableError: la llave registrada no se puede obtener
        """
        key = await self.key_manager.get_key_by_id(db, key_id)
        try:
            return aead.decrypt(
                key.material, nonce, ciphertext, auth_tag, self._associated_data(associated_data)
            )
        except IntegrityError:
            logger.warning(f"[SECURITY] Verificación de integridad fallida para ticket {associated_data}")
            raise
