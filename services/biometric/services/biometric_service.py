"""Servicio de enrolamiento y verificación biométrica"""
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy import select, update, func
from sqlalchemy.exc import IntegrityError as DBIntegrityError
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union
import hashlib
import hmac
import logging
import uuid

from shared.config import settings
from shared.crypto import aead
from shared.crypto.key_manager import KeyManager, BIOMETRIC_KEY_TYPE
from shared.database.models import BiometricTemplate, BiometricVerificationAttempt, User
from shared.errors import (
    BusinessLogicError, IntegrityError, NotFoundError, ValidationError
)
from shared.utils.clock import Clock, utcnow
from services.biometric.services.matcher import Matcher, SequenceSimilarityMatcher

logger = logging.getLogger(__name__)

SUPPORTED_TYPES = ("face", "fingerprint", "voice", "iris")

TYPE_DESCRIPTIONS = {
    "face": ("Reconocimiento facial", "Autenticación biométrica basada en el rostro"),
    "fingerprint": ("Huella dactilar", "Autenticación biométrica basada en la huella dactilar"),
    "voice": ("Reconocimiento de voz", "Autenticación biométrica basada en la voz"),
    "iris": ("Reconocimiento de iris", "Autenticación biométrica basada en el iris"),
}


@dataclass
class EnrollmentResult:
    success: bool
    biometric_id: uuid.UUID
    biometric_type: str
    quality_score: float
    enrolled_at: datetime
    message: str = "Biometría enrolada exitosamente"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "biometric_id": str(self.biometric_id),
            "biometric_type": self.biometric_type,
            "quality_score": self.quality_score,
            "enrolled_at": self.enrolled_at.isoformat(),
            "message": self.message,
        }


@dataclass
class BiometricVerification:
    verified: bool
    confidence_score: float
    biometric_type: str
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def message(self) -> str:
        return "Verificación biométrica exitosa" if self.verified else "Verificación biométrica fallida"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "verified": self.verified,
            "confidence_score": self.confidence_score,
            "biometric_type": self.biometric_type,
            "message": self.message,
            "timestamp": self.timestamp.isoformat(),
        }


def _as_bytes(template: Union[str, bytes]) -> bytes:
    return template.encode("utf-8") if isinstance(template, str) else template


def _as_uuid(value: Union[uuid.UUID, str]) -> uuid.UUID:
    if isinstance(value, uuid.UUID):
        return value
    try:
        return uuid.UUID(value)
    except ValueError:
        raise ValidationError("ID de usuario inválido") from None


def supported_types() -> List[Dict[str, str]]:
    return [
        {"type": t, "name": TYPE_DESCRIPTIONS[t][0], "description": TYPE_DESCRIPTIONS[t][1]}
        for t in SUPPORTED_TYPES
    ]


def consent_info() -> Dict[str, Any]:
    """Texto de consentimiento vigente; la versión es la que se registra al enrolar"""
    return {
        "version": settings.BIOMETRIC_CONSENT_VERSION,
        "title": "Consentimiento de recolección de datos biométricos",
        "description": (
            "Al enrolar tus datos biométricos consientes su recolección, almacenamiento "
            "y uso para verificar tu identidad."
        ),
        "data_types": [TYPE_DESCRIPTIONS[t][0] for t in SUPPORTED_TYPES],
        "purposes": [
            "Verificación de identidad en los accesos del festival",
            "Prevención de fraude y reventa",
        ],
        "retention_period": "Durante el festival y hasta 30 días después",
        "rights": [
            "Retirar el consentimiento en cualquier momento",
            "Eliminar tus datos biométricos",
            "Acceder a tus datos",
        ],
    }


def template_digest(key_material: bytes, template: bytes) -> str:
    """HMAC-SHA256 de la plantilla bajo la llave que la cifra"""
    return hmac.new(key_material, template, hashlib.sha256).hexdigest()


class BiometricVerifier:
    """Enrolamiento y verificación de plantillas biométricas cifradas"""

    def __init__(
        self,
        key_manager: KeyManager,
        matcher: Optional[Matcher] = None,
        min_quality: Optional[float] = None,
        threshold: Optional[float] = None,
        max_enrollment_attempts: Optional[int] = None,
        clock: Clock = utcnow
    ):
        self.key_manager = key_manager
        self.matcher = matcher or SequenceSimilarityMatcher()
        self.min_quality = min_quality if min_quality is not None else settings.BIOMETRIC_MIN_QUALITY
        self.threshold = threshold if threshold is not None else settings.BIOMETRIC_THRESHOLD
        self.max_enrollment_attempts = max_enrollment_attempts or settings.BIOMETRIC_MAX_ENROLLMENT_ATTEMPTS
        self.clock = clock

    @staticmethod
    def _associated_data(user_id: uuid.UUID, biometric_type: str) -> bytes:
        return f"biometric:{user_id}:{biometric_type}".encode("utf-8")

    async def enroll(
        self,
        db: AsyncSession,
        user_id: Union[uuid.UUID, str],
        biometric_type: str,
        template: Union[str, bytes],
        quality_score: float,
        metadata: Optional[Dict[str, Any]] = None
    ) -> EnrollmentResult:
        """
        Enrolar una plantilla biométrica

        Raises:
            ValidationError: tipo no soportado, calidad bajo el mínimo o plantilla vacía
            NotFoundError: usuario inexistente
            BusinessLogicError: usuario sin verificar, plantilla activa existente o demasiados intentos
        """
        if biometric_type not in SUPPORTED_TYPES:
            raise ValidationError(f"Tipo biométrico no soportado: {biometric_type}")
        if quality_score is None or not 0.0 <= quality_score <= 1.0:
            raise ValidationError("quality_score debe estar entre 0 y 1")
        if quality_score < self.min_quality:
            raise ValidationError(f"Calidad biométrica muy baja. Mínimo requerido: {self.min_quality}")
        template_bytes = _as_bytes(template)
        if not template_bytes:
            raise ValidationError("La plantilla biométrica está vacía")

        user_id = _as_uuid(user_id)
        user = await db.get(User, user_id)
        if not user:
            raise NotFoundError("Usuario no encontrado")
        if not user.is_verified:
            raise BusinessLogicError("El usuario debe estar verificado antes del enrolamiento biométrico")

        stmt_active = select(BiometricTemplate.id).where(
            BiometricTemplate.user_id == user_id,
            BiometricTemplate.biometric_type == biometric_type,
            BiometricTemplate.is_active.is_(True),
        )
        if (await db.execute(stmt_active)).first():
            raise BusinessLogicError(f"El usuario ya tiene biometría {biometric_type} enrolada")

        stmt_attempts = select(func.count(BiometricTemplate.id)).where(
            BiometricTemplate.user_id == user_id,
            BiometricTemplate.biometric_type == biometric_type,
        )
        attempts = (await db.execute(stmt_attempts)).scalar() or 0
        if attempts >= self.max_enrollment_attempts:
            raise BusinessLogicError("Máximo de intentos de enrolamiento alcanzado para este tipo")

        key = await self.key_manager.get_active_key(db, BIOMETRIC_KEY_TYPE)
        box = aead.encrypt(key.material, template_bytes, self._associated_data(user_id, biometric_type))

        now = self.clock()
        record = BiometricTemplate(
            id=uuid.uuid4(),
            user_id=user_id,
            biometric_type=biometric_type,
            encrypted_template=box.ciphertext,
            nonce=box.nonce,
            auth_tag=box.tag,
            key_id=key.id,
            template_hash=template_digest(key.material, template_bytes),
            quality_score=quality_score,
            is_active=True,
            enrolled_at=now,
            extra_metadata=metadata or {},
        )
        try:
            async with db.begin_nested():
                db.add(record)
        except DBIntegrityError:
            # Otro enrolamiento concurrente del mismo tipo ganó
            raise BusinessLogicError(f"El usuario ya tiene biometría {biometric_type} enrolada") from None

        user.biometric_enrolled = True
        user.biometric_consent_at = now
        user.biometric_consent_version = settings.BIOMETRIC_CONSENT_VERSION
        await db.commit()

        logger.info(f"Biometría {biometric_type} enrolada para usuario {user_id}")
        return EnrollmentResult(
            success=True,
            biometric_id=record.id,
            biometric_type=biometric_type,
            quality_score=quality_score,
            enrolled_at=now,
        )

    async def verify(
        self,
        db: AsyncSession,
        user_id: Union[uuid.UUID, str],
        biometric_type: str,
        template: Union[str, bytes],
        session_id: Optional[str] = None,
        request_info: Optional[Dict[str, Any]] = None
    ) -> BiometricVerification:
        """
        Verificar una muestra contra la plantilla activa.

        Cada intento queda en el log de intentos, incluso si falla con error.

        Raises:
            NotFoundError: no hay plantilla activa de ese tipo
            IntegrityError: la plantilla guardada no pasa la verificación
            KeyUnavailableError: la llave de la plantilla no está disponible
        """
        request_info = request_info or {}
        user_id = _as_uuid(user_id)

        try:
            stmt = select(BiometricTemplate).where(
                BiometricTemplate.user_id == user_id,
                BiometricTemplate.biometric_type == biometric_type,
                BiometricTemplate.is_active.is_(True),
            )
            record = (await db.execute(stmt)).scalar_one_or_none()
            if not record:
                raise NotFoundError(f"No hay datos biométricos {biometric_type} para el usuario")

            reference = await self._decrypt_template(db, record)
            confidence = await self.matcher.match(_as_bytes(template), reference)
            if not 0.0 <= confidence <= 1.0:
                raise ValueError(f"Matcher devolvió confianza fuera de rango: {confidence}")

            verified = confidence >= self.threshold
            if verified:
                record.last_used_at = self.clock()
            await self._log_attempt(
                db, user_id, session_id, biometric_type,
                "success" if verified else "failure", confidence, request_info
            )
        except Exception as e:
            logger.error(f"Error verificando biometría de usuario {user_id}: {e}")
            await self._log_attempt(db, user_id, session_id, biometric_type, "error", 0.0, request_info)
            raise

        return BiometricVerification(verified=verified, confidence_score=confidence, biometric_type=biometric_type)

    async def _decrypt_template(self, db: AsyncSession, record: BiometricTemplate) -> bytes:
        key = await self.key_manager.get_key_by_id(db, record.key_id)
        reference = aead.decrypt(
            key.material,
            record.nonce,
            record.encrypted_template,
            record.auth_tag,
            self._associated_data(record.user_id, record.biometric_type),
        )
        if not hmac.compare_digest(template_digest(key.material, reference), record.template_hash):
            logger.warning(f"[SECURITY] Hash de plantilla biométrica {record.id} no coincide")
            raise IntegrityError("Plantilla biométrica corrupta")
        return reference

    async def _log_attempt(
        self,
        db: AsyncSession,
        user_id: uuid.UUID,
        session_id: Optional[str],
        biometric_type: str,
        result: str,
        confidence_score: float,
        request_info: Dict[str, Any]
    ) -> None:
        """Registrar el intento; un fallo aquí nunca reemplaza el error principal"""
        try:
            async with db.begin_nested():
                db.add(BiometricVerificationAttempt(
                    id=uuid.uuid4(),
                    user_id=user_id,
                    session_id=str(session_id) if session_id else None,
                    biometric_type=biometric_type,
                    result=result,
                    confidence_score=confidence_score,
                    ip_address=request_info.get("ip_address"),
                    user_agent=request_info.get("user_agent"),
                    attempted_at=self.clock(),
                ))
            await db.commit()
        except Exception as e:
            logger.error(f"Error registrando intento de verificación biométrica: {e}")
            if not db.is_active:
                await db.rollback()

    async def get_status(self, db: AsyncSession, user_id: Union[uuid.UUID, str]) -> Dict[str, Any]:
        """Estado de enrolamiento del usuario"""
        user_id = _as_uuid(user_id)
        user = await db.get(User, user_id)
        if not user:
            raise NotFoundError("Usuario no encontrado")

        stmt = select(BiometricTemplate).where(
            BiometricTemplate.user_id == user_id,
            BiometricTemplate.is_active.is_(True),
        )
        templates = (await db.execute(stmt)).scalars().all()
        return {
            "enrolled": bool(user.biometric_enrolled),
            "consent_at": user.biometric_consent_at.isoformat() if user.biometric_consent_at else None,
            "consent_version": user.biometric_consent_version,
            "enrolled_types": [
                {
                    "type": t.biometric_type,
                    "quality_score": t.quality_score,
                    "enrolled_at": t.enrolled_at.isoformat(),
                    "last_used_at": t.last_used_at.isoformat() if t.last_used_at else None,
                }
                for t in templates
            ],
        }

    async def deactivate(self, db: AsyncSession, user_id: Union[uuid.UUID, str], biometric_type: str) -> bool:
        """Desactivar la plantilla activa de un tipo (las plantillas no se borran)"""
        user_id = _as_uuid(user_id)
        stmt = (
            update(BiometricTemplate)
            .where(
                BiometricTemplate.user_id == user_id,
                BiometricTemplate.biometric_type == biometric_type,
                BiometricTemplate.is_active.is_(True),
            )
            .values(is_active=False)
            .execution_options(synchronize_session=False)
        )
        result = await db.execute(stmt)
        if result.rowcount == 0:
            raise NotFoundError("Datos biométricos no encontrados")

        stmt_remaining = select(func.count(BiometricTemplate.id)).where(
            BiometricTemplate.user_id == user_id,
            BiometricTemplate.is_active.is_(True),
        )
        remaining = (await db.execute(stmt_remaining)).scalar() or 0
        if remaining == 0:
            user = await db.get(User, user_id)
            if user:
                user.biometric_enrolled = False
        await db.commit()
        return True

    async def get_verification_statistics(
        self,
        db: AsyncSession,
        user_id: Union[uuid.UUID, str, None] = None,
        biometric_type: Optional[str] = None
    ) -> Dict[str, Any]:
        """Intentos por tipo y resultado, con tasa de éxito"""
        stmt = select(
            BiometricVerificationAttempt.biometric_type,
            BiometricVerificationAttempt.result,
            func.count(BiometricVerificationAttempt.id),
            func.avg(BiometricVerificationAttempt.confidence_score),
        )
        if user_id:
            stmt = stmt.where(BiometricVerificationAttempt.user_id == _as_uuid(user_id))
        if biometric_type:
            stmt = stmt.where(BiometricVerificationAttempt.biometric_type == biometric_type)
        stmt = stmt.group_by(BiometricVerificationAttempt.biometric_type, BiometricVerificationAttempt.result)

        rows = (await db.execute(stmt)).all()
        statistics: List[Dict[str, Any]] = [
            {
                "biometric_type": row[0],
                "result": row[1],
                "count": row[2],
                "avg_confidence": float(row[3] or 0),
            }
            for row in rows
        ]
        total = sum(s["count"] for s in statistics)
        successes = sum(s["count"] for s in statistics if s["result"] == "success")
        return {
            "statistics": statistics,
            "total_attempts": total,
            "success_rate": round(successes / total, 4) if total else 0.0,
        }
