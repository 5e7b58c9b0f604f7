"""Tests de enrolamiento y verificación biométrica."""
import asyncio
import hashlib

import pytest
from sqlalchemy import func, select, update

from shared.database.models import BiometricTemplate, BiometricVerificationAttempt, User
from shared.errors import BusinessLogicError, IntegrityError, NotFoundError, ValidationError
from shared.crypto.key_manager import BIOMETRIC_KEY_TYPE, KeyManager
from services.biometric.services.biometric_service import (
    BiometricVerifier, consent_info, supported_types, template_digest
)
from services.biometric.services.matcher import Matcher, SequenceSimilarityMatcher

from factories import MASTER_KEY, make_user


class FixedMatcher(Matcher):
    """Matcher que devuelve siempre la misma confianza"""

    def __init__(self, confidence):
        self.confidence = confidence

    async def match(self, sample, reference):
        return self.confidence


class GatedKeyManager(KeyManager):
    """Retiene a cada enrolamiento hasta que todos pasaron el chequeo de duplicados, luego los deja insertar de a uno"""

    def __init__(self, master_key, parties):
        super().__init__(master_key)
        self.parties = parties
        self.arrived = 0
        self.all_arrived = asyncio.Event()
        self.turn = asyncio.Lock()

    async def get_active_key(self, db, key_type):
        self.arrived += 1
        if self.arrived >= self.parties:
            self.all_arrived.set()
        await self.all_arrived.wait()
        await self.turn.acquire()
        return await super().get_active_key(db, key_type)

    def end_turn(self):
        if self.turn.locked():
            self.turn.release()


@pytest.fixture
async def user(db):
    return await make_user(db)


async def attempts(db, user_id):
    stmt = select(BiometricVerificationAttempt.result).where(BiometricVerificationAttempt.user_id == user_id)
    return [r for r in (await db.execute(stmt)).scalars().all()]


class TestEnroll:

    async def test_enroll_encrypts_template_and_records_consent(self, db, biometric, user, clock):
        result = await biometric.enroll(db, user.id, "face", "plantilla-facial-ana", 0.92)

        assert result.success is True
        record = (await db.execute(
            select(BiometricTemplate).where(BiometricTemplate.id == result.biometric_id)
        )).scalar_one()
        assert b"plantilla-facial-ana" not in record.encrypted_template
        assert record.key_id is not None

        refreshed = await db.get(User, user.id, populate_existing=True)
        assert refreshed.biometric_enrolled is True
        assert refreshed.biometric_consent_at == clock()
        assert refreshed.biometric_consent_version == "1.0"

    async def test_low_quality_is_rejected(self, db, biometric, user):
        with pytest.raises(ValidationError):
            await biometric.enroll(db, user.id, "face", "plantilla", 0.65)

    async def test_minimum_quality_is_accepted(self, db, biometric, user):
        result = await biometric.enroll(db, user.id, "face", "plantilla", 0.7)
        assert result.success is True

    async def test_unsupported_type(self, db, biometric, user):
        with pytest.raises(ValidationError):
            await biometric.enroll(db, user.id, "gait", "plantilla", 0.9)

    async def test_duplicate_enrollment(self, db, biometric, user):
        await biometric.enroll(db, user.id, "fingerprint", "huella", 0.9)
        with pytest.raises(BusinessLogicError):
            await biometric.enroll(db, user.id, "fingerprint", "huella", 0.9)

    async def test_unverified_user(self, db, biometric):
        user = await make_user(db, is_verified=False)
        with pytest.raises(BusinessLogicError):
            await biometric.enroll(db, user.id, "face", "plantilla", 0.9)

    async def test_enrollment_attempts_are_capped(self, db, biometric, user):
        for _ in range(3):
            await biometric.enroll(db, user.id, "voice", "voz", 0.9)
            await biometric.deactivate(db, user.id, "voice")
        with pytest.raises(BusinessLogicError):
            await biometric.enroll(db, user.id, "voice", "voz", 0.9)

    async def test_concurrent_enrollments_keep_one_active_template(self, db, session_maker, user, clock):
        await KeyManager(MASTER_KEY).get_active_key(db, BIOMETRIC_KEY_TYPE)
        keys = GatedKeyManager(MASTER_KEY, parties=2)
        verifier = BiometricVerifier(keys, min_quality=0.7, threshold=0.8, clock=clock)

        async def enroll(template):
            async with session_maker() as session:
                try:
                    return await verifier.enroll(session, user.id, "face", template, 0.9)
                finally:
                    keys.end_turn()

        results = await asyncio.gather(
            enroll("plantilla-a"), enroll("plantilla-b"), return_exceptions=True
        )

        winners = [r for r in results if not isinstance(r, Exception)]
        losers = [r for r in results if isinstance(r, Exception)]
        assert len(winners) == 1
        assert len(losers) == 1
        assert isinstance(losers[0], BusinessLogicError)

        stmt = select(func.count(BiometricTemplate.id)).where(
            BiometricTemplate.user_id == user.id, BiometricTemplate.is_active.is_(True)
        )
        assert (await db.execute(stmt)).scalar() == 1

        template = "plantilla-a" if results[0] is winners[0] else "plantilla-b"
        verification = await verifier.verify(db, user.id, "face", template)
        assert verification.verified is True

    async def test_template_digest_is_keyed(self, db, biometric, key_manager, user):
        result = await biometric.enroll(db, user.id, "face", "plantilla-facial-ana", 0.9)
        record = await db.get(BiometricTemplate, result.biometric_id)
        key = await key_manager.get_key_by_id(db, record.key_id)

        assert record.template_hash == template_digest(key.material, b"plantilla-facial-ana")
        assert record.template_hash != hashlib.sha256(b"plantilla-facial-ana").hexdigest()


class TestVerify:

    async def test_threshold_is_inclusive(self, db, key_manager, user, clock):
        verifier = BiometricVerifier(key_manager, matcher=FixedMatcher(0.8), threshold=0.8, clock=clock)
        await verifier.enroll(db, user.id, "face", "plantilla", 0.9)

        result = await verifier.verify(db, user.id, "face", "muestra")
        assert result.verified is True
        assert result.confidence_score == 0.8

    async def test_below_threshold_fails(self, db, key_manager, user, clock):
        verifier = BiometricVerifier(key_manager, matcher=FixedMatcher(0.79), threshold=0.8, clock=clock)
        await verifier.enroll(db, user.id, "face", "plantilla", 0.9)

        result = await verifier.verify(db, user.id, "face", "muestra")
        assert result.verified is False
        assert await attempts(db, user.id) == ["failure"]

    async def test_matching_sample_with_reference_matcher(self, db, biometric, user):
        await biometric.enroll(db, user.id, "face", "plantilla-facial-ana", 0.9)

        match = await biometric.verify(db, user.id, "face", "plantilla-facial-ana")
        mismatch = await biometric.verify(db, user.id, "face", "otra-persona-completamente")

        assert match.verified is True
        assert match.confidence_score == 1.0
        assert mismatch.verified is False
        assert sorted(await attempts(db, user.id)) == ["failure", "success"]

    async def test_not_enrolled(self, db, biometric, user):
        with pytest.raises(NotFoundError):
            await biometric.verify(db, user.id, "iris", "muestra")
        assert await attempts(db, user.id) == ["error"]

    async def test_failed_verification_keeps_caller_objects_loaded(self, db, biometric, user):
        email = user.email
        with pytest.raises(NotFoundError):
            await biometric.verify(db, user.id, "face", "muestra")

        assert user.email == email
        assert user.is_verified is True

    async def test_corrupted_template(self, db, biometric, user):
        result = await biometric.enroll(db, user.id, "face", "plantilla", 0.9)
        record = await db.get(BiometricTemplate, result.biometric_id)
        tampered = bytes([record.encrypted_template[0] ^ 0x01]) + record.encrypted_template[1:]
        await db.execute(
            update(BiometricTemplate).where(BiometricTemplate.id == record.id).values(encrypted_template=tampered)
        )
        await db.commit()

        with pytest.raises(IntegrityError):
            await biometric.verify(db, user.id, "face", "plantilla")
        assert await attempts(db, user.id) == ["error"]

    async def test_out_of_range_confidence_is_an_error(self, db, key_manager, user, clock):
        verifier = BiometricVerifier(key_manager, matcher=FixedMatcher(1.5), clock=clock)
        await verifier.enroll(db, user.id, "face", "plantilla", 0.9)
        with pytest.raises(ValueError):
            await verifier.verify(db, user.id, "face", "muestra")


class TestStatusAndStatistics:

    async def test_status_and_deactivate(self, db, biometric, user):
        await biometric.enroll(db, user.id, "face", "plantilla", 0.9)
        status = await biometric.get_status(db, user.id)
        assert status["enrolled"] is True
        assert [t["type"] for t in status["enrolled_types"]] == ["face"]

        await biometric.deactivate(db, user.id, "face")
        status = await biometric.get_status(db, user.id)
        assert status["enrolled"] is False
        assert status["enrolled_types"] == []

        with pytest.raises(NotFoundError):
            await biometric.deactivate(db, user.id, "face")

    async def test_verification_statistics(self, db, biometric, user):
        await biometric.enroll(db, user.id, "face", "plantilla", 0.9)
        await biometric.verify(db, user.id, "face", "plantilla")
        await biometric.verify(db, user.id, "face", "xxxxxxxxxxxxxxxxxxxxxxxxxx")

        stats = await biometric.get_verification_statistics(db, user_id=user.id)
        assert stats["total_attempts"] == 2
        assert stats["success_rate"] == 0.5


class TestSequenceSimilarityMatcher:

    async def test_bounds(self):
        matcher = SequenceSimilarityMatcher()
        assert await matcher.match(b"", b"abc") == 0.0
        assert await matcher.match(b"abc", b"abc") == 1.0
        assert 0.0 < await matcher.match(b"abcd", b"abce") < 1.0


class TestCatalog:

    def test_supported_types(self):
        types = supported_types()
        assert [t["type"] for t in types] == ["face", "fingerprint", "voice", "iris"]
        assert all(t["name"] and t["description"] for t in types)

    def test_consent_info_carries_current_version(self):
        info = consent_info()
        assert info["version"] == "1.0"
        assert len(info["data_types"]) == 4
        assert info["rights"]
        assert info["purposes"]
