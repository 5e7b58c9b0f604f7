"""Tests del motor de validación: QR, ventana de validez, BLE y biometría."""
import asyncio
from datetime import timedelta

import pytest
from sqlalchemy import select, update

from shared.crypto.credential_codec import CredentialCodec
from shared.crypto.key_manager import KeyManager
from shared.database.models import SecureCredential, Ticket, TicketValidation
from shared.errors import KeyUnavailableError
from services.ticket_validation.services.credential_store import CredentialStore
from services.ticket_validation.services.validation_engine import (
    TicketValidationEngine, ValidationOptions, validation_method
)

from factories import make_beacon, make_festival, make_ticket, make_user


@pytest.fixture
async def user(db):
    return await make_user(db)


@pytest.fixture
async def festival(db, clock):
    return await make_festival(db, clock())


async def credential_used(db, credential_id):
    stmt = select(SecureCredential.is_used).where(SecureCredential.id == credential_id)
    return (await db.execute(stmt)).scalar_one()


async def ticket_status(db, ticket_id):
    return (await db.execute(select(Ticket.status).where(Ticket.id == ticket_id))).scalar_one()


async def validation_records(db, ticket_id):
    stmt = (
        select(TicketValidation.status, TicketValidation.result_code)
        .where(TicketValidation.ticket_id == ticket_id)
        .order_by(TicketValidation.validated_at)
    )
    return [tuple(row) for row in (await db.execute(stmt)).all()]


class TestQrOnly:

    async def test_valid_ticket_is_admitted_once(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock())
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(
            db, credential.public_token, ValidationOptions(validator_id="scanner-1", location="Puerta Norte")
        )

        assert verdict.valid is True
        assert verdict.code == "TICKET_VALID"
        assert verdict.ticket["status"] == "used"
        assert verdict.validation["method"] == "qr_only"
        assert await ticket_status(db, ticket.id) == "used"
        assert await credential_used(db, credential.id) is True

        clock.advance(minutes=1)
        replay = await validation_engine.validate(db, credential.public_token)
        assert replay.valid is False
        assert replay.code == "QR_ALREADY_USED"
        assert replay.details["used_at"] is not None
        assert await validation_records(db, ticket.id) == [("used", "TICKET_VALID"), ("rejected", "QR_ALREADY_USED")]

    async def test_unknown_token(self, db, validation_engine):
        verdict = await validation_engine.validate(db, "ABCDEF12-00000000-ZZ")
        assert verdict.valid is False
        assert verdict.code == "QR_NOT_FOUND"
        assert (await db.execute(select(TicketValidation))).scalars().all() == []

    async def test_expired_credential(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock(), valid_to=clock() + timedelta(days=3))
        credential = await ticket_service.issue_credential(db, ticket)
        clock.advance(hours=25)

        verdict = await validation_engine.validate(db, credential.public_token)

        assert verdict.code == "QR_EXPIRED"
        assert verdict.details["expired_at"] == credential.expires_at.isoformat()
        assert await ticket_status(db, ticket.id) == "active"

    async def test_tampered_credential(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock())
        credential = await ticket_service.issue_credential(db, ticket)
        tampered = credential.auth_tag[:-1] + bytes([credential.auth_tag[-1] ^ 0x01])
        await db.execute(
            update(SecureCredential).where(SecureCredential.id == credential.id).values(auth_tag=tampered)
        )
        await db.commit()

        verdict = await validation_engine.validate(db, credential.public_token)

        assert verdict.code == "QR_INTEGRITY_ERROR"
        assert await credential_used(db, credential.id) is False
        assert await validation_records(db, ticket.id) == [("rejected", "QR_INTEGRITY_ERROR")]

    async def test_stale_rotating_credential(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock())
        stale = await ticket_service.issue_credential(db, ticket, rotating=True)
        clock.advance(seconds=90)

        verdict = await validation_engine.validate(db, stale.public_token)
        assert verdict.code == "QR_STALE"

        fresh = await ticket_service.issue_credential(db, ticket, rotating=True)
        verdict = await validation_engine.validate(db, fresh.public_token)
        assert verdict.code == "TICKET_VALID"

    async def test_concurrent_scans_admit_once(self, db, session_maker, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock())
        credential = await ticket_service.issue_credential(db, ticket)

        async def scan(validator_id):
            async with session_maker() as session:
                return await validation_engine.validate(
                    session, credential.public_token, ValidationOptions(validator_id=validator_id)
                )

        verdicts = await asyncio.gather(scan("scanner-a"), scan("scanner-b"))

        assert sorted(v.code for v in verdicts) == ["QR_ALREADY_USED", "TICKET_VALID"]
        assert await ticket_status(db, ticket.id) == "used"

    async def test_redemption_lost_after_inspection(self, db, session_maker, codec, proximity, biometric, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock())
        credential = await ticket_service.issue_credential(db, ticket)

        class RacedStore(CredentialStore):
            """Otro escáner canjea la credencial justo después de la inspección"""

            async def inspect(self, db, token):
                found = await super().inspect(db, token)
                async with session_maker() as other:
                    await self.mark_redeemed(other, found[0].id, "scanner-b")
                    await other.commit()
                return found

        raced = TicketValidationEngine(
            RacedStore(codec, ttl_hours=24, clock=clock), proximity, biometric, clock=clock
        )

        verdict = await raced.validate(db, credential.public_token, ValidationOptions(validator_id="scanner-a"))

        assert verdict.code == "QR_ALREADY_USED"
        assert ticket.status == "active"
        assert await ticket_status(db, ticket.id) == "active"
        assert await credential_used(db, credential.id) is True
        assert await validation_records(db, ticket.id) == [("rejected", "QR_ALREADY_USED")]


class TestTicketWindow:

    async def test_festival_not_started_keeps_credential(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(
            db, user, festival, clock(),
            valid_from=clock() + timedelta(hours=2), valid_to=clock() + timedelta(days=1)
        )
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(db, credential.public_token)
        assert verdict.code == "FESTIVAL_NOT_STARTED"
        assert verdict.details["festival_start"] == ticket.valid_from.isoformat()
        assert await credential_used(db, credential.id) is False

        clock.advance(hours=3)
        verdict = await validation_engine.validate(db, credential.public_token)
        assert verdict.code == "TICKET_VALID"

    async def test_festival_ended(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(
            db, user, festival, clock(),
            valid_from=clock() - timedelta(days=1), valid_to=clock() - timedelta(minutes=1)
        )
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(db, credential.public_token)
        assert verdict.code == "FESTIVAL_ENDED"

    async def test_cancelled_ticket(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock())
        credential = await ticket_service.issue_credential(db, ticket)
        await ticket_service.cancel_ticket(db, ticket.id, reason="reembolso")

        verdict = await validation_engine.validate(db, credential.public_token)

        assert verdict.code == "TICKET_INVALID_STATUS"
        assert await credential_used(db, credential.id) is False


class TestBle:

    async def test_session_required(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock(), ble_required=True)
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(db, credential.public_token)

        assert verdict.code == "BLE_SESSION_REQUIRED"
        assert await credential_used(db, credential.id) is False

    async def test_rejection_keeps_caller_objects_loaded(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock(), ble_required=True)
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(db, credential.public_token)

        assert verdict.code == "BLE_SESSION_REQUIRED"
        assert ticket.status == "active"
        assert credential.is_used is False
        assert festival.ble_enabled is True
        assert user.email

    async def test_validated_session_admits(self, db, validation_engine, ticket_service, proximity, user, festival, clock):
        beacon = await make_beacon(db, festival)
        ticket = await make_ticket(db, user, festival, clock(), ble_required=True)
        credential = await ticket_service.issue_credential(db, ticket)
        session = await proximity.start(db, beacon.id, user.id, "device-1", {"rssi": -55})

        verdict = await validation_engine.validate(
            db, credential.public_token,
            ValidationOptions(session_token=session.session_token, device_id="device-1")
        )

        assert verdict.code == "TICKET_VALID"
        assert verdict.validation["method"] == "qr_ble"
        assert verdict.validation["ble_validated"] is True
        record = (await db.execute(
            select(TicketValidation).where(TicketValidation.ticket_id == ticket.id)
        )).scalar_one()
        assert record.beacon_id == beacon.id
        assert record.proximity_session_id == session.id

    async def test_expired_session(self, db, validation_engine, ticket_service, proximity, user, festival, clock):
        beacon = await make_beacon(db, festival)
        ticket = await make_ticket(db, user, festival, clock(), ble_required=True)
        session = await proximity.start(db, beacon.id, user.id, "device-1")
        clock.advance(minutes=6)
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(
            db, credential.public_token, ValidationOptions(session_token=session.session_token)
        )

        assert verdict.code == "BLE_VALIDATION_FAILED"
        assert verdict.details["ble_error"] == "SESSION_EXPIRED"

    async def test_session_from_other_festival(self, db, validation_engine, ticket_service, proximity, user, festival, clock):
        other_festival = await make_festival(db, clock())
        other_beacon = await make_beacon(db, other_festival)
        ticket = await make_ticket(db, user, festival, clock(), ble_required=True)
        credential = await ticket_service.issue_credential(db, ticket)
        session = await proximity.start(db, other_beacon.id, user.id, "device-1")

        verdict = await validation_engine.validate(
            db, credential.public_token, ValidationOptions(session_token=session.session_token)
        )

        assert verdict.code == "BLE_VALIDATION_FAILED"
        assert verdict.details["ble_error"] == "SESSION_MISMATCH"
        assert await credential_used(db, credential.id) is False

    async def test_ble_disabled_festival_skips_proximity(self, db, validation_engine, ticket_service, user, clock):
        festival = await make_festival(db, clock(), ble_enabled=False)
        ticket = await make_ticket(db, user, festival, clock(), ble_required=True)
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(db, credential.public_token)

        assert verdict.code == "TICKET_VALID"
        assert verdict.validation["method"] == "qr_only"


class TestBiometric:

    async def test_biometric_required(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock(), biometric_required=True)
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(db, credential.public_token)
        assert verdict.code == "BIOMETRIC_REQUIRED"

    async def test_matching_biometric_admits(self, db, validation_engine, ticket_service, biometric, user, festival, clock):
        await biometric.enroll(db, user.id, "face", "plantilla-facial-ana", 0.95)
        ticket = await make_ticket(db, user, festival, clock(), biometric_required=True)
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(
            db, credential.public_token,
            ValidationOptions(biometric_type="face", biometric_template="plantilla-facial-ana")
        )

        assert verdict.code == "TICKET_VALID"
        assert verdict.validation["method"] == "qr_biometric"
        assert verdict.validation["confidence_score"] == 1.0

    async def test_mismatching_biometric(self, db, validation_engine, ticket_service, biometric, user, festival, clock):
        await biometric.enroll(db, user.id, "face", "plantilla-facial-ana", 0.95)
        ticket = await make_ticket(db, user, festival, clock(), biometric_required=True)
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(
            db, credential.public_token,
            ValidationOptions(biometric_type="face", biometric_template="zzzzzzzzzzzzzzzzzzzz")
        )

        assert verdict.code == "BIOMETRIC_VERIFICATION_FAILED"
        assert await credential_used(db, credential.id) is False
        assert await ticket_status(db, ticket.id) == "active"

    async def test_not_enrolled(self, db, validation_engine, ticket_service, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock(), biometric_required=True)
        credential = await ticket_service.issue_credential(db, ticket)

        verdict = await validation_engine.validate(
            db, credential.public_token, ValidationOptions(biometric_type="face", biometric_template="muestra")
        )
        assert verdict.code == "BIOMETRIC_VERIFICATION_FAILED"

    async def test_all_factors(self, db, validation_engine, ticket_service, proximity, biometric, user, festival, clock):
        beacon = await make_beacon(db, festival)
        await biometric.enroll(db, user.id, "fingerprint", "huella-ana", 0.9)
        ticket = await make_ticket(db, user, festival, clock(), ble_required=True, biometric_required=True)
        credential = await ticket_service.issue_credential(db, ticket)
        session = await proximity.start(db, beacon.id, user.id, "device-1")

        verdict = await validation_engine.validate(
            db, credential.public_token,
            ValidationOptions(
                session_token=session.session_token,
                device_id="device-1",
                biometric_type="fingerprint",
                biometric_template="huella-ana",
            )
        )

        assert verdict.code == "TICKET_VALID"
        assert verdict.validation["method"] == "qr_ble_biometric"


class TestKeyFailures:

    async def test_missing_key_is_raised_not_a_verdict(self, db, ticket_service, proximity, biometric, user, festival, clock):
        ticket = await make_ticket(db, user, festival, clock())
        credential = await ticket_service.issue_credential(db, ticket)

        wrong_keys = KeyManager(bytes.fromhex("c3" * 32))
        engine = TicketValidationEngine(
            CredentialStore(CredentialCodec(wrong_keys), clock=clock), proximity, biometric, clock=clock
        )

        with pytest.raises(KeyUnavailableError):
            await engine.validate(db, credential.public_token)
        assert await credential_used(db, credential.id) is False


def test_validation_method_names():
    assert validation_method(False, False) == "qr_only"
    assert validation_method(True, False) == "qr_ble"
    assert validation_method(False, True) == "qr_biometric"
    assert validation_method(True, True) == "qr_ble_biometric"
