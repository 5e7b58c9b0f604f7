"""Tests de las tareas periódicas de limpieza y del entry point del servicio."""
from datetime import timedelta
import uuid

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import shared.crypto.key_manager as key_manager_module
from shared.config import settings
from shared.database.connection import build_engine, create_tables
from shared.database.models import ProximitySession, SecureCredential
from shared.utils.clock import utcnow
from services.ticket_validation.tasks.sweep_tasks import (
    run_async, sweep_expired_credentials_task, sweep_expired_proximity_sessions_task
)


def _credential(expires_at, is_used=False):
    return SecureCredential(
        id=uuid.uuid4(),
        ticket_id=uuid.uuid4(),
        public_token=uuid.uuid4().hex.upper(),
        ciphertext=b"\x00" * 16,
        auth_tag=b"\x00" * 16,
        nonce=b"\x00" * 12,
        key_id=uuid.uuid4(),
        issued_at=expires_at - timedelta(hours=24),
        expires_at=expires_at,
        is_used=is_used,
    )


def _session(expires_at, state="pending"):
    return ProximitySession(
        id=uuid.uuid4(),
        session_token=uuid.uuid4().hex[:16].upper(),
        beacon_id=uuid.uuid4(),
        device_id="device-1",
        state=state,
        created_at=expires_at - timedelta(minutes=5),
        expires_at=expires_at,
    )


async def _seed(database_url):
    engine = build_engine(database_url)
    await create_tables(engine)
    now = utcnow()
    async with async_sessionmaker(engine, class_=AsyncSession)() as db:
        db.add_all([
            _credential(now - timedelta(hours=1)),
            _credential(now - timedelta(hours=1), is_used=True),
            _credential(now + timedelta(hours=1)),
            _session(now - timedelta(minutes=1)),
            _session(now + timedelta(minutes=4)),
        ])
        await db.commit()
    await engine.dispose()


async def _snapshot(database_url):
    engine = build_engine(database_url)
    async with async_sessionmaker(engine, class_=AsyncSession)() as db:
        credentials = (await db.execute(select(SecureCredential.is_used))).scalars().all()
        states = (await db.execute(select(ProximitySession.state))).scalars().all()
    await engine.dispose()
    return sorted(credentials), sorted(states)


def test_sweep_tasks(tmp_path, monkeypatch):
    database_url = f"sqlite:///{tmp_path / 'sweep.db'}"
    monkeypatch.setattr(settings, "DATABASE_URL", database_url)
    monkeypatch.setattr(settings, "MASTER_ENCRYPTION_KEY", "5f" * 32)
    monkeypatch.setattr(key_manager_module, "key_manager", None)
    run_async(_seed(database_url))

    assert sweep_expired_credentials_task() == {"status": "ok", "removed": 1}
    assert sweep_expired_proximity_sessions_task() == {"status": "ok", "expired": 1}

    credentials, states = run_async(_snapshot(database_url))
    assert credentials == [False, True]
    assert states == ["expired", "pending"]


def test_beat_schedule_covers_sweeps():
    from shared.cache.celery_app import celery_app
    tasks = {entry["task"] for entry in celery_app.conf.beat_schedule.values()}
    assert tasks == {"sweep_expired_credentials", "sweep_expired_proximity_sessions"}


def test_service_entry_point_mounts_validation_routes():
    from services.ticket_validation.main import app
    paths = {route.path for route in app.routes}
    assert "/api/v1/ticket-validation/validate" in paths
    assert "/api/v1/ticket-validation/tickets/{ticket_id}/requirements" in paths
