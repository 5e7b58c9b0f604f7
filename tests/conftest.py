"""Pytest configuration and shared fixtures."""
from datetime import datetime

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from shared.crypto.credential_codec import CredentialCodec
from shared.crypto.key_manager import KeyManager
from shared.database.connection import build_engine, create_tables
from services.biometric.services.biometric_service import BiometricVerifier
from services.ble.services.proximity_service import ProximitySessionManager
from services.ticket_validation.services.credential_store import CredentialStore
from services.ticket_validation.services.ticket_service import TicketService
from services.ticket_validation.services.validation_engine import TicketValidationEngine

from factories import MASTER_KEY, MutableClock


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock(datetime(2026, 7, 18, 18, 0, 0))


@pytest.fixture
async def engine(tmp_path):
    engine = build_engine(f"sqlite:///{tmp_path / 'validation.db'}")
    await create_tables(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_maker(engine):
    return async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


@pytest.fixture
async def db(session_maker):
    async with session_maker() as session:
        yield session


@pytest.fixture
def key_manager() -> KeyManager:
    return KeyManager(MASTER_KEY)


@pytest.fixture
def codec(key_manager) -> CredentialCodec:
    return CredentialCodec(key_manager)


@pytest.fixture
def store(codec, clock) -> CredentialStore:
    return CredentialStore(codec, ttl_hours=24, clock=clock)


@pytest.fixture
def proximity(clock) -> ProximitySessionManager:
    return ProximitySessionManager(ttl_seconds=300, max_sessions_per_user=3, clock=clock)


@pytest.fixture
def biometric(key_manager, clock) -> BiometricVerifier:
    return BiometricVerifier(
        key_manager, min_quality=0.7, threshold=0.8, max_enrollment_attempts=3, clock=clock
    )


@pytest.fixture
def validation_engine(store, proximity, biometric, clock) -> TicketValidationEngine:
    return TicketValidationEngine(store, proximity, biometric, rotation_tolerance_slots=1, clock=clock)


@pytest.fixture
def ticket_service(store, clock) -> TicketService:
    return TicketService(store, clock=clock)


@pytest.fixture(autouse=True)
def memory_cache(monkeypatch):
    """Reemplaza el cache Redis por un dict en memoria"""
    data = {}

    async def cache_get(key):
        return data.get(key)

    async def cache_set(key, value, expire=3600):
        data[key] = value

    async def cache_delete(key):
        data.pop(key, None)

    import services.ticket_validation.services.ticket_service as ticket_service_module
    monkeypatch.setattr(ticket_service_module, "cache_get", cache_get)
    monkeypatch.setattr(ticket_service_module, "cache_set", cache_set)
    monkeypatch.setattr(ticket_service_module, "cache_delete", cache_delete)
    return data
