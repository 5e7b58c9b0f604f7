"""Tareas periódicas de limpieza de credenciales y sesiones BLE"""
import logging
import asyncio

from shared.cache.celery_app import celery_app

logger = logging.getLogger(__name__)


def run_async(coro):
    """Helper para ejecutar coroutines en contexto síncrono de Celery"""
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)
    try:
        return loop.run_until_complete(coro)
    finally:
        loop.close()
        asyncio.set_event_loop(None)


async def sweep_credentials() -> int:
    """Borrar credenciales vencidas sin usar"""
    from shared.config import settings
    from shared.crypto.credential_codec import CredentialCodec
    from shared.crypto.key_manager import init_key_manager
    from shared.database import connection
    from services.ticket_validation.services.credential_store import CredentialStore

    await connection.init_db()
    store = CredentialStore(CredentialCodec(init_key_manager(settings)))
    try:
        async with connection.async_session_maker() as db:
            return await store.sweep_expired(db)
    finally:
        await connection.close_db()


async def sweep_proximity_sessions() -> int:
    """Marcar como expiradas las sesiones BLE pendientes fuera de TTL"""
    from shared.database import connection
    from services.ble.services.proximity_service import ProximitySessionManager

    await connection.init_db()
    try:
        async with connection.async_session_maker() as db:
            return await ProximitySessionManager().sweep_expired(db)
    finally:
        await connection.close_db()


@celery_app.task(
    name="sweep_expired_credentials",
    bind=True,
    autoretry_for=(OSError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def sweep_expired_credentials_task(self):
    """Tarea Celery: limpieza de credenciales vencidas (las usadas se conservan)"""
    try:
        removed = run_async(sweep_credentials())
        logger.info(f"[CELERY] {removed} credenciales vencidas eliminadas")
        return {"status": "ok", "removed": removed}
    except Exception as e:
        logger.error(f"[CELERY] Error en sweep_expired_credentials: {e}", exc_info=True)
        raise


@celery_app.task(
    name="sweep_expired_proximity_sessions",
    bind=True,
    autoretry_for=(OSError,),
    retry_backoff=True,
    retry_kwargs={"max_retries": 3},
)
def sweep_expired_proximity_sessions_task(self):
    """Tarea Celery: expiración de sesiones BLE pendientes"""
    try:
        expired = run_async(sweep_proximity_sessions())
        logger.info(f"[CELERY] {expired} sesiones BLE expiradas")
        return {"status": "ok", "expired": expired}
    except Exception as e:
        logger.error(f"[CELERY] Error en sweep_expired_proximity_sessions: {e}", exc_info=True)
        raise
