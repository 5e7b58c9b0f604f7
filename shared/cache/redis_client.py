"""Cliente Redis para cache"""
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
from redis.exceptions import RedisError
import os
import json
from typing import Optional, Any
import logging

from shared.config import settings

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None
redis_pool: Optional[ConnectionPool] = None


async def init_redis():
    """Inicializar conexión a Redis con pool de conexiones"""
    global redis_client, redis_pool

    max_connections = int(os.getenv("REDIS_MAX_CONNECTIONS", "20"))

    redis_pool = ConnectionPool.from_url(
        settings.REDIS_URL,
        password=os.getenv("REDIS_PASSWORD"),
        max_connections=max_connections,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        retry_on_timeout=True,
        health_check_interval=30,
    )

    redis_client = redis.Redis(connection_pool=redis_pool)

    try:
        await redis_client.ping()
        logger.info(f"Redis conectado exitosamente (pool max_connections={max_connections})")
    except (RedisError, OSError) as e:
        logger.error(f"Error conectando a Redis: {e}")


async def get_redis() -> redis.Redis:
    """Obtener cliente Redis"""
    if redis_client is None:
        await init_redis()
    return redis_client


async def close_redis():
    """Cerrar conexión a Redis y pool"""
    global redis_client, redis_pool
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None
    logger.info("Redis desconectado")


async def cache_get(key: str) -> Optional[Any]:
    """Obtener valor del cache (None si no existe o Redis no responde)"""
    try:
        redis_conn = await get_redis()
        value = await redis_conn.get(key)
    except (RedisError, OSError) as e:
        logger.warning(f"Cache no disponible al leer {key}: {e}")
        return None
    if value:
        try:
            return json.loads(value)
        except json.JSONDecodeError:
            return value
    return None


async def cache_set(key: str, value: Any, expire: int = 3600):
    """Guardar valor en cache"""
    if isinstance(value, (dict, list)):
        value = json.dumps(value)
    try:
        redis_conn = await get_redis()
        await redis_conn.setex(key, expire, value)
    except (RedisError, OSError) as e:
        logger.warning(f"Cache no disponible al escribir {key}: {e}")


async def cache_delete(key: str):
    """Eliminar del cache"""
    try:
        redis_conn = await get_redis()
        await redis_conn.delete(key)
    except (RedisError, OSError) as e:
        logger.warning(f"Cache no disponible al borrar {key}: {e}")
