"""Conexión a la base de datos"""
from sqlalchemy.ext.asyncio import AsyncSession, AsyncEngine, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from typing import AsyncGenerator, Optional
import logging
import asyncio

from shared.config import settings

logger = logging.getLogger(__name__)

# Base para modelos SQLAlchemy
Base = declarative_base()

# Engine y session factory
engine: Optional[AsyncEngine] = None
async_session_maker: Optional[async_sessionmaker] = None


def to_async_url(database_url: str) -> str:
    """Convertir una URL de base de datos a su driver async"""
    # Los parámetros de query (sslmode, etc.) no los entiende asyncpg
    if "?" in database_url and database_url.startswith("postgresql"):
        database_url = database_url.split("?")[0]

    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql+psycopg://"):
        return database_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


def build_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    """Crear engine async con la configuración de pool según el backend"""
    database_url = to_async_url(database_url)

    if database_url.startswith("sqlite"):
        # SQLite (desarrollo/tests): sin pool configurable
        return create_async_engine(database_url, echo=echo)

    pool_config = {
        "pool_pre_ping": True,  # Verificar conexiones antes de usar
        "pool_recycle": 300,
        "pool_timeout": 30,
        "pool_use_lifo": True,
        "pool_size": 5,
        "max_overflow": 10,
    }
    logger.info(f"Pool config: size={pool_config['pool_size']}, overflow={pool_config['max_overflow']}")
    return create_async_engine(database_url, echo=echo, **pool_config)


async def init_db(database_url: Optional[str] = None):
    """Inicializar conexión a la base de datos"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Database engine already initialized, skipping...")
        return

    database_url = database_url or settings.DATABASE_URL
    logger.info(f"Initializing database connection to: {database_url.split('@')[1] if '@' in database_url else database_url}")

    engine = build_engine(database_url, echo=settings.APP_DEBUG)
    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    logger.info("Database engine initialized successfully")


async def create_tables(target: Optional[AsyncEngine] = None):
    """Crear tablas (desarrollo y tests; en producción se usan migraciones)"""
    # Registrar modelos en el metadata
    import shared.database.models  # noqa: F401

    target = target or engine
    if target is None:
        raise RuntimeError("Database not initialized. Please check application startup.")
    async with target.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """
    Dependency para obtener sesión de base de datos con retry para errores transitorios.

    Maneja errores de DNS y conexión transitorios con retry exponencial.
    """
    if async_session_maker is None:
        logger.error("Database not initialized! Call init_db() first.")
        raise RuntimeError("Database not initialized. Please check application startup.")

    max_retries = 3
    retry_delay = 0.5  # Segundos iniciales
    last_exception = None

    for attempt in range(max_retries):
        session = async_session_maker()
        try:
            # Solo se reintenta la obtención de la conexión, no el request
            await session.connection()
        except OSError as e:
            await session.close()
            # Errores de DNS y socket (socket.gaierror es subclase de OSError)
            last_exception = e
            if attempt < max_retries - 1:
                delay = retry_delay * (2 ** attempt)
                logger.warning(
                    f"Database connection error (attempt {attempt + 1}/{max_retries}): {type(e).__name__}: {e}. "
                    f"Retrying in {delay:.1f}s..."
                )
                await asyncio.sleep(delay)
            else:
                logger.error(f"Database connection failed after {max_retries} attempts: {e}")
            continue

        try:
            yield session
        finally:
            await session.close()
        return

    raise last_exception or RuntimeError("Database connection failed")


async def close_db():
    """Cerrar conexiones a la base de datos"""
    global engine, async_session_maker
    if engine:
        logger.info("Closing database connections...")
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Database connections closed")
