"""API Gateway principal - Punto de entrada de la aplicación"""
from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
import os
import logging
from contextlib import asynccontextmanager

from shared.config import settings
from shared.crypto.key_manager import init_key_manager
from shared.database.connection import init_db, close_db
from shared.cache.redis_client import init_redis, close_redis
from shared.errors import DomainError
from shared.utils.http_errors import status_for, error_body

# Configurar logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifecycle events de la aplicación"""
    # Startup: sin llave maestra y con política strict, no se levanta
    logger.info("Iniciando aplicación...")
    init_key_manager(settings)
    await init_db()
    await init_redis()
    logger.info("Aplicación iniciada")
    yield
    # Shutdown
    logger.info("Cerrando aplicación...")
    await close_db()
    await close_redis()
    logger.info("Aplicación cerrada")


# Crear aplicación FastAPI
app = FastAPI(
    title="Festival Ticket Validation API",
    description="Validación segura de tickets: credenciales QR cifradas, proximidad BLE y biometría",
    version="1.0.0",
    lifespan=lifespan
)

default_origins = "http://localhost:3000,http://localhost:5173,http://127.0.0.1:3000,http://127.0.0.1:5173"
cors_origins_str = os.getenv("CORS_ORIGINS", default_origins)

# En desarrollo, permitir todos los orígenes para facilitar testing
if settings.APP_ENV == "development":
    logger.info("Modo desarrollo: CORS configurado para permitir todos los orígenes")
    allow_origins = ["*"]
    allow_credentials = False  # No se puede usar credentials con allow_origins=["*"]
else:
    allow_origins = [origin.strip() for origin in cors_origins_str.split(",") if origin.strip()]
    allow_credentials = True
    logger.info(f"CORS origins configurados: {allow_origins}")

app.add_middleware(
    CORSMiddleware,
    allow_origins=allow_origins,
    allow_credentials=allow_credentials,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS", "PATCH", "HEAD"],
    allow_headers=["*"],
    max_age=3600,  # Cache preflight requests por 1 hora
)


@app.exception_handler(DomainError)
async def domain_error_handler(request: Request, exc: DomainError):
    """Errores de dominio que no tradujo la ruta"""
    logger.warning(f"{request.method} {request.url.path}: {exc}")
    return JSONResponse(status_code=status_for(exc), content={"detail": error_body(exc)})


# Incluir routers de cada servicio
from services.ticket_validation.routes.validation import router as validation_router
from services.ble.routes.ble import router as ble_router
from services.biometric.routes.biometric import router as biometric_router

app.include_router(validation_router, prefix="/api/v1/ticket-validation", tags=["ticket-validation"])
app.include_router(ble_router, prefix="/api/v1/ble", tags=["ble"])
app.include_router(biometric_router, prefix="/api/v1/biometric", tags=["biometric"])


@app.get("/health")
async def health():
    """Health check endpoint"""
    return {"status": "ok", "service": "festival-validation-api"}


@app.get("/ready")
async def ready():
    """Ready check endpoint - verifica conexiones"""
    try:
        from sqlalchemy import text
        from shared.database.connection import async_session_maker
        async with async_session_maker() as session:
            await session.execute(text("SELECT 1"))

        from shared.cache.redis_client import get_redis
        redis = await get_redis()
        await redis.ping()

        return {"status": "ready", "database": "connected", "redis": "connected"}
    except Exception as e:
        logger.error(f"Ready check failed: {e}")
        return JSONResponse(status_code=503, content={"status": "not ready", "error": str(e)})


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=settings.APP_DEBUG
    )
