"""Service entry point para ticket validation"""
from fastapi import FastAPI
from contextlib import asynccontextmanager

from shared.config import settings
from shared.crypto.key_manager import init_key_manager
from shared.database.connection import init_db, close_db
from services.ticket_validation.routes.validation import router


@asynccontextmanager
async def lifespan(app: FastAPI):
    init_key_manager(settings)
    await init_db()
    yield
    await close_db()


app = FastAPI(title="Ticket Validation Service", lifespan=lifespan)
app.include_router(router, prefix="/api/v1/ticket-validation", tags=["ticket-validation"])
