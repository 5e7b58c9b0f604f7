"""Reloj del sistema (UTC sin tzinfo, igual que las columnas DateTime)"""
from datetime import datetime, timezone
from typing import Callable

Clock = Callable[[], datetime]


def utcnow() -> datetime:
    """Hora actual en UTC, naive"""
    return datetime.now(timezone.utc).replace(tzinfo=None)
