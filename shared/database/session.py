"""Sesiones de base de datos"""
from shared.database.connection import get_db, create_tables

__all__ = ["get_db", "create_tables"]
