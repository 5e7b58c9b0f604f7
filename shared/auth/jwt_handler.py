"""Manejo de JWT tokens"""
from datetime import timedelta
from typing import Optional, Dict
from jose import JWTError, jwt
import logging

from shared.config import settings
from shared.utils.clock import utcnow

logger = logging.getLogger(__name__)


def create_access_token(data: Dict, expires_delta: Optional[timedelta] = None) -> str:
    '''Crear token de acceso JWT'''
    to_encode = data.copy()
    if expires_delta:
        expire = utcnow() + expires_delta
    else:
        expire = utcnow() + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode.update({'exp': expire, 'type': 'access'})
    return jwt.encode(to_encode, settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str) -> Optional[Dict]:
    '''Decodificar y validar token JWT'''
    try:
        payload = jwt.decode(token, settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError as e:
        logger.debug(f'Token rechazado: {e}')
        return None
    if payload.get('type', 'access') != 'access':
        return None
    return payload


async def verify_token(token: str) -> Optional[Dict]:
    '''Verificar token de acceso emitido por el backend'''
    return decode_token(token)
