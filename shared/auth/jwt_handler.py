"""Manejo de JWT tokens de identidad"""
from datetime import datetime, timedelta, timezone
from typing import Optional, Dict
from jose import JWTError, jwt

from app.core.config import settings


def create_access_token(identity: str, expires_delta: Optional[timedelta] = None, secret: Optional[str] = None) -> str:
    '''Crear token de acceso JWT para una identidad (dirección)'''
    if expires_delta:
        expire = datetime.now(timezone.utc) + expires_delta
    else:
        expire = datetime.now(timezone.utc) + timedelta(minutes=settings.JWT_ACCESS_TOKEN_EXPIRE_MINUTES)

    to_encode = {'sub': identity.lower(), 'exp': expire, 'type': 'access'}
    return jwt.encode(to_encode, secret or settings.JWT_SECRET_KEY, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, secret: Optional[str] = None) -> Optional[Dict]:
    '''Decodificar y validar token JWT'''
    try:
        return jwt.decode(token, secret or settings.JWT_SECRET_KEY, algorithms=[settings.JWT_ALGORITHM])
    except JWTError:
        return None
