"""Dependencies de autenticación para FastAPI"""
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
import re

from shared.auth.jwt_handler import decode_token
from services.ticket_registry.models.registry import ADDRESS_PATTERN


security = HTTPBearer()


async def get_current_identity(
    request: Request,
    credentials: HTTPAuthorizationCredentials = Depends(security)
) -> str:
    '''Obtener la identidad (dirección) del caller desde el token JWT'''
    app_settings = request.app.state.settings
    payload = decode_token(credentials.credentials, secret=app_settings.JWT_SECRET_KEY)

    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido o expirado',
            headers={'WWW-Authenticate': 'Bearer'},
        )

    identity = payload.get('sub')
    if not identity or not re.match(ADDRESS_PATTERN, identity):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail='Token inválido: falta identidad',
        )

    return identity.lower()
