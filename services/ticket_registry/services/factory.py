"""Construcción del backend del registro según configuración"""
import logging

from app.core.config import Settings
from shared.database.connection import init_db
from services.ticket_registry.services.base import RegistryBackend
from services.ticket_registry.services.http_client import HttpRegistryClient
from services.ticket_registry.services.memory_registry import InMemoryRegistryBackend
from services.ticket_registry.services.sql_registry import SqlRegistryBackend

logger = logging.getLogger(__name__)


async def build_registry_backend(settings: Settings) -> RegistryBackend:
    backend_name = settings.REGISTRY_BACKEND.lower()

    if backend_name == "memory":
        backend = InMemoryRegistryBackend()
    elif backend_name == "sql":
        session_maker = await init_db(settings.DATABASE_URL)
        backend = SqlRegistryBackend(session_maker)
    elif backend_name == "http":
        backend = HttpRegistryClient(
            settings.REGISTRY_SERVICE_URL,
            jwt_secret=settings.JWT_SECRET_KEY,
            timeout=settings.REGISTRY_TIMEOUT_SECONDS,
        )
    else:
        raise ValueError(f"REGISTRY_BACKEND desconocido: {settings.REGISTRY_BACKEND}")

    await backend.startup()
    logger.info(f"Backend del registro: {backend_name}")
    return backend
