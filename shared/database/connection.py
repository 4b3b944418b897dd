"""Conexión a la base de datos del registro (PostgreSQL o SQLite)"""
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import declarative_base
from typing import Optional
import logging
import os

logger = logging.getLogger(__name__)

# Base para modelos SQLAlchemy
Base = declarative_base()

# Engine y session factory
engine = None
async_session_maker: Optional[async_sessionmaker] = None


def to_async_url(database_url: str) -> str:
    """Convertir la URL al driver async correspondiente"""
    if database_url.startswith("postgresql://"):
        return database_url.replace("postgresql://", "postgresql+asyncpg://", 1)
    if database_url.startswith("postgresql+psycopg://"):
        return database_url.replace("postgresql+psycopg://", "postgresql+asyncpg://", 1)
    if database_url.startswith("sqlite://"):
        return database_url.replace("sqlite://", "sqlite+aiosqlite://", 1)
    return database_url


async def init_db(database_url: Optional[str] = None) -> async_sessionmaker:
    """Inicializar conexión a la base de datos y crear el schema"""
    global engine, async_session_maker

    if engine is not None:
        logger.warning("Database engine already initialized, skipping...")
        return async_session_maker

    # Registrar modelos en Base.metadata
    import shared.database.models  # noqa: F401

    database_url = to_async_url(database_url or os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./ticket_registry.db"))
    logger.info(f"Initializing database connection to: {database_url.split('@')[1] if '@' in database_url else database_url}")

    engine_kwargs = {
        "echo": os.getenv("APP_DEBUG", "False").lower() == "true",
    }
    if database_url.startswith("postgresql+asyncpg://"):
        engine_kwargs.update({
            "pool_pre_ping": True,  # Verificar conexiones antes de usar
            "pool_recycle": 300,
            "pool_timeout": 30,
            "pool_use_lifo": True,
            "pool_size": int(os.getenv("DATABASE_POOL_SIZE", "5")),
            "max_overflow": int(os.getenv("DATABASE_MAX_OVERFLOW", "10")),
        })
        logger.info(f"Postgres pool config: size={engine_kwargs['pool_size']}, overflow={engine_kwargs['max_overflow']}")

    engine = create_async_engine(database_url, **engine_kwargs)

    async_session_maker = async_sessionmaker(
        engine,
        class_=AsyncSession,
        expire_on_commit=False
    )

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    logger.info("Database engine initialized successfully")
    return async_session_maker


async def close_db():
    """Cerrar engine y pool de conexiones"""
    global engine, async_session_maker
    if engine is not None:
        await engine.dispose()
        engine = None
        async_session_maker = None
        logger.info("Database desconectada")
