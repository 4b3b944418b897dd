"""Cliente Redis para el estado compartido del gateway"""
import redis.asyncio as redis
from redis.asyncio.connection import ConnectionPool
import os
from typing import Optional
import logging

logger = logging.getLogger(__name__)

redis_client: Optional[redis.Redis] = None
redis_pool: Optional[ConnectionPool] = None


async def init_redis(redis_url: Optional[str] = None) -> Optional[redis.Redis]:
    """Inicializar conexión a Redis con pool de conexiones. Sin URL no hay Redis."""
    global redis_client, redis_pool

    if not redis_url:
        logger.info("REDIS_URL vacío, se usa estado en memoria local")
        return None

    redis_password = os.getenv("REDIS_PASSWORD")
    max_connections = int(os.getenv("REDIS_MAX_CONNECTIONS", "20"))

    redis_pool = ConnectionPool.from_url(
        redis_url,
        password=redis_password,
        max_connections=max_connections,
        decode_responses=True,
        socket_connect_timeout=5,
        socket_keepalive=True,
        retry_on_timeout=True,
        health_check_interval=30,
    )

    redis_client = redis.Redis(connection_pool=redis_pool)

    # Test connection
    try:
        await redis_client.ping()
        logger.info(f"Redis conectado exitosamente (pool max_connections={max_connections})")
    except Exception as e:
        logger.error(f"Error conectando a Redis: {e}")

    return redis_client


async def close_redis():
    """Cerrar conexión a Redis y pool"""
    global redis_client, redis_pool
    if redis_client:
        await redis_client.aclose()
        redis_client = None
    if redis_pool:
        await redis_pool.disconnect()
        redis_pool = None
        logger.info("Redis desconectado")
