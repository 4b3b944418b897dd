"""
Rate limiting usando slowapi / limits
- `limiter`: decorador slowapi para las rutas del registro
- `ScanRateLimiter`: ventana fija por cliente para el pipeline de verificación
"""
from dataclasses import dataclass
from slowapi import Limiter
from slowapi.util import get_remote_address
from slowapi.errors import RateLimitExceeded
from fastapi import Request, Response
from starlette.responses import JSONResponse
from limits import RateLimitItemPerSecond
from limits.aio.strategies import FixedWindowRateLimiter
from limits.storage import storage_from_string
import logging
import math
import time

from app.core.config import settings

logger = logging.getLogger(__name__)


def get_real_client_ip(request: Request) -> str:
    """
    Obtener IP real del cliente considerando proxies/load balancers.
    Importante para rate limiting correcto detrás de nginx/cloudflare.
    """
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # X-Forwarded-For puede tener múltiples IPs: client, proxy1, proxy2
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip

    cf_connecting_ip = request.headers.get("CF-Connecting-IP")
    if cf_connecting_ip:
        return cf_connecting_ip

    return get_remote_address(request) or "unknown"


limiter = Limiter(
    key_func=get_real_client_ip,
    storage_uri=settings.RATE_LIMIT_STORAGE_URI,
    strategy="fixed-window",
    headers_enabled=False,  # Deshabilitado para compatibilidad con response_model de FastAPI
)


def rate_limit_exceeded_handler(request: Request, exc: RateLimitExceeded) -> Response:
    """Handler para rate limit exceeded en las rutas del registro"""
    logger.warning(
        f"Rate limit exceeded - IP: {get_real_client_ip(request)}, "
        f"Path: {request.url.path}, "
        f"Limit: {exc.detail}"
    )

    return JSONResponse(
        status_code=429,
        content={
            "error": "TooManyRequests",
            "detail": "Too many requests. Please try again later.",
        },
        headers={"Retry-After": "60"},
    )


# Límites de las rutas del registro
RATE_LIMITS = {
    "issue": "10/minute",
    "consume": "120/minute",
    "public": "60/minute",
    "admin": "120/minute",
}


def _async_storage_uri(storage_uri: str) -> str:
    return storage_uri if storage_uri.startswith("async+") else f"async+{storage_uri}"


@dataclass
class RateLimitResult:
    allowed: bool
    remaining: int
    reset_at: float

    @property
    def retry_after(self) -> int:
        return max(1, math.ceil(self.reset_at - time.time()))


class ScanRateLimiter:
    """
    Máximo `max_requests` envíos por cliente en una ventana fija de
    `window_seconds`. La ventana arranca con el primer envío y el contador se
    reinicia al expirar. El incremento por clave es atómico en el storage.
    """

    def __init__(self, max_requests: int = 30, window_seconds: int = 60, storage_uri: str = "memory://"):
        self.max_requests = max_requests
        self.window_seconds = window_seconds
        self.item = RateLimitItemPerSecond(max_requests, window_seconds)
        self.storage = storage_from_string(_async_storage_uri(storage_uri))
        self.strategy = FixedWindowRateLimiter(self.storage)

    async def hit(self, client_id: str) -> RateLimitResult:
        allowed = await self.strategy.hit(self.item, "scan", client_id)
        stats = await self.strategy.get_window_stats(self.item, "scan", client_id)
        return RateLimitResult(allowed=allowed, remaining=stats.remaining, reset_at=stats.reset_time)

    async def reset(self) -> None:
        await self.storage.reset()
