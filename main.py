"""API Gateway principal - Punto de entrada de la aplicación"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from slowapi.errors import RateLimitExceeded
from typing import Optional
import os
import logging
from contextlib import asynccontextmanager

from app.core.config import Settings, settings as default_settings
from shared.database.connection import close_db
from shared.cache.redis_client import init_redis, close_redis
from shared.utils.circuit_breaker import CircuitBreaker
from shared.utils.rate_limiter import ScanRateLimiter, limiter, rate_limit_exceeded_handler
from shared.utils.replay_guard import build_duplicate_guard
from services.ticket_registry.errors import RegistryError
from services.ticket_registry.routes.registry import router as registry_router, registry_error_handler
from services.ticket_registry.services.factory import build_registry_backend
from services.ticket_validation.routes.validation import router as validation_router
from services.ticket_validation.services.ticket_service import TicketVerificationService

# Configurar logging
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", default_settings.LOG_LEVEL),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)


def create_app(app_settings: Optional[Settings] = None) -> FastAPI:
    """Construir la aplicación con la configuración dada"""
    app_settings = app_settings or default_settings

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Lifecycle events de la aplicación"""
        logger.info("Iniciando aplicación...")
        registry = getattr(app.state, "registry", None)
        if registry is None:
            registry = await build_registry_backend(app_settings)
            app.state.registry = registry
        redis_client = await init_redis(app_settings.REDIS_URL)
        guard = build_duplicate_guard(
            app_settings.DUPLICATE_WINDOW_SECONDS,
            app_settings.DUPLICATE_MAX_ENTRIES,
            redis_client=redis_client,
        )
        app.state.verification_service = TicketVerificationService(
            registry=registry,
            network_id=app_settings.NETWORK_ID,
            verifier_id=app_settings.GATEWAY_VERIFIER_ID,
            rate_limiter=ScanRateLimiter(
                app_settings.SCAN_RATE_LIMIT,
                app_settings.SCAN_RATE_WINDOW_SECONDS,
                storage_uri=app_settings.RATE_LIMIT_STORAGE_URI,
            ),
            guard=guard,
            breaker=CircuitBreaker(
                failure_threshold=app_settings.CIRCUIT_FAILURE_THRESHOLD,
                recovery_timeout=app_settings.CIRCUIT_RECOVERY_SECONDS,
            ),
            registry_timeout=app_settings.REGISTRY_TIMEOUT_SECONDS,
        )
        logger.info(f"Aplicación iniciada (red: {app_settings.NETWORK_ID})")
        yield
        logger.info("Cerrando aplicación...")
        # Escrituras ya emitidas al registro se completan antes de cerrar
        await app.state.verification_service.drain()
        await guard.close()
        await registry.shutdown()
        await close_redis()
        await close_db()
        logger.info("Aplicación cerrada")

    app = FastAPI(
        title="Ticket Gate API",
        description="Registro de tickets de uso único y gateway de verificación en puerta",
        version="1.0.0",
        lifespan=lifespan
    )
    app.state.settings = app_settings

    # En desarrollo, permitir todos los orígenes para facilitar testing
    if app_settings.APP_ENV == "development":
        allow_origins = ["*"]
        allow_credentials = False  # No se puede usar credentials con allow_origins=["*"]
    else:
        allow_origins = [origin.strip() for origin in app_settings.CORS_ORIGINS.split(",") if origin.strip()]
        allow_credentials = True
        logger.info(f"CORS origins configurados: {allow_origins}")

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allow_origins,
        allow_credentials=allow_credentials,
        allow_methods=["GET", "POST", "PUT", "OPTIONS"],
        allow_headers=["*"],
        max_age=3600,  # Cache preflight requests por 1 hora
    )

    app.state.limiter = limiter
    app.add_exception_handler(RateLimitExceeded, rate_limit_exceeded_handler)
    app.add_exception_handler(RegistryError, registry_error_handler)

    app.include_router(validation_router, prefix="/api/v1/tickets", tags=["tickets"])
    # Con backend http el registro vive en otro servicio
    if app_settings.REGISTRY_BACKEND.lower() != "http":
        app.include_router(registry_router, prefix="/api/v1/registries", tags=["registries"])

    @app.get("/health")
    async def health():
        """Health check endpoint"""
        return {"status": "ok", "service": "ticket-gate-api", "network": app_settings.NETWORK_ID}

    @app.get("/ready")
    async def ready():
        """Ready check endpoint - verifica el registro"""
        registry = getattr(app.state, "registry", None)
        if registry is None:
            return {"status": "not ready", "registry": "not initialized"}
        return {"status": "ready", "registry": app_settings.REGISTRY_BACKEND}

    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host="0.0.0.0",
        port=8000,
        reload=default_settings.APP_DEBUG
    )
