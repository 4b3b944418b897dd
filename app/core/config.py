from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    APP_ENV: str = "development"
    APP_DEBUG: bool = False
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: str = "http://localhost:3000,http://127.0.0.1:3000"

    # Backend del registro: memory, sql o http (registro remoto)
    REGISTRY_BACKEND: str = "memory"
    DATABASE_URL: str = "sqlite+aiosqlite:///./ticket_registry.db"
    REGISTRY_SERVICE_URL: str = "http://localhost:8001"
    REGISTRY_TIMEOUT_SECONDS: float = 5.0

    # Vacío = guard de duplicados en memoria local
    REDIS_URL: str = ""

    JWT_SECRET_KEY: str = "dev-secret-key-change-in-production"
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 30

    # Red configurada del gateway (Sepolia por defecto)
    NETWORK_ID: int = 11155111
    # Identidad con la que el gateway consume tickets en el registro
    GATEWAY_VERIFIER_ID: str = "0x00000000000000000000000000000000000000a1"

    SCAN_RATE_LIMIT: int = 30
    SCAN_RATE_WINDOW_SECONDS: int = 60
    RATE_LIMIT_STORAGE_URI: str = "memory://"

    DUPLICATE_WINDOW_SECONDS: float = 5.0
    DUPLICATE_MAX_ENTRIES: int = 10000

    CIRCUIT_FAILURE_THRESHOLD: int = 5
    CIRCUIT_RECOVERY_SECONDS: int = 30

    class Config:
        env_file = ".env"
        case_sensitive = True
        extra = "ignore"  # Ignorar campos extra en .env que no están en el modelo


settings = Settings()
