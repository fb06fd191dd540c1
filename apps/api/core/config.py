"""
Configuración centralizada de la aplicación.
Lee todas las variables de entorno usando pydantic-settings.
NUNCA hardcodear valores sensibles aquí.
"""

from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
    )

    # --- Base de datos -------------------------------------------------------
    # URL asíncrona (asyncpg) para el servidor FastAPI
    DATABASE_URL: str

    # URL síncrona (psycopg2) usada exclusivamente por Alembic para migraciones
    DATABASE_SYNC_URL: str

    # --- Seguridad -----------------------------------------------------------
    # Secreto JWT del proveedor de autenticación (HS256). El "sub" es el UUID del usuario.
    SECRET_KEY: str

    # Tiempo de vida de los tokens emitidos por create_access_token (tests/tooling)
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60

    # --- Aplicación ----------------------------------------------------------
    APP_ENV: str = "production"
    LOG_LEVEL: str = "INFO"
    LOG_FORMAT: str = "console"

    # Orígenes CORS permitidos (cadena separada por comas)
    CORS_ORIGINS: str = "http://localhost:5173"

    # --- Cotación y aportes --------------------------------------------------
    # Refresco periódico de la cotación actual (la UI original usaba 5 min)
    RATE_REFRESH_MINUTES: int = 5

    # Diferencia máxima (%) aceptada entre la cotación informada y valor/bitcoin
    RATE_TOLERANCE_PCT: float = 5.0

    # Límite de tamaño de las planilhas importadas
    IMPORT_MAX_SIZE_MB: int = 5

    # --- APIs de mercado -----------------------------------------------------
    COINGECKO_API_URL: str = "https://api.coingecko.com/api/v3"
    COINMARKETCAP_API_URL: str = "https://pro-api.coinmarketcap.com/v1"
    # Opcional: sin clave no se intenta el fallback de CoinMarketCap
    CMC_API_KEY: str | None = None
    AWESOMEAPI_URL: str = "https://economia.awesomeapi.com.br"
    FEAR_GREED_API_URL: str = "https://api.alternative.me/fng/"
    HTTP_TIMEOUT_SECONDS: float = 10.0

    # --- Propiedades calculadas ----------------------------------------------
    @property
    def cors_origins_list(self) -> list[str]:
        return [origin.strip() for origin in self.CORS_ORIGINS.split(",") if origin.strip()]

    @property
    def import_max_size_bytes(self) -> int:
        return self.IMPORT_MAX_SIZE_MB * 1024 * 1024

    @field_validator("RATE_REFRESH_MINUTES")
    @classmethod
    def validate_refresh_interval(cls, v: int) -> int:
        if v < 1:
            raise ValueError("RATE_REFRESH_MINUTES debe ser >= 1")
        return v

    @field_validator("RATE_TOLERANCE_PCT")
    @classmethod
    def validate_tolerance(cls, v: float) -> float:
        if not 0 <= v <= 100:
            raise ValueError("RATE_TOLERANCE_PCT debe estar entre 0 y 100")
        return v

    @field_validator("IMPORT_MAX_SIZE_MB")
    @classmethod
    def validate_import_size(cls, v: int) -> int:
        if v <= 0:
            raise ValueError("IMPORT_MAX_SIZE_MB debe ser > 0")
        return v

    @field_validator("APP_ENV")
    @classmethod
    def validate_app_env(cls, v: str) -> str:
        allowed = {"development", "production", "test"}
        if v not in allowed:
            raise ValueError(f"APP_ENV debe ser uno de: {allowed}")
        return v

    @field_validator("LOG_LEVEL")
    @classmethod
    def validate_log_level(cls, v: str) -> str:
        allowed = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if v.upper() not in allowed:
            raise ValueError(f"LOG_LEVEL debe ser uno de: {allowed}")
        return v.upper()

    @field_validator("LOG_FORMAT")
    @classmethod
    def validate_log_format(cls, v: str) -> str:
        if v.lower() not in {"console", "json"}:
            raise ValueError("LOG_FORMAT debe ser 'console' o 'json'")
        return v.lower()


@lru_cache
def get_settings() -> Settings:
    """Instancia singleton de Settings, cacheada para evitar re-lecturas del .env."""
    return Settings()


# Exportación conveniente para importar directamente en otros módulos
settings: Settings = get_settings()
