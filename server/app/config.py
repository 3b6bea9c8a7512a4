import os
import secrets
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv


@dataclass
class Settings:
    # Database
    database_url: str
    db_pool_min_size: int = 2
    db_pool_max_size: int = 10

    # Server
    port: int = 8000
    cors_origins: list[str] = field(default_factory=list)

    # Recordkeeping
    retention_years: int = 5

    # Auth
    jwt_secret_key: str = ""
    jwt_algorithm: str = "HS256"
    jwt_access_token_expire_minutes: int = 30


# Global settings instance
_settings: Optional[Settings] = None

DEFAULT_CORS_ORIGINS = "http://localhost:5173,http://localhost:3000"
MINIMUM_RETENTION_YEARS = 5


def load_settings() -> Settings:
    global _settings
    load_dotenv()

    database_url = os.getenv("DATABASE_URL", "")
    if not database_url:
        raise ValueError("DATABASE_URL environment variable is required")

    # JWT settings
    jwt_secret_key = os.getenv("JWT_SECRET_KEY", "")
    if not jwt_secret_key:
        # Generate a default for development, but warn
        jwt_secret_key = secrets.token_urlsafe(32)
        print("[WARNING] JWT_SECRET_KEY not set. Using random key (tokens won't survive restarts)")

    retention_years = int(os.getenv("RETENTION_YEARS", str(MINIMUM_RETENTION_YEARS)))
    if retention_years < MINIMUM_RETENTION_YEARS:
        raise ValueError(
            f"RETENTION_YEARS must be at least {MINIMUM_RETENTION_YEARS} (got {retention_years})"
        )

    cors_origins = os.getenv("CORS_ORIGINS", DEFAULT_CORS_ORIGINS)

    _settings = Settings(
        database_url=database_url.strip().strip('"'),
        db_pool_min_size=int(os.getenv("DB_POOL_MIN_SIZE", "2")),
        db_pool_max_size=int(os.getenv("DB_POOL_MAX_SIZE", "10")),
        port=int(os.getenv("PORT", "8000")),
        cors_origins=[origin.strip() for origin in cors_origins.split(",") if origin.strip()],
        retention_years=retention_years,
        jwt_secret_key=jwt_secret_key,
        jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
        jwt_access_token_expire_minutes=int(os.getenv("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", "30")),
    )
    return _settings


def get_settings() -> Settings:
    """Get the loaded settings. Must call load_settings() first."""
    global _settings
    if _settings is None:
        raise RuntimeError("Settings not initialized. Call load_settings() first.")
    return _settings
