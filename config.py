import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Settings:
    """Application settings, read from the environment once per app."""

    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "mongodb://localhost:27017"))
    database_name: str = field(default_factory=lambda: os.getenv("DATABASE_NAME", "coursehub_db"))
    environment: str = field(default_factory=lambda: os.getenv("ENVIRONMENT", "development"))
    jwt_secret: str = field(default_factory=lambda: os.getenv("JWT_SECRET", "change-me-in-production"))
    jwt_expires_days: int = field(default_factory=lambda: int(os.getenv("JWT_EXPIRES_DAYS", "7")))
    client_url: str = field(default_factory=lambda: os.getenv("CLIENT_URL", ""))
    mongo_timeout_ms: int = field(default_factory=lambda: int(os.getenv("MONGO_TIMEOUT_MS", "5000")))
    max_enrollments_per_user: int = field(default_factory=lambda: int(os.getenv("MAX_ENROLLMENTS_PER_USER", "3")))
    compensation_retries: int = field(default_factory=lambda: int(os.getenv("COMPENSATION_RETRIES", "3")))
    # Path to a Firebase service-account JSON; enables POST /jwt.
    firebase_credentials: str = field(default_factory=lambda: os.getenv("FIREBASE_CREDENTIALS", ""))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    cookie_secure: bool = field(default_factory=lambda: _env_bool("COOKIE_SECURE", os.getenv("ENVIRONMENT") == "production"))

    @property
    def is_production(self) -> bool:
        return self.environment == "production"

    @property
    def cors_origins(self) -> List[str]:
        origins = ["http://localhost:5173"]
        if self.client_url:
            origins.insert(0, self.client_url)
        return origins

    @property
    def cookie_samesite(self) -> str:
        # Cross-site frontend needs "none", which browsers only accept with Secure.
        return "none" if self.cookie_secure else "strict"
