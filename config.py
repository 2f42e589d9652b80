import os
from dataclasses import dataclass, field
from typing import List

from dotenv import load_dotenv

load_dotenv()


def _split(value: str) -> List[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


@dataclass
class Settings:
    # API
    app_name: str = os.getenv("APP_NAME", "Library Lending API")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    api_host: str = os.getenv("API_HOST", "0.0.0.0")
    api_port: int = int(os.getenv("PORT", "8000"))
    cors_origins: List[str] = field(default_factory=lambda: _split(os.getenv("CORS_ORIGINS", "*")))

    # Database
    database_url: str = os.getenv("DATABASE_URL", "mongodb://localhost:27017")
    database_name: str = os.getenv("DATABASE_NAME", "library")

    # Security
    secret_key: str = os.getenv("SECRET_KEY", "dev-secret")
    token_expiration_hours: int = int(os.getenv("TOKEN_EXPIRATION_HOURS", "720"))  # 30 days
    admin_email: str = os.getenv("ADMIN_EMAIL", "admin@example.com")

    # Lending
    default_borrowing_limit: int = int(os.getenv("DEFAULT_BORROWING_LIMIT", "2"))

    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()


settings = Settings()
