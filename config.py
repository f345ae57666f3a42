import os
from dataclasses import dataclass, field
from typing import Optional
from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))
    cors_origins: list = field(default_factory=lambda: [
        origin.strip()
        for origin in os.getenv("CORS_ORIGINS", "http://localhost:3000").split(",")
        if origin.strip()
    ])

    # Database settings
    database_file: str = os.getenv("LIBRARY_DB_FILE", "library.db")
    database_timeout: float = float(os.getenv("DATABASE_TIMEOUT", "30"))

    # Security settings
    secret_key: str = os.getenv("SECRET_KEY", "your-secret-key-change-this-in-production")
    jwt_secret_key: str = os.getenv("JWT_SECRET_KEY", secret_key)
    jwt_algorithm: str = os.getenv("JWT_ALGORITHM", "HS256")
    jwt_expiration_minutes: int = int(os.getenv("JWT_EXPIRATION_MINUTES", "60"))
    min_password_length: int = int(os.getenv("MIN_PASSWORD_LENGTH", "8"))

    # Borrowing rules
    loan_period_days: int = int(os.getenv("LOAN_PERIOD_DAYS", "14"))
    fine_per_day: float = float(os.getenv("FINE_PER_DAY", "0.5"))
    default_max_books: int = int(os.getenv("DEFAULT_MAX_BOOKS", "3"))

    # Membership rules
    default_membership_months: int = int(os.getenv("DEFAULT_MEMBERSHIP_MONTHS", "12"))
    membership_number_prefix: str = os.getenv("MEMBERSHIP_NUMBER_PREFIX", "MEM")
    membership_number_max_attempts: int = int(os.getenv("MEMBERSHIP_NUMBER_MAX_ATTEMPTS", "20"))

    # Book catalog
    serial_number_prefix: str = os.getenv("SERIAL_NUMBER_PREFIX", "BOOK")

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Membership Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_flag("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Seed admin used by `main.py create-admin` when no options are given
    admin_email: Optional[str] = os.getenv("ADMIN_EMAIL")
    admin_password: Optional[str] = os.getenv("ADMIN_PASSWORD")


settings = Settings()
