import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).lower() in ("true", "1", "yes")


@dataclass
class Settings:
    # API settings
    api_host: str = os.getenv("API_HOST", "127.0.0.1")
    api_port: int = int(os.getenv("API_PORT", "8000"))

    # Database settings
    db_file: str = os.getenv("LENDING_DB_FILE", "lending.db")
    db_timeout: float = float(os.getenv("DB_TIMEOUT", "5.0"))  # seconds to wait on a locked database

    # Lending rules
    default_loan_days: int = int(os.getenv("DEFAULT_LOAN_DAYS", "14"))
    reconcile_grace_seconds: int = int(os.getenv("RECONCILE_GRACE_SECONDS", "30"))

    # Pagination settings
    default_page_size: int = int(os.getenv("DEFAULT_PAGE_SIZE", "10"))
    max_page_size: int = int(os.getenv("MAX_PAGE_SIZE", "100"))

    # Reporting
    popular_books_limit: int = int(os.getenv("POPULAR_BOOKS_LIMIT", "10"))

    # Logging
    log_level: str = os.getenv("LOG_LEVEL", "INFO").upper()

    # Application settings
    app_name: str = os.getenv("APP_NAME", "Library Lending Service")
    app_version: str = os.getenv("APP_VERSION", "1.0.0")
    debug: bool = _env_bool("DEBUG")
    environment: str = os.getenv("ENVIRONMENT", "development")


settings = Settings()
