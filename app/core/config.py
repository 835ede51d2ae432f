from pydantic_settings import BaseSettings
from typing import Optional
from pathlib import Path

# Find .env file - check app/ directory first, then project root
BASE_DIR = Path(__file__).resolve().parent.parent.parent
APP_ENV = BASE_DIR / "app" / ".env"
ROOT_ENV = BASE_DIR / ".env"

# Use app/.env if it exists, otherwise try root .env
env_file = str(APP_ENV) if APP_ENV.exists() else (str(ROOT_ENV) if ROOT_ENV.exists() else ".env")


class Settings(BaseSettings):
    # Database
    DATABASE_URL: str = f"sqlite:///{BASE_DIR / 'rosca.db'}"
    DB_POOL_TIMEOUT: int = 10  # Max wait (seconds) for a pooled connection
    FANOUT_TRANSACTION_TIMEOUT_MS: int = 15000  # Statement timeout for cycle creation / member fan-out

    # Ledger
    CYCLE_NUMBER_MAX_RETRIES: int = 5
    DEFAULT_REPAYMENT_MONTHS: int = 10  # Individual loans outside a rotation

    # Audit
    AUDIT_LOG_ENABLED: bool = True
    AUDIT_LOG_DIR: Optional[str] = None

    # Application
    DEBUG: bool = False
    LOG_LEVEL: str = "INFO"

    class Config:
        env_file = env_file
        case_sensitive = True


settings = Settings()

# Derived paths
LOGS_DIR = Path(settings.AUDIT_LOG_DIR) if settings.AUDIT_LOG_DIR else BASE_DIR / "logs"
