import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")


class Settings(BaseModel):
    """Explicit runtime configuration handed to client constructors."""

    database_url: str
    stripe_secret_key: Optional[str] = None
    stripe_api_version: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None
    jwt_secret: Optional[str] = None
    jwt_algorithm: str = "HS256"
    klaviyo_api_key: Optional[str] = None
    klaviyo_base_url: str = "https://a.klaviyo.com/api"
    klaviyo_revision: str = "2024-06-15"
    klaviyo_purchase_list_id: Optional[str] = None
    mark_paid_attempts: int = 3
    capture_claim_timeout: int = 120
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = os.getenv("DATABASE_URL")
        if not database_url:
            raise RuntimeError("DATABASE_URL is not set. Check your .env file.")

        return cls(
            database_url=database_url,
            stripe_secret_key=os.getenv("STRIPE_SECRET_KEY"),
            stripe_api_version=os.getenv("STRIPE_API_VERSION"),
            stripe_webhook_secret=os.getenv("STRIPE_WEBHOOK_SECRET"),
            jwt_secret=os.getenv("JWT_SECRET"),
            jwt_algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            klaviyo_api_key=os.getenv("KLAVIYO_API_KEY"),
            klaviyo_base_url=os.getenv("KLAVIYO_BASE_URL", "https://a.klaviyo.com/api"),
            klaviyo_revision=os.getenv("KLAVIYO_REVISION", "2024-06-15"),
            klaviyo_purchase_list_id=os.getenv("KLAVIYO_PURCHASE_LIST_ID"),
            mark_paid_attempts=int(os.getenv("MARK_PAID_ATTEMPTS", "3")),
            capture_claim_timeout=int(os.getenv("CAPTURE_CLAIM_TIMEOUT", "120")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )


@lru_cache()
def get_settings() -> Settings:
    return Settings.from_env()
