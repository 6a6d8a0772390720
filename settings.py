from functools import lru_cache
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime configuration, read from environment variables and ``.env``."""

    model_config = SettingsConfigDict(env_file=".env", extra="ignore")

    database_url: Optional[str] = None
    database_name: Optional[str] = None

    # Orders
    shipping_fee: float = Field(30000, ge=0)
    max_shipping_fee: float = Field(200000, ge=0)
    fuzzy_name_match: bool = True
    order_transactions: bool = False

    # Auth
    user_session_days: int = 7
    admin_session_hours: int = 24
    max_login_attempts: int = 5
    lock_minutes: int = 120
    otp_ttl_seconds: int = 300
    otp_max_attempts: int = 3
    otp_resend_seconds: int = 60
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    # Uploads
    upload_dir: str = "uploads"
    public_base_url: str = ""
    max_upload_bytes: int = 5 * 1024 * 1024

    # comma separated
    cors_origins: str = "*"
    debug: bool = False
    log_level: str = "INFO"

    @property
    def cors_origin_list(self) -> List[str]:
        origins = [o.strip() for o in self.cors_origins.split(",") if o.strip()]
        return origins or ["*"]


@lru_cache()
def get_settings() -> Settings:
    return Settings()
