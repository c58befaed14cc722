from functools import lru_cache
from typing import Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Runtime settings, read from upper-cased environment variables."""

    model_config = SettingsConfigDict(env_ignore_empty=True, extra="ignore")

    database_url: Optional[str] = None
    database_name: Optional[str] = None

    auth_salt: str = "storefront"
    admin_email: Optional[str] = None
    admin_password: Optional[str] = None

    emailjs_service_id: Optional[str] = None
    emailjs_public_key: Optional[str] = None
    emailjs_private_key: Optional[str] = None
    emailjs_template_customer: Optional[str] = None
    emailjs_template_operator: Optional[str] = None
    emailjs_template_lead: Optional[str] = None
    emailjs_template_otp: Optional[str] = None
    operator_email: Optional[str] = None

    firebase_api_key: Optional[str] = None
    lead_verification: str = Field("email", description="email or phone")

    delivery_surcharge: float = Field(100, ge=0)
    currency_symbol: str = "₹"
    max_proof_bytes: int = 5 * 1024 * 1024

    session_idle_seconds: int = Field(24 * 60 * 60, gt=0)

    log_level: str = "INFO"
    port: int = 8000

    @property
    def email_configured(self) -> bool:
        return bool(self.emailjs_service_id and self.emailjs_public_key)


def load_settings() -> Settings:
    return Settings()


@lru_cache
def get_settings() -> Settings:
    return load_settings()
