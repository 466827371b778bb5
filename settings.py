from functools import lru_cache
from typing import Dict, List, Optional

from pydantic_settings import BaseSettings


DEFAULT_ZONE_FEES = {
    "Freetown Central": 25.0,
    "Greater Freetown": 40.0,
    "Western Rural": 60.0,
    "Provinces": 100.0,
}


class Settings(BaseSettings):
    SERVICE_NAME: str = "lwg-orders"
    LOG_LEVEL: str = "INFO"
    CORS_ORIGINS: List[str] = ["*"]

    # Document store
    DATABASE_URL: Optional[str] = None
    DATABASE_NAME: str = "lwg"
    DB_TIMEOUT_MS: int = 5000

    # Admin auth
    SECRET_KEY: str = "secret-key-change-me"
    ACCESS_TOKEN_EXPIRE_MINUTES: int = 60 * 48

    # Orders
    ORDER_REF_PREFIX: str = "LWG"
    STORE_NAME: str = "LWG"
    CURRENCY: str = "NLe"
    DELIVERY_ZONE_FEES: Dict[str, float] = DEFAULT_ZONE_FEES
    RECEIPT_FOOTER: str = "Thank you for your order!"

    # Outbound email
    SMTP_HOST: Optional[str] = None
    SMTP_PORT: int = 587
    SMTP_USER: Optional[str] = None
    SMTP_PASSWORD: Optional[str] = None
    SMTP_USE_SSL: bool = False
    SMTP_STARTTLS: bool = True
    MAIL_FROM: str = "orders@lwgpartnersnetwork.com"
    ADMIN_EMAIL: Optional[str] = None

    # Instant messaging (WhatsApp Cloud API)
    WHATSAPP_API_URL: str = "https://graph.facebook.com/v19.0"
    WHATSAPP_TOKEN: Optional[str] = None
    WHATSAPP_PHONE_ID: Optional[str] = None
    WHATSAPP_TEMPLATE: Optional[str] = None
    WHATSAPP_TEMPLATE_LANG: str = "en_US"
    ADMIN_WHATSAPP: Optional[str] = None

    # Proof-of-payment uploads
    UPLOAD_URL: Optional[str] = None
    UPLOAD_PRESET: Optional[str] = None
    UPLOAD_FOLDER: str = "lwg-proofs"

    HTTP_TIMEOUT: float = 10.0

    class Config:
        env_file = ".env"


@lru_cache
def get_settings() -> Settings:
    return Settings()
