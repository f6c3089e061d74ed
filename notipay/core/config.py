# core/config.py
from typing import Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    # ────────────────────────────────
    # 1. APP & ENVIRONMENT
    # ────────────────────────────────
    PROJECT_NAME: str = "NotiPay"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)
    CALLBACK_BASE_URL: str = Field(
        default="http://127.0.0.1:8000",
        description="Public base URL the gateway redirects payers back to"
    )

    # ────────────────────────────────
    # 2. FIREBASE / FIRESTORE
    # ────────────────────────────────
    GOOGLE_APPLICATION_CREDENTIALS: Optional[str] = Field(
        default=None,
        description="Path to Firebase service account JSON"
    )
    # Base64-encoded Firebase service account JSON
    NOTIPAY_FIREBASE_KEY: Optional[str] = Field(
        default=None,
        description="Base64-encoded Firebase service account JSON"
    )
    PAYMENTS_COLLECTION: str = "payments"
    INTENTS_COLLECTION: str = "payment_intents"
    USERS_COLLECTION: str = "users"
    METRICS_COLLECTION: str = "gateway_metrics"
    STORE_TIMEOUT_SECONDS: float = 5.0

    # ────────────────────────────────
    # 3. PAYMENT GATEWAY
    # ────────────────────────────────
    GATEWAY_BASE_URL: str = "https://api.xendit.co"
    GATEWAY_SECRET_KEY: str = Field(default="")
    GATEWAY_WEBHOOK_TOKEN: str = Field(default="")
    GATEWAY_CURRENCY: str = "PHP"
    GATEWAY_CHANNEL_CODE: str = "PH_GCASH"
    GATEWAY_FUNDING_PRODUCT: Literal["charge", "invoice"] = "charge"
    WALLET_COUNTRY_CODE: str = "+63"
    GATEWAY_STATUS_TIMEOUT_SECONDS: float = 10.0
    GATEWAY_CREATE_TIMEOUT_SECONDS: float = 30.0
    GATEWAY_MAX_ATTEMPTS: int = 3
    GATEWAY_BACKOFF_SECONDS: float = 1.0

    # ────────────────────────────────
    # 4. TASK QUEUE (Celery)
    # ────────────────────────────────
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/0")

    # ────────────────────────────────
    # 5. RECONCILIATION
    # ────────────────────────────────
    RECONCILE_ON_STARTUP: bool = True
    RECONCILE_AFTER_SECONDS: int = 15 * 60  # leave in-flight requests alone
    RECONCILE_INTERVAL_MINUTES: int = 15

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )


# Create singleton
settings = Settings()
