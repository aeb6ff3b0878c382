# core/config.py
from dataclasses import dataclass
from typing import List, Literal, Optional

from pydantic import Field
from pydantic_settings import BaseSettings

from app.core.errors import ConfigurationError

Environment = Literal["sandbox", "production"]

MPESA_BASE_URLS = {
    "sandbox": "https://sandbox.safaricom.co.ke",
    "production": "https://api.safaricom.co.ke",
}

# Safaricom's published callback source addresses
SAFARICOM_IPS = [
    "196.201.214.200",
    "196.201.214.206",
    "196.201.213.114",
    "196.201.214.207",
    "196.201.214.208",
]


@dataclass(frozen=True)
class MpesaCredentials:
    """Everything needed to talk to one Daraja environment."""
    environment: str
    base_url: str
    consumer_key: str
    consumer_secret: str
    shortcode: Optional[str]
    passkey: Optional[str]
    initiator_name: Optional[str]
    security_credential: Optional[str]


class Settings(BaseSettings):
    # ────────────────────────────────
    # 1. APP & ENVIRONMENT
    # ────────────────────────────────
    PROJECT_NAME: str = "Malipo"
    ENVIRONMENT: str = Field(default="development")
    DEBUG: bool = Field(default=True)
    TIMEZONE: str = Field(default="Africa/Nairobi", description="IANA zone used for day boundaries")

    # ────────────────────────────────
    # 2. FIREBASE / FIRESTORE
    # ────────────────────────────────
    # Base64-encoded Firebase service account JSON
    FIREBASE_KEY: Optional[str] = Field(
        default=None,
        description="Base64-encoded Firebase service account JSON"
    )
    STORE_TIMEOUT: float = 10.0

    # ────────────────────────────────
    # 3. M-PESA (Daraja) SANDBOX
    # ────────────────────────────────
    MPESA_SANDBOX_CONSUMER_KEY: Optional[str] = None
    MPESA_SANDBOX_CONSUMER_SECRET: Optional[str] = None
    MPESA_SANDBOX_SHORTCODE: str = "174379"
    MPESA_SANDBOX_PASSKEY: str = "bfb279f9aa9bdbcf158e97dd71a467cd2e0c893059b10f78e6b72ada1ed2c919"
    MPESA_SANDBOX_INITIATOR_NAME: str = "testapi"
    MPESA_SANDBOX_SECURITY_CREDENTIAL: Optional[str] = None

    # ────────────────────────────────
    # 4. M-PESA (Daraja) PRODUCTION
    # ────────────────────────────────
    MPESA_PROD_CONSUMER_KEY: Optional[str] = None
    MPESA_PROD_CONSUMER_SECRET: Optional[str] = None
    MPESA_PROD_SHORTCODE: Optional[str] = None
    MPESA_PROD_PASSKEY: Optional[str] = None
    MPESA_PROD_INITIATOR_NAME: Optional[str] = None
    MPESA_PROD_SECURITY_CREDENTIAL: Optional[str] = None

    # ────────────────────────────────
    # 5. CALLBACKS
    # ────────────────────────────────
    MPESA_CALLBACK_BASE_URL: str = Field(
        default="http://127.0.0.1:8000/api",
        description="Public base URL Safaricom posts results to"
    )
    MPESA_VALIDATE_IP: bool = False
    MPESA_ALLOWED_IPS: List[str] = Field(default_factory=lambda: list(SAFARICOM_IPS))
    MPESA_HTTP_TIMEOUT: float = 30.0

    # Create a customer profile on first completed settlement for an unknown phone
    CUSTOMER_UPSERT_ON_SETTLE: bool = True

    # ────────────────────────────────
    # 6. TASK QUEUE (Celery)
    # ────────────────────────────────
    CELERY_BROKER_URL: str = Field(default="redis://localhost:6379/0")
    CELERY_RESULT_BACKEND: str = Field(default="redis://localhost:6379/0")

    class Config:
        case_sensitive = False
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    def credentials_for(self, environment: str) -> MpesaCredentials:
        """
        Resolve the credential set for one environment.
        Raises ConfigurationError when the consumer key pair is absent.
        """
        if environment not in MPESA_BASE_URLS:
            raise ConfigurationError(f"Unknown M-Pesa environment: {environment}")

        prefix = "MPESA_PROD" if environment == "production" else "MPESA_SANDBOX"
        key = getattr(self, f"{prefix}_CONSUMER_KEY")
        secret = getattr(self, f"{prefix}_CONSUMER_SECRET")
        if not key or not secret:
            raise ConfigurationError(f"M-Pesa {environment} credentials not configured")

        return MpesaCredentials(
            environment=environment,
            base_url=MPESA_BASE_URLS[environment],
            consumer_key=key,
            consumer_secret=secret,
            shortcode=getattr(self, f"{prefix}_SHORTCODE"),
            passkey=getattr(self, f"{prefix}_PASSKEY"),
            initiator_name=getattr(self, f"{prefix}_INITIATOR_NAME"),
            security_credential=getattr(self, f"{prefix}_SECURITY_CREDENTIAL"),
        )

    def callback_url(self, path: str) -> str:
        return f"{self.MPESA_CALLBACK_BASE_URL.rstrip('/')}/{path.lstrip('/')}"


# Create singleton
settings = Settings()


def get_settings() -> Settings:
    return settings
