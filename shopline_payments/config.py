import os
from pathlib import Path
from typing import Optional
from urllib.parse import urlparse

from dotenv import load_dotenv
from pydantic import BaseModel

# Force-load .env (Windows-safe, reload-safe)
BASE_DIR = Path(__file__).resolve().parent.parent
load_dotenv(dotenv_path=BASE_DIR / ".env")

SANDBOX_API_URL = "https://api-sandbox.shoplinepayments.com/api/v1"
PRODUCTION_API_URL = "https://api.shoplinepayments.com/api/v1"

# Local gateway ids that route payments through Shopline, legacy ids included.
SHOPLINE_GATEWAY_IDS = (
    "shopline_credit",
    "shopline_credit_subscription",
    "shopline_atm",
    "shopline_jkopay",
    "shopline_applepay",
    "shopline_linepay",
    "shopline_bnpl",
)

# Saved cards and customers live under the credit card gateway.
CUSTOMER_GATEWAY_ID = "shopline_credit"

LOCAL_HOSTS = ("localhost", "127.0.0.1")
LOCAL_SUFFIXES = (".local", ".test", ".dev")


def _flag(value: Optional[str], default: bool = False) -> bool:
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


class GatewayCredentials(BaseModel):
    gateway_id: str = ""
    test_mode: bool = True
    merchant_id: str = ""
    api_key: str = ""
    sign_key: str = ""
    platform_id: Optional[str] = None

    @property
    def api_url(self) -> str:
        return SANDBOX_API_URL if self.test_mode else PRODUCTION_API_URL

    def has_credentials(self) -> bool:
        return bool(self.merchant_id and self.api_key)


class Settings(BaseModel):
    database_url: str = "sqlite:///./shopline_payments.db"
    environment: str = "production"
    public_origin: str = ""
    allow_local_webhooks: bool = False
    expected_api_version: str = "V1"
    timestamp_tolerance_ms: int = 300000

    test_mode: bool = True
    merchant_id: str = ""
    api_key: str = ""
    sign_key: str = ""
    platform_id: Optional[str] = None
    sandbox_merchant_id: str = ""
    sandbox_api_key: str = ""
    sandbox_sign_key: str = ""
    sandbox_platform_id: Optional[str] = None

    http_timeout: float = 30.0
    sync_interval_seconds: int = 3600
    sync_batch_size: int = 50
    sync_window_hours: int = 24
    instruments_cache_ttl: int = 3600

    jwt_secret: str = ""
    log_level: str = "INFO"
    debug: bool = False

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            database_url=os.getenv("DATABASE_URL") or "sqlite:///./shopline_payments.db",
            environment=os.getenv("ENVIRONMENT", "production"),
            public_origin=os.getenv("PUBLIC_ORIGIN", ""),
            allow_local_webhooks=_flag(os.getenv("SHOPLINE_ALLOW_LOCAL_WEBHOOKS")),
            test_mode=_flag(os.getenv("SHOPLINE_TESTMODE"), default=True),
            merchant_id=os.getenv("SHOPLINE_MERCHANT_ID", ""),
            api_key=os.getenv("SHOPLINE_API_KEY", ""),
            sign_key=os.getenv("SHOPLINE_SIGN_KEY", ""),
            platform_id=os.getenv("SHOPLINE_PLATFORM_ID") or None,
            sandbox_merchant_id=os.getenv("SHOPLINE_SANDBOX_MERCHANT_ID", ""),
            sandbox_api_key=os.getenv("SHOPLINE_SANDBOX_API_KEY", ""),
            sandbox_sign_key=os.getenv("SHOPLINE_SANDBOX_SIGN_KEY", ""),
            sandbox_platform_id=os.getenv("SHOPLINE_SANDBOX_PLATFORM_ID") or None,
            http_timeout=float(os.getenv("SHOPLINE_HTTP_TIMEOUT", "30")),
            sync_interval_seconds=int(os.getenv("SHOPLINE_SYNC_INTERVAL", "3600")),
            sync_batch_size=int(os.getenv("SHOPLINE_SYNC_BATCH_SIZE", "50")),
            sync_window_hours=int(os.getenv("SHOPLINE_SYNC_WINDOW_HOURS", "24")),
            instruments_cache_ttl=int(os.getenv("SHOPLINE_INSTRUMENTS_CACHE_TTL", "3600")),
            jwt_secret=os.getenv("JWT_SECRET", ""),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            debug=_flag(os.getenv("SHOPLINE_DEBUG")),
        )

    @property
    def is_production(self) -> bool:
        return self.environment.lower() in ("production", "prod")

    def is_local_origin(self) -> bool:
        host = urlparse(self.public_origin).hostname or ""
        host = host.lower()
        return host in LOCAL_HOSTS or host.endswith(LOCAL_SUFFIXES)

    def skip_webhook_verification(self) -> bool:
        """Local development escape hatch; requires the explicit flag and a dev host."""
        if not self.allow_local_webhooks or self.is_production:
            return False
        return self.is_local_origin()

    def credentials_for(self, gateway_id: Optional[str] = None) -> GatewayCredentials:
        """Credentials for a gateway, with optional SHOPLINE_<GATEWAY>_* env overrides."""
        if self.test_mode:
            base = {
                "merchant_id": self.sandbox_merchant_id,
                "api_key": self.sandbox_api_key,
                "sign_key": self.sandbox_sign_key,
                "platform_id": self.sandbox_platform_id,
            }
            prefix = "SANDBOX_"
        else:
            base = {
                "merchant_id": self.merchant_id,
                "api_key": self.api_key,
                "sign_key": self.sign_key,
                "platform_id": self.platform_id,
            }
            prefix = ""

        if gateway_id:
            gateway = gateway_id.upper()
            for field in ("merchant_id", "api_key", "sign_key", "platform_id"):
                override = os.getenv(f"SHOPLINE_{gateway}_{prefix}{field.upper()}")
                if override:
                    base[field] = override

        return GatewayCredentials(gateway_id=gateway_id or "", test_mode=self.test_mode, **base)


def is_shopline_gateway(gateway_id: Optional[str]) -> bool:
    if not gateway_id:
        return False
    return gateway_id in SHOPLINE_GATEWAY_IDS or gateway_id.startswith("shopline_")


def get_settings() -> Settings:
    return Settings.from_env()
