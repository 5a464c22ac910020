import os
from dataclasses import dataclass, field
from pathlib import Path

DATA_DIR = Path(__file__).resolve().parents[1] / "data"


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _positive_int_env(name: str, default: int) -> int:
    try:
        value = int(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


def _positive_float_env(name: str, default: float) -> float:
    try:
        value = float(os.getenv(name, str(default)))
    except ValueError:
        return default
    return value if value > 0 else default


@dataclass(frozen=True)
class Settings:
    app_env: str = "development"
    log_level: str = "INFO"
    marketplace_db_path: str = str(DATA_DIR / "marketplace.sqlite3")
    notifications_db_path: str = str(DATA_DIR / "notifications.sqlite3")
    auth_secret: str = "dev-insecure-secret-change-me"
    auth_token_ttl_hours: int = 24
    cors_origins: list[str] = field(default_factory=lambda: ["*"])
    trusted_hosts: list[str] = field(default_factory=lambda: ["*"])
    public_base_url: str = "http://localhost:8000"
    khalti_base_url: str = "https://dev.khalti.com/api/v2"
    khalti_secret_key: str = ""
    khalti_return_url: str = "http://localhost:8000/payments/khalti/callback"
    khalti_website_url: str = "http://localhost:8000"
    gateway_timeout_seconds: float = 15.0
    esewa_secret_key: str = ""
    esewa_product_code: str = "EPAYTEST"
    esewa_init_url: str = "https://rc-epay.esewa.com.np/api/epay/main/v2/form"
    firebase_credentials_path: str = ""

    @property
    def is_production(self) -> bool:
        return self.app_env.lower() == "production"

    @property
    def khalti_mode(self) -> str:
        if not self.khalti_secret_key.strip():
            return "not_configured"
        return "sandbox" if "dev.khalti.com" in self.khalti_base_url.lower() else "production"


def load_settings() -> Settings:
    public_base_url = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").rstrip("/")
    return Settings(
        app_env=os.getenv("APP_ENV", "development"),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        marketplace_db_path=os.getenv("MARKETPLACE_DB_PATH", str(DATA_DIR / "marketplace.sqlite3")),
        notifications_db_path=os.getenv("NOTIFICATIONS_DB_PATH", str(DATA_DIR / "notifications.sqlite3")),
        auth_secret=os.getenv("AUTH_SECRET", "dev-insecure-secret-change-me"),
        auth_token_ttl_hours=_positive_int_env("AUTH_TOKEN_TTL_HOURS", 24),
        cors_origins=_parse_csv_env("CORS_ORIGINS", "*"),
        trusted_hosts=_parse_csv_env("TRUSTED_HOSTS", "*"),
        public_base_url=public_base_url,
        khalti_base_url=os.getenv("KHALTI_BASE_URL", "https://dev.khalti.com/api/v2").rstrip("/"),
        khalti_secret_key=os.getenv("KHALTI_SECRET_KEY", ""),
        khalti_return_url=os.getenv("KHALTI_RETURN_URL", f"{public_base_url}/payments/khalti/callback"),
        khalti_website_url=os.getenv("KHALTI_WEBSITE_URL", public_base_url),
        gateway_timeout_seconds=_positive_float_env("GATEWAY_TIMEOUT_SECONDS", 15.0),
        esewa_secret_key=os.getenv("ESEWA_SECRET_KEY", ""),
        esewa_product_code=os.getenv("ESEWA_PRODUCT_CODE", "EPAYTEST"),
        esewa_init_url=os.getenv("ESEWA_INIT_URL", "https://rc-epay.esewa.com.np/api/epay/main/v2/form"),
        firebase_credentials_path=os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip(),
    )
