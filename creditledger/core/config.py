from functools import lru_cache
from typing import Any, List

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

_DEFAULT_CORS = ["http://localhost:3000", "http://localhost:5173"]


def _parse_cors_origins(v: Any) -> List[str]:
    try:
        if v is None or v == "":
            return _DEFAULT_CORS.copy()
        if isinstance(v, list):
            return [x for x in v if isinstance(x, str) and x.strip()]
        s = str(v).strip()
        if not s:
            return _DEFAULT_CORS.copy()
        if s.startswith("["):
            import json
            out = json.loads(s)
            return [x for x in out if isinstance(x, str) and x.strip()] or _DEFAULT_CORS.copy()
        return [x.strip() for x in s.split(",") if x.strip()] or _DEFAULT_CORS.copy()
    except ValueError:
        return _DEFAULT_CORS.copy()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
    )

    # App
    env: str = Field(default="development", description="ENV")
    debug: bool = Field(default=False, description="DEBUG")
    secret_key: str = Field(default="change-me-in-production-min-32-chars")

    # Ledger backend: "mongo" | "memory"
    ledger_backend: str = Field(default="mongo", alias="LEDGER_BACKEND")

    # MongoDB
    mongodb_uri: str = Field(default="mongodb://localhost:27017", alias="MONGODB_URI")
    mongodb_db_name: str = Field(default="creditledger", alias="MONGODB_DB_NAME")
    # Multi-document transactions need a replica set
    mongodb_transactions: bool = Field(default=True, alias="MONGODB_TRANSACTIONS")

    # Redis
    redis_url: str = Field(default="redis://localhost:6379/0", alias="REDIS_URL")

    # Razorpay
    razorpay_key_id: str = Field(default="", alias="RAZORPAY_KEY_ID")
    razorpay_key_secret: str = Field(default="", alias="RAZORPAY_KEY_SECRET")
    razorpay_webhook_secret: str = Field(default="", alias="RAZORPAY_WEBHOOK_SECRET")
    default_currency: str = Field(default="INR", alias="DEFAULT_CURRENCY")

    # Workflow engine (n8n)
    workflow_engine_url: str = Field(default="", alias="WORKFLOW_ENGINE_URL")
    workflow_engine_api_key: str = Field(default="", alias="WORKFLOW_ENGINE_API_KEY")
    workflow_timeout_seconds: float = Field(default=300.0, alias="WORKFLOW_TIMEOUT_SECONDS")

    # Rate limiting: backend "memory" | "redis"
    rate_limit_backend: str = Field(default="memory", alias="RATE_LIMIT_BACKEND")
    rate_limit_sweep_seconds: float = 60.0
    rate_limit_default_max: int = 100
    rate_limit_default_window_seconds: int = 60
    rate_limit_payment_max: int = 10
    rate_limit_payment_window_seconds: int = 60
    rate_limit_workflow_max: int = 30
    rate_limit_workflow_window_seconds: int = 60
    rate_limit_auth_max: int = 5
    rate_limit_auth_window_seconds: int = 60

    # Peers whose X-Forwarded-For / X-Real-IP headers are believed; "*" trusts every peer
    trusted_proxies_raw: str = Field(default="", alias="TRUSTED_PROXIES", description="Comma-separated hosts")

    # Sentry
    sentry_dsn: str | None = Field(default=None, alias="SENTRY_DSN")

    # CORS: env as string, exposed as list
    cors_origins_raw: str = Field(
        default="http://localhost:3000,http://localhost:5173",
        alias="CORS_ORIGINS",
        description="Comma-separated or JSON list",
    )

    @property
    def cors_origins(self) -> List[str]:
        return _parse_cors_origins(getattr(self, "cors_origins_raw", None))

    @property
    def payments_configured(self) -> bool:
        return bool(self.razorpay_key_id and self.razorpay_key_secret)

    @property
    def trusted_proxies(self) -> frozenset[str]:
        return frozenset(h.strip() for h in self.trusted_proxies_raw.split(",") if h.strip())


@lru_cache
def get_settings() -> Settings:
    return Settings()
