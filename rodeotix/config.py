from __future__ import annotations
import os
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


def _env(name: str, default: Optional[str] = None) -> Optional[str]:
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def _env_bool(name: str, default: bool = False) -> bool:
    value = _env(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


# ----------------------------
# Settings (read once at process start, then injected)
# ----------------------------
@dataclass(frozen=True)
class Settings:
    database_url: str
    app_url: str = "http://localhost:8000"
    log_level: str = "INFO"

    # 'stripe' | 'moneris' | 'mock'
    payment_provider: str = "mock"
    currency: str = "cad"
    tax_rate: Decimal = Decimal("0.13")
    bar_credit_price: Decimal = Decimal("7.00")
    merch_flat_shipping: Decimal = Decimal("5.00")
    gateway_timeout: float = 10.0

    # 'sql' | 'redis'
    dedup_backend: str = "sql"
    redis_url: str = "redis://127.0.0.1:6379"
    db_gate_limit: Optional[int] = None
    db_pool_size: int = 10
    db_max_overflow: int = 10
    db_pool_timeout: int = 30

    session_secret: str = "dev-secret-change-me"
    staff_password: str = "rodeo-staff"
    staff_token: Optional[str] = None

    stripe_secret_key: Optional[str] = None
    stripe_webhook_secret: Optional[str] = None

    moneris_store_id: Optional[str] = None
    moneris_api_token: Optional[str] = None
    moneris_checkout_id: Optional[str] = None
    moneris_environment: str = "prod"
    moneris_webhook_token: Optional[str] = None
    moneris_allow_unsigned: bool = False

    mock_secret: str = "supersecret"
    mock_webhook_url: str = "http://localhost:8000/payments/webhook/mock"

    railway_url: str = "https://rodeo-fresh-production.up.railway.app"
    railway_email: Optional[str] = None
    railway_password: Optional[str] = None

    resend_api_key: Optional[str] = None
    email_from: str = "Holmdale Rodeo <tickets@holmdalerodeo.ca>"

    shiptime_url: str = "https://sandboxapi.shiptime.com/rest"
    shiptime_username: Optional[str] = None
    shiptime_password: Optional[str] = None
    shipping_origin_postal: str = "K0A1K0"

    @classmethod
    def from_env(cls) -> "Settings":
        database_url = _env("DATABASE_URL")
        if database_url is None:
            raise RuntimeError("DATABASE_URL is required")
        gate = _env("DB_GATE_LIMIT")
        return cls(
            database_url=database_url,
            app_url=_env("APP_URL", cls.app_url).rstrip("/"),
            log_level=_env("LOG_LEVEL", cls.log_level).upper(),
            payment_provider=_env(
                "PAYMENT_PROVIDER", cls.payment_provider
            ).lower(),
            currency=_env("CURRENCY", cls.currency).lower(),
            tax_rate=Decimal(_env("TAX_RATE", str(cls.tax_rate))),
            bar_credit_price=Decimal(
                _env("BAR_CREDIT_PRICE", str(cls.bar_credit_price))
            ),
            merch_flat_shipping=Decimal(
                _env("MERCH_FLAT_SHIPPING", str(cls.merch_flat_shipping))
            ),
            gateway_timeout=float(
                _env("GATEWAY_TIMEOUT", str(cls.gateway_timeout))
            ),
            dedup_backend=_env("DEDUP_BACKEND", cls.dedup_backend).lower(),
            redis_url=_env("REDIS_URL", cls.redis_url),
            db_gate_limit=int(gate) if gate else None,
            db_pool_size=int(_env("DB_POOL_SIZE", str(cls.db_pool_size))),
            db_max_overflow=int(
                _env("DB_MAX_OVERFLOW", str(cls.db_max_overflow))
            ),
            db_pool_timeout=int(
                _env("DB_POOL_TIMEOUT", str(cls.db_pool_timeout))
            ),
            session_secret=_env("SESSION_SECRET", cls.session_secret),
            staff_password=_env("STAFF_PASSWORD", cls.staff_password),
            staff_token=_env("STAFF_TOKEN"),
            stripe_secret_key=_env("STRIPE_SECRET_KEY"),
            stripe_webhook_secret=_env("STRIPE_WEBHOOK_SECRET"),
            moneris_store_id=_env("MONERIS_STORE_ID"),
            moneris_api_token=_env("MONERIS_API_TOKEN"),
            moneris_checkout_id=_env("MONERIS_CHECKOUT_ID"),
            moneris_environment=_env(
                "MONERIS_ENVIRONMENT", cls.moneris_environment
            ),
            moneris_webhook_token=_env("MONERIS_WEBHOOK_TOKEN"),
            moneris_allow_unsigned=_env_bool("MONERIS_ALLOW_UNSIGNED"),
            mock_secret=_env("MOCK_SECRET", cls.mock_secret),
            mock_webhook_url=_env("MOCK_WEBHOOK_URL", cls.mock_webhook_url),
            railway_url=_env("RAILWAY_URL", cls.railway_url).rstrip("/"),
            railway_email=_env("RAILWAY_EMAIL"),
            railway_password=_env("RAILWAY_PASSWORD"),
            resend_api_key=_env("RESEND_API_KEY"),
            email_from=_env("EMAIL_FROM", cls.email_from),
            shiptime_url=_env("SHIPTIME_URL", cls.shiptime_url).rstrip("/"),
            shiptime_username=_env("SHIPTIME_USERNAME"),
            shiptime_password=_env("SHIPTIME_PASSWORD"),
            shipping_origin_postal=_env(
                "SHIPPING_ORIGIN_POSTAL", cls.shipping_origin_postal
            ),
        )
