# app/core/config.py
from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache
from urllib.parse import quote_plus

from dotenv import load_dotenv


def str_to_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def parse_csv(value: str | None) -> list[str]:
    if not value:
        return []
    return [v.strip() for v in value.split(",") if v.strip()]


def merge_unique(items: list[str]) -> list[str]:
    seen: set[str] = set()
    out: list[str] = []
    for v in items:
        if v in seen:
            continue
        seen.add(v)
        out.append(v)
    return out


@dataclass(frozen=True)
class Settings:
    ENV: str = "dev"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = ""
    DB_HOST: str = ""
    DB_PORT: str = "5432"
    DB_NAME: str = ""
    DB_APP_USER: str = ""
    DB_APP_PASSWORD: str = ""
    DB_MIGRATOR_USER: str = ""
    DB_MIGRATOR_PASSWORD: str = ""
    DB_SSLMODE: str = "require"

    # CORS / URLs
    CORS_ORIGINS: tuple[str, ...] = field(default_factory=tuple)
    FRONTEND_BASE_URL: str = ""
    PUBLIC_BASE_URL: str = ""

    # Stripe
    STRIPE_SECRET_KEY: str = ""
    STRIPE_WEBHOOK_SECRET: str = ""
    STRIPE_DEFAULT_CURRENCY: str = "usd"
    STRIPE_SUCCESS_URL: str = ""
    STRIPE_CANCEL_URL: str = ""

    # Internal callers (scheduler, BFF)
    CRON_SECRET: str = ""
    INTERNAL_API_TOKEN: str = ""

    # Subscription lifecycle
    SUBSCRIPTION_GRACE_PERIOD_DAYS: int = 30
    SWEEP_INTERVAL_SECONDS: int = 3600

    # Rate limiting
    RATE_LIMIT_ENABLED: bool = False
    RATE_LIMIT_BACKEND: str = "memory"  # memory | dynamodb
    RATE_LIMIT_DEFAULT_MAX_REQUESTS: int = 60
    RATE_LIMIT_DEFAULT_WINDOW_SECONDS: int = 60
    DDB_RATE_LIMIT_TABLE: str = ""
    AWS_REGION: str = ""

    # Background jobs
    CELERY_BROKER_URL: str = ""

    @classmethod
    def from_env(cls) -> "Settings":
        # Only load .env for local/dev. In prod, env vars come from the service config.
        env = os.getenv("ENV", "dev").strip().lower()  # dev | prod
        if env != "prod":
            load_dotenv()

        dev_defaults = [
            "http://localhost:5173",
            "http://127.0.0.1:5173",
        ]
        cors_from_env = parse_csv(os.getenv("CORS_ORIGINS"))
        if env == "prod":
            cors_origins = merge_unique(cors_from_env)
        else:
            cors_origins = merge_unique(cors_from_env + dev_defaults)

        if env == "prod":
            frontend_base_url = os.getenv("FRONTEND_BASE_URL", "").strip().rstrip("/")
            public_base_url = os.getenv("PUBLIC_BASE_URL", "").strip().rstrip("/")
        else:
            frontend_base_url = os.getenv("FRONTEND_BASE_URL", "http://localhost:5173").strip().rstrip("/")
            public_base_url = os.getenv("PUBLIC_BASE_URL", "http://localhost:8000").strip().rstrip("/")

        settings = cls(
            ENV=env,
            LOG_LEVEL=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
            DATABASE_URL=os.getenv("DATABASE_URL", "").strip(),
            DB_HOST=os.getenv("DB_HOST", ""),
            DB_PORT=os.getenv("DB_PORT", "5432"),
            DB_NAME=os.getenv("DB_NAME", ""),
            DB_APP_USER=os.getenv("DB_APP_USER", ""),
            DB_APP_PASSWORD=os.getenv("DB_APP_PASSWORD", ""),
            DB_MIGRATOR_USER=os.getenv("DB_MIGRATOR_USER", ""),
            DB_MIGRATOR_PASSWORD=os.getenv("DB_MIGRATOR_PASSWORD", ""),
            DB_SSLMODE=os.getenv("DB_SSLMODE", "require").strip().lower(),
            CORS_ORIGINS=tuple(cors_origins),
            FRONTEND_BASE_URL=frontend_base_url,
            PUBLIC_BASE_URL=public_base_url,
            STRIPE_SECRET_KEY=os.getenv("STRIPE_SECRET_KEY", ""),
            STRIPE_WEBHOOK_SECRET=os.getenv("STRIPE_WEBHOOK_SECRET", ""),
            STRIPE_DEFAULT_CURRENCY=os.getenv("STRIPE_DEFAULT_CURRENCY", "usd").strip().lower() or "usd",
            STRIPE_SUCCESS_URL=os.getenv("STRIPE_SUCCESS_URL", "").strip(),
            STRIPE_CANCEL_URL=os.getenv("STRIPE_CANCEL_URL", "").strip(),
            CRON_SECRET=os.getenv("CRON_SECRET", ""),
            INTERNAL_API_TOKEN=os.getenv("INTERNAL_API_TOKEN", ""),
            SUBSCRIPTION_GRACE_PERIOD_DAYS=int(os.getenv("SUBSCRIPTION_GRACE_PERIOD_DAYS", "30")),
            SWEEP_INTERVAL_SECONDS=int(os.getenv("SWEEP_INTERVAL_SECONDS", "3600")),
            RATE_LIMIT_ENABLED=str_to_bool(os.getenv("RATE_LIMIT_ENABLED"), default=False),
            RATE_LIMIT_BACKEND=os.getenv("RATE_LIMIT_BACKEND", "memory").strip().lower() or "memory",
            RATE_LIMIT_DEFAULT_MAX_REQUESTS=int(os.getenv("RATE_LIMIT_DEFAULT_MAX_REQUESTS", "60")),
            RATE_LIMIT_DEFAULT_WINDOW_SECONDS=int(os.getenv("RATE_LIMIT_DEFAULT_WINDOW_SECONDS", "60")),
            DDB_RATE_LIMIT_TABLE=os.getenv("DDB_RATE_LIMIT_TABLE", "").strip(),
            AWS_REGION=os.getenv("AWS_REGION", "").strip(),
            CELERY_BROKER_URL=os.getenv("CELERY_BROKER_URL", "").strip(),
        )
        # Final: fail fast in prod
        settings._validate_prod()
        return settings

    def _validate_prod(self) -> None:
        if self.ENV != "prod":
            return

        missing: list[str] = []

        if not self.DATABASE_URL:
            if not self.DB_HOST:
                missing.append("DB_HOST")
            if not self.DB_NAME:
                missing.append("DB_NAME")
            if not self.DB_APP_USER:
                missing.append("DB_APP_USER")
            if not self.DB_APP_PASSWORD:
                missing.append("DB_APP_PASSWORD")
            if self.DB_SSLMODE != "require":
                raise RuntimeError("DB_SSLMODE must be 'require' in prod")

        # Webhooks and the scheduler cannot authenticate without these.
        if not self.STRIPE_WEBHOOK_SECRET:
            missing.append("STRIPE_WEBHOOK_SECRET")
        if not self.CRON_SECRET:
            missing.append("CRON_SECRET")

        if not self.PUBLIC_BASE_URL:
            missing.append("PUBLIC_BASE_URL")
        if not self.CORS_ORIGINS:
            missing.append("CORS_ORIGINS")

        cors_joined = ",".join(self.CORS_ORIGINS)
        if "localhost" in cors_joined or "127.0.0.1" in cors_joined:
            raise RuntimeError("CORS_ORIGINS contains localhost/dev origins in prod")

        if self.PUBLIC_BASE_URL and not self.PUBLIC_BASE_URL.startswith("https://"):
            raise RuntimeError("PUBLIC_BASE_URL should be https://... in prod")

        if self.RATE_LIMIT_ENABLED and self.RATE_LIMIT_BACKEND == "memory":
            raise RuntimeError("RATE_LIMIT_BACKEND=memory is not shared across instances; use dynamodb in prod")

        if missing:
            raise RuntimeError(f"Missing required prod env vars: {', '.join(missing)}")

    @property
    def is_prod(self) -> bool:
        return self.ENV == "prod"

    def _build_database_url(self, user: str, password: str) -> str:
        encoded_password = quote_plus(password)
        return (
            f"postgresql+psycopg2://{user}:{encoded_password}"
            f"@{self.DB_HOST}:{self.DB_PORT}/{self.DB_NAME}"
            f"?sslmode={self.DB_SSLMODE}"
        )

    @property
    def database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_APP_USER, self.DB_APP_PASSWORD)

    @property
    def migrations_database_url(self) -> str:
        if self.DATABASE_URL:
            return self.DATABASE_URL
        return self._build_database_url(self.DB_MIGRATOR_USER, self.DB_MIGRATOR_PASSWORD)


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, built once. Routes receive them through Depends(get_settings)."""
    return Settings.from_env()


settings = get_settings()
