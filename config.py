"""Configuration loading from a YAML file with environment-variable overrides."""

from __future__ import annotations

import logging
import os
import secrets
from decimal import Decimal

import yaml

from config_models import AppConfig, BillingConfig, EmailConfig, SchedulerConfig

logger = logging.getLogger(__name__)


def _env_bool(name: str, fallback) -> bool:
    return os.environ.get(name, str(fallback)).lower() in ("true", "1", "yes")


def _env_int(name: str, fallback) -> int:
    return int(os.environ.get(name, fallback))


def load_config():
    """Load configuration from *config.yaml* with env-var overrides.

    Environment variables take precedence over config.yaml values.
    Returns (AppConfig, EmailConfig, BillingConfig, SchedulerConfig, database_uri).
    """
    config_path = os.environ.get("CONFIG_PATH", "config.yaml")
    raw: dict = {}
    if os.path.exists(config_path):
        with open(config_path, "r", encoding="utf-8") as handle:
            raw = yaml.safe_load(handle) or {}

    app_cfg = raw.get("app", {})
    email_cfg = raw.get("email", {})
    billing_cfg = raw.get("billing", {})
    scheduler_cfg = raw.get("scheduler", {})
    db_cfg = raw.get("database", {})

    secret_key = os.environ.get("APP_SECRET_KEY", app_cfg.get("secret_key", ""))
    if not secret_key or secret_key == "change-me":
        secret_key = secrets.token_hex(32)
        logger.warning(
            "Using auto-generated secret key. Set APP_SECRET_KEY env var "
            "or app.secret_key in config.yaml for stable sessions across restarts."
        )

    currency = os.environ.get("BILLING_CURRENCY", billing_cfg.get("currency", "USD"))

    return (
        AppConfig(
            name=app_cfg.get("name", "Entitlement Engine"),
            secret_key=secret_key,
        ),
        EmailConfig(
            enabled=_env_bool("EMAIL_ENABLED", email_cfg.get("enabled", False)),
            smtp_host=os.environ.get("SMTP_HOST", email_cfg.get("smtp_host", "")),
            smtp_port=_env_int("SMTP_PORT", email_cfg.get("smtp_port", 587)),
            smtp_user=os.environ.get("SMTP_USER", email_cfg.get("smtp_user", "")),
            smtp_password=os.environ.get("SMTP_PASSWORD", email_cfg.get("smtp_password", "")),
            sender=os.environ.get("EMAIL_SENDER", email_cfg.get("sender", "")),
        ),
        BillingConfig(
            stripe_secret_key=os.environ.get(
                "STRIPE_SECRET_KEY", billing_cfg.get("stripe_secret_key", "")
            ),
            stripe_webhook_secret=os.environ.get(
                "STRIPE_WEBHOOK_SECRET", billing_cfg.get("stripe_webhook_secret", "")
            ),
            monthly_price_id=os.environ.get(
                "STRIPE_MONTHLY_PRICE_ID", billing_cfg.get("monthly_price_id", "")
            ),
            annual_price_id=os.environ.get(
                "STRIPE_ANNUAL_PRICE_ID", billing_cfg.get("annual_price_id", "")
            ),
            currency=currency,
            license_rate=Decimal(
                str(os.environ.get("BILLING_LICENSE_RATE", billing_cfg.get("license_rate", "20.00")))
            ),
            default_trial_days=_env_int(
                "BILLING_TRIAL_DAYS", billing_cfg.get("default_trial_days", 14)
            ),
            max_retries=_env_int("BILLING_MAX_RETRIES", billing_cfg.get("max_retries", 3)),
            retry_delay_minutes=_env_int(
                "BILLING_RETRY_DELAY_MINUTES", billing_cfg.get("retry_delay_minutes", 15)
            ),
            max_retry_backoff_hours=_env_int(
                "BILLING_MAX_RETRY_BACKOFF_HOURS", billing_cfg.get("max_retry_backoff_hours", 24)
            ),
            grace_period_days=_env_int(
                "BILLING_GRACE_PERIOD_DAYS", billing_cfg.get("grace_period_days", 7)
            ),
            expiring_soon_days=_env_int(
                "BILLING_EXPIRING_SOON_DAYS", billing_cfg.get("expiring_soon_days", 7)
            ),
            gateway_timeout_seconds=_env_int(
                "STRIPE_TIMEOUT_SECONDS", billing_cfg.get("gateway_timeout_seconds", 20)
            ),
            webhook_tolerance_seconds=_env_int(
                "STRIPE_WEBHOOK_TOLERANCE", billing_cfg.get("webhook_tolerance_seconds", 300)
            ),
        ),
        SchedulerConfig(
            broker_url=os.environ.get(
                "CELERY_BROKER_URL", scheduler_cfg.get("broker_url", "redis://localhost:6379/1")
            ),
            result_backend=os.environ.get(
                "CELERY_RESULT_BACKEND",
                scheduler_cfg.get("result_backend", "redis://localhost:6379/2"),
            ),
            renewal_lookahead_days=_env_int(
                "BILLING_RENEWAL_LOOKAHEAD_DAYS", scheduler_cfg.get("renewal_lookahead_days", 1)
            ),
            expiry_notice_days=_env_int(
                "BILLING_EXPIRY_NOTICE_DAYS", scheduler_cfg.get("expiry_notice_days", 7)
            ),
            timezone=scheduler_cfg.get("timezone", "UTC"),
        ),
        os.environ.get("DATABASE_URI", db_cfg.get("uri", "sqlite:///entitlements.db")),
    )


def enable_sqlite_fks(dbapi_conn, _connection_record):
    """Enable foreign key enforcement for SQLite connections."""
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()
