from dataclasses import dataclass
from decimal import Decimal


@dataclass
class AppConfig:
    name: str
    secret_key: str


@dataclass
class EmailConfig:
    enabled: bool
    smtp_host: str
    smtp_port: int
    smtp_user: str
    smtp_password: str
    sender: str


@dataclass
class BillingConfig:
    stripe_secret_key: str
    stripe_webhook_secret: str
    monthly_price_id: str
    annual_price_id: str
    currency: str
    license_rate: Decimal
    default_trial_days: int
    max_retries: int
    retry_delay_minutes: int
    max_retry_backoff_hours: int
    grace_period_days: int
    expiring_soon_days: int
    gateway_timeout_seconds: int
    webhook_tolerance_seconds: int


@dataclass
class SchedulerConfig:
    broker_url: str
    result_backend: str
    renewal_lookahead_days: int
    expiry_notice_days: int
    timezone: str
