"""SQLAlchemy models, status enums and role-permission mapping."""

from __future__ import annotations

import enum

from extensions import db
from utils import as_utc, utc_now

# ---------------------------------------------------------------------------
# Role / Permission mapping
# ---------------------------------------------------------------------------

ROLE_PERMISSIONS: dict[str, set[str]] = {
    "owner": {"manage_billing", "manage_licenses"},
    "admin": {"manage_billing", "manage_licenses"},
    "manager": {"manage_licenses"},
    "member": set(),
}


# ---------------------------------------------------------------------------
# Status enums
# ---------------------------------------------------------------------------

class SubscriptionStatus(str, enum.Enum):
    TRIAL = "trial"
    PENDING_PAYMENT = "pending_payment"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELLED = "cancelled"
    EXPIRED = "expired"


class BillingCycle(str, enum.Enum):
    MONTHLY = "monthly"
    ANNUAL = "annual"


class LicenseStatus(str, enum.Enum):
    ACTIVE = "active"
    REVOKED = "revoked"
    EXPIRED = "expired"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"


class PaymentType(str, enum.Enum):
    INITIAL = "initial"
    RENEWAL = "renewal"
    MANUAL = "manual"
    REFUND = "refund"
    ADJUSTMENT = "adjustment"


# Money was collected; failures and retries can no longer apply.
PAID_PAYMENT_STATUSES = {
    PaymentStatus.COMPLETED,
    PaymentStatus.PARTIALLY_REFUNDED,
    PaymentStatus.REFUNDED,
}


def _enum_column(enum_cls, **kwargs):
    """String-backed enum column storing the member *values*."""
    return db.Column(
        db.Enum(
            enum_cls,
            native_enum=False,
            length=30,
            values_callable=lambda members: [m.value for m in members],
            validate_strings=True,
        ),
        **kwargs,
    )


# ---------------------------------------------------------------------------
# Organization & users
# ---------------------------------------------------------------------------

class Organization(db.Model):
    """A tenant that owns one subscription lineage and a pool of licenses."""
    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(120), nullable=False)
    slug = db.Column(db.String(60), unique=True, nullable=False)
    billing_email = db.Column(db.String(120))
    external_customer_id = db.Column(db.String(120), unique=True)
    is_active = db.Column(db.Boolean, default=True)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    memberships = db.relationship(
        "OrganizationMember", backref="organization", cascade="all, delete-orphan"
    )


class User(db.Model):
    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    email = db.Column(db.String(120))
    full_name = db.Column(db.String(120))
    is_active = db.Column(db.Boolean, default=True)
    is_superadmin = db.Column(db.Boolean, default=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)

    memberships = db.relationship(
        "OrganizationMember", backref="user", cascade="all, delete-orphan"
    )


class OrganizationMember(db.Model):
    """Associates users with organizations and carries their role there."""
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organization.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    role = db.Column(db.String(30), nullable=False, default="member")

    __table_args__ = (
        db.UniqueConstraint("organization_id", "user_id", name="uq_organization_member"),
    )


# ---------------------------------------------------------------------------
# Subscription billing
# ---------------------------------------------------------------------------

class Subscription(db.Model):
    """Billing lineage of one organization: capacity, cycle, status, Stripe links."""
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(
        db.Integer, db.ForeignKey("organization.id"), nullable=False, index=True
    )
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    capacity = db.Column(db.Integer, nullable=False, default=0)
    licenses_used = db.Column(db.Integer, nullable=False, default=0)
    license_rate = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), default="USD")
    status = _enum_column(SubscriptionStatus, nullable=False)
    billing_cycle = _enum_column(BillingCycle, nullable=False, default=BillingCycle.MONTHLY)
    current_period_start = db.Column(db.DateTime(timezone=True), nullable=False)
    current_period_end = db.Column(db.DateTime(timezone=True), nullable=False)
    next_billing_date = db.Column(db.DateTime(timezone=True))
    auto_renew = db.Column(db.Boolean, nullable=False, default=True)
    external_customer_id = db.Column(db.String(120), index=True)
    external_subscription_id = db.Column(db.String(120), unique=True)
    external_subscription_item_id = db.Column(db.String(120))
    external_price_id = db.Column(db.String(120))
    is_trial = db.Column(db.Boolean, default=False)
    trial_ends_at = db.Column(db.DateTime(timezone=True))
    cancellation_reason = db.Column(db.String(255))
    cancelled_at = db.Column(db.DateTime(timezone=True))
    last_remote_event_at = db.Column(db.DateTime(timezone=True))
    version = db.Column(db.Integer, nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    updated_at = db.Column(db.DateTime(timezone=True), default=utc_now, onupdate=utc_now)

    organization = db.relationship("Organization", backref="subscriptions")
    user = db.relationship("User")
    licenses = db.relationship("License", backref="subscription", lazy="dynamic")
    payments = db.relationship("PaymentTransaction", backref="subscription", lazy="dynamic")

    __mapper_args__ = {"version_id_col": version}
    __table_args__ = (
        db.Index(
            "uq_subscription_live_org",
            "organization_id",
            unique=True,
            sqlite_where=db.text("status != 'expired'"),
            postgresql_where=db.text("status != 'expired'"),
        ),
        db.CheckConstraint("capacity >= 0", name="ck_subscription_capacity"),
        db.CheckConstraint(
            "current_period_start < current_period_end", name="ck_subscription_period"
        ),
        db.CheckConstraint(
            "(external_subscription_id IS NULL) = (external_subscription_item_id IS NULL)",
            name="ck_subscription_linkage",
        ),
    )

    @property
    def available_licenses(self) -> int:
        return max(0, self.capacity - self.licenses_used)

    @property
    def is_linked(self) -> bool:
        return bool(self.external_subscription_id and self.external_subscription_item_id)

    @property
    def period_end(self):
        return as_utc(self.current_period_end)

    @property
    def cycle_amount(self):
        """Amount billed per cycle: capacity × rate (× 12 for annual)."""
        months = 12 if self.billing_cycle == BillingCycle.ANNUAL else 1
        return self.capacity * self.license_rate * months


class License(db.Model):
    """Entitlement binding one user to one organization's subscription."""
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organization.id"), nullable=False)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False, index=True)
    subscription_id = db.Column(
        db.Integer, db.ForeignKey("subscription.id"), nullable=False, index=True
    )
    license_key = db.Column(db.String(40), unique=True, nullable=False)
    license_type = db.Column(db.String(20), default="full")
    status = _enum_column(LicenseStatus, nullable=False, default=LicenseStatus.ACTIVE)
    valid_from = db.Column(db.DateTime(timezone=True), nullable=False)
    valid_until = db.Column(db.DateTime(timezone=True), nullable=False)
    assigned_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    revoked_at = db.Column(db.DateTime(timezone=True))
    revocation_reason = db.Column(db.String(255))
    expiry_notified_at = db.Column(db.DateTime(timezone=True))

    user = db.relationship("User")

    __table_args__ = (
        db.Index(
            "uq_license_active_member",
            "organization_id",
            "user_id",
            unique=True,
            sqlite_where=db.text("status = 'active'"),
            postgresql_where=db.text("status = 'active'"),
        ),
        db.Index("ix_license_status_valid_until", "status", "valid_until"),
    )


class PaymentTransaction(db.Model):
    """One attempted money movement; ``transaction_id`` is its idempotency key."""
    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.Integer, db.ForeignKey("organization.id"), nullable=False)
    subscription_id = db.Column(db.Integer, db.ForeignKey("subscription.id"), index=True)
    transaction_id = db.Column(db.String(120), unique=True, nullable=False)
    external_charge_id = db.Column(db.String(120), unique=True)
    external_payment_intent_id = db.Column(db.String(120), index=True)
    external_invoice_id = db.Column(db.String(120), index=True)
    payment_type = _enum_column(PaymentType, nullable=False, default=PaymentType.RENEWAL)
    status = _enum_column(PaymentStatus, nullable=False, default=PaymentStatus.PENDING)
    amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    tax_amount = db.Column(db.Numeric(10, 2, asdecimal=True), default=0)
    discount_amount = db.Column(db.Numeric(10, 2, asdecimal=True), default=0)
    total_amount = db.Column(db.Numeric(10, 2, asdecimal=True), nullable=False)
    currency = db.Column(db.String(10), default="USD")
    description = db.Column(db.String(255))
    transaction_date = db.Column(db.DateTime(timezone=True), default=utc_now)
    processed_at = db.Column(db.DateTime(timezone=True))
    refunded_at = db.Column(db.DateTime(timezone=True))
    refund_amount = db.Column(db.Numeric(10, 2, asdecimal=True))
    card_brand = db.Column(db.String(30))
    card_last4 = db.Column(db.String(4))
    card_exp_month = db.Column(db.Integer)
    card_exp_year = db.Column(db.Integer)
    retry_count = db.Column(db.Integer, nullable=False, default=0)
    max_retries = db.Column(db.Integer, nullable=False, default=3)
    next_retry_at = db.Column(db.DateTime(timezone=True))
    error_message = db.Column(db.Text)
    billing_period_end = db.Column(db.DateTime(timezone=True))

    organization = db.relationship("Organization")

    __table_args__ = (
        db.Index("ix_payment_status_next_retry", "status", "next_retry_at"),
    )

    @property
    def is_paid(self) -> bool:
        return self.status in PAID_PAYMENT_STATUSES


class WebhookEvent(db.Model):
    """Processor event ids already handled; the idempotency key of webhook delivery."""
    id = db.Column(db.Integer, primary_key=True)
    event_id = db.Column(db.String(120), unique=True, nullable=False)
    event_type = db.Column(db.String(80), nullable=False)
    event_created_at = db.Column(db.DateTime(timezone=True))
    received_at = db.Column(db.DateTime(timezone=True), default=utc_now)
    outcome = db.Column(db.String(30), nullable=False)
