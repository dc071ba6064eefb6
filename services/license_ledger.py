"""License ledger: per-(organization, user) license records.

Functions that take a :class:`Subscription` expect to run inside
``locking.run_locked`` for that subscription; they never commit.
"""

from __future__ import annotations

import datetime
import logging
import secrets
from typing import List, Optional

from sqlalchemy.exc import IntegrityError

from extensions import db
from models import License, LicenseStatus, Subscription
from services.errors import AlreadyLicensed, CapacityExceeded, NotFoundError
from services.locking import run_locked
from utils import as_utc, utc_now

logger = logging.getLogger(__name__)

_KEY_ALPHABET = "ABCDEFGHJKLMNPQRSTUVWXYZ23456789"


def generate_license_key() -> str:
    """Return a random key like ``LIC-7KQ2-M9XA-4TRB-ZP3C``."""
    groups = [
        "".join(secrets.choice(_KEY_ALPHABET) for _ in range(4))
        for _ in range(4)
    ]
    return "LIC-" + "-".join(groups)


def get_active(organization_id: int, user_id: int) -> Optional[License]:
    return License.query.filter_by(
        organization_id=organization_id,
        user_id=user_id,
        status=LicenseStatus.ACTIVE,
    ).first()


def has_active(organization_id: int, user_id: int, now: Optional[datetime.datetime] = None) -> bool:
    """True if the user holds an Active license that has not run past ``valid_until``."""
    lic = get_active(organization_id, user_id)
    if lic is None:
        return False
    now = now or utc_now()
    return as_utc(lic.valid_until) > now


def assign(subscription: Subscription, user_id: int) -> License:
    """Create an Active license for *user_id*, consuming one unit of capacity."""
    if get_active(subscription.organization_id, user_id) is not None:
        raise AlreadyLicensed(
            f"User {user_id} already has an active license in organization "
            f"{subscription.organization_id}"
        )
    if subscription.licenses_used >= subscription.capacity:
        raise CapacityExceeded(
            f"All {subscription.capacity} licenses of subscription {subscription.id} are in use"
        )

    now = utc_now()
    lic = License(
        organization_id=subscription.organization_id,
        user_id=user_id,
        subscription_id=subscription.id,
        license_key=generate_license_key(),
        status=LicenseStatus.ACTIVE,
        assigned_at=now,
        valid_from=now,
        valid_until=subscription.period_end,
    )
    db.session.add(lic)
    subscription.licenses_used += 1
    try:
        db.session.flush()
    except IntegrityError as exc:
        # Another process inserted an Active license for the same member.
        raise AlreadyLicensed(
            f"User {user_id} already has an active license in organization "
            f"{subscription.organization_id}"
        ) from exc
    logger.info(
        "Assigned license %s to user %s in organization %s (%s/%s used)",
        lic.license_key, user_id, subscription.organization_id,
        subscription.licenses_used, subscription.capacity,
    )
    return lic


def _release(lic: License, status: LicenseStatus, reason: str, now: datetime.datetime) -> None:
    lic.status = status
    lic.revoked_at = now
    lic.revocation_reason = reason
    sub = lic.subscription
    if sub is not None:
        sub.licenses_used = max(0, sub.licenses_used - 1)


def revoke(subscription: Subscription, license_id: int, reason: str) -> License:
    """Revoke a license.  Revoking an already inactive license is a no-op."""
    lic = db.session.get(License, license_id)
    if lic is None or lic.subscription_id != subscription.id:
        raise NotFoundError(f"License {license_id} not found")
    if lic.status != LicenseStatus.ACTIVE:
        logger.info("License %s already %s; revoke is a no-op", license_id, lic.status.value)
        return lic
    _release(lic, LicenseStatus.REVOKED, reason, utc_now())
    logger.info("Revoked license %s: %s", license_id, reason)
    return lic


def revoke_all_active(subscription: Subscription, reason: str) -> int:
    """Revoke every Active license of the subscription's organization."""
    now = utc_now()
    count = 0
    actives = License.query.filter_by(
        organization_id=subscription.organization_id,
        status=LicenseStatus.ACTIVE,
    ).all()
    for lic in actives:
        _release(lic, LicenseStatus.REVOKED, reason, now)
        count += 1
    subscription.licenses_used = 0
    if count:
        logger.info(
            "Revoked %s active licenses of organization %s (%s)",
            count, subscription.organization_id, reason,
        )
    return count


def extend_active(subscription: Subscription, valid_until: datetime.datetime) -> int:
    """Push ``valid_until`` of the subscription's Active licenses to *valid_until*."""
    count = 0
    for lic in subscription.licenses.filter_by(status=LicenseStatus.ACTIVE):
        if as_utc(lic.valid_until) < valid_until:
            lic.valid_until = valid_until
            lic.expiry_notified_at = None
            count += 1
    return count


def clamp_active(subscription: Subscription, valid_until: datetime.datetime) -> int:
    """Pull ``valid_until`` of Active licenses back to *valid_until* where later."""
    count = 0
    for lic in subscription.licenses.filter_by(status=LicenseStatus.ACTIVE):
        if as_utc(lic.valid_until) > valid_until:
            lic.valid_until = valid_until
            count += 1
    return count


def expire_due(now: Optional[datetime.datetime] = None) -> int:
    """Expire Active licenses whose ``valid_until`` has passed.  Commits."""
    now = now or utc_now()
    due = (
        License.query.filter(
            License.status == LicenseStatus.ACTIVE,
            License.valid_until < now,
        )
        .with_entities(License.id, License.subscription_id)
        .all()
    )
    by_subscription: dict[int, list[int]] = {}
    for license_id, subscription_id in due:
        by_subscription.setdefault(subscription_id, []).append(license_id)

    def _expire(ids):
        def apply(sub):
            expired = 0
            for lic in License.query.filter(License.id.in_(ids)).all():
                # Re-check under the lock; a renewal may have extended it meanwhile.
                if lic.status == LicenseStatus.ACTIVE and as_utc(lic.valid_until) < now:
                    _release(lic, LicenseStatus.EXPIRED, "license period ended", now)
                    expired += 1
            return expired
        return apply

    total = 0
    for subscription_id, ids in by_subscription.items():
        total += run_locked(subscription_id, _expire(ids))
    if total:
        logger.info("Expired %s licenses past their validity", total)
    return total


def licenses_expiring_within(days: int, now: Optional[datetime.datetime] = None) -> List[License]:
    """Active licenses whose validity ends within *days* and were not yet notified."""
    now = now or utc_now()
    horizon = now + datetime.timedelta(days=days)
    return (
        License.query.filter(
            License.status == LicenseStatus.ACTIVE,
            License.valid_until >= now,
            License.valid_until <= horizon,
            License.expiry_notified_at.is_(None),
        )
        .order_by(License.valid_until)
        .all()
    )


def list_for_organization(organization_id: int, status: Optional[LicenseStatus] = None) -> List[License]:
    query = License.query.filter_by(organization_id=organization_id)
    if status is not None:
        query = query.filter_by(status=status)
    return query.order_by(License.assigned_at.desc()).all()


def list_for_user(user_id: int) -> List[License]:
    return License.query.filter_by(user_id=user_id).order_by(License.assigned_at.desc()).all()
