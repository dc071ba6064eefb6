"""Per-subscription serialization of state changes.

All writes to a subscription and its license pool go through
:func:`run_locked`.  Within one process a lock keyed by subscription id
serializes callers; across processes the row is loaded ``FOR UPDATE`` and
the ``version`` column turns a lost update into a ``StaleDataError``, which
is retried a bounded number of times.
"""

from __future__ import annotations

import logging
import threading
from typing import Callable, Dict, TypeVar

from sqlalchemy import select
from sqlalchemy.orm.exc import StaleDataError

from extensions import db
from models import Subscription
from services.errors import ConcurrencyConflict, NotFoundError

logger = logging.getLogger(__name__)

T = TypeVar("T")

_registry_lock = threading.Lock()
_subscription_locks: Dict[int, threading.RLock] = {}


def _lock_for(subscription_id: int) -> threading.RLock:
    with _registry_lock:
        lock = _subscription_locks.get(subscription_id)
        if lock is None:
            lock = threading.RLock()
            _subscription_locks[subscription_id] = lock
        return lock


def load_for_update(subscription_id: int) -> Subscription:
    """Load the subscription row with a row lock and fresh attribute values."""
    stmt = (
        select(Subscription)
        .where(Subscription.id == subscription_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    sub = db.session.execute(stmt).scalar_one_or_none()
    if sub is None:
        raise NotFoundError(f"Subscription {subscription_id} not found")
    return sub


def run_locked(
    subscription_id: int,
    fn: Callable[[Subscription], T],
    *,
    attempts: int = 3,
) -> T:
    """Run ``fn(subscription)`` as one serialized read-validate-write transaction.

    Commits on success.  Any exception rolls the session back, so a failed
    validation or gateway call leaves no partial local mutation.
    """
    lock = _lock_for(subscription_id)
    for attempt in range(1, attempts + 1):
        with lock:
            try:
                sub = load_for_update(subscription_id)
                result = fn(sub)
                db.session.commit()
                return result
            except StaleDataError:
                db.session.rollback()
                logger.warning(
                    "Concurrent update on subscription %s (attempt %s/%s)",
                    subscription_id, attempt, attempts,
                )
            except Exception:
                db.session.rollback()
                raise
    raise ConcurrencyConflict(
        f"Subscription {subscription_id} is being modified concurrently; retry the request"
    )
