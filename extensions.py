"""Flask extensions shared across the application."""

from flask_limiter import Limiter
from flask_limiter.util import get_remote_address
from flask_sqlalchemy import SQLAlchemy
from flask_wtf.csrf import CSRFProtect

db = SQLAlchemy()
csrf = CSRFProtect()
# The Stripe webhook endpoint is exempt (routes/webhooks.py).
limiter = Limiter(
    get_remote_address,
    default_limits=["600 per hour"],
    storage_uri="memory://",
)
