"""Blueprint registration."""

from routes.licenses import licenses_bp
from routes.payments import payments_bp
from routes.session import session_bp
from routes.subscriptions import subscriptions_bp
from routes.webhooks import webhooks_bp

ALL_BLUEPRINTS = [
    subscriptions_bp,
    licenses_bp,
    payments_bp,
    webhooks_bp,
    session_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
