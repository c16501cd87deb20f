"""Blueprint registration."""

from routes.coupons import coupons_bp
from routes.invoices import invoices_bp
from routes.partners import partners_bp
from routes.payments import payments_bp
from routes.plans import plans_bp
from routes.subscriptions import subscriptions_bp
from routes.usage import usage_bp

ALL_BLUEPRINTS = [
    plans_bp,
    coupons_bp,
    subscriptions_bp,
    usage_bp,
    invoices_bp,
    payments_bp,
    partners_bp,
]


def register_blueprints(app):
    """Register all application blueprints on *app*."""
    for bp in ALL_BLUEPRINTS:
        app.register_blueprint(bp)
