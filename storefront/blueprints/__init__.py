from .admin import admin_bp
from .auth import auth_bp
from .checkout import checkout_bp
from .integrations import integrations_bp
from .self_service import self_service_bp
from .shop import shop_bp

BLUEPRINTS = (auth_bp, shop_bp, checkout_bp, self_service_bp, integrations_bp, admin_bp)


def register_blueprints(app):
    for blueprint in BLUEPRINTS:
        app.register_blueprint(blueprint)


__all__ = [
    "BLUEPRINTS",
    "register_blueprints",
    "admin_bp",
    "auth_bp",
    "checkout_bp",
    "integrations_bp",
    "self_service_bp",
    "shop_bp",
]
