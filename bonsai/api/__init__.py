"""API blueprints package."""
from bonsai.api.health import health_bp
from bonsai.api.widget import widget_bp
from bonsai.api.admin import admin_bp

__all__ = [
    "health_bp",
    "widget_bp",
    "admin_bp",
]
