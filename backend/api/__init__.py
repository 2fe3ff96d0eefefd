# api/__init__.py
from api.server import (
    app,
    create_app,
    build_checkout_service,
)

__all__ = [
    "app",
    "create_app",
    "build_checkout_service",
]
