# API Routes Module
from app.api.routes import (
    admin,
    checkout,
    entitlements,
    webhooks,
)

__all__ = [
    "admin",
    "checkout",
    "entitlements",
    "webhooks",
]
