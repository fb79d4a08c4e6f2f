"""
API v1 package initialization.

Collects the v1 routers so the application can mount them under one prefix.
"""

from schoolphotos.api.v1.orders import router as orders_router
from schoolphotos.api.v1.payments import router as payments_router

__all__ = ["orders_router", "payments_router"]
