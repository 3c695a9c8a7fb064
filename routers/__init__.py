# routers/__init__.py
from .auth import router as auth_router
from .delivery import router as delivery_router
from .payments import router as payments_router

__all__ = ["auth_router", "delivery_router", "payments_router"]
