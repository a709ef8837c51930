"""API routers."""
from .devices import router as devices_router

__all__ = ["devices_router"]
