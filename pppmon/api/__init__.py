# API endpoints package
from pppmon.api.router_routes import router as router_management_router
from pppmon.api.usage_routes import router as usage_router

__all__ = ['router_management_router', 'usage_router']
