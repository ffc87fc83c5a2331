from fastapi import Request

from pppmon.services.isolation import IsolationController
from pppmon.services.router_service import RouterService
from pppmon.services.usage_tracking import UsageTrackingService


# Services are built once in the app lifespan and shared through app.state
def get_usage_tracking(request: Request) -> UsageTrackingService:
    return request.app.state.usage_tracking


def get_router_service(request: Request) -> RouterService:
    return request.app.state.router_service


def get_isolation(request: Request) -> IsolationController:
    return request.app.state.isolation
