from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pppmon.api import router_management_router, usage_router
from pppmon.config import settings
from pppmon.core.exceptions import ConfigurationError, DeviceError, NotFound
from pppmon.services.isolation import IsolationController
from pppmon.services.router_service import RouterService
from pppmon.services.usage_tracking import UsageTrackingService
from datetime import datetime
import logging

# Configure logging
logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title="PPPoE Usage Monitor API", version="1.0.0")

# Add CORS middleware
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(router_management_router)
app.include_router(usage_router)


def init_services(target: FastAPI, **overrides) -> UsageTrackingService:
    """Build the shared services onto app.state. Keyword overrides go to the usage tracker."""
    usage_tracking = UsageTrackingService(**overrides)
    target.state.usage_tracking = usage_tracking
    target.state.router_service = RouterService(usage_tracking, gateway_factory=usage_tracking.gateway_factory)
    target.state.isolation = IsolationController(
        usage_tracking.cache,
        session_factory=usage_tracking.session_factory,
        gateway_factory=usage_tracking.gateway_factory,
    )
    return usage_tracking


@app.on_event("startup")
async def startup_event():
    usage_tracking = init_services(app)
    if settings.SYNC_ENABLED:
        usage_tracking.start()
    else:
        logger.info("[SCHEDULER] Usage sync disabled (SYNC_ENABLED=false)")


@app.on_event("shutdown")
async def shutdown_event():
    usage_tracking = getattr(app.state, "usage_tracking", None)
    if usage_tracking is not None:
        await usage_tracking.stop()


@app.exception_handler(NotFound)
async def not_found_handler(request: Request, exc: NotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(ConfigurationError)
async def configuration_error_handler(request: Request, exc: ConfigurationError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(DeviceError)
async def device_error_handler(request: Request, exc: DeviceError):
    logger.error(f"Router error on {request.url.path}: {exc}")
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.get("/")
def read_root():
    return {"message": "PPPoE Usage Monitor API", "version": "1.0.0"}

@app.get("/health")
def health_check():
    return {"status": "healthy", "timestamp": datetime.utcnow().isoformat()}

if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="127.0.0.1", port=8000, reload=True)
