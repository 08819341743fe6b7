# metergate/main.py
from fastapi import FastAPI
from typing import List, Optional
import logging

from metergate.core.config import settings
from metergate.api.endpoints import price
from metergate.gate.middleware import MeterMiddleware, ProtectedEndpoint
from metergate.gate.pipeline import AdmissionPipeline
from metergate.gate.routing import RoutingConfig, routing_from_settings

# Configure basic logging
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


def create_app(
    pipeline: Optional[AdmissionPipeline] = None,
    routing: Optional[RoutingConfig] = None,
    protected_endpoints: Optional[List[ProtectedEndpoint]] = None,
) -> FastAPI:
    """
    Build the provider app: price and discovery endpoints, health check, and
    the payment gate in front of the protected paths.

    The gate needs a ledger, which is supplied by the embedding application
    through a ready AdmissionPipeline. Without one the app only serves the
    public endpoints.
    """
    app = FastAPI(title=settings.PROJECT_NAME)

    if routing is None:
        routing = pipeline.routing if pipeline is not None else routing_from_settings()
    app.state.routing = routing

    app.include_router(price.router, tags=["meter"])

    @app.get("/", summary="Health Check", tags=["default"])
    def read_root():
        """ Basic health check endpoint. """
        return {"status": "ok", "message": f"Welcome to {settings.PROJECT_NAME}"}

    if pipeline is not None:
        if protected_endpoints is None:
            protected_endpoints = [("*", path) for path in settings.METER_PROTECTED_PATHS]
        app.add_middleware(MeterMiddleware, pipeline=pipeline, protected_endpoints=protected_endpoints)
        logger.info(f"Payment gate enabled for {protected_endpoints}")
    else:
        logger.warning("No admission pipeline configured; protected paths are not gated")

    return app
