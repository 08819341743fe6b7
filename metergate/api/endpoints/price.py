# metergate/api/endpoints/price.py
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from typing import Optional
import logging

from metergate.api.models.meter import DiscoveryDocument, DiscoveryRoute, RoutePriceQuote
from metergate.core.config import settings
from metergate.gate.routing import RoutingConfig, all_routes, quote_for, routing_from_settings

logger = logging.getLogger(__name__)

router = APIRouter()

DISCOVERY_VERSION = "1.0.0"


def get_routing(request: Request) -> RoutingConfig:
    """Route table attached to the app, or one built from METER_ROUTES."""
    routing = getattr(request.app.state, "routing", None)
    if routing is None:
        routing = routing_from_settings()
        request.app.state.routing = routing
    return routing


@router.get(
    "/.meter/price",
    response_model=RoutePriceQuote,
    response_model_by_alias=True,
    response_model_exclude_none=True,
)
async def get_route_price(route: Optional[str] = None, routing: RoutingConfig = Depends(get_routing)):
    """
    Get the price quote for a route.

    Args:
        route: Route identifier (e.g. summarize:v1)

    Returns:
        RoutePriceQuote, 400 when route is missing or empty, 404 when unknown
    """
    if not route:
        return JSONResponse(status_code=400, content={"error": "route parameter required"})

    quote = quote_for(routing, route)
    if quote is None:
        logger.info(f"Price requested for unknown route {route!r}")
        return JSONResponse(status_code=404, content={"error": "Route not found"})

    return quote


@router.get("/.well-known/x402", response_model=DiscoveryDocument, response_model_by_alias=True)
async def get_discovery_document(routing: RoutingConfig = Depends(get_routing)) -> DiscoveryDocument:
    """List every route this provider serves, with its pricing."""
    routes = {
        route_id: DiscoveryRoute(
            id=route_id,
            price=config.price,
            currency=config.currency,
            mint=config.mint,
            chain=config.chain,
            pay_to=config.pay_to,
        )
        for route_id, config in all_routes(routing).items()
    }
    return DiscoveryDocument(version=DISCOVERY_VERSION, provider=settings.PROJECT_NAME, routes=routes)
