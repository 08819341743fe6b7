# metergate/gate/routing.py
"""
Route table for the payment gate.

A provider runs in one of two modes:
- SingleRoute: one priced route (route_id + config)
- MultiRoute: a map of route id to config

Both modes answer the same questions: which config applies to a claimed
route id, which route is quoted when a request carries no payment headers,
and what the full route list looks like for discovery.
"""
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional, Union

from pydantic import ValidationError

from metergate.api.models.meter import RouteConfig, RoutePriceQuote
from metergate.core.config import settings

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SingleRoute:
    route_id: str
    config: RouteConfig


@dataclass(frozen=True)
class MultiRoute:
    routes: Mapping[str, RouteConfig] = field(default_factory=dict)


RoutingConfig = Union[SingleRoute, MultiRoute]


def resolve_route(routing: RoutingConfig, route_id: str) -> Optional[RouteConfig]:
    """Return the config for route_id, or None when the provider does not serve it."""
    if isinstance(routing, SingleRoute):
        return routing.config if routing.route_id == route_id else None
    if isinstance(routing, MultiRoute):
        return routing.routes.get(route_id)
    raise TypeError(f"Unsupported routing config: {type(routing).__name__}")


def all_routes(routing: RoutingConfig) -> Dict[str, RouteConfig]:
    if isinstance(routing, SingleRoute):
        return {routing.route_id: routing.config}
    if isinstance(routing, MultiRoute):
        return dict(routing.routes)
    raise TypeError(f"Unsupported routing config: {type(routing).__name__}")


def default_route(routing: RoutingConfig) -> Optional[str]:
    """
    Route quoted in a 402 when the request names none.

    Single-route providers quote their route; multi-route providers quote the
    first configured route, or nothing when the table is empty.
    """
    if isinstance(routing, SingleRoute):
        return routing.route_id
    return next(iter(all_routes(routing)), None)


def quote_for(routing: RoutingConfig, route_id: str, expires_at: Optional[int] = None) -> Optional[RoutePriceQuote]:
    config = resolve_route(routing, route_id)
    if config is None:
        return None
    return config.quote(route_id, expires_at=expires_at)


def build_routing(routes: Mapping[str, Any]) -> RoutingConfig:
    """
    Build a RoutingConfig from a plain route table.

    Exactly one route yields SingleRoute; anything else yields MultiRoute.
    Values may be RouteConfig instances or dicts.
    """
    parsed = {
        route_id: value if isinstance(value, RouteConfig) else RouteConfig.model_validate(value)
        for route_id, value in routes.items()
    }
    if len(parsed) == 1:
        route_id, config = next(iter(parsed.items()))
        return SingleRoute(route_id=route_id, config=config)
    return MultiRoute(routes=parsed)


def routing_from_settings() -> RoutingConfig:
    """
    Build the routing table from METER_ROUTES.

    Invalid entries are skipped with a warning.
    """
    valid: Dict[str, RouteConfig] = {}
    for route_id, entry in settings.METER_ROUTES.items():
        try:
            valid[route_id] = RouteConfig.model_validate(entry)
        except ValidationError as e:
            logger.warning(f"Skipping invalid route {route_id!r} in METER_ROUTES: {e}")
    if not valid:
        logger.warning("METER_ROUTES is empty; every protected request will be rejected")
    return build_routing(valid)
