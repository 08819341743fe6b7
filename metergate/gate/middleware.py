# metergate/gate/middleware.py
"""
Starlette middleware that puts the admission pipeline in front of paid
endpoints.

For every protected request the middleware:
1. Runs the AdmissionPipeline
2. On admission, stores the PaymentAssertion at request.state.payment and
   calls the endpoint
3. On an expected rejection, returns 402 Payment Required with the route's
   quote, the rejection reason and payment tips
4. On an internal error, returns a generic 500

Discovery paths (/.meter/, /.well-known/) are never gated.
"""
import logging
from typing import Callable, List, Optional, Sequence, Tuple

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse

from metergate.api.models.meter import DEFAULT_CURRENCY, DEFAULT_PAYMENT_MESSAGE, PaymentRequiredResponse
from metergate.gate import audit
from metergate.gate.pipeline import AdmissionDecision, AdmissionPipeline, RejectionReason
from metergate.gate.signature import ROUTE_HEADER

logger = logging.getLogger(__name__)

# (method, path prefix); method "*" matches any method
ProtectedEndpoint = Tuple[str, str]

UNGATED_PREFIXES = ("/.meter/", "/.well-known/")


def is_protected_endpoint(
    method: str,
    path: str,
    protected_endpoints: Optional[Sequence[ProtectedEndpoint]] = None,
) -> bool:
    """
    Check if the request needs a payment.

    With no explicit list, everything except the discovery paths is protected.
    """
    if any(path.startswith(prefix) for prefix in UNGATED_PREFIXES):
        return False
    if not protected_endpoints:
        return True
    for protected_method, protected_path in protected_endpoints:
        if protected_method not in ("*", method.upper()):
            continue
        if path.rstrip("/").startswith(protected_path.rstrip("/")):
            return True
    return False


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # First hop is the client
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


def build_payment_required_body(decision: AdmissionDecision) -> PaymentRequiredResponse:
    """Fill the 402 body from the decision's quote, or from the claimed route when there is none."""
    reason = decision.reason.value if decision.reason else RejectionReason.PAYMENT_REQUIRED.value
    quote = decision.quote
    if quote is not None:
        return PaymentRequiredResponse(
            route=quote.route_id,
            amount=quote.price,
            currency=quote.currency,
            pay_to=quote.pay_to,
            mint=quote.mint,
            chain=quote.chain,
            message=decision.message or DEFAULT_PAYMENT_MESSAGE,
            reason=reason,
            detail=decision.detail,
        )

    route = decision.assertion.route_id if decision.assertion else "unknown"
    return PaymentRequiredResponse(
        route=route,
        message=decision.message or DEFAULT_PAYMENT_MESSAGE,
        reason=reason,
        detail=decision.detail,
    )


def create_402_response(decision: AdmissionDecision) -> JSONResponse:
    """
    Create an HTTP 402 Payment Required response.

    Args:
        decision: The rejected admission decision

    Returns:
        JSONResponse with 402 status and payment details
    """
    body = build_payment_required_body(decision)
    return JSONResponse(
        status_code=402,
        content=body.model_dump(by_alias=True, exclude_none=True),
    )


def create_internal_error_response() -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={
            "error": "Internal Server Error",
            "message": "The payment gate could not process this request",
            "reason": RejectionReason.INTERNAL_ERROR.value,
        },
    )


class MeterMiddleware(BaseHTTPMiddleware):
    """
    Payment gate middleware for FastAPI.

    Args:
        app: ASGI app
        pipeline: Configured AdmissionPipeline
        protected_endpoints: (method, path prefix) pairs; None protects
            everything except the discovery paths
    """

    def __init__(
        self,
        app,
        pipeline: AdmissionPipeline,
        protected_endpoints: Optional[List[ProtectedEndpoint]] = None,
    ):
        super().__init__(app)
        self.pipeline = pipeline
        self.protected_endpoints = protected_endpoints

    async def dispatch(
        self,
        request: Request,
        call_next: Callable[[Request], Response]
    ) -> Response:
        if not is_protected_endpoint(request.method, request.url.path, self.protected_endpoints):
            return await call_next(request)

        client_ip = get_client_ip(request)
        request_id = audit.generate_request_id()
        logger.info(f"meter: Processing protected request from {client_ip}: {request.method} {request.url.path}")
        audit.log_request_received(
            client_ip, request.method, request.url.path,
            route_id=request.headers.get(ROUTE_HEADER), request_id=request_id,
        )

        decision = await self.pipeline.admit(request, client_ip=client_ip, request_id=request_id)

        if decision.admitted:
            request.state.payment = decision.assertion
            return await call_next(request)

        if decision.reason is RejectionReason.INTERNAL_ERROR:
            return create_internal_error_response()

        response = create_402_response(decision)
        quote = decision.quote
        audit.log_payment_required_sent(
            client_ip,
            route_id=quote.route_id if quote else "unknown",
            amount=quote.price if quote else 0,
            currency=quote.currency if quote else DEFAULT_CURRENCY,
            reason=decision.reason.value,
            request_id=request_id,
        )
        return response
