# metergate/gate/pipeline.py
"""
Admission pipeline for metered requests.

A request moves through a fixed sequence of checks:

    START -> HEADERS_PARSED -> TIMESTAMP_OK -> NONCE_OK -> SIGNATURE_OK
          -> PAYMENT_OK -> IDEMPOTENCY_OK -> ADMITTED

and any failed transition ends in REJECTED with exactly one reason. The
pipeline never raises: unexpected faults are logged and reported as
internal_error, with details kept out of the decision message.
"""
import logging
import math
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional, Tuple, Union

from pydantic import ValidationError
from starlette.requests import Request

from metergate.api.models.meter import DEFAULT_PAYMENT_MESSAGE, PaymentAssertion, RoutePriceQuote
from metergate.core.config import settings
from metergate.gate import audit
from metergate.gate.agent_auth import SignedRequest, verify_agent_signature
from metergate.gate.facilitator import FacilitatorClient, facilitator_from_settings
from metergate.gate.nonce import InMemoryNonceStore, NonceStore, check_nonce, create_nonce_store
from metergate.gate.payment import PaymentVerificationResult, verify_payment
from metergate.gate.routing import RoutingConfig, default_route, quote_for, resolve_route, routing_from_settings
from metergate.gate.signature import (
    AGENT_KID_HEADER,
    AMOUNT_HEADER,
    CURRENCY_HEADER,
    NONCE_HEADER,
    ROUTE_HEADER,
    TIMESTAMP_HEADER,
    TX_HEADER,
)
from metergate.services.collaborators import AgentKeyRegistry, Ledger, UsageSink, registry_from_settings

logger = logging.getLogger(__name__)


class AdmissionState(str, Enum):
    START = "start"
    HEADERS_PARSED = "headers_parsed"
    TIMESTAMP_OK = "timestamp_ok"
    NONCE_OK = "nonce_ok"
    SIGNATURE_OK = "signature_ok"
    PAYMENT_OK = "payment_ok"
    IDEMPOTENCY_OK = "idempotency_ok"
    ADMITTED = "admitted"
    REJECTED = "rejected"


class RejectionReason(str, Enum):
    PAYMENT_REQUIRED = "payment_required"
    ROUTE_NOT_FOUND = "route_not_found"
    REQUEST_EXPIRED = "request_expired"
    INVALID_NONCE = "invalid_nonce"
    INVALID_SIGNATURE = "invalid_signature"
    PAYMENT_VERIFICATION_FAILED = "payment_verification_failed"
    TRANSACTION_ALREADY_USED = "transaction_already_used"
    IDEMPOTENCY_CHECK_FAILED = "idempotency_check_failed"
    USAGE_NOT_RECORDED = "usage_not_recorded"
    INTERNAL_ERROR = "internal_error"


@dataclass(frozen=True)
class AdmissionDecision:
    """
    Outcome of one admission attempt.

    stage is the last state the request reached before the decision; for an
    admitted request it is IDEMPOTENCY_OK.
    """
    admitted: bool
    state: AdmissionState
    stage: AdmissionState
    reason: Optional[RejectionReason] = None
    message: str = ""
    detail: Optional[str] = None
    assertion: Optional[PaymentAssertion] = None
    quote: Optional[RoutePriceQuote] = None


def _parse_amount(value: Optional[str]) -> Optional[float]:
    if value is None:
        return None
    try:
        amount = float(value)
    except ValueError:
        return None
    return amount if math.isfinite(amount) else None


def _parse_timestamp(value: Optional[str]) -> Optional[int]:
    if value is None:
        return None
    try:
        return int(value.strip())
    except ValueError:
        return None


def parse_payment_headers(request: SignedRequest) -> Optional[PaymentAssertion]:
    """
    Extract the x-meter-* headers into a PaymentAssertion.

    Returns None when any header is missing, empty, or not type-valid.
    """
    amount = _parse_amount(request.header(AMOUNT_HEADER))
    timestamp = _parse_timestamp(request.header(TIMESTAMP_HEADER))
    if amount is None or timestamp is None:
        return None
    try:
        return PaymentAssertion(
            tx_sig=request.header(TX_HEADER),
            route_id=request.header(ROUTE_HEADER),
            amount=amount,
            currency=request.header(CURRENCY_HEADER),
            nonce=request.header(NONCE_HEADER),
            timestamp=timestamp,
            agent_key_id=request.header(AGENT_KID_HEADER),
        )
    except ValidationError:
        return None


def validate_timestamp(
    timestamp_ms: int,
    now_ms: Optional[int] = None,
    max_age_seconds: Optional[float] = None,
    clock_skew_seconds: Optional[float] = None,
) -> bool:
    """
    Accept timestamps no older than max_age and no further ahead than
    clock_skew. Both bounds are inclusive.
    """
    if now_ms is None:
        now_ms = int(time.time() * 1000)
    if max_age_seconds is None:
        max_age_seconds = settings.METER_TIMESTAMP_MAX_AGE_SECONDS
    if clock_skew_seconds is None:
        clock_skew_seconds = settings.METER_CLOCK_SKEW_SECONDS

    age_ms = now_ms - timestamp_ms
    return age_ms <= max_age_seconds * 1000 and -age_ms <= clock_skew_seconds * 1000


class AdmissionPipeline:
    """
    Composes timestamp, nonce, signature and payment checks into one gate.

    Args:
        routing: Route table (SingleRoute or MultiRoute)
        registry: Agent key registry
        ledger: Ledger used for direct payment verification
        nonce_store: Replay store; an in-memory store is created when omitted
        usage_sink: Optional idempotency check and usage recorder
        facilitator: Optional delegated verifier, tried before the ledger
        max_age_seconds / clock_skew_seconds: Admission window
        clock: Seconds since the epoch

    Raises:
        ValueError: If the nonce store forgets nonces before a request
            carrying them would expire
    """

    def __init__(
        self,
        routing: RoutingConfig,
        registry: AgentKeyRegistry,
        ledger: Ledger,
        nonce_store: Optional[NonceStore] = None,
        usage_sink: Optional[UsageSink] = None,
        facilitator: Optional[FacilitatorClient] = None,
        max_age_seconds: Optional[float] = None,
        clock_skew_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.routing = routing
        self.registry = registry
        self.ledger = ledger
        self.usage_sink = usage_sink
        self.facilitator = facilitator
        self.max_age_seconds = (
            max_age_seconds if max_age_seconds is not None else settings.METER_TIMESTAMP_MAX_AGE_SECONDS
        )
        self.clock_skew_seconds = (
            clock_skew_seconds if clock_skew_seconds is not None else settings.METER_CLOCK_SKEW_SECONDS
        )
        self.clock = clock

        window = self.replay_window_seconds
        if nonce_store is None:
            nonce_store = InMemoryNonceStore(ttl_seconds=max(settings.METER_NONCE_TTL_SECONDS, window))
        elif nonce_store.ttl_seconds < window:
            raise ValueError(
                f"Nonce TTL {nonce_store.ttl_seconds}s is shorter than the admission window "
                f"({self.max_age_seconds}s max age + {self.clock_skew_seconds}s skew); "
                "replays would be accepted after the nonce expires"
            )
        self.nonce_store = nonce_store

    @property
    def replay_window_seconds(self) -> float:
        return self.max_age_seconds + self.clock_skew_seconds

    def _now_ms(self) -> int:
        return int(self.clock() * 1000)

    async def admit(
        self,
        request: Union[Request, SignedRequest],
        client_ip: str = "unknown",
        request_id: Optional[str] = None,
    ) -> AdmissionDecision:
        """
        Run every check against the request.

        Returns:
            AdmissionDecision; this method does not raise
        """
        stage = AdmissionState.START
        assertion: Optional[PaymentAssertion] = None
        try:
            if isinstance(request, Request):
                request = SignedRequest.from_request(request)

            assertion = parse_payment_headers(request)
            if assertion is None:
                route_id = default_route(self.routing)
                quote = quote_for(self.routing, route_id) if route_id else None
                return self._reject(
                    stage, RejectionReason.PAYMENT_REQUIRED,
                    DEFAULT_PAYMENT_MESSAGE,
                    quote=quote, client_ip=client_ip, request_id=request_id,
                )
            stage = AdmissionState.HEADERS_PARSED

            config = resolve_route(self.routing, assertion.route_id)
            if config is None:
                return self._reject(
                    stage, RejectionReason.ROUTE_NOT_FOUND, "Route not found",
                    detail=assertion.route_id, assertion=assertion,
                    client_ip=client_ip, request_id=request_id,
                )
            quote = config.quote(assertion.route_id)

            if not validate_timestamp(
                assertion.timestamp, self._now_ms(), self.max_age_seconds, self.clock_skew_seconds
            ):
                return self._reject(
                    stage, RejectionReason.REQUEST_EXPIRED, "Request expired",
                    assertion=assertion, quote=quote, client_ip=client_ip, request_id=request_id,
                )
            stage = AdmissionState.TIMESTAMP_OK

            if not await check_nonce(assertion.nonce, assertion.agent_key_id, store=self.nonce_store):
                return self._reject(
                    stage, RejectionReason.INVALID_NONCE, "Invalid or reused nonce",
                    assertion=assertion, quote=quote, client_ip=client_ip, request_id=request_id,
                )
            stage = AdmissionState.NONCE_OK

            if not await verify_agent_signature(request, assertion.agent_key_id, self.registry):
                return self._reject(
                    stage, RejectionReason.INVALID_SIGNATURE, "Invalid agent signature",
                    assertion=assertion, quote=quote, client_ip=client_ip, request_id=request_id,
                )
            stage = AdmissionState.SIGNATURE_OK

            verified_by, result = await self._verify_payment(assertion, quote)
            if not result.success:
                return self._reject(
                    stage, RejectionReason.PAYMENT_VERIFICATION_FAILED,
                    result.message or "Payment verification failed",
                    detail=result.failure.value if result.failure else None,
                    assertion=assertion, quote=quote, client_ip=client_ip, request_id=request_id,
                )
            stage = AdmissionState.PAYMENT_OK
            audit.log_payment_verified(
                client_ip, assertion.agent_key_id, assertion.tx_sig,
                assertion.route_id, assertion.amount, verified_by, request_id=request_id,
            )

            if self.usage_sink is not None:
                try:
                    already_used = await self.usage_sink.is_used(assertion.tx_sig)
                except Exception as e:
                    logger.error(f"Idempotency check failed for {assertion.tx_sig}: {e}")
                    return self._reject(
                        stage, RejectionReason.IDEMPOTENCY_CHECK_FAILED, "Idempotency check failed",
                        assertion=assertion, quote=quote, client_ip=client_ip, request_id=request_id,
                    )
                if already_used:
                    return self._reject(
                        stage, RejectionReason.TRANSACTION_ALREADY_USED, "Transaction already used",
                        assertion=assertion, quote=quote, client_ip=client_ip, request_id=request_id,
                    )
            stage = AdmissionState.IDEMPOTENCY_OK

            if self.usage_sink is not None:
                try:
                    recorded = await self.usage_sink.record(assertion)
                except Exception as e:
                    logger.error(f"Usage logging failed for {assertion.tx_sig}: {e}")
                    recorded = False
                if not recorded:
                    return self._reject(
                        stage, RejectionReason.USAGE_NOT_RECORDED, "Usage could not be recorded",
                        assertion=assertion, quote=quote, client_ip=client_ip, request_id=request_id,
                    )

            logger.info(
                f"Admitted {assertion.route_id} for agent {assertion.agent_key_id} "
                f"(tx {assertion.tx_sig}, verified by {verified_by})"
            )
            audit.log_request_admitted(
                client_ip, assertion.agent_key_id, assertion.tx_sig, assertion.route_id, request_id=request_id,
            )
            return AdmissionDecision(
                admitted=True,
                state=AdmissionState.ADMITTED,
                stage=stage,
                message="Payment accepted",
                assertion=assertion,
                quote=quote,
            )

        except Exception as e:
            logger.exception(f"Admission pipeline error at {stage.value}: {e}")
            audit.log_error(
                client_ip, type(e).__name__, str(e),
                context={"stage": stage.value}, request_id=request_id,
            )
            return self._reject(
                stage, RejectionReason.INTERNAL_ERROR, "Internal error",
                assertion=assertion, client_ip=client_ip, request_id=request_id,
            )

    async def _verify_payment(
        self, assertion: PaymentAssertion, quote: RoutePriceQuote
    ) -> Tuple[str, PaymentVerificationResult]:
        """Facilitator first when configured, then the ledger. Returns (verifier, result)."""
        if self.facilitator is not None:
            try:
                if await self.facilitator.verify(
                    assertion.tx_sig, assertion.route_id, quote.price, quote.pay_to, quote.mint,
                ):
                    return "facilitator", PaymentVerificationResult.ok()
            except Exception as e:
                logger.error(f"Facilitator call raised: {e}")
            logger.warning("Facilitator verification failed, falling back to direct verification")

        result = await verify_payment(
            self.ledger,
            assertion.tx_sig,
            quote.mint,
            quote.pay_to,
            quote.price,
            assertion,
        )
        return "ledger", result

    def _reject(
        self,
        stage: AdmissionState,
        reason: RejectionReason,
        message: str,
        detail: Optional[str] = None,
        assertion: Optional[PaymentAssertion] = None,
        quote: Optional[RoutePriceQuote] = None,
        client_ip: str = "unknown",
        request_id: Optional[str] = None,
    ) -> AdmissionDecision:
        if reason is not RejectionReason.INTERNAL_ERROR:
            logger.warning(f"Rejected request at {stage.value}: {reason.value} ({message})")
        audit.log_request_rejected(
            client_ip, reason.value, stage.value, detail=detail,
            agent_key_id=assertion.agent_key_id if assertion else None,
            request_id=request_id,
        )
        return AdmissionDecision(
            admitted=False,
            state=AdmissionState.REJECTED,
            stage=stage,
            reason=reason,
            message=message,
            detail=detail,
            assertion=assertion,
            quote=quote,
        )


def pipeline_from_settings(ledger: Ledger, usage_sink: Optional[UsageSink] = None) -> AdmissionPipeline:
    """
    Build a pipeline from METER_ROUTES, METER_AGENT_KEYS, METER_NONCE_STORE
    and the facilitator settings. The ledger and usage sink are supplied by
    the embedding application.
    """
    return AdmissionPipeline(
        routing_from_settings(),
        registry_from_settings(),
        ledger,
        nonce_store=create_nonce_store(),
        usage_sink=usage_sink,
        facilitator=facilitator_from_settings(),
    )
