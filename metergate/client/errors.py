# metergate/client/errors.py
"""
Error taxonomy for the paid-request client.

Every error carries a machine-readable code, the details that led to it, and
a recovery hint a caller can surface to an operator.
"""
import logging
from typing import Any, Dict, Optional

import requests
from requests.exceptions import RequestException

logger = logging.getLogger(__name__)

INSUFFICIENT_FUNDS_PHRASES = (
    "insufficient",
    "balance",
    "funds",
    "not enough",
    "no record of a prior credit",
    "attempt to debit",
)

VERIFICATION_PHRASES = (
    "verification",
    "verify",
    "invalid payment",
    "payment proof",
)

NETWORK_PHRASES = (
    "network",
    "connection",
    "timeout",
    "timed out",
    "failed to fetch",
)


class MeterClientError(Exception):
    """Base class for every error raised by the paid-request client."""

    code = "METER_ERROR"
    default_message = "Metered request failed"
    default_recovery: Optional[str] = None

    def __init__(
        self,
        message: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        recovery: Optional[str] = None,
        code: Optional[str] = None,
    ):
        self.message = message or self.default_message
        self.details = details or {}
        self.recovery = recovery or self.default_recovery
        if code:
            self.code = code
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "error": type(self).__name__,
            "code": self.code,
            "message": self.message,
            "details": self.details,
            "recovery": self.recovery,
        }


class ClientConfigError(MeterClientError):
    code = "CONFIG_ERROR"
    default_message = "Invalid client configuration"
    default_recovery = "Check the provider URL, agent key id and agent private key passed to the client."


class PaymentRequiredError(MeterClientError):
    code = "PAYMENT_REQUIRED"
    default_message = "Payment required"
    default_recovery = "Execute the payment transaction and retry the request with payment proof headers."


class PaymentVerificationError(MeterClientError):
    code = "VERIFICATION_FAILED"
    default_message = "Payment verification failed"
    default_recovery = (
        "Verify the transaction signature and ensure payment headers are correctly formatted. "
        "Check that the transaction was confirmed on-chain."
    )


class InsufficientBalanceError(MeterClientError):
    code = "INSUFFICIENT_BALANCE"
    default_message = "Insufficient balance"
    default_recovery = "Ensure your wallet has sufficient USDC balance to cover the payment amount plus transaction fees."


class PriceLookupError(MeterClientError):
    code = "PRICE_LOOKUP_FAILED"
    default_message = "Price lookup failed"
    default_recovery = "Check that the provider serves /.meter/price and that the route id is one it prices."


class NetworkError(MeterClientError):
    code = "NETWORK_ERROR"
    default_message = "Network error"
    default_recovery = (
        "Check your network connection and try again. "
        "If the issue persists, verify the provider URL and ledger endpoint."
    )


def _contains_any(text: str, phrases) -> bool:
    lowered = text.lower()
    return any(phrase in lowered for phrase in phrases)


def is_insufficient_funds_message(message: str) -> bool:
    """True when a ledger or wallet error reads as a balance problem."""
    return _contains_any(message or "", INSUFFICIENT_FUNDS_PHRASES)


def classify_payment_required_body(body: Any, status_code: int = 402) -> MeterClientError:
    """
    Turn a 402 response body into the most specific client error.

    Verification wording wins over balance wording; anything else is a plain
    PaymentRequiredError. The body is kept in details.
    """
    if not isinstance(body, dict):
        body = {"error": "Payment Required", "message": str(body) if body else "Payment required for this resource"}
    details = dict(body)
    details["status"] = status_code

    error_text = str(body.get("error") or "")
    message_text = str(body.get("message") or "")
    combined = f"{error_text}\n{message_text}"

    if _contains_any(combined, VERIFICATION_PHRASES) or body.get("reason") == "payment_verification_failed":
        return PaymentVerificationError(details=details)
    if _contains_any(combined, INSUFFICIENT_FUNDS_PHRASES):
        return InsufficientBalanceError(details=details)
    return PaymentRequiredError(details=details)


def parse_payment_required_response(response: requests.Response) -> MeterClientError:
    """Classify a 402 requests.Response, tolerating non-JSON bodies."""
    try:
        body = response.json()
    except ValueError:
        text = response.text
        body = {"error": "Payment Required", "message": text or "Payment required for this resource"}
    return classify_payment_required_body(body, response.status_code)


def to_client_error(error: BaseException) -> MeterClientError:
    """
    Map any exception to the client taxonomy.

    Client errors pass through; transport failures and network-sounding
    messages become NetworkError; balance-sounding messages become
    InsufficientBalanceError; everything else defaults to NetworkError.
    """
    if isinstance(error, MeterClientError):
        return error

    details = {"original_error": str(error), "original_error_type": type(error).__name__}

    if isinstance(error, (RequestException, ConnectionError, TimeoutError)):
        return NetworkError(details=details)

    message = str(error)
    if _contains_any(message, NETWORK_PHRASES):
        return NetworkError(details=details)
    if is_insufficient_funds_message(message):
        return InsufficientBalanceError(details=details)

    logger.debug(f"Unclassified client error mapped to NetworkError: {type(error).__name__}: {message}")
    return NetworkError(details=details)
