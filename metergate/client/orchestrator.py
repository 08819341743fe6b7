# metergate/client/orchestrator.py
"""
Paid-request orchestration.

PaidRequestClient turns an ordinary HTTP call into a metered one:

1. resolve the route id (explicit, or derived from /api/{name})
2. look up the quote through the price cache
3. build, sign, submit and confirm the token transfer
4. sign the canonical base string with the agent key
5. send the request with x-meter-*, authorization and date headers

A 402 is retried with a fresh nonce and a new payment after an exponential
backoff, up to the attempt budget. A 403 is final. Transport failures are
raised as NetworkError without retrying.
"""
import asyncio
import logging
import re
import time
import uuid
from email.utils import formatdate
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Union
from urllib.parse import urlsplit

import requests
from nacl.signing import SigningKey
from requests.exceptions import RequestException

from metergate.api.models.meter import PaymentMemo, RoutePriceQuote
from metergate.client.errors import (
    ClientConfigError,
    MeterClientError,
    NetworkError,
    PaymentRequiredError,
    PaymentVerificationError,
    parse_payment_required_response,
    to_client_error,
)
from metergate.client.payment import build_transfer_transaction, send_payment
from metergate.client.price import PriceCache, get_price_cache
from metergate.core.config import settings
from metergate.gate.signature import (
    AGENT_KID_HEADER,
    AMOUNT_HEADER,
    AUTHORIZATION_HEADER,
    CURRENCY_HEADER,
    DATE_HEADER,
    NONCE_HEADER,
    ROUTE_HEADER,
    TIMESTAMP_HEADER,
    TX_HEADER,
    build_base_string,
    create_authorization_header,
    load_signing_key,
    sign_base_string,
)
from metergate.services.collaborators import Ledger, Signer

logger = logging.getLogger(__name__)

DEFAULT_ROUTE_ID = "default:v1"
DEFAULT_ROUTE_VERSION = "v1"

_API_ROUTE = re.compile(r"/api/([^/?#]+)")


def extract_route_id(url: str) -> str:
    """
    Derive a route id from a URL or path.

    /api/summarize -> summarize:v1, /api/summarize:v2 -> summarize:v2,
    anything else -> default:v1.
    """
    path = urlsplit(url).path if "://" in url else url
    match = _API_ROUTE.search(path)
    if match:
        name = match.group(1)
        return name if ":" in name else f"{name}:{DEFAULT_ROUTE_VERSION}"
    return DEFAULT_ROUTE_ID


def extract_path(url: str) -> str:
    """Path plus query of a URL, exactly as it will be sent."""
    parts = urlsplit(url)
    path = parts.path or "/"
    return f"{path}?{parts.query}" if parts.query else path


def http_date(timestamp_ms: int) -> str:
    """RFC 7231 date, e.g. 'Tue, 02 Jan 2024 12:00:00 GMT'."""
    return formatdate(timestamp_ms / 1000, usegmt=True)


def _response_body(response: requests.Response) -> Dict[str, Any]:
    try:
        body = response.json()
    except ValueError:
        return {"message": response.text} if response.text else {}
    return body if isinstance(body, dict) else {"body": body}


class PaidRequestClient:
    """
    Client for a single provider.

    Args:
        provider_url: Provider base URL (scheme and host required)
        agent_key_id: Key id registered with the provider
        agent_private_key: ed25519 seed (32 bytes), secret key (64 bytes) or SigningKey
        ledger: Ledger collaborator used to build and submit payments
        signer: Wallet that signs payment transactions
        price_cache: Shared quote cache (the global cache when omitted)
        session: requests.Session used for provider calls
        max_attempts: Attempt budget for 402 retries (METER_CLIENT_MAX_ATTEMPTS)
        backoff_base_seconds: Delay before retry n is base * 2**n
        include_memo: Attach a correlation memo to each payment
        sleep: Awaitable sleep, injectable for tests

    Raises:
        ClientConfigError: Any of the above is missing or malformed
    """

    def __init__(
        self,
        provider_url: str,
        agent_key_id: str,
        agent_private_key: Union[bytes, SigningKey],
        ledger: Ledger,
        signer: Signer,
        price_cache: Optional[PriceCache] = None,
        session: Optional[requests.Session] = None,
        max_attempts: Optional[int] = None,
        backoff_base_seconds: Optional[float] = None,
        include_memo: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        nonce_factory: Callable[[], str] = lambda: str(uuid.uuid4()),
    ):
        parts = urlsplit(provider_url or "")
        if parts.scheme not in ("http", "https") or not parts.hostname:
            raise ClientConfigError(
                f"provider_url must be an absolute http(s) URL, got {provider_url!r}",
                details={"provider_url": provider_url},
            )
        if not agent_key_id:
            raise ClientConfigError("agent_key_id is required")
        try:
            self._signing_key = load_signing_key(agent_private_key)
        except (TypeError, ValueError) as e:
            raise ClientConfigError(f"Invalid agent private key: {e}") from e
        if ledger is None or signer is None:
            raise ClientConfigError("ledger and signer are required")
        if not getattr(signer, "public_key", None):
            raise ClientConfigError("Signer has no public key; is the wallet connected?")

        self.max_attempts = max_attempts if max_attempts is not None else settings.METER_CLIENT_MAX_ATTEMPTS
        if self.max_attempts < 1:
            raise ClientConfigError(f"max_attempts must be at least 1, got {self.max_attempts}")

        self.provider_url = provider_url.rstrip("/")
        self.provider_id = parts.hostname
        self.agent_key_id = agent_key_id
        self.ledger = ledger
        self.signer = signer
        self.price_cache = price_cache if price_cache is not None else get_price_cache()
        self.session = session or requests.Session()
        self.backoff_base_seconds = (
            backoff_base_seconds if backoff_base_seconds is not None else settings.METER_CLIENT_BACKOFF_BASE_SECONDS
        )
        self.include_memo = include_memo
        self._sleep = sleep
        self._clock = clock
        self._nonce_factory = nonce_factory

    def resolve_url(self, path_or_url: str, params: Optional[Mapping[str, Any]] = None) -> str:
        """
        Absolute URL in the form requests puts on the wire.

        Params are encoded and the path is re-quoted here, so the signed
        (request-target) matches the raw path the provider receives.
        """
        if "://" in path_or_url:
            url = path_or_url
        else:
            url = f"{self.provider_url}/{path_or_url.lstrip('/')}"
        try:
            return requests.Request("GET", url, params=params).prepare().url
        except RequestException as e:
            raise ClientConfigError(f"Invalid request URL {url!r}: {e}", details={"url": url}) from e

    def backoff_delay(self, attempt: int) -> float:
        return self.backoff_base_seconds * (2 ** attempt)

    async def _pay(self, quote: RoutePriceQuote, route_id: str, nonce: str) -> str:
        memo = None
        if self.include_memo:
            memo = PaymentMemo(
                provider_id=self.provider_id,
                route_id=route_id,
                nonce=nonce,
                amount=quote.price,
                timestamp=int(self._clock() * 1000),
            )
        transaction = await build_transfer_transaction(
            self.ledger,
            self.signer.public_key,
            quote.pay_to,
            quote.price,
            quote.mint,
            memo,
        )
        return await send_payment(self.ledger, self.signer, transaction)

    def _payment_headers(
        self,
        method: str,
        path: str,
        quote: RoutePriceQuote,
        route_id: str,
        nonce: str,
        tx_sig: str,
    ) -> Dict[str, str]:
        timestamp = int(self._clock() * 1000)
        date = http_date(timestamp)
        base_string = build_base_string(method, path, date, nonce, tx_sig)
        if settings.METER_DEBUG_SIGNATURES:
            logger.debug(f"Signing base string for {method} {path}:\n{base_string}")
        signature = sign_base_string(self._signing_key, base_string)
        return {
            TX_HEADER: tx_sig,
            ROUTE_HEADER: route_id,
            AMOUNT_HEADER: str(quote.price),
            CURRENCY_HEADER: quote.currency,
            NONCE_HEADER: nonce,
            TIMESTAMP_HEADER: str(timestamp),
            AGENT_KID_HEADER: self.agent_key_id,
            AUTHORIZATION_HEADER: create_authorization_header(self.agent_key_id, signature),
            DATE_HEADER: date,
        }

    async def request(
        self,
        path_or_url: str,
        method: str = "GET",
        route_id: Optional[str] = None,
        headers: Optional[Mapping[str, str]] = None,
        params: Optional[Mapping[str, Any]] = None,
        data: Any = None,
        json: Any = None,
        timeout: Optional[float] = None,
    ) -> requests.Response:
        """
        Pay for and send one request.

        Returns:
            The provider's response (any status other than 402/403)

        Raises:
            PaymentRequiredError: every attempt was answered with 402
            PaymentVerificationError: the provider answered 403
            InsufficientBalanceError: the payment could not be funded
            NetworkError: the provider or ledger could not be reached
        """
        method = method.upper()
        url = self.resolve_url(path_or_url, params)
        path = extract_path(url)
        route_id = route_id or extract_route_id(url)
        timeout = timeout if timeout is not None else settings.METER_HTTP_TIMEOUT_SECONDS

        last_body: Dict[str, Any] = {}
        for attempt in range(self.max_attempts):
            nonce = self._nonce_factory()
            try:
                quote = await self.price_cache.get(self.provider_url, route_id)
                tx_sig = await self._pay(quote, route_id, nonce)
            except MeterClientError:
                raise
            except Exception as e:
                raise to_client_error(e) from e

            outgoing = dict(headers or {})
            outgoing.update(self._payment_headers(method, path, quote, route_id, nonce, tx_sig))

            try:
                response = await asyncio.to_thread(
                    self.session.request,
                    method,
                    url,
                    headers=outgoing,
                    data=data,
                    json=json,
                    timeout=timeout,
                )
            except RequestException as e:
                logger.error(f"Request to {url} failed: {e}")
                raise NetworkError(details={"url": url, "original_error": str(e)}) from e

            if response.status_code == 402:
                last_body = _response_body(response)
                if attempt < self.max_attempts - 1:
                    delay = self.backoff_delay(attempt)
                    logger.warning(
                        f"402 from {url} on attempt {attempt + 1}/{self.max_attempts} "
                        f"({last_body.get('reason', 'unknown')}); retrying in {delay}s"
                    )
                    await self._sleep(delay)
                    continue
                raise PaymentRequiredError(details=last_body) from parse_payment_required_response(response)

            if response.status_code == 403:
                raise PaymentVerificationError(details=_response_body(response))

            return response

        # Unreachable with max_attempts >= 1
        raise PaymentRequiredError(details=last_body)

    async def get(self, path_or_url: str, **kwargs) -> requests.Response:
        return await self.request(path_or_url, method="GET", **kwargs)

    async def post(self, path_or_url: str, **kwargs) -> requests.Response:
        return await self.request(path_or_url, method="POST", **kwargs)
