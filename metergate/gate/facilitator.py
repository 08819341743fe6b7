# metergate/gate/facilitator.py
"""
Client for an external payment facilitator.

A facilitator verifies payments on the gate's behalf:

    POST {url}/verify  {"txSig", "routeId", "amount", "payTo", "tokenMint"}
    2xx                {"verified": true|false, ...}

Only an explicit {"verified": true} counts as success. Non-2xx responses,
timeouts, transport errors and undecodable bodies all count as "not verified"
so the caller can fall back to direct ledger verification.
"""
import logging
from typing import Optional

import requests
from pydantic import ValidationError
from requests.exceptions import RequestException
from starlette.concurrency import run_in_threadpool

from metergate.api.models.meter import FacilitatorVerifyRequest, FacilitatorVerifyResponse
from metergate.core.config import settings

logger = logging.getLogger(__name__)


class FacilitatorClient:
    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout if timeout is not None else settings.METER_FACILITATOR_TIMEOUT_SECONDS
        self.session = session or requests.Session()

    @property
    def verify_url(self) -> str:
        return f"{self.base_url}/verify"

    def verify_sync(
        self,
        tx_sig: str,
        route_id: str,
        amount: float,
        pay_to: str,
        token_mint: str,
    ) -> bool:
        """
        Ask the facilitator whether tx_sig settles the route's payment.

        Returns:
            True only when the facilitator answers 2xx with verified == true
        """
        payload = FacilitatorVerifyRequest(
            tx_sig=tx_sig,
            route_id=route_id,
            amount=amount,
            pay_to=pay_to,
            token_mint=token_mint,
        ).model_dump(by_alias=True)

        try:
            response = self.session.post(self.verify_url, json=payload, timeout=self.timeout)
            response.raise_for_status()
            result = FacilitatorVerifyResponse.model_validate(response.json())
        except RequestException as e:
            logger.error(f"Facilitator verification request failed ({self.verify_url}): {e}")
            return False
        except (ValueError, ValidationError) as e:
            logger.error(f"Facilitator returned an unreadable response: {e}")
            return False

        if result.verified is not True:
            logger.warning(f"Facilitator did not verify {tx_sig}: {result.error or result.status or 'no reason given'}")
            return False
        return True

    async def verify(
        self,
        tx_sig: str,
        route_id: str,
        amount: float,
        pay_to: str,
        token_mint: str,
    ) -> bool:
        """Async wrapper running the blocking request in Starlette's thread pool."""
        return await run_in_threadpool(self.verify_sync, tx_sig, route_id, amount, pay_to, token_mint)


def facilitator_from_settings() -> Optional[FacilitatorClient]:
    """Return a client when METER_FACILITATOR_ENABLED and a URL are set."""
    if not settings.METER_FACILITATOR_ENABLED:
        return None
    if not settings.METER_FACILITATOR_URL:
        logger.warning("METER_FACILITATOR_ENABLED is set but METER_FACILITATOR_URL is empty; using direct verification")
        return None
    return FacilitatorClient(settings.METER_FACILITATOR_URL)
