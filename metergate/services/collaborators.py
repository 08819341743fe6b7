# metergate/services/collaborators.py
"""
Narrow interfaces to the systems the payment gate depends on.

The ledger, the transaction signer, the agent key registry and the usage sink
are all external. The gate and the client only ever talk to them through the
protocols below. In-memory registry and usage sink implementations are
provided for single-process deployments and tests.
"""
import logging
import threading
import time
from typing import Any, Dict, Iterable, List, Optional, Protocol, runtime_checkable

from metergate.api.models.meter import AgentCredential, PaymentAssertion
from metergate.core.config import settings

logger = logging.getLogger(__name__)


@runtime_checkable
class Ledger(Protocol):
    """
    Async view of the settlement network.

    get_transaction returns the jsonParsed transaction shape
    ({"meta": {"err": ...}, "transaction": {"message": {"instructions": [...]}}})
    or None when the signature is unknown.
    """

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]: ...

    async def get_associated_token_address(self, mint: str, owner: str) -> str: ...

    async def get_mint_decimals(self, mint: str) -> int: ...

    async def submit_transaction(self, raw_transaction: bytes) -> str: ...

    async def confirm_transaction(self, signature: str) -> None: ...


@runtime_checkable
class Signer(Protocol):
    """Wallet that owns the paying token account."""

    public_key: str

    async def sign_transaction(self, transaction: Any) -> bytes: ...


@runtime_checkable
class AgentKeyRegistry(Protocol):
    async def lookup(self, key_id: str) -> Optional[AgentCredential]: ...


@runtime_checkable
class UsageSink(Protocol):
    async def record(self, assertion: PaymentAssertion) -> bool: ...

    async def is_used(self, tx_sig: str) -> bool: ...


class InMemoryAgentKeyRegistry:
    """Process-local agent key registry."""

    def __init__(self, credentials: Optional[Iterable[AgentCredential]] = None):
        self._keys: Dict[str, AgentCredential] = {}
        self._lock = threading.Lock()
        for credential in credentials or []:
            self.add(credential)

    async def lookup(self, key_id: str) -> Optional[AgentCredential]:
        with self._lock:
            return self._keys.get(key_id)

    def add(self, credential: AgentCredential) -> None:
        with self._lock:
            self._keys[credential.key_id] = credential
        logger.debug(f"Registered agent key {credential.key_id}")

    def remove(self, key_id: str) -> bool:
        with self._lock:
            return self._keys.pop(key_id, None) is not None

    def list_keys(self) -> List[AgentCredential]:
        with self._lock:
            return list(self._keys.values())

    def clear(self) -> None:
        with self._lock:
            self._keys.clear()


def registry_from_settings() -> InMemoryAgentKeyRegistry:
    """
    Build a registry from METER_AGENT_KEYS.

    Invalid entries are skipped with a warning so one bad key does not take
    the gate down.
    """
    registry = InMemoryAgentKeyRegistry()
    for entry in settings.METER_AGENT_KEYS:
        try:
            registry.add(AgentCredential.model_validate(entry))
        except ValueError as e:
            logger.warning(f"Skipping invalid agent key entry in METER_AGENT_KEYS: {e}")
    return registry


class InMemoryUsageSink:
    """
    Records consumed payments and answers transaction-reuse queries.

    A transaction signature can be recorded once; a second record returns
    False.
    """

    def __init__(self):
        self._records: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()

    async def record(self, assertion: PaymentAssertion) -> bool:
        with self._lock:
            if assertion.tx_sig in self._records:
                logger.warning(f"Usage already recorded for transaction {assertion.tx_sig}")
                return False
            self._records[assertion.tx_sig] = {
                "assertion": assertion,
                "status": "consumed",
                "recorded_at": int(time.time() * 1000),
            }
        return True

    async def is_used(self, tx_sig: str) -> bool:
        with self._lock:
            return tx_sig in self._records

    def records(self) -> List[PaymentAssertion]:
        with self._lock:
            return [entry["assertion"] for entry in self._records.values()]
