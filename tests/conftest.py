# tests/conftest.py
"""
Shared fakes and fixtures for the metergate test suite.
"""
import base64
import json
import time
import pytest
from typing import Any, Dict, List, Optional

from nacl.signing import SigningKey

from metergate.api.models.meter import AgentCredential, RouteConfig
from metergate.gate.payment import MEMO_PROGRAM_ID
from metergate.gate.routing import MultiRoute, SingleRoute
from metergate.gate.signature import (
    build_base_string,
    create_authorization_header,
    sign_base_string,
)
from metergate.services.collaborators import InMemoryAgentKeyRegistry

MINT = "Gh9ZwEmdLJ8DscKNTkTqPbNwLNNBjuSzaG9Vp2KGtKJr"
PAY_TO = "7xKXtg2CZ3Qz4qKzJqKzJqKzJqKzJqKzJqKzJqKzJqKz"
PAYER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"
ROUTE_ID = "summarize:v1"
AGENT_KEY_ID = "agent_12345"
TX_SIG = "5j7s8K9abcdef123456"


def ata(mint: str, owner: str) -> str:
    """Deterministic stand-in for associated token address derivation."""
    return f"ata-{owner[:8]}-{mint[:8]}"


def make_transaction(
    destination: str,
    amount: int,
    memo: Optional[str] = None,
    err: Any = None,
    transfer_type: str = "transfer",
) -> Dict[str, Any]:
    """Build a jsonParsed transaction with one token transfer and an optional memo."""
    info: Dict[str, Any] = {
        "source": ata(MINT, PAYER),
        "destination": destination,
        "authority": PAYER,
    }
    if transfer_type == "transferChecked":
        info["mint"] = MINT
        info["tokenAmount"] = {"amount": str(amount), "decimals": 6}
    else:
        info["amount"] = str(amount)

    instructions: List[Dict[str, Any]] = [
        {
            "program": "spl-token",
            "programId": "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA",
            "parsed": {"type": transfer_type, "info": info},
        }
    ]
    if memo is not None:
        instructions.append({"program": "spl-memo", "programId": MEMO_PROGRAM_ID, "parsed": memo})

    return {
        "slot": 1,
        "meta": {"err": err, "fee": 5000},
        "transaction": {"message": {"instructions": instructions}},
    }


class FakeLedger:
    """In-memory Ledger: transactions by signature, fixed mint decimals."""

    def __init__(self, decimals: int = 6):
        self.transactions: Dict[str, Dict[str, Any]] = {}
        self.decimals: Dict[str, int] = {}
        self.default_decimals = decimals
        self.submitted: List[bytes] = []
        self.confirmed: List[str] = []
        self.submit_error: Optional[Exception] = None
        self.get_transaction_error: Optional[Exception] = None
        # Transaction each submit produces; None means "record nothing"
        self.next_transaction: Optional[Dict[str, Any]] = None

    async def get_transaction(self, signature: str) -> Optional[Dict[str, Any]]:
        if self.get_transaction_error is not None:
            raise self.get_transaction_error
        return self.transactions.get(signature)

    async def get_associated_token_address(self, mint: str, owner: str) -> str:
        return ata(mint, owner)

    async def get_mint_decimals(self, mint: str) -> int:
        return self.decimals.get(mint, self.default_decimals)

    async def submit_transaction(self, raw_transaction: bytes) -> str:
        if self.submit_error is not None:
            raise self.submit_error
        self.submitted.append(raw_transaction)
        signature = f"sig{len(self.submitted)}"
        if self.next_transaction is not None:
            self.transactions[signature] = self.next_transaction
        return signature

    async def confirm_transaction(self, signature: str) -> None:
        self.confirmed.append(signature)


class FakeSigner:
    def __init__(self, public_key: str = PAYER):
        self.public_key = public_key
        self.signed: List[Any] = []

    async def sign_transaction(self, transaction: Any) -> bytes:
        self.signed.append(transaction)
        return f"signed-{len(self.signed)}".encode()


def public_key_b64(signing_key: SigningKey) -> str:
    return base64.b64encode(bytes(signing_key.verify_key)).decode()


def signed_headers(
    signing_key: SigningKey,
    method: str = "GET",
    path: str = "/api/summarize",
    tx_sig: str = TX_SIG,
    nonce: str = "nonce-1",
    route_id: str = ROUTE_ID,
    amount: str = "0.03",
    currency: str = "USDC",
    timestamp_ms: Optional[int] = None,
    agent_key_id: str = AGENT_KEY_ID,
    date: str = "Tue, 02 Jan 2024 12:00:00 GMT",
) -> Dict[str, str]:
    """Headers of a correctly signed, paid request."""
    if timestamp_ms is None:
        timestamp_ms = int(time.time() * 1000)
    base_string = build_base_string(method, path, date, nonce, tx_sig)
    signature = sign_base_string(signing_key, base_string)
    return {
        "x-meter-tx": tx_sig,
        "x-meter-route": route_id,
        "x-meter-amt": amount,
        "x-meter-currency": currency,
        "x-meter-nonce": nonce,
        "x-meter-ts": str(timestamp_ms),
        "x-meter-agent-kid": agent_key_id,
        "authorization": create_authorization_header(agent_key_id, signature),
        "date": date,
    }


def memo_for(route_id: str = ROUTE_ID, nonce: str = "nonce-1") -> str:
    return json.dumps({"providerId": "api.example.com", "routeId": route_id, "nonce": nonce, "amount": 0.03})


@pytest.fixture
def signing_key():
    return SigningKey.generate()


@pytest.fixture
def registry(signing_key):
    return InMemoryAgentKeyRegistry([
        AgentCredential(key_id=AGENT_KEY_ID, public_key=public_key_b64(signing_key)),
    ])


@pytest.fixture
def ledger():
    return FakeLedger()


@pytest.fixture
def signer():
    return FakeSigner()


@pytest.fixture
def route_config():
    return RouteConfig(price=0.03, mint=MINT, pay_to=PAY_TO, chain="solana-devnet")


@pytest.fixture
def single_route(route_config):
    return SingleRoute(route_id=ROUTE_ID, config=route_config)


@pytest.fixture
def multi_route(route_config):
    return MultiRoute(routes={
        ROUTE_ID: route_config,
        "translate:v1": RouteConfig(price=0.05, mint=MINT, pay_to=PAY_TO, chain="solana-devnet"),
    })


@pytest.fixture
def paid_ledger(ledger):
    """Ledger holding a valid 0.03 USDC payment under TX_SIG, memo matching nonce-1."""
    ledger.transactions[TX_SIG] = make_transaction(ata(MINT, PAY_TO), 30000, memo=memo_for())
    return ledger
