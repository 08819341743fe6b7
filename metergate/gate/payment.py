# metergate/gate/payment.py
"""
On-chain payment verification.

Confirms that a transaction signature names a settled token transfer to the
provider's associated token account for the quoted mint, for at least the
quoted amount, optionally correlated to the request by a JSON memo.

The ledger returns transactions in the jsonParsed shape:

    {
        "meta": {"err": None, ...},
        "transaction": {"message": {"instructions": [
            {"program": "spl-token", "parsed": {"type": "transfer", "info": {...}}},
            {"program": "spl-memo", "programId": MEMO_PROGRAM_ID, "parsed": "{...}"},
        ]}},
    }
"""
import asyncio
import json
import logging
from dataclasses import dataclass
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

import base58

from metergate.api.models.meter import PaymentAssertion
from metergate.core.config import settings
from metergate.services.collaborators import Ledger

logger = logging.getLogger(__name__)

MEMO_PROGRAM_ID = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"
TOKEN_PROGRAM = "spl-token"
TRANSFER_TYPES = ("transfer", "transferChecked")


class PaymentFailure(str, Enum):
    TRANSACTION_NOT_FOUND = "transaction_not_found"
    INVALID_RECIPIENT = "invalid_recipient"
    INSUFFICIENT_AMOUNT = "insufficient_amount"
    INVALID_MEMO = "invalid_memo"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class PaymentVerificationResult:
    success: bool
    failure: Optional[PaymentFailure] = None
    message: str = ""

    @classmethod
    def ok(cls) -> "PaymentVerificationResult":
        return cls(success=True, message="Payment verified")

    @classmethod
    def fail(cls, failure: PaymentFailure, message: str) -> "PaymentVerificationResult":
        return cls(success=False, failure=failure, message=message)


@dataclass(frozen=True)
class TokenTransfer:
    destination: str
    amount: int
    authority: Optional[str] = None
    mint: Optional[str] = None


def to_base_units(amount: float, decimals: int) -> int:
    """
    Convert a token amount to the mint's smallest unit, flooring.

    The float goes through its shortest string form so 0.03 becomes exactly
    30000 at six decimals.
    """
    scaled = Decimal(str(amount)) * (Decimal(10) ** decimals)
    return int(scaled.to_integral_value(rounding=ROUND_FLOOR))


def _instructions(transaction: Dict[str, Any]) -> List[Dict[str, Any]]:
    message = (transaction.get("transaction") or {}).get("message") or {}
    return list(message.get("instructions") or [])


def _transfer_amount(info: Dict[str, Any]) -> int:
    if "amount" in info:
        return int(info["amount"])
    token_amount = info.get("tokenAmount") or {}
    return int(token_amount["amount"])


def find_token_transfer(instructions: Iterable[Dict[str, Any]], recipient_ata: str) -> Optional[TokenTransfer]:
    """Return the first spl-token transfer whose destination is recipient_ata."""
    for instruction in instructions:
        if instruction.get("program") != TOKEN_PROGRAM:
            continue
        parsed = instruction.get("parsed")
        if not isinstance(parsed, dict) or parsed.get("type") not in TRANSFER_TYPES:
            continue
        info = parsed.get("info") or {}
        if info.get("destination") != recipient_ata:
            continue
        return TokenTransfer(
            destination=info["destination"],
            amount=_transfer_amount(info),
            authority=info.get("authority"),
            mint=info.get("mint"),
        )
    return None


def find_memo(instructions: Iterable[Dict[str, Any]]) -> Optional[str]:
    """Return the text of the first memo instruction, if any."""
    for instruction in instructions:
        if instruction.get("programId") != MEMO_PROGRAM_ID:
            continue
        parsed = instruction.get("parsed")
        if isinstance(parsed, str):
            return parsed
        data = instruction.get("data")
        if data:
            return base58.b58decode(data).decode("utf-8")
    return None


def check_memo(memo: str, assertion: PaymentAssertion) -> Optional[str]:
    """
    Validate a memo against the request.

    Returns:
        None when the memo is acceptable, otherwise the rejection message
    """
    try:
        data = json.loads(memo)
    except json.JSONDecodeError:
        return "Memo is not valid JSON"
    if not isinstance(data, dict):
        return "Memo is not a JSON object"
    if "routeId" in data and data["routeId"] != assertion.route_id:
        return f"Memo routeId {data['routeId']!r} does not match request route {assertion.route_id!r}"
    if "nonce" in data and data["nonce"] != assertion.nonce:
        return "Memo nonce does not match request nonce"
    return None


async def _verify(
    ledger: Ledger,
    tx_sig: str,
    expected_mint: str,
    expected_recipient: str,
    expected_amount: float,
    assertion: PaymentAssertion,
) -> PaymentVerificationResult:
    transaction = await ledger.get_transaction(tx_sig)
    if not transaction or (transaction.get("meta") or {}).get("err"):
        return PaymentVerificationResult.fail(
            PaymentFailure.TRANSACTION_NOT_FOUND,
            "Transaction not found or failed",
        )

    instructions = _instructions(transaction)
    recipient_ata = await ledger.get_associated_token_address(expected_mint, expected_recipient)
    transfer = find_token_transfer(instructions, recipient_ata)
    if transfer is None:
        return PaymentVerificationResult.fail(
            PaymentFailure.INVALID_RECIPIENT,
            "Token transfer to expected recipient not found",
        )

    decimals = await ledger.get_mint_decimals(expected_mint)
    required = to_base_units(expected_amount, decimals)
    if transfer.amount < required:
        return PaymentVerificationResult.fail(
            PaymentFailure.INSUFFICIENT_AMOUNT,
            f"Insufficient amount: expected {required}, got {transfer.amount}",
        )

    memo = find_memo(instructions)
    if memo is not None:
        problem = check_memo(memo, assertion)
        if problem:
            return PaymentVerificationResult.fail(PaymentFailure.INVALID_MEMO, problem)

    return PaymentVerificationResult.ok()


async def verify_payment(
    ledger: Ledger,
    tx_sig: str,
    expected_mint: str,
    expected_recipient: str,
    expected_amount: float,
    assertion: PaymentAssertion,
    timeout: Optional[float] = None,
) -> PaymentVerificationResult:
    """
    Verify that tx_sig settles the quoted payment.

    Args:
        ledger: Ledger collaborator
        tx_sig: Transaction signature from the x-meter-tx header
        expected_mint: Token mint of the route's quote
        expected_recipient: Provider wallet (owner of the receiving token account)
        expected_amount: Quoted amount in token units
        assertion: Parsed payment headers, used for memo correlation
        timeout: Seconds allowed for all ledger calls (METER_LEDGER_TIMEOUT_SECONDS)

    Returns:
        PaymentVerificationResult; never raises
    """
    timeout = timeout if timeout is not None else settings.METER_LEDGER_TIMEOUT_SECONDS
    try:
        return await asyncio.wait_for(
            _verify(ledger, tx_sig, expected_mint, expected_recipient, expected_amount, assertion),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        logger.error(f"Payment verification timed out after {timeout}s for {tx_sig}")
        return PaymentVerificationResult.fail(PaymentFailure.UNKNOWN, f"Ledger timed out after {timeout}s")
    except (KeyError, ValueError, InvalidOperation, UnicodeDecodeError) as e:
        logger.error(f"Malformed ledger data for {tx_sig}: {e}")
        return PaymentVerificationResult.fail(PaymentFailure.UNKNOWN, f"Malformed transaction data: {e}")
    except Exception as e:
        logger.error(f"Payment verification error for {tx_sig}: {e}")
        return PaymentVerificationResult.fail(PaymentFailure.UNKNOWN, str(e) or "Unknown error during verification")
