# metergate/client/payment.py
"""
Payment construction and submission for the paid-request client.

A payment is a token transfer from the payer's associated token account to
the recipient's, optionally followed by a memo instruction carrying a JSON
PaymentMemo. Serialization and signing belong to the Signer; submission and
confirmation belong to the Ledger.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import List, Optional, Union

from metergate.api.models.meter import PaymentMemo
from metergate.client.errors import InsufficientBalanceError, is_insufficient_funds_message
from metergate.gate.payment import MEMO_PROGRAM_ID, to_base_units
from metergate.services.collaborators import Ledger, Signer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransferInstruction:
    source: str
    destination: str
    authority: str
    mint: str
    amount: int
    decimals: int


@dataclass(frozen=True)
class MemoInstruction:
    text: str
    program_id: str = MEMO_PROGRAM_ID

    @property
    def data(self) -> bytes:
        return self.text.encode("utf-8")


Instruction = Union[TransferInstruction, MemoInstruction]


@dataclass
class PaymentTransaction:
    fee_payer: str
    instructions: List[Instruction] = field(default_factory=list)

    @property
    def transfer(self) -> Optional[TransferInstruction]:
        for instruction in self.instructions:
            if isinstance(instruction, TransferInstruction):
                return instruction
        return None

    @property
    def memo(self) -> Optional[MemoInstruction]:
        for instruction in self.instructions:
            if isinstance(instruction, MemoInstruction):
                return instruction
        return None


def encode_memo(memo: PaymentMemo) -> str:
    return json.dumps(memo.model_dump(by_alias=True), separators=(",", ":"))


async def build_transfer_transaction(
    ledger: Ledger,
    payer: str,
    recipient: str,
    amount: float,
    mint: str,
    memo: Optional[PaymentMemo] = None,
) -> PaymentTransaction:
    """
    Build a token transfer for a quoted amount.

    Args:
        ledger: Ledger collaborator (token account derivation, mint decimals)
        payer: Payer wallet address
        recipient: Recipient wallet address (quote payTo)
        amount: Amount in token units (e.g. 0.03)
        mint: Token mint address
        memo: Optional correlation memo appended after the transfer

    Returns:
        PaymentTransaction ready for the signer
    """
    source = await ledger.get_associated_token_address(mint, payer)
    destination = await ledger.get_associated_token_address(mint, recipient)
    decimals = await ledger.get_mint_decimals(mint)

    transaction = PaymentTransaction(fee_payer=payer)
    transaction.instructions.append(
        TransferInstruction(
            source=source,
            destination=destination,
            authority=payer,
            mint=mint,
            amount=to_base_units(amount, decimals),
            decimals=decimals,
        )
    )
    if memo is not None:
        transaction.instructions.append(MemoInstruction(text=encode_memo(memo)))
    return transaction


async def send_payment(ledger: Ledger, signer: Signer, transaction: PaymentTransaction) -> str:
    """
    Sign, submit and confirm a payment.

    Returns:
        The transaction signature

    Raises:
        InsufficientBalanceError: the ledger rejected the transfer for lack of funds
    """
    try:
        raw = await signer.sign_transaction(transaction)
        signature = await ledger.submit_transaction(raw)
        await ledger.confirm_transaction(signature)
    except Exception as e:
        if is_insufficient_funds_message(str(e)):
            transfer = transaction.transfer
            raise InsufficientBalanceError(
                details={
                    "amount": transfer.amount if transfer else None,
                    "mint": transfer.mint if transfer else None,
                    "original_error": str(e),
                }
            ) from e
        raise

    logger.info(f"Payment confirmed: {signature}")
    return signature
