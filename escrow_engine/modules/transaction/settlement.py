"""Where the money of a transaction ends up."""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal

from escrow_engine.models.enums import TransactionStatus
from escrow_engine.models.transaction import Transaction

_ZERO = Decimal("0.00")


@dataclass(frozen=True)
class Settlement:
    captured: bool
    final: bool
    held_in_escrow: Decimal
    buyer_refund: Decimal
    seller_payout: Decimal


def settle(transaction: Transaction) -> Settlement:
    """Split the captured amount between buyer and seller.

    Once a captured transaction is terminal, ``buyer_refund + seller_payout``
    equals ``amount``. A capture that never succeeded moves no money.
    """
    final = transaction.status in (TransactionStatus.COMPLETED, TransactionStatus.CANCELLED)

    if transaction.captured_at is None:
        return Settlement(
            captured=False,
            final=final,
            held_in_escrow=_ZERO,
            buyer_refund=_ZERO,
            seller_payout=_ZERO,
        )

    amount = transaction.amount
    if transaction.status == TransactionStatus.COMPLETED:
        return Settlement(True, True, _ZERO, _ZERO, amount)
    if transaction.status == TransactionStatus.CANCELLED:
        refund = transaction.refunded_amount if transaction.refunded_amount is not None else amount
        return Settlement(True, True, _ZERO, refund, amount - refund)
    return Settlement(True, False, amount, _ZERO, _ZERO)
