"""Abstract base class for payment capture providers."""

from __future__ import annotations

import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from decimal import Decimal


@dataclass(frozen=True)
class CaptureResult:
    success: bool
    reason: str | None = None


class PaymentCaptureProvider(ABC):
    @abstractmethod
    async def attempt_capture(self, transaction_id: uuid.UUID, amount: Decimal) -> CaptureResult:
        """Try to capture ``amount`` from the buyer for the given transaction.

        A declined capture is a normal result, not an exception; exceptions
        mean the outcome is unknown and the attempt should be retried.
        """

    @abstractmethod
    async def health_check(self) -> bool:
        """Return True if the provider is reachable."""
