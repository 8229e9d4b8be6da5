"""Simulated capture provider for demos and local development."""

from __future__ import annotations

import asyncio
import logging
import random
import uuid
from decimal import Decimal

from escrow_engine.config import settings
from escrow_engine.modules.transaction.constants import CAPTURE_DECLINED_REASON
from escrow_engine.modules.transaction.providers.base import CaptureResult, PaymentCaptureProvider

logger = logging.getLogger(__name__)


class SimulatedCaptureProvider(PaymentCaptureProvider):
    """Approves a configurable share of captures after a short delay."""

    def __init__(
        self,
        success_rate: float | None = None,
        delay_seconds: float | None = None,
        rng: random.Random | None = None,
    ) -> None:
        self.success_rate = (
            settings.simulated_capture_success_rate if success_rate is None else success_rate
        )
        self.delay_seconds = (
            settings.simulated_capture_delay_seconds if delay_seconds is None else delay_seconds
        )
        self._rng = rng or random.Random()

    async def attempt_capture(self, transaction_id: uuid.UUID, amount: Decimal) -> CaptureResult:
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if self._rng.random() < self.success_rate:
            logger.info("Simulated capture of %s succeeded for transaction %s", amount, transaction_id)
            return CaptureResult(success=True)
        logger.info("Simulated capture of %s declined for transaction %s", amount, transaction_id)
        return CaptureResult(success=False, reason=CAPTURE_DECLINED_REASON)

    async def health_check(self) -> bool:
        return True
