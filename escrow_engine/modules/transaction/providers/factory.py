"""Provider factory — select the configured payment capture adapter."""

from __future__ import annotations

from escrow_engine.config import settings
from escrow_engine.modules.transaction.providers.base import PaymentCaptureProvider
from escrow_engine.modules.transaction.providers.simulated import SimulatedCaptureProvider

_instances: dict[str, PaymentCaptureProvider] = {}


def get_capture_provider(name: str | None = None) -> PaymentCaptureProvider:
    name = name or settings.payment_provider
    if name not in _instances:
        if name == "simulated":
            _instances[name] = SimulatedCaptureProvider()
        else:
            raise ValueError(f"No adapter for payment provider: {name}")
    return _instances[name]
