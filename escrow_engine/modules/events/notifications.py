"""Outbox handlers that relay escrow events to the marketplace application."""

from __future__ import annotations

import logging

from escrow_engine.modules.dispute.constants import (
    EVENT_DISPUTE_ESCALATED,
    EVENT_DISPUTE_MESSAGE_POSTED,
    EVENT_DISPUTE_OPENED,
    EVENT_DISPUTE_RESOLVED,
)
from escrow_engine.modules.events.handlers import EventHandlerRegistry
from escrow_engine.modules.marketplace.client import MarketplaceNotifier
from escrow_engine.modules.transaction.constants import (
    COMPLETION_MODE_ADMIN,
    COMPLETION_MODE_AUTO,
    EVENT_ADMIN_ACTION_REVERSED,
    EVENT_ITEM_DELIVERED,
    EVENT_ITEM_SHIPPED,
    EVENT_PAYMENT_FAILED,
    EVENT_PAYMENT_SECURED,
    EVENT_STUCK_PENDING,
    EVENT_TRANSACTION_CANCELLED,
    EVENT_TRANSACTION_COMPLETED,
)

logger = logging.getLogger(__name__)

# event_type -> (message for the buyer, message for the seller)
_MESSAGES: dict[str, tuple[str, str]] = {
    EVENT_PAYMENT_SECURED: (
        'Your payment of {amount} for "{item}" is now secured in escrow.',
        'Payment for "{item}" is secured, you can now ship the item.',
    ),
    EVENT_PAYMENT_FAILED: (
        'Your payment for "{item}" failed ({reason}). Please try again.',
        "",
    ),
    EVENT_ITEM_SHIPPED: (
        '"{item}" has been shipped. Tracking number: {tracking_number}.',
        "",
    ),
    EVENT_ITEM_DELIVERED: (
        '"{item}" has been delivered. You have until {inspection_period_ends} '
        "to accept it or raise a dispute.",
        '"{item}" has been delivered to the buyer.',
    ),
    EVENT_TRANSACTION_CANCELLED: (
        'The transaction for "{item}" was cancelled: {reason}',
        'The transaction for "{item}" was cancelled: {reason}',
    ),
    EVENT_DISPUTE_OPENED: (
        'Your dispute on "{item}" has been opened.',
        'A dispute was opened on "{item}". Reason: {reason}',
    ),
    EVENT_DISPUTE_MESSAGE_POSTED: (
        'There is a new message in the dispute for "{item}".',
        'There is a new message in the dispute for "{item}".',
    ),
    EVENT_DISPUTE_ESCALATED: (
        'The dispute for "{item}" has been escalated for review.',
        'The dispute for "{item}" has been escalated for review.',
    ),
    EVENT_DISPUTE_RESOLVED: (
        'The dispute for "{item}" has been resolved ({outcome}).',
        'The dispute for "{item}" has been resolved ({outcome}).',
    ),
    EVENT_ADMIN_ACTION_REVERSED: (
        'An administrator reversed an earlier decision on "{item}". '
        "The transaction is now {to_status}.",
        'An administrator reversed an earlier decision on "{item}". '
        "The transaction is now {to_status}.",
    ),
}

_COMPLETED_MESSAGES: dict[str, tuple[str, str]] = {
    COMPLETION_MODE_AUTO: (
        'The inspection period for "{item}" has ended and the transaction '
        "was automatically completed.",
        'Funds for "{item}" have been automatically released to you.',
    ),
    COMPLETION_MODE_ADMIN: (
        'An administrator released the funds for "{item}" to the seller.',
        'An administrator released the funds for "{item}" to you.',
    ),
}

_MANUAL_COMPLETED_MESSAGES = (
    'You accepted "{item}". The transaction is complete.',
    'The buyer accepted "{item}". Funds have been released to you.',
)

_notifier: MarketplaceNotifier | None = None


def get_notifier() -> MarketplaceNotifier:
    global _notifier
    if _notifier is None:
        _notifier = MarketplaceNotifier()
    return _notifier


class _Defaulting(dict):
    def __missing__(self, key: str) -> str:
        return ""


def build_message(event_type: str, payload: dict, recipient_id: str) -> str:
    """Render the user-facing text of an event for one recipient."""
    if event_type == EVENT_TRANSACTION_COMPLETED:
        templates = _COMPLETED_MESSAGES.get(payload.get("mode"), _MANUAL_COMPLETED_MESSAGES)
    else:
        templates = _MESSAGES.get(event_type, ("", ""))

    buyer_text, seller_text = templates
    text = seller_text if recipient_id == payload.get("seller_id") else buyer_text
    values = _Defaulting(payload)
    values["item"] = payload.get("item_description", "your item")
    return text.format_map(values)


def relay_notifications(payload: dict) -> None:
    """Send one notification per recipient named on the event."""
    event_type = payload["event_type"]
    notifier = get_notifier()
    for recipient_id in payload.get("recipient_ids", []):
        message = build_message(event_type, payload, recipient_id)
        if not message:
            continue
        notifier.send_notification(
            recipient_id=recipient_id,
            message=message,
            event_type=event_type,
            transaction_id=payload["transaction_id"],
        )


def mark_listing_sold(payload: dict) -> None:
    """Flag the purchased listing as sold once funds are released."""
    listing_id = payload.get("listing_id")
    if listing_id:
        get_notifier().mark_listing_sold(listing_id)


def alert_stuck_transaction(payload: dict) -> None:
    logger.warning(
        "Attention required: transaction %s has been awaiting capture since %s",
        payload["transaction_id"],
        payload.get("created_at"),
    )


NOTIFIED_EVENTS = [
    EVENT_PAYMENT_SECURED,
    EVENT_PAYMENT_FAILED,
    EVENT_ITEM_SHIPPED,
    EVENT_ITEM_DELIVERED,
    EVENT_TRANSACTION_COMPLETED,
    EVENT_TRANSACTION_CANCELLED,
    EVENT_DISPUTE_OPENED,
    EVENT_DISPUTE_MESSAGE_POSTED,
    EVENT_DISPUTE_ESCALATED,
    EVENT_DISPUTE_RESOLVED,
    EVENT_ADMIN_ACTION_REVERSED,
]


def register_notification_handlers() -> None:
    for event_type in NOTIFIED_EVENTS:
        EventHandlerRegistry.register(event_type, relay_notifications)
    EventHandlerRegistry.register(EVENT_TRANSACTION_COMPLETED, mark_listing_sold)
    EventHandlerRegistry.register(EVENT_STUCK_PENDING, alert_stuck_transaction)
