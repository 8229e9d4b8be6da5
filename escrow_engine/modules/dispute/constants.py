"""Dispute statuses, event types and message templates."""

from __future__ import annotations

from escrow_engine.models.enums import DisputeStatus

# Disputes that still accept chat messages and can be resolved
ACTIVE_STATUSES: set[DisputeStatus] = {
    DisputeStatus.OPEN,
    DisputeStatus.ESCALATED,
}

# Valid transitions: from_status -> [allowed to_statuses]
VALID_DISPUTE_TRANSITIONS: dict[DisputeStatus, list[DisputeStatus]] = {
    DisputeStatus.OPEN: [DisputeStatus.ESCALATED, DisputeStatus.RESOLVED],
    DisputeStatus.ESCALATED: [DisputeStatus.RESOLVED],
}

OPENING_MESSAGE_TEMPLATE = "Dispute opened. Reason: {reason}"

# Event type strings for the outbox
EVENT_DISPUTE_OPENED = "dispute.opened"
EVENT_DISPUTE_MESSAGE_POSTED = "dispute.message_posted"
EVENT_DISPUTE_ESCALATED = "dispute.escalated"
EVENT_DISPUTE_RESOLVED = "dispute.resolved"
