import enum


class UserRole(str, enum.Enum):
    MEMBER = "MEMBER"
    ADMIN = "ADMIN"
    SUPER_ADMIN = "SUPER_ADMIN"


class TransactionStatus(str, enum.Enum):
    PENDING = "PENDING"
    IN_ESCROW = "IN_ESCROW"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELLED = "CANCELLED"


class TransactionTransitionType(str, enum.Enum):
    INITIATE = "INITIATE"
    CAPTURE_SUCCEEDED = "CAPTURE_SUCCEEDED"
    CAPTURE_FAILED = "CAPTURE_FAILED"
    SHIP = "SHIP"
    DELIVER = "DELIVER"
    ACCEPT = "ACCEPT"
    AUTO_RELEASE = "AUTO_RELEASE"
    RAISE_DISPUTE = "RAISE_DISPUTE"
    FORCE_PAYOUT = "FORCE_PAYOUT"
    FORCE_REFUND = "FORCE_REFUND"
    REVERSE = "REVERSE"


class DisputeStatus(str, enum.Enum):
    OPEN = "OPEN"
    ESCALATED = "ESCALATED"
    RESOLVED = "RESOLVED"


class ResolutionOutcome(str, enum.Enum):
    RELEASE = "RELEASE"
    FULL_REFUND = "FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"


class AdminActionType(str, enum.Enum):
    FORCED_PAYOUT = "FORCED_PAYOUT"
    FORCED_FULL_REFUND = "FORCED_FULL_REFUND"
    PARTIAL_REFUND = "PARTIAL_REFUND"
    REVERSAL = "REVERSAL"


class EventStatus(str, enum.Enum):
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
