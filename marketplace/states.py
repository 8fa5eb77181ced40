"""
Order and payment states, gateway event kinds, and the transition tables
that decide how each of them may change.

Order flow:
    pending_payment -> pending_confirmation -> payment_processing
        -> confirmed -> in_progress -> completed

Side branches:
    cancelled_by_client / cancelled_by_provider  (before confirmation only)
    payment_failed                               (retryable)
    refunded                                     (after confirmation only)

Statuses are never compared by declaration order. Every allowed move is
listed explicitly below; anything not listed is rejected (manual paths)
or ignored (webhook paths).
"""
from enum import Enum
from typing import Dict, FrozenSet, Optional, Tuple


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PENDING_CONFIRMATION = "pending_confirmation"
    PAYMENT_PROCESSING = "payment_processing"
    CONFIRMED = "confirmed"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED_BY_CLIENT = "cancelled_by_client"
    CANCELLED_BY_PROVIDER = "cancelled_by_provider"
    PAYMENT_FAILED = "payment_failed"
    REFUNDED = "refunded"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class EventKind(str, Enum):
    """Gateway notifications the engine understands."""

    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PROCESSING = "processing"
    CANCELED = "canceled"
    REFUNDED = "refunded"
    PARTIALLY_REFUNDED = "partially_refunded"
    ACCOUNT_UPDATED = "account_updated"
    UNHANDLED = "unhandled"


OPEN_PAYMENT_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.PENDING, PaymentStatus.PROCESSING}
)

SETTLED_PAYMENT_STATUSES: FrozenSet[PaymentStatus] = frozenset(
    {PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED}
)

BEFORE_CONFIRMATION: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PENDING_CONFIRMATION,
    OrderStatus.PAYMENT_PROCESSING,
    OrderStatus.PAYMENT_FAILED,
})

PAID: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.CONFIRMED, OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED}
)

CANCELLATIONS: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.CANCELLED_BY_CLIENT, OrderStatus.CANCELLED_BY_PROVIDER}
)

CANCELLABLE: FrozenSet[OrderStatus] = frozenset({
    OrderStatus.PENDING_PAYMENT,
    OrderStatus.PENDING_CONFIRMATION,
    OrderStatus.PAYMENT_PROCESSING,
})

PAYABLE: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PENDING_PAYMENT, OrderStatus.PAYMENT_FAILED}
)

# statuses in which the client is still inside the checkout page
IN_CHECKOUT: FrozenSet[OrderStatus] = frozenset(
    {OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_CONFIRMATION}
)


# event kind -> (transaction target, order target)
EVENT_TARGETS: Dict[EventKind, Tuple[PaymentStatus, OrderStatus]] = {
    EventKind.SUCCEEDED: (PaymentStatus.SUCCEEDED, OrderStatus.CONFIRMED),
    EventKind.FAILED: (PaymentStatus.FAILED, OrderStatus.PAYMENT_FAILED),
    EventKind.PROCESSING: (PaymentStatus.PROCESSING, OrderStatus.PAYMENT_PROCESSING),
    EventKind.CANCELED: (PaymentStatus.FAILED, OrderStatus.PAYMENT_FAILED),
    EventKind.REFUNDED: (PaymentStatus.REFUNDED, OrderStatus.REFUNDED),
}

# event kind -> order statuses the event may move an order out of
WEBHOOK_ORDER_SOURCES: Dict[EventKind, FrozenSet[OrderStatus]] = {
    EventKind.PROCESSING: frozenset(
        {OrderStatus.PENDING_PAYMENT, OrderStatus.PENDING_CONFIRMATION}
    ),
    EventKind.SUCCEEDED: BEFORE_CONFIRMATION,
    EventKind.FAILED: CANCELLABLE,
    EventKind.CANCELED: CANCELLABLE,
    EventKind.REFUNDED: PAID,
}

# current transaction status -> statuses an event may move it to
PAYMENT_TRANSITIONS: Dict[PaymentStatus, FrozenSet[PaymentStatus]] = {
    PaymentStatus.PENDING: frozenset(PaymentStatus),
    PaymentStatus.PROCESSING: frozenset(PaymentStatus),
    # failed is terminal unless the gateway later reports a settled outcome
    PaymentStatus.FAILED: frozenset(
        {PaymentStatus.FAILED, PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED}
    ),
    PaymentStatus.SUCCEEDED: frozenset({PaymentStatus.SUCCEEDED, PaymentStatus.REFUNDED}),
    PaymentStatus.REFUNDED: frozenset({PaymentStatus.REFUNDED}),
}

# manual (provider/admin) moves along the fulfilment leg
MANUAL_TRANSITIONS: Dict[OrderStatus, FrozenSet[OrderStatus]] = {
    OrderStatus.CONFIRMED: frozenset({OrderStatus.IN_PROGRESS, OrderStatus.COMPLETED}),
    OrderStatus.IN_PROGRESS: frozenset({OrderStatus.COMPLETED}),
}


def webhook_order_target(current: OrderStatus, kind: EventKind) -> Optional[OrderStatus]:
    """Order status a payment event moves ``current`` to, or None to leave it."""
    if kind not in EVENT_TARGETS:
        return None
    if current not in WEBHOOK_ORDER_SOURCES[kind]:
        return None
    return EVENT_TARGETS[kind][1]


def payment_accepts(current: PaymentStatus, target: PaymentStatus) -> bool:
    return target in PAYMENT_TRANSITIONS[current]
