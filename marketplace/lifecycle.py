"""
Order lifecycle engine.

Two independent writers drive an order: the checkout flow (create,
initiate payment, cancel, manual status updates, refunds) and Stripe's
webhook stream, which is at-least-once and unordered. Both go through this
class, which serialises work per order and applies the transition tables
from ``marketplace.states`` so that replays and late deliveries converge
on the same final state.
"""
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import List, Optional

import structlog

from marketplace.config import Settings
from marketplace.errors import (
    GatewayError,
    InvalidTransition,
    MalformedEvent,
    MarketplaceError,
    OrderNotFound,
    PaymentAlreadyInFlight,
    PaymentNotConfirmed,
    PreconditionFailed,
)
from marketplace.fees import compute_split
from marketplace.ledger import Ledger, LedgerStore
from marketplace.locks import OrderLocks
from marketplace.models import Order, PaymentTransaction, utcnow
from marketplace.states import (
    BEFORE_CONFIRMATION,
    CANCELLABLE,
    CANCELLATIONS,
    EVENT_TARGETS,
    IN_CHECKOUT,
    MANUAL_TRANSITIONS,
    OPEN_PAYMENT_STATUSES,
    PAID,
    PAYABLE,
    SETTLED_PAYMENT_STATUSES,
    EventKind,
    OrderStatus,
    PaymentStatus,
    payment_accepts,
    webhook_order_target,
)
from marketplace.stripe_service import GatewayEvent, StripeGateway

logger = structlog.get_logger(__name__)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    ALREADY_APPLIED = "already_applied"
    UNMATCHED = "unmatched"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ReconcileResult:
    outcome: ReconcileOutcome
    event_id: Optional[str]
    event_type: str
    order_id: Optional[int] = None


@dataclass(frozen=True)
class PaymentInitiated:
    order_id: int
    payment_intent_id: str
    client_secret: str
    amount: Decimal
    platform_fee: Decimal
    currency: str


class OrderLifecycle:
    def __init__(
        self,
        store: LedgerStore,
        gateway: StripeGateway,
        settings: Settings,
        locks: Optional[OrderLocks] = None,
    ):
        self.store = store
        self.gateway = gateway
        self.settings = settings
        self.locks = locks or OrderLocks()

    # ------------------------------------------------------------------
    # Checkout side
    # ------------------------------------------------------------------

    def get_order(self, order_id: int) -> Order:
        with self.store.unit() as ledger:
            return self._load(ledger, order_id)

    def create_order(
        self,
        client_id: str,
        listing_id: int,
        client_note: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Order:
        with self.store.unit() as ledger:
            listing = ledger.get_listing(listing_id)
            if listing is None or not listing.is_active:
                raise PreconditionFailed("Service is no longer available.")
            if listing.provider_id == client_id:
                raise PreconditionFailed("You cannot order your own service.")
            if listing.provider is None or not listing.provider.payment_ready:
                raise PreconditionFailed("The service provider is not currently set up to receive payments.")

            order = Order(
                listing=listing,
                provider=listing.provider,
                client_id=client_id,
                price_at_order=listing.price,
                client_note=client_note,
                scheduled_at=scheduled_at,
                created_at=utcnow(),
                status=OrderStatus.PENDING_PAYMENT,
                transactions=[],
            )
            ledger.save_order(order)

        logger.info("order_created", order_id=order.id, listing_id=listing_id, price=str(order.price_at_order))
        return order

    def initiate_payment(self, order_id: int) -> PaymentInitiated:
        log = logger.bind(order_id=order_id)

        with self.locks.hold(order_id):
            with self.store.unit() as ledger:
                order = self._load(ledger, order_id)
                self._check_payable(order)

            split = compute_split(order.price_at_order, self.settings.platform_fee_rate)
            currency = self.settings.currency
            attempt = len(order.transactions) + 1

            try:
                handle = self.gateway.open_intent(
                    amount=order.price_at_order,
                    currency=currency,
                    order_id=order.id,
                    description=f"Order #{order.id} for service: {order.listing.title}",
                    destination_account=order.provider.connected_account_id,
                    platform_fee=split.platform_fee,
                    idempotency_key=f"order-{order.id}-attempt-{attempt}",
                )
            except GatewayError as exc:
                log.error("payment_intent_failed", error=exc.message, detail=exc.detail)
                with self.store.unit() as ledger:
                    self._load(ledger, order_id, for_update=True).status = OrderStatus.PAYMENT_FAILED
                raise

            with self.store.unit() as ledger:
                order = self._load(ledger, order_id, for_update=True)
                open_tx = order.open_transaction
                # Same idempotency key from another worker: Stripe handed back the intent it recorded.
                replayed = open_tx is not None and open_tx.external_id == handle.external_id
                if not replayed:
                    try:
                        self._check_payable(order)
                    except MarketplaceError:
                        # Another writer moved the order while the gateway call was out.
                        self._discard_intent(handle.external_id, order_id)
                        raise

                    ledger.save_transaction(PaymentTransaction(
                        order=order,
                        external_id=handle.external_id,
                        amount=order.price_at_order,
                        currency=currency,
                        status=PaymentStatus.PENDING,
                        gateway_response="PaymentIntent created",
                        created_at=utcnow(),
                        updated_at=utcnow(),
                    ))
                    order.status = OrderStatus.PENDING_CONFIRMATION

        log.info(
            "payment_intent_replayed" if replayed else "payment_intent_created",
            intent_id=handle.external_id,
            platform_fee=str(split.platform_fee),
        )
        return PaymentInitiated(
            order_id=order_id,
            payment_intent_id=handle.external_id,
            client_secret=handle.client_secret,
            amount=order.price_at_order,
            platform_fee=split.platform_fee,
            currency=currency,
        )

    def cancel_order(self, order_id: int, cancelled_status: OrderStatus) -> Order:
        if cancelled_status not in CANCELLATIONS:
            raise InvalidTransition(f"{cancelled_status.value} is not a cancellation status.")

        with self.locks.hold(order_id):
            with self.store.unit() as ledger:
                order = self._load(ledger, order_id, for_update=True)
                self._cancel(order, cancelled_status)

        logger.info("order_cancelled", order_id=order_id, status=cancelled_status.value)
        return order

    def update_status(self, order_id: int, new_status: OrderStatus) -> Order:
        with self.locks.hold(order_id):
            with self.store.unit() as ledger:
                order = self._load(ledger, order_id, for_update=True)
                previous = order.status

                if new_status == previous:
                    return order
                if new_status in CANCELLATIONS:
                    self._cancel(order, new_status)
                elif new_status in MANUAL_TRANSITIONS.get(previous, ()):
                    order.status = new_status
                elif new_status in PAID and previous in BEFORE_CONFIRMATION:
                    raise PaymentNotConfirmed(
                        f"Cannot mark order as {new_status.value} if payment is not confirmed."
                    )
                else:
                    raise InvalidTransition(
                        f"Order cannot move from {previous.value} to {new_status.value}."
                    )

        logger.info("order_status_updated", order_id=order_id, previous=previous.value, status=new_status.value)
        return order

    def refund_order(self, order_id: int) -> Order:
        with self.locks.hold(order_id):
            with self.store.unit() as ledger:
                order = self._load(ledger, order_id, for_update=True)
                if order.status not in PAID:
                    raise InvalidTransition(f"Order in status {order.status.value} cannot be refunded.")
                tx = order.current_transaction
                if tx is None or tx.status is not PaymentStatus.SUCCEEDED:
                    raise InvalidTransition("Order has no settled payment to refund.")

                self.gateway.refund(tx.external_id)
                self._set_payment_status(tx, PaymentStatus.REFUNDED, "Refund issued by marketplace.")
                order.status = OrderStatus.REFUNDED

        logger.info("order_refunded", order_id=order_id, intent_id=tx.external_id)
        return order

    def list_orders(self, client_id: Optional[str] = None, provider_id: Optional[str] = None) -> List[Order]:
        with self.store.unit() as ledger:
            return ledger.list_orders(client_id=client_id, provider_id=provider_id)

    def record_checkout_return(self, order_id: int, redirect_status: str) -> Order:
        """
        The client came back from Stripe's payment page.

        A ``succeeded`` redirect only means the payment was submitted, so the
        order moves to payment_processing and waits for the webhook. The
        redirect never moves an order that is further along.
        """
        with self.locks.hold(order_id):
            with self.store.unit() as ledger:
                order = self._load(ledger, order_id, for_update=True)
                previous = order.status
                if redirect_status == "succeeded" and previous is OrderStatus.PENDING_CONFIRMATION:
                    order.status = OrderStatus.PAYMENT_PROCESSING

        logger.info(
            "checkout_returned",
            order_id=order_id,
            redirect_status=redirect_status,
            previous=previous.value,
            status=order.status.value,
        )
        return order

    def abandon_checkout(self, order_id: int) -> Order:
        """The client left the payment page without paying."""
        with self.locks.hold(order_id):
            with self.store.unit() as ledger:
                order = self._load(ledger, order_id, for_update=True)
                previous = order.status
                tx = order.open_transaction
                if previous in IN_CHECKOUT and (tx is None or tx.status is PaymentStatus.PENDING):
                    if tx is not None:
                        self.gateway.cancel_intent(tx.external_id)
                        self._set_payment_status(tx, PaymentStatus.FAILED, "PaymentIntent canceled: checkout abandoned")
                    order.status = OrderStatus.PAYMENT_FAILED

        logger.info("checkout_abandoned", order_id=order_id, previous=previous.value, status=order.status.value)
        return order

    # ------------------------------------------------------------------
    # Gateway side
    # ------------------------------------------------------------------

    def reconcile_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> ReconcileResult:
        """
        Merge one gateway notification into local state.

        Returns only after the change (or the fact that there was nothing
        to change) is committed, so the caller can acknowledge delivery.
        Signature and payload problems raise before anything is read.
        """
        event = self.gateway.verify_and_parse(
            raw_body, signature_header, self.settings.stripe_webhook_secret
        )
        log = logger.bind(event_id=event.event_id, event_type=event.event_type)
        log.info("webhook_received")

        if event.kind is EventKind.UNHANDLED:
            log.info("webhook_unhandled_type")
            return ReconcileResult(ReconcileOutcome.IGNORED, event.event_id, event.event_type)

        if event.kind is EventKind.ACCOUNT_UPDATED:
            return self._apply_account_update(event)

        if not event.intent_id:
            raise MalformedEvent("Event does not reference a payment intent.")

        log = log.bind(intent_id=event.intent_id)
        with self.store.unit() as ledger:
            tx = ledger.get_transaction_by_external_id(event.intent_id)
            order_id = tx.order_id if tx is not None else None

        if order_id is None:
            log.warning("webhook_unmatched_transaction")
            return ReconcileResult(ReconcileOutcome.UNMATCHED, event.event_id, event.event_type)

        with self.locks.hold(order_id):
            with self.store.unit() as ledger:
                order = self._load(ledger, order_id, for_update=True)
                tx = next(t for t in order.transactions if t.external_id == event.intent_id)
                changed = self._apply_payment_event(order, tx, event)

        outcome = ReconcileOutcome.APPLIED if changed else ReconcileOutcome.ALREADY_APPLIED
        log.info("webhook_reconciled", order_id=order_id, outcome=outcome.value, order_status=order.status.value)
        return ReconcileResult(outcome, event.event_id, event.event_type, order_id)

    def _apply_payment_event(self, order: Order, tx: PaymentTransaction, event: GatewayEvent) -> bool:
        if event.kind is EventKind.PARTIALLY_REFUNDED:
            # the charge stays settled; only the note changes
            if tx.status is not PaymentStatus.SUCCEEDED:
                return False
            return self._set_payment_status(tx, PaymentStatus.SUCCEEDED, _describe(event))

        tx_target, _ = EVENT_TARGETS[event.kind]
        is_current = order.current_transaction is tx
        was_settled = tx.status in SETTLED_PAYMENT_STATUSES

        if not is_current and tx_target in OPEN_PAYMENT_STATUSES:
            # Never reopen a superseded attempt; only one may be open per order.
            logger.info("superseded_intent_event_ignored", order_id=order.id, intent_id=tx.external_id)
            changed = False
        else:
            changed = self._set_payment_status(tx, tx_target, _describe(event))

        target = webhook_order_target(order.status, event.kind)
        if target is not None and target != order.status and (is_current or event.kind is EventKind.SUCCEEDED):
            logger.info(
                "order_status_reconciled",
                order_id=order.id,
                intent_id=tx.external_id,
                previous=order.status.value,
                status=target.value,
            )
            order.status = target
            changed = True
            if event.kind is EventKind.SUCCEEDED and not is_current:
                self._close_superseded(order, tx)
        elif event.kind is EventKind.SUCCEEDED and order.status in CANCELLATIONS:
            logger.error("payment_succeeded_on_cancelled_order", order_id=order.id, intent_id=tx.external_id)
        elif event.kind is EventKind.SUCCEEDED and not was_settled:
            paid_with = [
                other.external_id for other in order.transactions
                if other is not tx and other.status in SETTLED_PAYMENT_STATUSES
            ]
            if paid_with:
                logger.error(
                    "duplicate_payment_succeeded",
                    order_id=order.id,
                    intent_id=tx.external_id,
                    paid_with=paid_with,
                )

        return changed

    def _close_superseded(self, order: Order, settled: PaymentTransaction) -> None:
        """Cancel attempts left open after an older intent settled the order."""
        for tx in order.transactions:
            if tx is settled or not tx.is_open:
                continue
            if tx.status is not PaymentStatus.PENDING:
                logger.error("superseded_intent_still_processing", order_id=order.id, intent_id=tx.external_id)
                continue
            try:
                self.gateway.cancel_intent(tx.external_id)
            except GatewayError as exc:
                logger.error(
                    "superseded_intent_not_cancelled",
                    order_id=order.id,
                    intent_id=tx.external_id,
                    detail=exc.detail,
                )
                continue
            self._set_payment_status(
                tx, PaymentStatus.FAILED, f"PaymentIntent canceled: superseded by {settled.external_id}"
            )
            logger.info("superseded_intent_cancelled", order_id=order.id, intent_id=tx.external_id)

    def _apply_account_update(self, event: GatewayEvent) -> ReconcileResult:
        log = logger.bind(event_id=event.event_id, account_id=event.account_id)
        with self.store.unit() as ledger:
            provider = ledger.get_provider_by_account(event.account_id, for_update=True)
            if provider is None:
                log.warning("webhook_unmatched_account")
                return ReconcileResult(ReconcileOutcome.UNMATCHED, event.event_id, event.event_type)

            if (
                provider.onboarding_complete == event.onboarding_complete
                and provider.details_submitted == event.details_submitted
            ):
                return ReconcileResult(ReconcileOutcome.ALREADY_APPLIED, event.event_id, event.event_type)

            provider.onboarding_complete = event.onboarding_complete
            provider.details_submitted = event.details_submitted
            ledger.save_provider(provider)

        log.info(
            "provider_account_updated",
            provider_id=provider.id,
            onboarding_complete=event.onboarding_complete,
            details_submitted=event.details_submitted,
        )
        return ReconcileResult(ReconcileOutcome.APPLIED, event.event_id, event.event_type)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _load(self, ledger: Ledger, order_id: int, for_update: bool = False) -> Order:
        order = ledger.get_order(order_id, for_update=for_update)
        if order is None:
            raise OrderNotFound(f"Order {order_id} not found.")
        return order

    def _check_payable(self, order: Order) -> None:
        if order.open_transaction is not None:
            raise PaymentAlreadyInFlight(
                f"A payment for order {order.id} is already in progress.",
                detail=order.open_transaction.external_id,
            )
        if order.status not in PAYABLE:
            raise InvalidTransition(
                f"Payment for this order cannot be initiated as its status is {order.status.value}."
            )
        if order.provider is None or not order.provider.payment_ready:
            raise PreconditionFailed("The service provider is not currently set up to receive payments.")

    def _cancel(self, order: Order, cancelled_status: OrderStatus) -> None:
        if order.status not in CANCELLABLE:
            raise InvalidTransition(
                f"Order in status {order.status.value} cannot be cancelled directly; it must be refunded."
            )
        tx = order.open_transaction
        if tx is not None and tx.status is PaymentStatus.PENDING:
            self.gateway.cancel_intent(tx.external_id)
            self._set_payment_status(tx, PaymentStatus.FAILED, f"PaymentIntent canceled: {cancelled_status.value}")
        order.status = cancelled_status

    def _set_payment_status(self, tx: PaymentTransaction, target: PaymentStatus, message: str) -> bool:
        if not payment_accepts(tx.status, target):
            logger.info(
                "payment_status_kept",
                intent_id=tx.external_id,
                status=tx.status.value,
                ignored=target.value,
            )
            return False

        message = message[: self.settings.gateway_response_max_length]
        if tx.status == target and tx.gateway_response == message:
            return False

        tx.status = target
        tx.gateway_response = message
        tx.updated_at = utcnow()
        return True

    def _discard_intent(self, external_id: str, order_id: int) -> None:
        try:
            self.gateway.cancel_intent(external_id)
        except GatewayError as exc:
            # Left open at the gateway; its webhooks will come back unmatched.
            logger.error("orphan_intent_not_cancelled", order_id=order_id, intent_id=external_id, detail=exc.detail)


def _describe(event: GatewayEvent) -> str:
    if event.kind is EventKind.SUCCEEDED:
        return "Payment succeeded via webhook."
    if event.kind is EventKind.FAILED:
        return f"Payment failed: {event.failure_message or 'No specific error message.'}"
    if event.kind is EventKind.PROCESSING:
        return "Payment processing."
    if event.kind is EventKind.CANCELED:
        return "PaymentIntent canceled."
    if event.kind is EventKind.PARTIALLY_REFUNDED:
        return f"Charge partially refunded: {event.amount_refunded} of {event.amount} (minor units)."
    return "Charge refunded."
