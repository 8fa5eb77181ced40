from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import List, Optional

from marketplace.errors import Forbidden
from marketplace.lifecycle import OrderLifecycle, PaymentInitiated, ReconcileResult
from marketplace.models import Order
from marketplace.states import OrderStatus


class Role(str, Enum):
    CLIENT = "client"
    PROVIDER = "provider"
    ADMIN = "admin"


@dataclass(frozen=True)
class Actor:
    user_id: str
    role: Role


class CheckoutService:
    """Checks who is asking, then hands the request to the lifecycle engine."""

    def __init__(self, lifecycle: OrderLifecycle):
        self.lifecycle = lifecycle

    def create_order(
        self,
        actor: Actor,
        listing_id: int,
        client_note: Optional[str] = None,
        scheduled_at: Optional[datetime] = None,
    ) -> Order:
        if actor.role is not Role.CLIENT:
            raise Forbidden("Only clients can place orders.")
        return self.lifecycle.create_order(actor.user_id, listing_id, client_note, scheduled_at)

    def get_order(self, actor: Actor, order_id: int) -> Order:
        order = self.lifecycle.get_order(order_id)
        if actor.role is Role.ADMIN or _is_client(actor, order) or _is_provider(actor, order):
            return order
        raise Forbidden("You do not have permission to view this order.")

    def initiate_payment(self, actor: Actor, order_id: int) -> PaymentInitiated:
        order = self.lifecycle.get_order(order_id)
        if not _is_client(actor, order):
            raise Forbidden("Only the client who placed the order can pay for it.")
        return self.lifecycle.initiate_payment(order_id)

    def cancel_order(self, actor: Actor, order_id: int) -> Order:
        order = self.lifecycle.get_order(order_id)
        if _is_client(actor, order):
            return self.lifecycle.cancel_order(order_id, OrderStatus.CANCELLED_BY_CLIENT)
        if _is_provider(actor, order):
            return self.lifecycle.cancel_order(order_id, OrderStatus.CANCELLED_BY_PROVIDER)
        raise Forbidden("Only the client or the provider of an order can cancel it.")

    def update_status(self, actor: Actor, order_id: int, new_status: OrderStatus) -> Order:
        order = self.lifecycle.get_order(order_id)
        if actor.role is not Role.ADMIN and not _is_provider(actor, order):
            raise Forbidden("Only the provider or an admin can update an order's status.")
        if actor.role is Role.PROVIDER and new_status is OrderStatus.CANCELLED_BY_CLIENT:
            raise Forbidden("Providers can only record a cancellation by the provider.")
        return self.lifecycle.update_status(order_id, new_status)

    def refund_order(self, actor: Actor, order_id: int) -> Order:
        order = self.lifecycle.get_order(order_id)
        if actor.role is not Role.ADMIN and not _is_provider(actor, order):
            raise Forbidden("Only the provider or an admin can refund an order.")
        return self.lifecycle.refund_order(order_id)

    def my_orders(self, actor: Actor) -> List[Order]:
        if actor.role is not Role.CLIENT:
            raise Forbidden("Only clients have placed orders.")
        return self.lifecycle.list_orders(client_id=actor.user_id)

    def incoming_orders(self, actor: Actor) -> List[Order]:
        if actor.role is not Role.PROVIDER:
            raise Forbidden("Only providers receive orders.")
        return self.lifecycle.list_orders(provider_id=actor.user_id)

    def checkout_returned(self, actor: Actor, order_id: int, redirect_status: str) -> Order:
        order = self.lifecycle.get_order(order_id)
        if not _is_client(actor, order):
            raise Forbidden("Only the client who placed the order can pay for it.")
        return self.lifecycle.record_checkout_return(order_id, redirect_status)

    def abandon_checkout(self, actor: Actor, order_id: int) -> Order:
        order = self.lifecycle.get_order(order_id)
        if not _is_client(actor, order):
            raise Forbidden("Only the client who placed the order can pay for it.")
        return self.lifecycle.abandon_checkout(order_id)

    def reconcile_webhook(self, raw_body: bytes, signature_header: Optional[str]) -> ReconcileResult:
        return self.lifecycle.reconcile_webhook(raw_body, signature_header)


def _is_client(actor: Actor, order: Order) -> bool:
    return actor.role is Role.CLIENT and order.client_id == actor.user_id


def _is_provider(actor: Actor, order: Order) -> bool:
    return actor.role is Role.PROVIDER and order.provider_id == actor.user_id
