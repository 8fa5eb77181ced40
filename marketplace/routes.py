from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel, ConfigDict, Field

from marketplace.auth import current_actor
from marketplace.checkout import Actor, CheckoutService
from marketplace.states import OrderStatus, PaymentStatus

router = APIRouter()


class OrderRequest(BaseModel):
    listing_id: int
    client_note: Optional[str] = Field(default=None, max_length=500)
    scheduled_at: Optional[datetime] = None


class StatusRequest(BaseModel):
    status: OrderStatus


class CheckoutReturn(BaseModel):
    redirect_status: str


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    external_id: str
    amount: Decimal
    currency: str
    status: PaymentStatus
    gateway_response: Optional[str] = None
    updated_at: datetime


class OrderOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    listing_id: int
    client_id: str
    provider_id: str
    price_at_order: Decimal
    status: OrderStatus
    created_at: datetime
    scheduled_at: Optional[datetime] = None
    client_note: Optional[str] = None
    transactions: List[TransactionOut] = []


class PaymentOut(BaseModel):
    order_id: int
    payment_intent_id: str
    client_secret: str
    publishable_key: str
    amount: Decimal
    platform_fee: Decimal
    currency: str


def get_checkout(request: Request) -> CheckoutService:
    return request.app.state.checkout


@router.post("/orders", response_model=OrderOut)
def create_order(
    body: OrderRequest,
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.create_order(actor, body.listing_id, body.client_note, body.scheduled_at)


@router.get("/orders", response_model=List[OrderOut])
def my_orders(
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.my_orders(actor)


@router.get("/orders/incoming", response_model=List[OrderOut])
def incoming_orders(
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.incoming_orders(actor)


@router.get("/orders/{order_id}", response_model=OrderOut)
def get_order(
    order_id: int,
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.get_order(actor, order_id)


@router.post("/orders/{order_id}/payment", response_model=PaymentOut)
def initiate_payment(
    order_id: int,
    request: Request,
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    result = checkout.initiate_payment(actor, order_id)
    return PaymentOut(
        order_id=result.order_id,
        payment_intent_id=result.payment_intent_id,
        client_secret=result.client_secret,
        publishable_key=request.app.state.settings.stripe_publishable_key,
        amount=result.amount,
        platform_fee=result.platform_fee,
        currency=result.currency,
    )


@router.post("/orders/{order_id}/payment/return", response_model=OrderOut)
def payment_return(
    order_id: int,
    body: CheckoutReturn,
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.checkout_returned(actor, order_id, body.redirect_status)


@router.post("/orders/{order_id}/payment/abandon", response_model=OrderOut)
def payment_abandon(
    order_id: int,
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.abandon_checkout(actor, order_id)


@router.post("/orders/{order_id}/cancel", response_model=OrderOut)
def cancel_order(
    order_id: int,
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.cancel_order(actor, order_id)


@router.post("/orders/{order_id}/status", response_model=OrderOut)
def update_status(
    order_id: int,
    body: StatusRequest,
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.update_status(actor, order_id, body.status)


@router.post("/orders/{order_id}/refund", response_model=OrderOut)
def refund(
    order_id: int,
    actor: Actor = Depends(current_actor),
    checkout: CheckoutService = Depends(get_checkout),
):
    return checkout.refund_order(actor, order_id)
