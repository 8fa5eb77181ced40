"""
Stripe adapter.

The only module that talks to Stripe or sees Stripe payload shapes. The
engine gets back an IntentHandle or a GatewayEvent and nothing else.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Optional

import stripe
import structlog

from marketplace.config import Settings
from marketplace.errors import GatewayError, InvalidSignature, MalformedEvent
from marketplace.fees import to_minor_units
from marketplace.states import EventKind

logger = structlog.get_logger(__name__)

GENERIC_GATEWAY_MESSAGE = "The payment provider could not process the request. Please try again later."

EVENT_TYPES = {
    "payment_intent.succeeded": EventKind.SUCCEEDED,
    "payment_intent.payment_failed": EventKind.FAILED,
    "payment_intent.processing": EventKind.PROCESSING,
    "payment_intent.canceled": EventKind.CANCELED,
    "charge.refunded": EventKind.REFUNDED,
    "account.updated": EventKind.ACCOUNT_UPDATED,
}


@dataclass(frozen=True)
class IntentHandle:
    external_id: str
    client_secret: str


@dataclass(frozen=True)
class GatewayEvent:
    event_id: Optional[str]
    kind: EventKind
    event_type: str
    intent_id: Optional[str] = None
    failure_message: Optional[str] = None
    account_id: Optional[str] = None
    charges_enabled: bool = False
    payouts_enabled: bool = False
    details_submitted: bool = False
    amount: Optional[int] = None
    amount_refunded: Optional[int] = None

    @property
    def onboarding_complete(self) -> bool:
        return self.charges_enabled and self.payouts_enabled and self.details_submitted


def _gateway_error(exc: stripe.StripeError, **context: Any) -> GatewayError:
    detail = str(exc)
    logger.error("stripe_call_failed", error=detail, error_type=type(exc).__name__, **context)
    # only card declines carry text written for the payer
    if isinstance(exc, stripe.CardError) and exc.user_message:
        return GatewayError(exc.user_message, detail=detail)
    return GatewayError(GENERIC_GATEWAY_MESSAGE, detail=detail)


class StripeGateway:
    def __init__(self, settings: Settings, client: Optional[stripe.StripeClient] = None):
        self.client = client or stripe.StripeClient(
            settings.stripe_secret_key,
            http_client=stripe.RequestsClient(timeout=settings.gateway_timeout),
            max_network_retries=0,
        )

    def open_intent(
        self,
        amount: Decimal,
        currency: str,
        order_id: int,
        description: str,
        destination_account: Optional[str],
        platform_fee: Decimal,
        idempotency_key: str,
    ) -> IntentHandle:
        if not destination_account:
            raise GatewayError("Service provider payment account not set up or invalid.")

        params = {
            "amount": to_minor_units(amount),
            "currency": currency.lower(),
            "description": description,
            "application_fee_amount": to_minor_units(platform_fee),
            "transfer_data": {"destination": destination_account},
            "metadata": {
                "order_id": str(order_id),
                "platform_fee_amount_decimal": str(platform_fee),
            },
            "automatic_payment_methods": {"enabled": True},
        }
        try:
            intent = self.client.v1.payment_intents.create(
                params=params,
                options={"idempotency_key": idempotency_key},
            )
        except stripe.StripeError as exc:
            raise _gateway_error(exc, order_id=order_id) from exc

        return IntentHandle(external_id=intent.id, client_secret=intent.client_secret)

    def cancel_intent(self, external_id: str) -> None:
        try:
            self.client.v1.payment_intents.cancel(external_id)
        except stripe.StripeError as exc:
            raise _gateway_error(exc, intent_id=external_id) from exc

    def refund(self, external_id: str) -> None:
        try:
            self.client.v1.refunds.create(params={"payment_intent": external_id})
        except stripe.StripeError as exc:
            raise _gateway_error(exc, intent_id=external_id) from exc

    def verify_and_parse(self, raw_body: bytes, signature_header: Optional[str], secret: str) -> GatewayEvent:
        if not signature_header:
            raise InvalidSignature("Missing signature")
        try:
            event = stripe.Webhook.construct_event(raw_body, signature_header, secret)
        except ValueError as exc:
            raise MalformedEvent("Invalid payload", detail=str(exc)) from exc
        except stripe.SignatureVerificationError as exc:
            raise InvalidSignature("Invalid signature", detail=str(exc)) from exc

        try:
            return _to_gateway_event(event)
        except (KeyError, TypeError, AttributeError) as exc:
            raise MalformedEvent("Invalid payload", detail=repr(exc)) from exc


def _field(obj: Any, key: str, default: Any = None) -> Any:
    try:
        value = obj[key]
    except KeyError:
        return default
    return default if value is None else value


def _to_gateway_event(event: Any) -> GatewayEvent:
    # StripeObject is not a dict on current releases
    if hasattr(event, "to_dict"):
        event = event.to_dict()

    event_type = event["type"]
    obj = event["data"]["object"]
    kind = EVENT_TYPES.get(event_type, EventKind.UNHANDLED)

    if kind is EventKind.ACCOUNT_UPDATED:
        return GatewayEvent(
            event_id=_field(event, "id"),
            kind=kind,
            event_type=event_type,
            account_id=obj["id"],
            charges_enabled=bool(_field(obj, "charges_enabled")),
            payouts_enabled=bool(_field(obj, "payouts_enabled")),
            details_submitted=bool(_field(obj, "details_submitted")),
        )

    amount = amount_refunded = None
    if kind is EventKind.REFUNDED:
        # charge.refunded carries the charge; the intent is referenced from it
        intent_id = _field(obj, "payment_intent")
        amount = _field(obj, "amount")
        amount_refunded = _field(obj, "amount_refunded")
        if amount is not None and amount_refunded is not None and amount_refunded < amount:
            kind = EventKind.PARTIALLY_REFUNDED
    elif kind is EventKind.UNHANDLED:
        intent_id = None
    else:
        intent_id = obj["id"]

    last_error = _field(obj, "last_payment_error", {})
    return GatewayEvent(
        event_id=_field(event, "id"),
        kind=kind,
        event_type=event_type,
        intent_id=intent_id,
        failure_message=_field(last_error, "message"),
        amount=amount,
        amount_refunded=amount_refunded,
    )
