from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    Enum,
    ForeignKey,
    Integer,
    Numeric,
    String,
)
from sqlalchemy.orm import relationship, validates

from marketplace.database import Base
from marketplace.states import OrderStatus, PaymentStatus


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ProviderAccount(Base):
    __tablename__ = "provider_accounts"

    id = Column(String, primary_key=True)                       # marketplace user id
    email = Column(String)
    connected_account_id = Column(String(100), unique=True, index=True, nullable=True)  # acct_...
    onboarding_complete = Column(Boolean, nullable=False, default=False)
    details_submitted = Column(Boolean, nullable=False, default=False)

    @property
    def payment_ready(self) -> bool:
        return bool(self.connected_account_id) and bool(self.onboarding_complete)


class Listing(Base):
    __tablename__ = "listings"

    id = Column(Integer, primary_key=True)
    title = Column(String(100), nullable=False)
    price = Column(Numeric(18, 2), nullable=False)
    provider_id = Column(String, ForeignKey("provider_accounts.id"), nullable=False)
    is_active = Column(Boolean, nullable=False, default=True)

    provider = relationship(ProviderAccount)


class Order(Base):
    __tablename__ = "orders"

    id = Column(Integer, primary_key=True)
    listing_id = Column(Integer, ForeignKey("listings.id"), nullable=False)
    client_id = Column(String, nullable=False, index=True)
    provider_id = Column(String, ForeignKey("provider_accounts.id"), nullable=False)
    price_at_order = Column(Numeric(18, 2), nullable=False)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    scheduled_at = Column(DateTime, nullable=True)
    client_note = Column(String(500), nullable=True)
    status = Column(
        Enum(OrderStatus, native_enum=False, length=32),
        nullable=False,
        default=OrderStatus.PENDING_PAYMENT,
    )

    listing = relationship(Listing)
    provider = relationship(ProviderAccount)
    transactions = relationship(
        "PaymentTransaction",
        back_populates="order",
        order_by="PaymentTransaction.id",
    )

    @validates("price_at_order")
    def _lock_price(self, key, value):
        if self.price_at_order is not None and value != self.price_at_order:
            raise ValueError(f"price_at_order of order {self.id} is fixed at creation")
        return value

    @property
    def current_transaction(self):
        return self.transactions[-1] if self.transactions else None

    @property
    def open_transaction(self):
        for tx in self.transactions:
            if tx.is_open:
                return tx
        return None


class PaymentTransaction(Base):
    __tablename__ = "payment_transactions"

    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("orders.id"), nullable=False, index=True)
    external_id = Column(String(100), unique=True, index=True, nullable=False)  # Stripe PaymentIntent ID
    amount = Column(Numeric(18, 2), nullable=False)
    currency = Column(String(3), nullable=False)
    status = Column(
        Enum(PaymentStatus, native_enum=False, length=16),
        nullable=False,
        default=PaymentStatus.PENDING,
    )
    gateway_response = Column(String(5000), nullable=True)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow)

    order = relationship(Order, back_populates="transactions")

    @property
    def is_open(self) -> bool:
        return self.status in (PaymentStatus.PENDING, PaymentStatus.PROCESSING)
