"""
Durable store for orders and payment transactions.

All reads and writes go through a unit of work:

    with store.unit() as ledger:
        order = ledger.get_order(order_id, for_update=True)
        order.status = OrderStatus.PENDING_CONFIRMATION
        ledger.save_transaction(tx)

Everything saved inside one ``unit()`` block commits together or not at
all. Related rows each operation needs (listing, provider, transactions)
are loaded eagerly, so returned entities stay usable after the block.
"""
from contextlib import contextmanager
from typing import Iterator, List, Optional

import structlog
from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, selectinload, sessionmaker

from marketplace.errors import StorageUnavailable
from marketplace.models import Listing, Order, PaymentTransaction, ProviderAccount

logger = structlog.get_logger(__name__)


def _order_options():
    return (
        selectinload(Order.listing).selectinload(Listing.provider),
        selectinload(Order.provider),
        selectinload(Order.transactions),
    )


class Ledger:
    """Session-bound view of the store, valid inside one unit of work."""

    def __init__(self, session: Session):
        self.session = session

    def get_order(self, order_id: int, for_update: bool = False) -> Optional[Order]:
        stmt = select(Order).where(Order.id == order_id).options(*_order_options())
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def list_orders(self, client_id: Optional[str] = None, provider_id: Optional[str] = None) -> List[Order]:
        """Newest first, optionally narrowed to one client or one provider."""
        stmt = select(Order).options(*_order_options()).order_by(Order.created_at.desc(), Order.id.desc())
        if client_id is not None:
            stmt = stmt.where(Order.client_id == client_id)
        if provider_id is not None:
            stmt = stmt.where(Order.provider_id == provider_id)
        return list(self.session.scalars(stmt))

    def get_listing(self, listing_id: int) -> Optional[Listing]:
        stmt = (
            select(Listing)
            .where(Listing.id == listing_id)
            .options(selectinload(Listing.provider))
        )
        return self.session.scalars(stmt).first()

    def get_transaction_by_external_id(
        self, external_id: str, for_update: bool = False
    ) -> Optional[PaymentTransaction]:
        stmt = select(PaymentTransaction).where(PaymentTransaction.external_id == external_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def get_provider_by_account(
        self, account_id: str, for_update: bool = False
    ) -> Optional[ProviderAccount]:
        stmt = select(ProviderAccount).where(ProviderAccount.connected_account_id == account_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self.session.scalars(stmt).first()

    def save_order(self, order: Order) -> Order:
        self.session.add(order)
        self.session.flush()
        return order

    def save_transaction(self, tx: PaymentTransaction) -> PaymentTransaction:
        self.session.add(tx)
        self.session.flush()
        return tx

    def save_provider(self, provider: ProviderAccount) -> ProviderAccount:
        self.session.add(provider)
        return provider


class LedgerStore:
    def __init__(self, session_factory: sessionmaker):
        self.session_factory = session_factory

    @contextmanager
    def unit(self) -> Iterator[Ledger]:
        """
        Open a unit of work. Commits on clean exit, rolls back otherwise.

        Database failures are raised as StorageUnavailable after a single
        attempt; callers decide whether the operation should be retried.
        """
        session = self.session_factory()
        try:
            yield Ledger(session)
            session.commit()
        except SQLAlchemyError as exc:
            session.rollback()
            logger.error("ledger_unit_failed", error=str(exc))
            raise StorageUnavailable("Order storage is temporarily unavailable.", detail=str(exc)) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()
