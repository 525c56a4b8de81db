from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, insert, select
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

from fulfillment.domain.exceptions import PaymentServiceError
from fulfillment.domain.models import OrderStatus
from fulfillment.infrastructure.db_schema import (
    metadata, offers_tbl, order_items_tbl, order_status_history_tbl, orders_tbl, outbox_events_tbl,
    product_collections_tbl, products_tbl, store_subscriptions_tbl,
)
from fulfillment.infrastructure.unit_of_work import UnitOfWork

STORE_ID = "store-1"


class Database:
    """Синхронный доступ к тестовой базе: наполнение и проверки"""

    def __init__(self, engine):
        self.engine = engine

    def _insert(self, table, **values):
        with self.engine.begin() as conn:
            conn.execute(insert(table).values(**values))

    def add_product(self, product_id, price, stock=10, reserved_stock=0, tags=None, collections=None, store_id=STORE_ID):
        self._insert(
            products_tbl,
            id=product_id,
            store_id=store_id,
            name=f"Product {product_id}",
            price=Decimal(price),
            stock=stock,
            reserved_stock=reserved_stock,
            tags=tags or []
        )
        for collection_id in collections or []:
            self._insert(product_collections_tbl, product_id=product_id, collection_id=collection_id)

    def add_offer(
        self, offer_id, offer_type, discount_details=None, applicable_to=None, conditions=None,
        code=None, require_code=False, valid_from=None, valid_until=None, is_active=True, store_id=STORE_ID
    ):
        now = datetime.now(timezone.utc)
        self._insert(
            offers_tbl,
            id=offer_id,
            store_id=store_id,
            name=f"Offer {offer_id}",
            offer_code=code,
            require_code=require_code,
            offer_type=offer_type,
            discount_details=discount_details or {},
            applicable_to=applicable_to if applicable_to is not None else {"storeWide": True},
            conditions=conditions,
            validity_date_range={
                "validFrom": (valid_from or now - timedelta(days=1)).isoformat(),
                "validUntil": (valid_until or now + timedelta(days=1)).isoformat()
            },
            is_active=is_active
        )

    def add_order(
        self, order_id, status=OrderStatus.PAYMENT_PENDING, items=(), payment_ref=None,
        created_at=None, store_id=STORE_ID, customer_id="customer-1"
    ):
        """items: (product_id, quantity, unit_price). Резерв по позициям товаров не меняется."""
        created_at = created_at or datetime.now(timezone.utc)
        subtotal = sum((Decimal(price) * quantity for _, quantity, price in items), Decimal("0"))
        self._insert(
            orders_tbl,
            id=order_id,
            store_id=store_id,
            customer_id=customer_id,
            status=status,
            status_updated_at=created_at,
            subtotal=subtotal,
            discount_total=Decimal("0"),
            total=subtotal,
            payment_ref=payment_ref,
            created_at=created_at,
            updated_at=created_at
        )
        for product_id, quantity, price in items:
            self._insert(
                order_items_tbl,
                order_id=order_id,
                product_id=product_id,
                quantity=quantity,
                unit_price=Decimal(price),
                discount_applied=Decimal("0")
            )

    def add_subscription(self, subscription_id, status, store_id=STORE_ID, current_period_end=None, linked_account_id=None):
        self._insert(
            store_subscriptions_tbl,
            id=subscription_id,
            store_id=store_id,
            status=status,
            current_period_end=current_period_end,
            linked_account_id=linked_account_id,
            updated_at=datetime.now(timezone.utc)
        )

    def _one(self, query):
        with self.engine.connect() as conn:
            return conn.execute(query).fetchone()

    def _all(self, query):
        with self.engine.connect() as conn:
            return conn.execute(query).fetchall()

    def product(self, product_id):
        return self._one(select(products_tbl).where(products_tbl.c.id == product_id))

    def order(self, order_id):
        return self._one(select(orders_tbl).where(orders_tbl.c.id == order_id))

    def orders(self):
        return self._all(select(orders_tbl))

    def history(self, order_id):
        return self._all(
            select(order_status_history_tbl)
            .where(order_status_history_tbl.c.order_id == order_id)
            .order_by(order_status_history_tbl.c.id)
        )

    def outbox(self):
        return self._all(select(outbox_events_tbl).order_by(outbox_events_tbl.c.created_at, outbox_events_tbl.c.id))

    def subscription(self, subscription_id):
        return self._one(select(store_subscriptions_tbl).where(store_subscriptions_tbl.c.id == subscription_id))


class FakePaymentProvider:
    def __init__(self):
        self.created = []
        self.statuses = {}
        self.fail_create = False
        self.fail_status = False
        self.fail_linked_account = False
        self.linked_accounts = []

    async def create_order(self, order_id, amount, store_id):
        if self.fail_create:
            raise PaymentServiceError("Payment provider не доступен")
        self.created.append((order_id, amount, store_id))
        return {"id": f"order_ref_{len(self.created)}", "amount": amount}

    async def fetch_order_status(self, payment_ref):
        if self.fail_status:
            raise PaymentServiceError("Payment provider не доступен")
        return self.statuses.get(payment_ref)

    async def create_linked_account(self, store_id):
        if self.fail_linked_account:
            raise PaymentServiceError("Payment provider ошибка: 500")
        self.linked_accounts.append(store_id)
        return f"acc_{store_id}"


class FakeKafkaProducer:
    def __init__(self, fail=False):
        self.fail = fail
        self.published = []

    async def publish_order_status_changed(self, event_id, event_data):
        if self.fail:
            return False
        self.published.append((event_id, event_data))
        return True


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "fulfillment.db"


@pytest.fixture
def db(db_path):
    engine = create_engine(f"sqlite:///{db_path}", poolclass=NullPool)
    metadata.create_all(engine)
    yield Database(engine)
    engine.dispose()


@pytest.fixture
def session_factory(db, db_path):
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", poolclass=NullPool)
    return async_sessionmaker(engine, expire_on_commit=False)


@pytest.fixture
def uow(session_factory):
    return UnitOfWork(session_factory)


@pytest.fixture
def payment_provider():
    return FakePaymentProvider()


@pytest.fixture
def kafka_producer():
    return FakeKafkaProducer()
