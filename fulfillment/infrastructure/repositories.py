import logging
import uuid
from typing import Optional, List
from datetime import datetime, timezone
from pydantic import ValidationError
from sqlalchemy import select, insert, update
from sqlalchemy.ext.asyncio import AsyncSession

from fulfillment.domain.models import (
    Offer, Order, OrderItem, OrderStatus, PENDING_STATUSES, ProductSnapshot, StatusHistoryEntry,
    StoreSubscription, SubscriptionStatus,
)
from fulfillment.infrastructure.db_schema import (
    offers_tbl, order_items_tbl, order_status_history_tbl, orders_tbl, outbox_events_tbl,
    product_collections_tbl, products_tbl, store_subscriptions_tbl,
)
from fulfillment.application.interfaces import (
    OfferRepository, OrderLedger, OutboxRepository, ProductRepository, SubscriptionRepository,
)

logger = logging.getLogger(__name__)

# applicableTo: ключ в JSON -> (вид области, поле модели)
_SCOPE_KEYS = (
    ("productIds", "product_ids", "product_ids"),
    ("collectionIds", "collection_ids", "collection_ids"),
    ("productTags", "tags", "tags"),
)


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class SQLAlchemyOfferRepository(OfferRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_live_for_store(self, store_id: str, now: datetime) -> List[Offer]:
        result = await self._session.execute(
            select(offers_tbl)
            .where(offers_tbl.c.store_id == store_id, offers_tbl.c.is_active.is_(True))
            .order_by(offers_tbl.c.id)
        )
        offers = [self._to_domain(row) for row in result.fetchall()]
        return [offer for offer in offers if offer is not None and offer.is_live(now)]

    def _to_domain(self, row) -> Optional[Offer]:
        """Трансформация DB → Domain. Область действия разбирается один раз здесь."""
        details = row.discount_details or {}
        conditions = row.conditions or {}
        window = row.validity_date_range or {}
        discount = {
            "type": row.offer_type,
            "percentage": details.get("percentage"),
            "fixed_amount": details.get("fixedAmount"),
            "buy_n": details.get("buyN"),
            "get_k": details.get("getK"),
        }
        try:
            return Offer(
                id=row.id,
                store_id=row.store_id,
                name=row.name,
                discount={key: value for key, value in discount.items() if value is not None},
                scope=self._scope(row.id, row.applicable_to or {}),
                require_code=bool(row.require_code),
                code=row.offer_code,
                conditions={
                    "minimum_purchase_amount": conditions.get("minimumPurchaseAmount"),
                    "minimum_items": conditions.get("minimumItems"),
                },
                valid_from=window.get("validFrom"),
                valid_until=window.get("validUntil"),
                is_active=row.is_active,
            )
        except ValidationError as e:
            logger.warning(f"Акция {row.id} пропущена, некорректные данные: {e}")
            return None

    def _scope(self, offer_id: str, applicable_to: dict) -> dict:
        if applicable_to.get("storeWide"):
            return {"kind": "store_wide"}
        present = [(kind, field, applicable_to[key]) for key, kind, field in _SCOPE_KEYS if applicable_to.get(key)]
        if not present:
            return {}
        if len(present) > 1:
            logger.warning(f"Акция {offer_id}: задано несколько областей действия, используется {present[0][0]}")
        kind, field, values = present[0]
        return {"kind": kind, field: values}


class SQLAlchemyProductRepository(ProductRepository):
    """Счетчики stock/reserved_stock меняются только атомарными UPDATE"""

    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_snapshots(self, store_id: str, product_ids: List[str]) -> dict[str, ProductSnapshot]:
        result = await self._session.execute(
            select(products_tbl.c.id, products_tbl.c.price, products_tbl.c.tags)
            .where(products_tbl.c.store_id == store_id, products_tbl.c.id.in_(product_ids))
        )
        rows = result.fetchall()

        collections = {}
        if rows:
            links = await self._session.execute(
                select(product_collections_tbl)
                .where(product_collections_tbl.c.product_id.in_([row.id for row in rows]))
                .order_by(product_collections_tbl.c.collection_id)
            )
            for link in links.fetchall():
                collections.setdefault(link.product_id, []).append(link.collection_id)

        return {
            row.id: ProductSnapshot(
                id=row.id,
                price=row.price,
                tags=row.tags or [],
                collection_ids=collections.get(row.id, [])
            )
            for row in rows
        }

    async def reserve(self, product_id: str, quantity: int) -> bool:
        stmt = (
            update(products_tbl)
            .where(products_tbl.c.id == product_id, products_tbl.c.stock >= quantity)
            .values(
                stock=products_tbl.c.stock - quantity,
                reserved_stock=products_tbl.c.reserved_stock + quantity
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def commit_sale(self, product_id: str, quantity: int) -> bool:
        stmt = (
            update(products_tbl)
            .where(products_tbl.c.id == product_id, products_tbl.c.reserved_stock >= quantity)
            .values(reserved_stock=products_tbl.c.reserved_stock - quantity)
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1

    async def release(self, product_id: str, quantity: int) -> bool:
        stmt = (
            update(products_tbl)
            .where(products_tbl.c.id == product_id, products_tbl.c.reserved_stock >= quantity)
            .values(
                stock=products_tbl.c.stock + quantity,
                reserved_stock=products_tbl.c.reserved_stock - quantity
            )
        )
        result = await self._session.execute(stmt)
        return result.rowcount == 1


class SQLAlchemyOrderLedger(OrderLedger):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_by_id(self, order_id: str, store_id: Optional[str] = None) -> Optional[Order]:
        query = select(orders_tbl).where(orders_tbl.c.id == order_id)
        if store_id is not None:
            query = query.where(orders_tbl.c.store_id == store_id)
        result = await self._session.execute(query)
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_for_update(self, order_id: str, skip_locked: bool = False) -> Optional[Order]:
        """Блокировка строки заказа до конца транзакции"""
        result = await self._session.execute(
            select(orders_tbl)
            .where(orders_tbl.c.id == order_id)
            .with_for_update(skip_locked=skip_locked)
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def get_ids_by_payment_ref(self, payment_ref: str) -> List[str]:
        result = await self._session.execute(
            select(orders_tbl.c.id)
            .where(orders_tbl.c.payment_ref == payment_ref)
            .order_by(orders_tbl.c.id)
        )
        return [row.id for row in result.fetchall()]

    async def get_abandoned(self, created_before: datetime, limit: int = 100) -> List[Order]:
        result = await self._session.execute(
            select(orders_tbl)
            .where(
                orders_tbl.c.status.in_(list(PENDING_STATUSES)),
                orders_tbl.c.created_at < created_before
            )
            .order_by(orders_tbl.c.created_at.asc())
            .limit(limit)
        )
        return [self._to_domain(row) for row in result.fetchall()]

    async def get_items(self, order_id: str) -> List[OrderItem]:
        result = await self._session.execute(
            select(order_items_tbl)
            .where(order_items_tbl.c.order_id == order_id)
            .order_by(order_items_tbl.c.id)
        )
        return [
            OrderItem(
                order_id=row.order_id,
                product_id=row.product_id,
                quantity=row.quantity,
                unit_price=row.unit_price,
                discount_applied=row.discount_applied
            )
            for row in result.fetchall()
        ]

    async def get_history(self, order_id: str) -> List[StatusHistoryEntry]:
        result = await self._session.execute(
            select(order_status_history_tbl)
            .where(order_status_history_tbl.c.order_id == order_id)
            .order_by(order_status_history_tbl.c.id)
        )
        return [
            StatusHistoryEntry(
                order_id=row.order_id,
                status=OrderStatus(row.status),
                note=row.note,
                created_at=_as_utc(row.created_at)
            )
            for row in result.fetchall()
        ]

    async def create(self, order: Order, items: List[OrderItem]) -> None:
        await self._session.execute(
            insert(orders_tbl).values(
                id=order.id,
                store_id=order.store_id,
                customer_id=order.customer_id,
                status=order.status,
                status_updated_at=order.status_updated_at,
                subtotal=order.subtotal,
                discount_total=order.discount_total,
                total=order.total,
                payment_ref=order.payment_ref,
                payment_id=order.payment_id,
                created_at=order.created_at,
                updated_at=order.updated_at
            )
        )
        if items:
            await self._session.execute(
                insert(order_items_tbl),
                [
                    {
                        "order_id": item.order_id,
                        "product_id": item.product_id,
                        "quantity": item.quantity,
                        "unit_price": item.unit_price,
                        "discount_applied": item.discount_applied
                    }
                    for item in items
                ]
            )

    async def update_status(
        self, order_id: str, status: OrderStatus,
        payment_ref: Optional[str] = None, payment_id: Optional[str] = None,
    ) -> None:
        now = datetime.now(timezone.utc)
        values = {"status": status, "status_updated_at": now, "updated_at": now}
        if payment_ref is not None:
            values["payment_ref"] = payment_ref
        if payment_id is not None:
            values["payment_id"] = payment_id
        await self._session.execute(
            update(orders_tbl).where(orders_tbl.c.id == order_id).values(**values)
        )

    async def append_history(self, order_id: str, status: OrderStatus, note: Optional[str] = None) -> None:
        await self._session.execute(
            insert(order_status_history_tbl).values(
                order_id=order_id,
                status=status,
                note=note,
                created_at=datetime.now(timezone.utc)
            )
        )

    def _to_domain(self, row) -> Order:
        """Трансформация DB → Domain"""
        return Order(
            id=row.id,
            store_id=row.store_id,
            customer_id=row.customer_id,
            status=OrderStatus(row.status),
            status_updated_at=_as_utc(row.status_updated_at),
            subtotal=row.subtotal,
            discount_total=row.discount_total,
            total=row.total,
            payment_ref=row.payment_ref,
            payment_id=row.payment_id,
            created_at=_as_utc(row.created_at),
            updated_at=_as_utc(row.updated_at)
        )


class SQLAlchemySubscriptionRepository(SubscriptionRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def get_for_update(self, subscription_id: str) -> Optional[StoreSubscription]:
        result = await self._session.execute(
            select(store_subscriptions_tbl)
            .where(store_subscriptions_tbl.c.id == subscription_id)
            .with_for_update()
        )
        row = result.fetchone()
        return self._to_domain(row) if row else None

    async def save(self, subscription: StoreSubscription) -> None:
        values = {
            "store_id": subscription.store_id,
            "plan_id": subscription.plan_id,
            "status": subscription.status,
            "current_period_start": subscription.current_period_start,
            "current_period_end": subscription.current_period_end,
            "linked_account_id": subscription.linked_account_id,
            "updated_at": subscription.updated_at
        }
        result = await self._session.execute(
            update(store_subscriptions_tbl)
            .where(store_subscriptions_tbl.c.id == subscription.id)
            .values(**values)
        )
        if result.rowcount == 0:
            await self._session.execute(
                insert(store_subscriptions_tbl).values(id=subscription.id, **values)
            )

    async def set_linked_account(self, subscription_id: str, linked_account_id: str) -> None:
        await self._session.execute(
            update(store_subscriptions_tbl)
            .where(store_subscriptions_tbl.c.id == subscription_id)
            .values(linked_account_id=linked_account_id, updated_at=datetime.now(timezone.utc))
        )

    def _to_domain(self, row) -> StoreSubscription:
        return StoreSubscription(
            id=row.id,
            store_id=row.store_id,
            plan_id=row.plan_id,
            status=SubscriptionStatus(row.status),
            current_period_start=_as_utc(row.current_period_start),
            current_period_end=_as_utc(row.current_period_end),
            linked_account_id=row.linked_account_id,
            updated_at=_as_utc(row.updated_at)
        )


class SQLAlchemyOutboxRepository(OutboxRepository):
    def __init__(self, session: AsyncSession):
        self._session = session

    async def create(self, event_type: str, event_data: dict, order_id: str) -> str:
        event_id = str(uuid.uuid4())
        stmt = insert(outbox_events_tbl).values(
            id=event_id,
            event_type=event_type,
            event_data=event_data,  # SQLAlchemy JSON column сериализует автоматически
            order_id=order_id,
            status="pending"
        )
        await self._session.execute(stmt)
        return event_id

    async def get_pending(self, limit: int = 10) -> List[dict]:
        result = await self._session.execute(
            select(outbox_events_tbl)
            .where(outbox_events_tbl.c.status == "pending")
            .order_by(outbox_events_tbl.c.created_at.asc(), outbox_events_tbl.c.id)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        rows = result.fetchall()

        return [
            {
                "id": row.id,
                "event_type": row.event_type,
                "event_data": row.event_data,
                "order_id": row.order_id
            }
            for row in rows
        ]

    async def mark_as_published(self, event_id: str) -> None:
        stmt = (
            update(outbox_events_tbl)
            .where(outbox_events_tbl.c.id == event_id)
            .values(status="published")
        )
        await self._session.execute(stmt)
