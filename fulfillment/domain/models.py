from datetime import datetime, timezone
from decimal import Decimal
from enum import Enum
from typing import Annotated, Literal, Optional, Union
from pydantic import BaseModel, Field, field_validator, model_validator


class OrderStatus(str, Enum):
    CREATED = "CREATED"
    PAYMENT_PENDING = "PAYMENT_PENDING"
    PAYMENT_RECEIVED = "PAYMENT_RECEIVED"
    PROCESSING = "PROCESSING"
    SHIPPED = "SHIPPED"
    DELIVERED = "DELIVERED"
    ON_HOLD = "ON_HOLD"
    CANCELLED = "CANCELLED"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"
    RETURNED = "RETURNED"


# Группы статусов
PENDING_STATUSES = frozenset({OrderStatus.CREATED, OrderStatus.PAYMENT_PENDING})
IN_PROGRESS_STATUSES = frozenset({OrderStatus.PAYMENT_RECEIVED, OrderStatus.PROCESSING})
FULFILLED_STATUSES = frozenset({OrderStatus.SHIPPED, OrderStatus.DELIVERED})
ON_HOLD_STATUSES = frozenset({OrderStatus.ON_HOLD})
CANCELLED_OR_FAILED_STATUSES = frozenset({OrderStatus.CANCELLED, OrderStatus.FAILED})
REFUNDED_OR_RETURNED_STATUSES = frozenset({OrderStatus.REFUNDED, OrderStatus.RETURNED})

# Оплата прошла, заказ не может вернуться в ожидание
POST_PAYMENT_STATUSES = (
    IN_PROGRESS_STATUSES | FULFILLED_STATUSES | ON_HOLD_STATUSES | REFUNDED_OR_RETURNED_STATUSES
)
TERMINAL_OR_POST_PENDING_STATUSES = POST_PAYMENT_STATUSES | CANCELLED_OR_FAILED_STATUSES

TERMINAL_STATUSES = frozenset({
    OrderStatus.DELIVERED,
    OrderStatus.CANCELLED,
    OrderStatus.FAILED,
    OrderStatus.REFUNDED,
    OrderStatus.RETURNED,
})

# Ручные переходы (продавец). Только вперед по цепочке или в боковые статусы.
# До оплаты из ожидания можно выйти только в CANCELLED или FAILED.
ALLOWED_TRANSITIONS = {
    OrderStatus.CREATED: {OrderStatus.PAYMENT_PENDING, OrderStatus.CANCELLED, OrderStatus.FAILED},
    OrderStatus.PAYMENT_PENDING: {OrderStatus.CANCELLED, OrderStatus.FAILED},
    OrderStatus.PAYMENT_RECEIVED: {
        OrderStatus.PROCESSING, OrderStatus.ON_HOLD, OrderStatus.CANCELLED, OrderStatus.REFUNDED,
    },
    OrderStatus.PROCESSING: {
        OrderStatus.SHIPPED, OrderStatus.ON_HOLD, OrderStatus.CANCELLED, OrderStatus.REFUNDED,
    },
    OrderStatus.SHIPPED: {OrderStatus.DELIVERED, OrderStatus.ON_HOLD, OrderStatus.RETURNED},
    OrderStatus.ON_HOLD: {
        OrderStatus.PROCESSING, OrderStatus.SHIPPED, OrderStatus.CANCELLED, OrderStatus.REFUNDED,
    },
    OrderStatus.DELIVERED: {OrderStatus.RETURNED, OrderStatus.REFUNDED},
    OrderStatus.CANCELLED: set(),
    OrderStatus.FAILED: set(),
    OrderStatus.REFUNDED: set(),
    OrderStatus.RETURNED: set(),
}


def allowed_targets(status: OrderStatus, held_from: Optional[OrderStatus] = None) -> set:
    """Допустимые ручные переходы. Из ON_HOLD: туда, откуда заказ был снят, или дальше по цепочке"""
    if status == OrderStatus.ON_HOLD and held_from is not None:
        return ({held_from} | ALLOWED_TRANSITIONS[held_from]) - {OrderStatus.ON_HOLD}
    return ALLOWED_TRANSITIONS[status]


class Order(BaseModel):
    """Domain Entity: заказ"""
    id: str
    store_id: str
    customer_id: str
    status: OrderStatus
    status_updated_at: datetime
    subtotal: Decimal
    discount_total: Decimal
    total: Decimal
    payment_ref: Optional[str] = None
    payment_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime

    def is_pending(self) -> bool:
        """Бизнес-правило: заказ ждет оплаты, резерв еще держится"""
        return self.status in PENDING_STATUSES

    def is_post_payment(self) -> bool:
        return self.status in POST_PAYMENT_STATUSES

    def is_terminal_or_post_pending(self) -> bool:
        return self.status in TERMINAL_OR_POST_PENDING_STATUSES

    def can_transition_to(self, status: OrderStatus, held_from: Optional[OrderStatus] = None) -> bool:
        return status in allowed_targets(self.status, held_from)


class OrderItem(BaseModel):
    order_id: str
    product_id: str
    quantity: int
    unit_price: Decimal
    discount_applied: Decimal = Decimal("0.00")


class StatusHistoryEntry(BaseModel):
    order_id: str
    status: OrderStatus
    note: Optional[str] = None
    created_at: datetime


class ProductSnapshot(BaseModel):
    """Value Object: товар на момент расчета корзины"""
    id: str
    price: Decimal
    tags: list[str] = []
    collection_ids: list[str] = []


class OfferType(str, Enum):
    BUY_N_GET_K_FREE = "Buy N Get K Free"
    PERCENTAGE_OFF = "Percentage Off"
    FIXED_AMOUNT_OFF = "Fixed Amount Off"
    FREE_SHIPPING = "Free Shipping"


class PercentageOff(BaseModel):
    type: Literal["Percentage Off"] = "Percentage Off"
    percentage: Decimal = Field(gt=0, le=100)


class FixedAmountOff(BaseModel):
    type: Literal["Fixed Amount Off"] = "Fixed Amount Off"
    fixed_amount: Decimal = Field(gt=0)


class BuyNGetKFree(BaseModel):
    type: Literal["Buy N Get K Free"] = "Buy N Get K Free"
    buy_n: int = Field(gt=0)
    get_k: int = Field(gt=0)


class FreeShipping(BaseModel):
    type: Literal["Free Shipping"] = "Free Shipping"


OfferDiscount = Annotated[
    Union[PercentageOff, FixedAmountOff, BuyNGetKFree, FreeShipping],
    Field(discriminator="type"),
]


class StoreWide(BaseModel):
    kind: Literal["store_wide"] = "store_wide"

    def matches(self, product: ProductSnapshot) -> bool:
        return True


class ProductIds(BaseModel):
    kind: Literal["product_ids"] = "product_ids"
    product_ids: frozenset[str]

    def matches(self, product: ProductSnapshot) -> bool:
        return product.id in self.product_ids


class CollectionIds(BaseModel):
    kind: Literal["collection_ids"] = "collection_ids"
    collection_ids: frozenset[str]

    def matches(self, product: ProductSnapshot) -> bool:
        return not self.collection_ids.isdisjoint(product.collection_ids)


class Tags(BaseModel):
    kind: Literal["tags"] = "tags"
    tags: frozenset[str]

    def matches(self, product: ProductSnapshot) -> bool:
        return not self.tags.isdisjoint(product.tags)


OfferScope = Annotated[
    Union[StoreWide, ProductIds, CollectionIds, Tags],
    Field(discriminator="kind"),
]


class OfferConditions(BaseModel):
    minimum_purchase_amount: Optional[Decimal] = None
    minimum_items: Optional[int] = None


class Offer(BaseModel):
    """Акция магазина с окном действия [valid_from, valid_until)"""
    id: str
    store_id: str
    name: str
    discount: OfferDiscount
    scope: OfferScope
    require_code: bool = False
    code: Optional[str] = None
    conditions: OfferConditions = OfferConditions()
    valid_from: datetime
    valid_until: datetime
    is_active: bool = True

    @field_validator("valid_from", "valid_until")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    @model_validator(mode="after")
    def _check_invariants(self):
        if self.valid_from >= self.valid_until:
            raise ValueError("Пустое окно действия акции")
        if self.require_code and not self.code:
            raise ValueError("Акция требует код, но код не задан")
        return self

    @property
    def type(self) -> OfferType:
        return OfferType(self.discount.type)

    def is_live(self, now: datetime) -> bool:
        return self.is_active and self.valid_from <= now < self.valid_until

    def applies_to(self, product: ProductSnapshot, offer_codes) -> bool:
        if self.require_code and self.code not in offer_codes:
            return False
        return self.scope.matches(product)


class CartItem(BaseModel):
    product: ProductSnapshot
    quantity: int


class AppliedOffer(BaseModel):
    offer_id: str
    offer_name: str
    offer_type: OfferType
    discount_amount: Decimal


class PricedItem(BaseModel):
    product_id: str
    unit_price: Decimal
    quantity: int
    final_price: Decimal
    final_quantity: int
    discount_applied: Decimal


class DiscountResult(BaseModel):
    total_discount: Decimal
    applied_offers: list[AppliedOffer]
    final_items: list[PricedItem]


class SubscriptionStatus(str, Enum):
    CREATED = "CREATED"
    AUTHENTICATED = "AUTHENTICATED"
    ACTIVE = "ACTIVE"
    ENDED = "ENDED"


class StoreSubscription(BaseModel):
    """Подписка магазина на платформу"""
    id: str
    store_id: str
    plan_id: Optional[str] = None
    status: SubscriptionStatus
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None
    linked_account_id: Optional[str] = None
    updated_at: datetime

    def is_ended(self) -> bool:
        return self.status == SubscriptionStatus.ENDED

    def covers_period(self, period_end: Optional[datetime]) -> bool:
        """Списание за этот период уже учтено"""
        if self.status != SubscriptionStatus.ACTIVE or self.current_period_end is None:
            return False
        return period_end is None or self.current_period_end >= period_end
