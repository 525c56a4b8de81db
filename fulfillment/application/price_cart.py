import logging
from datetime import datetime, timezone
from typing import List, Optional
from pydantic import BaseModel

from fulfillment.domain.discounts import DiscountEngine
from fulfillment.domain.exceptions import ItemNotFoundError
from fulfillment.domain.models import CartItem, DiscountResult

logger = logging.getLogger(__name__)


class CartItemDTO(BaseModel):
    product_id: str
    quantity: int


class PriceCartDTO(BaseModel):
    store_id: str
    items: List[CartItemDTO]
    offer_codes: List[str] = []


async def price_cart(
    uow, engine: DiscountEngine, store_id: str, items: List[CartItemDTO], offer_codes: List[str], now: datetime
) -> DiscountResult:
    """Загружает снимки товаров и живые акции магазина, затем считает скидку"""
    snapshots = await uow.products.get_snapshots(store_id, [item.product_id for item in items])
    missing = [item.product_id for item in items if item.product_id not in snapshots]
    if missing:
        raise ItemNotFoundError(f"Товары {', '.join(missing)} не найдены в магазине {store_id}")

    cart = [CartItem(product=snapshots[item.product_id], quantity=item.quantity) for item in items]
    offers = await uow.offers.get_live_for_store(store_id, now)
    return engine.calculate(store_id, cart, offer_codes, offers, now=now)


class PriceCartUseCase:
    def __init__(self, unit_of_work, discount_engine: Optional[DiscountEngine] = None):
        self._uow = unit_of_work
        self._engine = discount_engine or DiscountEngine()

    async def __call__(self, dto: PriceCartDTO, now: Optional[datetime] = None) -> DiscountResult:
        now = now or datetime.now(timezone.utc)
        async with self._uow() as uow:
            result = await price_cart(uow, self._engine, dto.store_id, dto.items, dto.offer_codes, now)
        logger.info(
            f"Корзина магазина {dto.store_id}: скидка {result.total_discount}, акций применено {len(result.applied_offers)}"
        )
        return result
