import logging
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional
from pydantic import BaseModel

from fulfillment.domain.exceptions import DiscountIntegrityError, InvalidCartError
from fulfillment.domain.models import (
    AppliedOffer, BuyNGetKFree, CartItem, DiscountResult, FixedAmountOff, Offer,
    OfferType, PercentageOff, PricedItem,
)

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")
ZERO = Decimal("0.00")

# Порядок применения фиксирован: от него зависит итоговая цена
OFFER_PRECEDENCE = {
    OfferType.BUY_N_GET_K_FREE: 1,
    OfferType.PERCENTAGE_OFF: 2,
    OfferType.FIXED_AMOUNT_OFF: 3,
}


def round_money(value) -> Decimal:
    return Decimal(value).quantize(CENT, rounding=ROUND_HALF_UP)


def _precedence_key(offer: Offer):
    return OFFER_PRECEDENCE.get(offer.type, 4), offer.id


class _ItemState(BaseModel):
    """Изменяемая проекция позиции корзины"""
    item: CartItem
    final_price: Decimal
    final_quantity: int
    discount_applied: Decimal = ZERO


class DiscountEngine:
    """
    Последовательно применяет акции магазина к корзине.

    Каждая акция работает с ценой и количеством, оставшимися после
    предыдущих акций. Условия акций проверяются по исходным ценам.
    Округление до копеек на каждом шаге.
    """

    def calculate(
        self,
        store_id: str,
        items: list[CartItem],
        offer_codes: Iterable[str],
        offers: Iterable[Offer],
        now: Optional[datetime] = None,
    ) -> DiscountResult:
        self._validate(items)
        now = now or datetime.now(timezone.utc)
        codes = set(offer_codes or [])

        state = [
            _ItemState(item=item, final_price=round_money(item.product.price), final_quantity=item.quantity)
            for item in items
        ]
        candidates = sorted(
            (offer for offer in offers if offer.store_id == store_id and offer.is_live(now)),
            key=_precedence_key,
        )

        running_total = ZERO
        applied_offers = []
        for offer in candidates:
            entries = [entry for entry in state if offer.applies_to(entry.item.product, codes)]
            if not entries:
                continue
            if not self._conditions_met(offer, entries):
                logger.debug(f"Акция {offer.id} не прошла по условиям")
                continue

            amount = round_money(self._apply(offer, entries))
            if amount <= 0 and offer.type != OfferType.FREE_SHIPPING:
                continue

            running_total += amount
            applied_offers.append(AppliedOffer(
                offer_id=offer.id,
                offer_name=offer.name,
                offer_type=offer.type,
                discount_amount=amount,
            ))

        total_discount = round_money(running_total)
        items_discount = round_money(sum((entry.discount_applied for entry in state), ZERO))
        if abs(total_discount - items_discount) > CENT:
            raise DiscountIntegrityError(total_discount, items_discount)

        return DiscountResult(
            total_discount=total_discount,
            applied_offers=applied_offers,
            final_items=[
                PricedItem(
                    product_id=entry.item.product.id,
                    unit_price=round_money(entry.item.product.price),
                    quantity=entry.item.quantity,
                    final_price=entry.final_price,
                    final_quantity=entry.final_quantity,
                    discount_applied=round_money(entry.discount_applied),
                )
                for entry in state
            ],
        )

    def _validate(self, items: list[CartItem]) -> None:
        for item in items:
            if item.quantity < 0:
                raise InvalidCartError(f"Отрицательное количество для товара {item.product.id}")
            if item.product.price < 0:
                raise InvalidCartError(f"Отрицательная цена для товара {item.product.id}")

    def _conditions_met(self, offer: Offer, entries: list[_ItemState]) -> bool:
        conditions = offer.conditions
        subtotal = sum((entry.item.product.price * entry.item.quantity for entry in entries), ZERO)
        quantity = sum(entry.item.quantity for entry in entries)
        if conditions.minimum_purchase_amount and subtotal < conditions.minimum_purchase_amount:
            return False
        if conditions.minimum_items and quantity < conditions.minimum_items:
            return False
        return True

    def _apply(self, offer: Offer, entries: list[_ItemState]) -> Decimal:
        discount = offer.discount
        if isinstance(discount, BuyNGetKFree):
            return self._apply_buy_n_get_k_free(discount, entries)
        if isinstance(discount, PercentageOff):
            return self._apply_per_unit(
                entries, lambda price: round_money(price * discount.percentage / 100)
            )
        if isinstance(discount, FixedAmountOff):
            # Скидка на каждую единицу, не больше текущей цены единицы
            return self._apply_per_unit(entries, lambda price: min(price, discount.fixed_amount))
        # Free Shipping на цены товаров не влияет
        return ZERO

    def _apply_buy_n_get_k_free(self, discount: BuyNGetKFree, entries: list[_ItemState]) -> Decimal:
        total_quantity = sum(entry.final_quantity for entry in entries)
        free_units = (total_quantity // (discount.buy_n + discount.get_k)) * discount.get_k

        offer_total = ZERO
        # Бесплатными становятся самые дешевые единицы; sorted стабилен, при равной цене порядок корзины
        for entry in sorted(entries, key=lambda e: e.final_price):
            if free_units <= 0:
                break
            freed = min(entry.final_quantity, free_units)
            if freed <= 0:
                continue
            value = round_money(entry.final_price * freed)
            entry.final_quantity -= freed
            entry.discount_applied = round_money(entry.discount_applied + value)
            offer_total += value
            free_units -= freed
        return offer_total

    def _apply_per_unit(self, entries: list[_ItemState], per_unit) -> Decimal:
        offer_total = ZERO
        for entry in entries:
            if entry.final_quantity <= 0:
                continue
            discount_per_unit = per_unit(entry.final_price)
            entry_total = round_money(discount_per_unit * entry.final_quantity)
            entry.final_price = round_money(entry.final_price - discount_per_unit)
            entry.discount_applied = round_money(entry.discount_applied + entry_total)
            offer_total += entry_total
        return offer_total
