import logging
from pydantic import BaseModel
from datetime import datetime, timezone
from decimal import Decimal
from typing import List, Optional
import uuid

from fulfillment.domain.discounts import DiscountEngine, round_money
from fulfillment.domain.models import Order, OrderItem, OrderStatus
from fulfillment.domain.exceptions import InsufficientStockError, InvalidCartError
from fulfillment.application.interfaces import PaymentProvider
from fulfillment.application.order_state_machine import OrderStateMachine
from fulfillment.application.price_cart import CartItemDTO, price_cart


logger = logging.getLogger(__name__)


class CreateOrderDTO(BaseModel):
    store_id: str
    customer_id: str
    items: List[CartItemDTO]
    offer_codes: List[str] = []


class CreateOrderUseCase:
    def __init__(
        self,
        unit_of_work,
        payment_provider: PaymentProvider,
        discount_engine: Optional[DiscountEngine] = None
    ):
        self._uow = unit_of_work
        self._payments = payment_provider
        self._engine = discount_engine or DiscountEngine()

    async def __call__(self, order_data: CreateOrderDTO) -> Order:
        logger.info(f"Создание заказа для покупателя {order_data.customer_id} в магазине {order_data.store_id}")
        if not order_data.items:
            raise InvalidCartError("Корзина пуста")
        if any(item.quantity <= 0 for item in order_data.items):
            raise InvalidCartError("Количество товара должно быть больше нуля")

        now = datetime.now(timezone.utc)
        async with self._uow() as uow:
            # 1. Расчет цены с акциями
            pricing = await price_cart(
                uow, self._engine, order_data.store_id, order_data.items, order_data.offer_codes, now
            )
            subtotal = round_money(sum(
                (item.unit_price * item.quantity for item in pricing.final_items), Decimal("0")
            ))

            # 2. Создание заказа
            order = Order(
                id=str(uuid.uuid4()),
                store_id=order_data.store_id,
                customer_id=order_data.customer_id,
                status=OrderStatus.CREATED,
                status_updated_at=now,
                subtotal=subtotal,
                discount_total=pricing.total_discount,
                total=round_money(subtotal - pricing.total_discount),
                created_at=now,
                updated_at=now
            )
            items = [
                OrderItem(
                    order_id=order.id,
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount_applied=item.discount_applied
                )
                for item in pricing.final_items
            ]
            await uow.orders.create(order, items)
            await uow.orders.append_history(order.id, OrderStatus.CREATED, "Заказ создан")

            # 3. Резерв товара
            for item in items:
                if not await uow.products.reserve(item.product_id, item.quantity):
                    raise InsufficientStockError(item.product_id, item.quantity)

            await uow.commit()
        logger.info(f"Заказ создан: {order.id}, сумма {order.total}")

        # Создание платежа у провайдера
        try:
            payment = await self._payments.create_order(
                order_id=order.id,
                amount=str(order.total),
                store_id=order.store_id
            )

            async with self._uow() as uow:
                await OrderStateMachine(uow).mark_payment_pending(order.id, payment["id"])
                order = await uow.orders.get_by_id(order.id)
                await uow.commit()

        except Exception as e:
            logger.error(f"Ошибка создания платежа для заказа {order.id}: {e}")
            # Заказ остается CREATED, резерв снимет очистка брошенных заказов

        return order
