from typing import List, Tuple

from fulfillment.domain.models import Order, OrderItem, StatusHistoryEntry
from fulfillment.domain.exceptions import OrderNotFoundError


class GetOrderUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, store_id: str, order_id: str) -> Tuple[Order, List[OrderItem]]:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id, store_id=store_id)
            if not order:
                raise OrderNotFoundError(f"Заказ {order_id} не найден")
            return order, await uow.orders.get_items(order_id)


class GetOrderStatusHistoryUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, store_id: str, order_id: str) -> List[StatusHistoryEntry]:
        async with self._uow() as uow:
            order = await uow.orders.get_by_id(order_id, store_id=store_id)
            if not order:
                raise OrderNotFoundError(f"Заказ {order_id} не найден")
            return await uow.orders.get_history(order_id)
