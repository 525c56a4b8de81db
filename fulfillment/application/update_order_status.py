import logging
from typing import Optional
from pydantic import BaseModel

from fulfillment.domain.models import Order, OrderStatus
from fulfillment.application.order_state_machine import OrderStateMachine

logger = logging.getLogger(__name__)


class UpdateOrderStatusDTO(BaseModel):
    store_id: str
    order_id: str
    new_status: OrderStatus
    note: Optional[str] = None


class UpdateOrderStatusUseCase:
    def __init__(self, unit_of_work):
        self._uow = unit_of_work

    async def __call__(self, dto: UpdateOrderStatusDTO) -> Order:
        logger.info(f"Ручное изменение статуса заказа {dto.order_id} на {dto.new_status.value}")

        async with self._uow() as uow:
            applied = await OrderStateMachine(uow).apply_status_update(
                dto.order_id, dto.new_status, note=dto.note, store_id=dto.store_id
            )
            order = await uow.orders.get_by_id(dto.order_id)
            await uow.commit()

        if applied:
            logger.info(f"Заказ {dto.order_id} отмечен {dto.new_status.value}")
        return order
