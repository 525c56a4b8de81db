import logging
from typing import Optional

from fulfillment.domain.exceptions import InvalidStatusTransitionError, OrderNotFoundError
from fulfillment.domain.models import CANCELLED_OR_FAILED_STATUSES, Order, OrderStatus

logger = logging.getLogger(__name__)


class OrderStateMachine:
    """
    Переходы статуса заказа внутри одной транзакции (unit of work).

    Каждая операция блокирует строку заказа и проверяет guard уже под
    блокировкой, поэтому повторные и запоздавшие события безопасны.
    Возвращает True, если переход применен, False, если это no-op.
    Коммит делает вызывающий код.
    """

    def __init__(self, uow):
        self._uow = uow

    async def mark_payment_pending(self, order_id: str, payment_ref: str) -> bool:
        order = await self._lock(order_id)
        if order.status != OrderStatus.CREATED:
            logger.info(f"Заказ {order_id} уже в статусе {order.status.value}, payment_ref не меняется")
            return False

        await self._transition(
            order, OrderStatus.PAYMENT_PENDING,
            note=f"Создан платеж у провайдера: {payment_ref}",
            payment_ref=payment_ref
        )
        return True

    async def apply_success(self, order_id: str, payment_ref: str, payment_id: Optional[str] = None) -> bool:
        order = await self._lock(order_id)

        # Идемпотентность
        if order.is_post_payment():
            logger.info(f"Заказ {order_id} уже обработан после оплаты ({order.status.value}), пропуск")
            return False
        if order.status in CANCELLED_OR_FAILED_STATUSES:
            logger.error(
                f"INCONSISTENCY: оплата {payment_id} ({payment_ref}) получена для заказа {order_id} "
                f"в статусе {order.status.value}. Резерв уже снят, требуется ручная проверка"
            )
            return False

        await self._transition(
            order, OrderStatus.PAYMENT_RECEIVED,
            note=f"Оплата получена. ID: {payment_id}",
            payment_ref=payment_ref,
            payment_id=payment_id
        )

        # Резерв превращается в продажу
        for item in await self._uow.orders.get_items(order_id):
            if not await self._uow.products.commit_sale(item.product_id, item.quantity):
                logger.warning(
                    f"Резерв товара {item.product_id} меньше {item.quantity}, списание пропущено (заказ {order_id})"
                )
        logger.info(f"Заказ {order_id} отмечен {OrderStatus.PAYMENT_RECEIVED.value}")
        return True

    async def apply_failure(
        self, order_id: str, payment_ref: str, reason: str, payment_id: Optional[str] = None
    ) -> bool:
        order = await self._lock(order_id)

        # Идемпотентность и защита от событий не по порядку
        if order.is_terminal_or_post_pending():
            logger.info(f"Заказ {order_id} уже в статусе {order.status.value}, неуспешный платеж пропущен")
            return False

        await self._transition(
            order, OrderStatus.FAILED,
            note=f"Платеж не прошел. ID: {payment_id}. Причина: {reason}",
            payment_ref=payment_ref,
            payment_id=payment_id
        )
        await self._release_items(order_id)
        logger.info(f"Заказ {order_id} отмечен {OrderStatus.FAILED.value}")
        return True

    async def apply_status_update(
        self, order_id: str, new_status: OrderStatus, note: Optional[str] = None, store_id: Optional[str] = None
    ) -> bool:
        """Ручной переход по таблице допустимых переходов"""
        order = await self._lock(order_id)
        if store_id is not None and order.store_id != store_id:
            raise OrderNotFoundError(f"Заказ {order_id} не найден")

        if order.status == new_status:
            logger.info(f"Заказ {order_id} уже в статусе {new_status.value}")
            return False
        held_from = await self._held_from(order) if order.status == OrderStatus.ON_HOLD else None
        if not order.can_transition_to(new_status, held_from):
            raise InvalidStatusTransitionError(order.status, new_status)

        await self._transition(order, new_status, note=note)
        if order.is_pending() and new_status in CANCELLED_OR_FAILED_STATUSES:
            await self._release_items(order_id)
        return True

    async def expire_abandoned(self, order_id: str, threshold_minutes: int) -> bool:
        # Строку, занятую обработкой вебхука, пропускаем
        order = await self._uow.orders.get_for_update(order_id, skip_locked=True)
        if order is None:
            logger.info(f"Заказ {order_id} заблокирован другой транзакцией или не найден, пропуск")
            return False
        if not order.is_pending():
            logger.info(f"Статус заказа {order_id} изменился на {order.status.value} до очистки, пропуск")
            return False

        await self._transition(
            order, OrderStatus.FAILED,
            note=f"Заказ не оплачен в течение {threshold_minutes} минут"
        )
        await self._release_items(order_id)
        return True

    async def _held_from(self, order: Order) -> Optional[OrderStatus]:
        # Последний статус до постановки на удержание
        for entry in reversed(await self._uow.orders.get_history(order.id)):
            if entry.status != OrderStatus.ON_HOLD:
                return entry.status
        return None

    async def _lock(self, order_id: str) -> Order:
        order = await self._uow.orders.get_for_update(order_id)
        if not order:
            raise OrderNotFoundError(f"Заказ {order_id} не найден")
        return order

    async def _transition(
        self, order: Order, status: OrderStatus, note: Optional[str] = None,
        payment_ref: Optional[str] = None, payment_id: Optional[str] = None,
    ) -> None:
        await self._uow.orders.update_status(order.id, status, payment_ref=payment_ref, payment_id=payment_id)
        await self._uow.orders.append_history(order.id, status, note)

        # Событие для уведомлений
        await self._uow.outbox.create(
            event_type="order.status_changed",
            event_data={
                "order_id": order.id,
                "store_id": order.store_id,
                "customer_id": order.customer_id,
                "old_status": order.status.value,
                "new_status": status.value,
                "note": note
            },
            order_id=order.id
        )

    async def _release_items(self, order_id: str) -> None:
        for item in await self._uow.orders.get_items(order_id):
            if await self._uow.products.release(item.product_id, item.quantity):
                logger.info(f"Снят резерв {item.quantity} шт. товара {item.product_id} (заказ {order_id})")
            else:
                logger.warning(
                    f"Резерв товара {item.product_id} меньше {item.quantity}, снятие пропущено (заказ {order_id})"
                )
