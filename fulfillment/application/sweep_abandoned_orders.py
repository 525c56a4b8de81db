import logging
from datetime import datetime, timedelta, timezone
from typing import Optional
from pydantic import BaseModel

from fulfillment.domain.models import Order
from fulfillment.domain.exceptions import PaymentServiceError
from fulfillment.application.interfaces import PaymentProvider
from fulfillment.application.order_state_machine import OrderStateMachine

logger = logging.getLogger(__name__)

NOT_PAID_PROVIDER_STATUSES = ("created", "attempted")


class SweepReport(BaseModel):
    """Итог одного прохода очистки"""
    processed: int = 0
    skipped: int = 0
    errors: int = 0


class SweepAbandonedOrdersUseCase:
    """Заказы, не оплаченные за threshold_minutes, переводятся в FAILED с возвратом резерва"""

    def __init__(self, unit_of_work, payment_provider: PaymentProvider, threshold_minutes: int = 30, batch_size: int = 100):
        self._uow = unit_of_work
        self._payments = payment_provider
        self._threshold_minutes = threshold_minutes
        self._batch_size = batch_size

    async def __call__(self, now: Optional[datetime] = None) -> SweepReport:
        now = now or datetime.now(timezone.utc)
        cutoff = now - timedelta(minutes=self._threshold_minutes)
        report = SweepReport()

        async with self._uow() as uow:
            candidates = await uow.orders.get_abandoned(cutoff, limit=self._batch_size)

        if not candidates:
            logger.info(f"Брошенных заказов, созданных до {cutoff.isoformat()}, нет")
            return report

        logger.info(f"Найдено {len(candidates)} брошенных заказов, обработка")

        # Каждый заказ в своей транзакции, ошибки изолированы
        for order in candidates:
            try:
                if not await self._safe_to_expire(order):
                    report.skipped += 1
                    continue

                async with self._uow() as uow:
                    expired = await OrderStateMachine(uow).expire_abandoned(order.id, self._threshold_minutes)
                    if expired:
                        await uow.commit()

                if expired:
                    report.processed += 1
                    logger.info(f"Заказ {order.id} отмечен FAILED как брошенный")
                else:
                    report.skipped += 1

            except Exception as e:
                report.errors += 1
                logger.error(f"Ошибка обработки брошенного заказа {order.id}: {e}", exc_info=True)

        logger.info(
            f"Очистка завершена. Обработано: {report.processed}, пропущено: {report.skipped}, ошибок: {report.errors}"
        )
        return report

    async def _safe_to_expire(self, order: Order) -> bool:
        """Проверка статуса у провайдера до блокировки строки"""
        if not order.payment_ref:
            return True

        try:
            provider_status = await self._payments.fetch_order_status(order.payment_ref)
        except PaymentServiceError as e:
            logger.error(
                f"INCONSISTENCY: статус {order.payment_ref} у провайдера не получен ({e}). "
                f"Заказ {order.id} пропущен до следующего запуска"
            )
            return False

        if provider_status == "paid":
            logger.error(
                f"INCONSISTENCY: заказ {order.id} в статусе {order.status.value}, но {order.payment_ref} "
                f"у провайдера оплачен. Отмена пропущена, требуется ручная проверка"
            )
            return False
        if provider_status is None:
            logger.warning(f"{order.payment_ref} не найден у провайдера, заказ {order.id} будет отменен")
            return True
        if provider_status not in NOT_PAID_PROVIDER_STATUSES:
            logger.warning(f"Неожиданный статус '{provider_status}' для {order.payment_ref}, заказ {order.id} будет отменен")
        return True
