import asyncio
import logging

from fulfillment.database import get_session_factory
from fulfillment.infrastructure.unit_of_work import UnitOfWork
from fulfillment.infrastructure.http_clients import HTTPPaymentProviderClient
from fulfillment.application.sweep_abandoned_orders import SweepAbandonedOrdersUseCase
from fulfillment.config import settings

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def abandoned_orders_worker():
    """Периодическая отмена неоплаченных заказов"""
    logger.info(
        f"Abandoned orders worker запущен: порог {settings.ABANDONED_ORDER_THRESHOLD_MINUTES} мин, "
        f"интервал {settings.ABANDONED_SWEEP_INTERVAL_SECONDS} сек"
    )
    payment_provider = HTTPPaymentProviderClient(
        settings.PAYMENT_PROVIDER_BASE_URL,
        settings.PAYMENT_PROVIDER_KEY_ID,
        settings.PAYMENT_PROVIDER_KEY_SECRET,
        timeout=settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS
    )

    while True:
        try:
            use_case = SweepAbandonedOrdersUseCase(
                unit_of_work=UnitOfWork(get_session_factory()),
                payment_provider=payment_provider,
                threshold_minutes=settings.ABANDONED_ORDER_THRESHOLD_MINUTES
            )
            await use_case()

        except Exception as e:
            logger.error(f"Ошибка в abandoned orders worker: {e}", exc_info=True)

        await asyncio.sleep(settings.ABANDONED_SWEEP_INTERVAL_SECONDS)


async def main():
    await abandoned_orders_worker()


if __name__ == "__main__":
    asyncio.run(main())
