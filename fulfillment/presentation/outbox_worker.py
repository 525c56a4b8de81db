import asyncio
import logging

from fulfillment.database import get_session_factory
from fulfillment.infrastructure.unit_of_work import UnitOfWork
from fulfillment.infrastructure.kafka_producer import KafkaProducerClient
from fulfillment.application.process_outbox import ProcessOutboxEventsUseCase
from fulfillment.config import settings

logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger(__name__)


async def outbox_worker(kafka_producer: KafkaProducerClient):
    """Worker для публикации outbox событий"""
    logger.info("Outbox worker запущен")

    while True:
        try:
            use_case = ProcessOutboxEventsUseCase(
                unit_of_work=UnitOfWork(get_session_factory()),
                kafka_producer=kafka_producer
            )

            published = await use_case(limit=10)
            if published:
                logger.info(f"Опубликовано {published} outbox events")

            await asyncio.sleep(3)

        except Exception as e:
            logger.error(f"Ошибка в outbox worker: {e}", exc_info=True)
            await asyncio.sleep(10)


async def main():
    kafka_producer = KafkaProducerClient(settings.KAFKA_BOOTSTRAP_SERVERS, settings.KAFKA_ORDER_EVENTS_TOPIC)
    await kafka_producer.start()
    try:
        await outbox_worker(kafka_producer)
    finally:
        await kafka_producer.stop()


if __name__ == "__main__":
    asyncio.run(main())
