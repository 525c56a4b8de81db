import logging
import json

from fulfillment.application.interfaces import KafkaProducer

logger = logging.getLogger(__name__)


class ProcessOutboxEventsUseCase:
    def __init__(self, unit_of_work, kafka_producer: KafkaProducer):
        self._uow = unit_of_work
        self._kafka = kafka_producer

    async def __call__(self, limit: int = 10) -> int:
        """Публикует pending события из outbox. Возвращает количество опубликованных."""
        published = 0

        async with self._uow() as uow:
            pending = await uow.outbox.get_pending(limit=limit)

            for event in pending:
                event_data = event["event_data"]
                if isinstance(event_data, str):
                    event_data = json.loads(event_data)

                if event["event_type"] != "order.status_changed":
                    logger.warning(f"Неизвестный тип outbox event {event['event_type']} ({event['id']})")
                    continue

                success = await self._kafka.publish_order_status_changed(event["id"], event_data)
                if success:
                    await uow.outbox.mark_as_published(event["id"])
                    published += 1
                    logger.info(f"Опубликовано order.status_changed event {event['id']}")
                else:
                    logger.info(f"Неуспешная отправка в Кафка {event['id']}, повтор на следующей итерации")

            await uow.commit()

        return published
