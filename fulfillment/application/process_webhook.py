import hashlib
import hmac
import logging
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from pydantic import BaseModel, ValidationError

from fulfillment.domain.models import StoreSubscription, SubscriptionStatus
from fulfillment.domain.exceptions import InvalidSignatureError, MalformedWebhookError, WebhookNotConfiguredError
from fulfillment.application.interfaces import PaymentProvider
from fulfillment.application.order_state_machine import OrderStateMachine

logger = logging.getLogger(__name__)


class WebhookOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    INVALID = "invalid"
    NOT_FOUND = "not_found"
    FAILED = "failed"


class WebhookEvent(BaseModel):
    """Конверт события: {event, payload: {<entity_type>: {entity: {...}}}}"""
    event: str
    payload: dict

    @property
    def entity(self) -> Optional[dict]:
        container = self.payload.get(self.event.split(".")[0])
        if not isinstance(container, dict):
            return None
        entity = container.get("entity")
        return entity if isinstance(entity, dict) else None


class PaymentEventDTO(BaseModel):
    payment_id: str
    payment_ref: str
    amount: Optional[int] = None
    error_code: Optional[str] = None
    error_description: Optional[str] = None

    @classmethod
    def from_entity(cls, entity: dict) -> "PaymentEventDTO":
        return cls(
            payment_id=entity.get("id"),
            payment_ref=entity.get("order_id"),
            amount=entity.get("amount"),
            error_code=entity.get("error_code"),
            error_description=entity.get("error_description")
        )


class SubscriptionEventDTO(BaseModel):
    subscription_id: str
    store_id: Optional[str] = None
    plan_id: Optional[str] = None
    current_start: Optional[datetime] = None
    current_end: Optional[datetime] = None

    @classmethod
    def from_entity(cls, entity: dict) -> "SubscriptionEventDTO":
        notes = entity.get("notes") or {}
        return cls(
            subscription_id=entity.get("id"),
            store_id=notes.get("store_id"),
            plan_id=entity.get("plan_id"),
            # Провайдер присылает unix-время в секундах
            current_start=entity.get("current_start"),
            current_end=entity.get("current_end")
        )


def compute_signature(raw_body: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha256).hexdigest()


class PaymentWebhookProcessor:
    """
    Двухфазная обработка вебхуков платежного провайдера.

    acknowledge(): синхронная проверка подписи и разбор конверта, без побочных эффектов.
    apply(): идемпотентное применение события, одна транзакция на событие.
    Повторная доставка и доставка не по порядку безопасны: guard проверяется под блокировкой строки.
    """

    def __init__(self, unit_of_work, payment_provider: PaymentProvider, webhook_secret: str):
        self._uow = unit_of_work
        self._payments = payment_provider
        self._secret = webhook_secret
        self._handlers = {
            "payment.captured": self._payment_captured,
            "payment.failed": self._payment_failed,
            "subscription.authenticated": self._subscription_authenticated,
            "subscription.charged": self._subscription_charged,
            "subscription.cancelled": self._subscription_ended,
            "subscription.completed": self._subscription_ended,
            "subscription.halted": self._subscription_ended,
        }

    def acknowledge(self, raw_body: bytes, signature: Optional[str]) -> WebhookEvent:
        if not self._secret:
            logger.error("PAYMENT_WEBHOOK_SECRET не задан")
            raise WebhookNotConfiguredError("Секрет вебхука не настроен")
        if not signature:
            logger.warning("Вебхук без подписи")
            raise InvalidSignatureError("Подпись отсутствует")

        expected = compute_signature(raw_body, self._secret)
        if not hmac.compare_digest(expected.encode(), signature.encode()):
            logger.warning(f"Неверная подпись вебхука: {signature}")
            raise InvalidSignatureError("Неверная подпись")

        try:
            event = WebhookEvent.model_validate_json(raw_body)
        except ValidationError as e:
            raise MalformedWebhookError(f"Некорректное тело вебхука: {e}")

        logger.info(f"Вебхук {event.event} принят")
        return event

    async def apply(self, event: WebhookEvent) -> WebhookOutcome:
        handler = self._handlers.get(event.event)
        if handler is None:
            logger.info(f"Необрабатываемый тип события: {event.event}")
            return WebhookOutcome.IGNORED

        entity = event.entity
        if entity is None:
            logger.warning(f"В событии {event.event} нет entity, событие отброшено")
            return WebhookOutcome.INVALID

        try:
            outcome = await handler(entity)
        except ValidationError as e:
            logger.warning(f"Событие {event.event} отброшено, некорректные поля entity: {e}")
            return WebhookOutcome.INVALID
        except Exception as e:
            # Транзакция уже откатана unit of work; провайдер получил 200 и повторит доставку сам
            logger.error(f"Ошибка обработки события {event.event} ({entity.get('id')}): {e}", exc_info=True)
            return WebhookOutcome.FAILED

        logger.info(f"Событие {event.event} ({entity.get('id')}) обработано: {outcome.value}")
        return outcome

    async def _payment_captured(self, entity: dict) -> WebhookOutcome:
        dto = PaymentEventDTO.from_entity(entity)
        logger.info(f"payment.captured: платеж {dto.payment_id}, заказ провайдера {dto.payment_ref}, сумма {dto.amount}")

        async with self._uow() as uow:
            order_ids = await uow.orders.get_ids_by_payment_ref(dto.payment_ref)
            if not order_ids:
                logger.error(f"Заказы для {dto.payment_ref} не найдены, событие не будет применено")
                await uow.rollback()
                return WebhookOutcome.NOT_FOUND

            machine = OrderStateMachine(uow)
            applied = False
            for order_id in order_ids:
                if await machine.apply_success(order_id, dto.payment_ref, dto.payment_id):
                    applied = True
            await uow.commit()

        return WebhookOutcome.APPLIED if applied else WebhookOutcome.DUPLICATE

    async def _payment_failed(self, entity: dict) -> WebhookOutcome:
        dto = PaymentEventDTO.from_entity(entity)
        reason = f"{dto.error_code} - {dto.error_description}"
        logger.warning(f"payment.failed: платеж {dto.payment_id}, заказ провайдера {dto.payment_ref}, {reason}")

        async with self._uow() as uow:
            order_ids = await uow.orders.get_ids_by_payment_ref(dto.payment_ref)
            if not order_ids:
                logger.error(f"Заказы для {dto.payment_ref} не найдены, событие не будет применено")
                await uow.rollback()
                return WebhookOutcome.NOT_FOUND

            machine = OrderStateMachine(uow)
            applied = False
            for order_id in order_ids:
                if await machine.apply_failure(order_id, dto.payment_ref, reason, dto.payment_id):
                    applied = True
            await uow.commit()

        return WebhookOutcome.APPLIED if applied else WebhookOutcome.DUPLICATE

    async def _subscription_authenticated(self, entity: dict) -> WebhookOutcome:
        dto = SubscriptionEventDTO.from_entity(entity)

        async with self._uow() as uow:
            subscription = await uow.subscriptions.get_for_update(dto.subscription_id)
            if subscription is not None and subscription.status != SubscriptionStatus.CREATED:
                logger.info(f"Подписка {dto.subscription_id} уже в статусе {subscription.status.value}, пропуск")
                return WebhookOutcome.DUPLICATE

            subscription = self._next_subscription(subscription, dto, SubscriptionStatus.AUTHENTICATED)
            if subscription is None:
                return WebhookOutcome.INVALID
            await uow.subscriptions.save(subscription)
            await uow.commit()

        logger.info(f"Подписка {dto.subscription_id} магазина {subscription.store_id} подтверждена")
        return WebhookOutcome.APPLIED

    async def _subscription_charged(self, entity: dict) -> WebhookOutcome:
        dto = SubscriptionEventDTO.from_entity(entity)

        async with self._uow() as uow:
            subscription = await uow.subscriptions.get_for_update(dto.subscription_id)
            if subscription is not None and (subscription.is_ended() or subscription.covers_period(dto.current_end)):
                logger.info(f"Списание по подписке {dto.subscription_id} уже учтено, пропуск")
                return WebhookOutcome.DUPLICATE

            subscription = self._next_subscription(subscription, dto, SubscriptionStatus.ACTIVE)
            if subscription is None:
                return WebhookOutcome.INVALID
            await uow.subscriptions.save(subscription)
            await uow.commit()

        logger.info(f"Подписка {dto.subscription_id} активна до {subscription.current_period_end}")

        # Вторичный эффект только после коммита
        if subscription.linked_account_id is None:
            await self._ensure_linked_account(subscription)
        return WebhookOutcome.APPLIED

    async def _subscription_ended(self, entity: dict) -> WebhookOutcome:
        dto = SubscriptionEventDTO.from_entity(entity)

        async with self._uow() as uow:
            subscription = await uow.subscriptions.get_for_update(dto.subscription_id)
            if subscription is None:
                logger.error(f"Подписка {dto.subscription_id} не найдена, событие не будет применено")
                return WebhookOutcome.NOT_FOUND
            if subscription.is_ended():
                logger.info(f"Подписка {dto.subscription_id} уже завершена, пропуск")
                return WebhookOutcome.DUPLICATE

            await uow.subscriptions.save(subscription.model_copy(update={
                "status": SubscriptionStatus.ENDED,
                "updated_at": datetime.now(timezone.utc)
            }))
            await uow.commit()

        logger.info(f"Подписка {dto.subscription_id} завершена")
        return WebhookOutcome.APPLIED

    def _next_subscription(
        self, current: Optional[StoreSubscription], dto: SubscriptionEventDTO, status: SubscriptionStatus
    ) -> Optional[StoreSubscription]:
        now = datetime.now(timezone.utc)
        if current is None:
            if not dto.store_id:
                logger.warning(f"Подписка {dto.subscription_id}: нет notes.store_id, событие отброшено")
                return None
            return StoreSubscription(
                id=dto.subscription_id,
                store_id=dto.store_id,
                plan_id=dto.plan_id,
                status=status,
                current_period_start=dto.current_start,
                current_period_end=dto.current_end,
                updated_at=now
            )
        return current.model_copy(update={
            "status": status,
            "plan_id": dto.plan_id or current.plan_id,
            "current_period_start": dto.current_start or current.current_period_start,
            "current_period_end": dto.current_end or current.current_period_end,
            "updated_at": now
        })

    async def _ensure_linked_account(self, subscription: StoreSubscription) -> None:
        """Привязанный счет для выплат. Ошибки не откатывают основную транзакцию."""
        try:
            account_id = await self._payments.create_linked_account(subscription.store_id)
        except Exception as e:
            logger.error(
                f"INCONSISTENCY: не удалось создать счет выплат для магазина {subscription.store_id} "
                f"(подписка {subscription.id}): {e}. Требуется ручная проверка"
            )
            return

        try:
            async with self._uow() as uow:
                await uow.subscriptions.set_linked_account(subscription.id, account_id)
                await uow.commit()
            logger.info(f"Счет выплат {account_id} привязан к магазину {subscription.store_id}")
        except Exception as e:
            logger.error(
                f"INCONSISTENCY: счет выплат {account_id} создан, но не сохранен для подписки "
                f"{subscription.id}: {e}. Требуется ручная проверка"
            )
