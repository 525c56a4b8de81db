from abc import ABC, abstractmethod
from datetime import datetime
from typing import Optional, List
from fulfillment.domain.models import (
    Offer, Order, OrderItem, OrderStatus, ProductSnapshot, StatusHistoryEntry, StoreSubscription,
)


class OfferRepository(ABC):
    @abstractmethod
    async def get_live_for_store(self, store_id: str, now: datetime) -> List[Offer]:
        pass


class ProductRepository(ABC):
    @abstractmethod
    async def get_snapshots(self, store_id: str, product_ids: List[str]) -> dict[str, ProductSnapshot]:
        pass

    @abstractmethod
    async def reserve(self, product_id: str, quantity: int) -> bool:
        pass

    @abstractmethod
    async def commit_sale(self, product_id: str, quantity: int) -> bool:
        pass

    @abstractmethod
    async def release(self, product_id: str, quantity: int) -> bool:
        pass


class OrderLedger(ABC):
    @abstractmethod
    async def get_by_id(self, order_id: str, store_id: Optional[str] = None) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_for_update(self, order_id: str, skip_locked: bool = False) -> Optional[Order]:
        pass

    @abstractmethod
    async def get_ids_by_payment_ref(self, payment_ref: str) -> List[str]:
        pass

    @abstractmethod
    async def get_abandoned(self, created_before: datetime, limit: int = 100) -> List[Order]:
        pass

    @abstractmethod
    async def get_items(self, order_id: str) -> List[OrderItem]:
        pass

    @abstractmethod
    async def get_history(self, order_id: str) -> List[StatusHistoryEntry]:
        pass

    @abstractmethod
    async def create(self, order: Order, items: List[OrderItem]) -> None:
        pass

    @abstractmethod
    async def update_status(
        self, order_id: str, status: OrderStatus,
        payment_ref: Optional[str] = None, payment_id: Optional[str] = None,
    ) -> None:
        pass

    @abstractmethod
    async def append_history(self, order_id: str, status: OrderStatus, note: Optional[str] = None) -> None:
        pass


class SubscriptionRepository(ABC):
    @abstractmethod
    async def get_for_update(self, subscription_id: str) -> Optional[StoreSubscription]:
        pass

    @abstractmethod
    async def save(self, subscription: StoreSubscription) -> None:
        pass

    @abstractmethod
    async def set_linked_account(self, subscription_id: str, linked_account_id: str) -> None:
        pass


class OutboxRepository(ABC):
    @abstractmethod
    async def create(self, event_type: str, event_data: dict, order_id: str) -> str:
        pass

    @abstractmethod
    async def get_pending(self, limit: int = 10) -> List[dict]:
        pass

    @abstractmethod
    async def mark_as_published(self, event_id: str) -> None:
        pass


class UnitOfWork(ABC):
    @property
    @abstractmethod
    def offers(self) -> OfferRepository:
        pass

    @property
    @abstractmethod
    def products(self) -> ProductRepository:
        pass

    @property
    @abstractmethod
    def orders(self) -> OrderLedger:
        pass

    @property
    @abstractmethod
    def subscriptions(self) -> SubscriptionRepository:
        pass

    @property
    @abstractmethod
    def outbox(self) -> OutboxRepository:
        pass

    @abstractmethod
    async def __call__(self):
        pass

    @abstractmethod
    async def commit(self):
        pass

    @abstractmethod
    async def rollback(self):
        pass


class PaymentProvider(ABC):
    @abstractmethod
    async def create_order(self, order_id: str, amount: str, store_id: str) -> dict:
        pass

    @abstractmethod
    async def fetch_order_status(self, payment_ref: str) -> Optional[str]:
        pass

    @abstractmethod
    async def create_linked_account(self, store_id: str) -> str:
        pass


class KafkaProducer(ABC):
    @abstractmethod
    async def publish_order_status_changed(self, event_id: str, event_data: dict) -> bool:
        pass
