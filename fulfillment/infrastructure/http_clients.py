import httpx
import logging
from decimal import Decimal
from typing import Optional

from fulfillment.domain.exceptions import PaymentServiceError

logger = logging.getLogger(__name__)


class HTTPPaymentProviderClient:
    """Клиент платежного провайдера. Все вызовы с ограниченным таймаутом."""

    def __init__(self, base_url: str, key_id: str, key_secret: str, timeout: float = 10.0):
        self._base_url = base_url
        self._auth = (key_id, key_secret)
        self._timeout = timeout

    async def create_order(self, order_id: str, amount: str, store_id: str) -> dict:
        try:
            async with httpx.AsyncClient(auth=self._auth, timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/orders",
                    json={
                        # Провайдер принимает сумму в минимальных единицах
                        "amount": int(Decimal(amount) * 100),
                        "currency": "INR",
                        "receipt": order_id,
                        "notes": {"order_id": order_id, "store_id": store_id}
                    }
                )

                if response.status_code in (200, 201):
                    return response.json()
                else:
                    raise PaymentServiceError(f"Payment provider ошибка: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Payment provider ошибка подключения: {e}")
            raise PaymentServiceError(f"Payment provider не доступен: {str(e)}")

    async def fetch_order_status(self, payment_ref: str) -> Optional[str]:
        """Статус заказа у провайдера: created / attempted / paid. None, если заказ у провайдера не найден."""
        try:
            async with httpx.AsyncClient(auth=self._auth, timeout=self._timeout) as client:
                response = await client.get(f"{self._base_url}/orders/{payment_ref}")

                if response.status_code == 200:
                    return response.json().get("status")
                elif response.status_code == 404:
                    return None
                else:
                    raise PaymentServiceError(f"Payment provider ошибка: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Payment provider ошибка подключения: {e}")
            raise PaymentServiceError(f"Payment provider не доступен: {str(e)}")

    async def create_linked_account(self, store_id: str) -> str:
        try:
            async with httpx.AsyncClient(auth=self._auth, timeout=self._timeout) as client:
                response = await client.post(
                    f"{self._base_url}/accounts",
                    json={
                        "type": "route",
                        "reference_id": store_id,
                        "notes": {"store_id": store_id}
                    }
                )

                if response.status_code in (200, 201):
                    return response.json()["id"]
                else:
                    raise PaymentServiceError(f"Payment provider ошибка: {response.status_code}")

        except httpx.RequestError as e:
            logger.error(f"Payment provider ошибка подключения: {e}")
            raise PaymentServiceError(f"Payment provider не доступен: {str(e)}")
