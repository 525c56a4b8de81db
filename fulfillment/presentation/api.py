from typing import List, Optional
from fastapi import APIRouter, BackgroundTasks, Depends, Header, HTTPException, Request, status

from fulfillment.database import get_session_factory
from fulfillment.presentation.schemas import (
    CreateOrderRequest, ErrorResponse, OrderResponse, PriceCartRequest, PriceCartResponse,
    StatusHistoryResponse, UpdateOrderStatusRequest
)
from fulfillment.application.create_order import CreateOrderUseCase, CreateOrderDTO
from fulfillment.application.get_order import GetOrderUseCase, GetOrderStatusHistoryUseCase
from fulfillment.application.price_cart import CartItemDTO, PriceCartDTO, PriceCartUseCase
from fulfillment.application.process_webhook import PaymentWebhookProcessor
from fulfillment.application.update_order_status import UpdateOrderStatusDTO, UpdateOrderStatusUseCase
from fulfillment.domain.exceptions import (
    InsufficientStockError, InvalidCartError, InvalidSignatureError, InvalidStatusTransitionError,
    ItemNotFoundError, MalformedWebhookError, OrderNotFoundError, WebhookNotConfiguredError
)
from fulfillment.infrastructure.unit_of_work import UnitOfWork
from fulfillment.infrastructure.http_clients import HTTPPaymentProviderClient
from fulfillment.config import settings

router = APIRouter()


# Фабрики для создания use cases
def get_unit_of_work() -> UnitOfWork:
    return UnitOfWork(get_session_factory())


def get_payment_provider() -> HTTPPaymentProviderClient:
    return HTTPPaymentProviderClient(
        settings.PAYMENT_PROVIDER_BASE_URL,
        settings.PAYMENT_PROVIDER_KEY_ID,
        settings.PAYMENT_PROVIDER_KEY_SECRET,
        timeout=settings.PAYMENT_PROVIDER_TIMEOUT_SECONDS
    )


def get_price_cart_use_case(uow: UnitOfWork = Depends(get_unit_of_work)):
    return PriceCartUseCase(uow)


def get_create_order_use_case(
    uow: UnitOfWork = Depends(get_unit_of_work),
    payments: HTTPPaymentProviderClient = Depends(get_payment_provider)
):
    return CreateOrderUseCase(uow, payments)


def get_get_order_use_case(uow: UnitOfWork = Depends(get_unit_of_work)):
    return GetOrderUseCase(uow)


def get_status_history_use_case(uow: UnitOfWork = Depends(get_unit_of_work)):
    return GetOrderStatusHistoryUseCase(uow)


def get_update_status_use_case(uow: UnitOfWork = Depends(get_unit_of_work)):
    return UpdateOrderStatusUseCase(uow)


def get_webhook_processor(
    uow: UnitOfWork = Depends(get_unit_of_work),
    payments: HTTPPaymentProviderClient = Depends(get_payment_provider)
):
    return PaymentWebhookProcessor(uow, payments, settings.PAYMENT_WEBHOOK_SECRET)


@router.post(
    "/stores/{store_id}/cart/price",
    response_model=PriceCartResponse,
    responses={400: {"model": ErrorResponse}}
)
async def price_cart(
    store_id: str,
    request: PriceCartRequest,
    use_case: PriceCartUseCase = Depends(get_price_cart_use_case)
):
    """Рассчитать скидки по корзине"""
    try:
        dto = PriceCartDTO(
            store_id=store_id,
            items=[CartItemDTO(product_id=item.product_id, quantity=item.quantity) for item in request.items],
            offer_codes=request.offer_codes
        )
        result = await use_case(dto)
        return PriceCartResponse.from_domain(result)
    except (ItemNotFoundError, InvalidCartError) as e:
        raise HTTPException(status_code=400, detail=str(e))


@router.post(
    "/stores/{store_id}/orders",
    response_model=OrderResponse,
    responses={400: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
    status_code=status.HTTP_201_CREATED
)
async def create_order(
    store_id: str,
    request: CreateOrderRequest,
    use_case: CreateOrderUseCase = Depends(get_create_order_use_case)
):
    """Оформить заказ: цена с акциями и резерв товара"""
    try:
        dto = CreateOrderDTO(
            store_id=store_id,
            customer_id=request.customer_id,
            items=[CartItemDTO(product_id=item.product_id, quantity=item.quantity) for item in request.items],
            offer_codes=request.offer_codes
        )
        order = await use_case(dto)
        return OrderResponse.from_domain(order)

    except (ItemNotFoundError, InvalidCartError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except InsufficientStockError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.get(
    "/stores/{store_id}/orders/{order_id}",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}}
)
async def get_order(
    store_id: str,
    order_id: str,
    use_case: GetOrderUseCase = Depends(get_get_order_use_case)
):
    """Получить заказ по ID"""
    try:
        order, items = await use_case(store_id, order_id)
        return OrderResponse.from_domain(order, items)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Заказ не найден")


@router.get(
    "/stores/{store_id}/orders/{order_id}/status-history",
    response_model=List[StatusHistoryResponse],
    responses={404: {"model": ErrorResponse}}
)
async def get_status_history(
    store_id: str,
    order_id: str,
    use_case: GetOrderStatusHistoryUseCase = Depends(get_status_history_use_case)
):
    """История статусов заказа"""
    try:
        history = await use_case(store_id, order_id)
        return [StatusHistoryResponse(status=entry.status, note=entry.note, created_at=entry.created_at) for entry in history]
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Заказ не найден")


@router.patch(
    "/stores/{store_id}/orders/{order_id}/status",
    response_model=OrderResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}}
)
async def update_order_status(
    store_id: str,
    order_id: str,
    request: UpdateOrderStatusRequest,
    use_case: UpdateOrderStatusUseCase = Depends(get_update_status_use_case)
):
    """Ручное изменение статуса продавцом"""
    try:
        dto = UpdateOrderStatusDTO(
            store_id=store_id,
            order_id=order_id,
            new_status=request.new_status,
            note=request.note
        )
        order = await use_case(dto)
        return OrderResponse.from_domain(order)
    except OrderNotFoundError:
        raise HTTPException(status_code=404, detail="Заказ не найден")
    except InvalidStatusTransitionError as e:
        raise HTTPException(status_code=409, detail=str(e))


@router.post(
    "/payments/webhook",
    responses={400: {"model": ErrorResponse}, 500: {"model": ErrorResponse}}
)
async def payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    x_payment_signature: Optional[str] = Header(default=None),
    processor: PaymentWebhookProcessor = Depends(get_webhook_processor)
):
    """Вебхук платежного провайдера: подтверждение сразу, применение в фоне"""
    raw_body = await request.body()
    try:
        event = processor.acknowledge(raw_body, x_payment_signature)
    except (InvalidSignatureError, MalformedWebhookError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    except WebhookNotConfiguredError as e:
        raise HTTPException(status_code=500, detail=str(e))

    background_tasks.add_task(processor.apply, event)
    return {"status": "received"}
