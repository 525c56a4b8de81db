from pydantic import BaseModel, Field
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from fulfillment.domain.models import OfferType, OrderStatus


class CartItemRequest(BaseModel):
    product_id: str
    quantity: int


class PriceCartRequest(BaseModel):
    items: List[CartItemRequest]
    offer_codes: List[str] = []


class AppliedOfferResponse(BaseModel):
    offer_id: str
    offer_name: str
    offer_type: OfferType
    discount_amount: Decimal


class FinalItemResponse(BaseModel):
    product_id: str
    unit_price: Decimal
    quantity: int
    final_price: Decimal
    final_quantity: int
    discount_applied: Decimal


class PriceCartResponse(BaseModel):
    total_discount: Decimal
    applied_offers: List[AppliedOfferResponse]
    final_items: List[FinalItemResponse]

    @classmethod
    def from_domain(cls, result):
        return cls(
            total_discount=result.total_discount,
            applied_offers=[AppliedOfferResponse(**offer.model_dump()) for offer in result.applied_offers],
            final_items=[FinalItemResponse(**item.model_dump()) for item in result.final_items]
        )


class CreateOrderRequest(BaseModel):
    customer_id: str
    items: List[CartItemRequest] = Field(min_length=1)
    offer_codes: List[str] = []


class OrderItemResponse(BaseModel):
    product_id: str
    quantity: int
    unit_price: Decimal
    discount_applied: Decimal


class OrderResponse(BaseModel):
    id: str
    store_id: str
    customer_id: str
    status: OrderStatus
    status_updated_at: datetime
    subtotal: Decimal
    discount_total: Decimal
    total: Decimal
    payment_ref: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[OrderItemResponse] = []

    @classmethod
    def from_domain(cls, order, items=None):
        return cls(
            id=order.id,
            store_id=order.store_id,
            customer_id=order.customer_id,
            status=order.status,
            status_updated_at=order.status_updated_at,
            subtotal=order.subtotal,
            discount_total=order.discount_total,
            total=order.total,
            payment_ref=order.payment_ref,
            created_at=order.created_at,
            updated_at=order.updated_at,
            items=[
                OrderItemResponse(
                    product_id=item.product_id,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                    discount_applied=item.discount_applied
                )
                for item in items or []
            ]
        )


class StatusHistoryResponse(BaseModel):
    status: OrderStatus
    note: Optional[str] = None
    created_at: datetime


class UpdateOrderStatusRequest(BaseModel):
    new_status: OrderStatus
    note: Optional[str] = None


class ErrorResponse(BaseModel):
    detail: str
