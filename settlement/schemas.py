"""Request bodies and response shapes. JSON field names are camelCase."""

from datetime import datetime
from decimal import Decimal
from typing import Annotated, List, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


# --- requests ---

class ShippingAddress(Schema):
    recipient_name: str
    phone: Optional[str] = None
    postal_code: Optional[str] = None
    address1: str
    address2: Optional[str] = None
    city: Optional[str] = None
    country: str = "KR"


class CreateOrderRequest(Schema):
    cart_id: int
    shipping_address: ShippingAddress
    notes: Optional[str] = None


class DirectOrderRequest(Schema):
    product_id: int
    quantity: int = Field(..., gt=0)
    selected_options: dict = Field(default_factory=dict)
    shipping_address: ShippingAddress
    notes: Optional[str] = None


class CancelOrderRequest(Schema):
    reason: Optional[str] = None


class FulfilmentRequest(Schema):
    status: Literal["processing", "shipped", "delivered"]


class CreatePaymentRequest(Schema):
    order_id: int
    method: Literal["card", "bank_transfer", "paypal", "kakao_pay", "naver_pay"]
    payment_info: Optional[dict] = None


class ApprovePaymentRequest(Schema):
    transaction_id: Optional[str] = None
    provider_response: Optional[dict] = None


class FailPaymentRequest(Schema):
    provider_response: Optional[dict] = None


class RefundLineRequest(Schema):
    order_item_index: int = Field(..., ge=0)
    quantity: int = Field(..., gt=0)


class FullRefundRequest(Schema):
    type: Literal["full"]
    order_id: int
    reason: str = Field(..., min_length=1)


class PartialRefundRequest(Schema):
    type: Literal["partial"]
    order_id: int
    reason: str = Field(..., min_length=1)
    items: List[RefundLineRequest] = Field(..., min_length=1)


# Tagged by the `type` literal; each variant carries only its own fields.
RefundRequest = Annotated[Union[FullRefundRequest, PartialRefundRequest], Field(discriminator="type")]


class RejectRefundRequest(Schema):
    reason: str = Field(..., min_length=1)


class CalculatePayoutRequest(Schema):
    seller_id: int
    period_start: datetime
    period_end: datetime


class PayPayoutRequest(Schema):
    payment_method: str = Field(..., min_length=1)
    transaction_id: Optional[str] = None


class CancelPayoutRequest(Schema):
    reason: Optional[str] = None


# --- responses ---

class OrderItemOut(Schema):
    id: int
    position: int
    product_id: int
    product_name: str
    quantity: int
    selected_options: Optional[dict] = None
    unit_price: int
    total_price: int
    seller_id: Optional[int] = None
    ownership_type: str
    commission_rate: Decimal
    commission_amount: int
    seller_earnings: int
    payout_id: Optional[int] = None


class OrderOut(Schema):
    id: int
    order_number: str
    user_id: str
    items: List[OrderItemOut]
    subtotal: int
    shipping_fee: int
    discount: int
    total_amount: int
    shipping_address: Optional[dict] = None
    notes: Optional[str] = None
    status: str
    payment_status: str
    payment_id: Optional[int] = None
    created_at: datetime
    cancelled_at: Optional[datetime] = None
    cancelled_reason: Optional[str] = None
    delivered_at: Optional[datetime] = None


class PaymentOut(Schema):
    id: int
    order_id: int
    payment_number: str
    amount: int
    currency: str
    method: str
    status: str
    provider: Optional[str] = None
    provider_reference: Optional[str] = None
    provider_transaction_id: Optional[str] = None
    attempts: int
    paid_at: Optional[datetime] = None
    refunded_at: Optional[datetime] = None
    refund_amount: Optional[int] = None


class RefundItemOut(Schema):
    order_item_index: int
    quantity: int
    amount: int


class RefundOut(Schema):
    id: int
    refund_number: str
    order_id: int
    payment_id: int
    amount: int
    reason: str
    type: str
    status: str
    items: List[RefundItemOut]
    created_at: datetime
    processed_at: Optional[datetime] = None
    processed_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    provider_refund_id: Optional[str] = None


class PayoutItemOut(Schema):
    order_item_id: int
    order_id: int
    order_number: str
    order_date: datetime
    sales_amount: int
    commission_rate: Decimal
    commission_amount: int
    refund_amount: int
    net_amount: int


class PayoutOut(Schema):
    id: int
    payout_number: str
    seller_id: int
    period_start: datetime
    period_end: datetime
    total_sales: int
    total_commission: int
    total_refunds: int
    payout_amount: int
    status: str
    orders_processed: int
    has_more: bool
    items: List[PayoutItemOut]
    calculated_at: Optional[datetime] = None
    approved_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    payment_method: Optional[str] = None
    transaction_id: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    notes: Optional[str] = None


class ReconciliationOut(Schema):
    id: int
    order_number: str
    product_id: int
    action: str
    error: str
    resolved: bool
    created_at: datetime
    resolved_at: Optional[datetime] = None


def dump(schema, obj):
    return schema.model_validate(obj).model_dump(mode="json", by_alias=True)
