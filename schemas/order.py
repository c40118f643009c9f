from datetime import datetime
from pydantic import BaseModel
from typing import Any, Dict, List, Optional

from models.enums import ActorType, OrderEventType, OrderStatus, PaymentStatus


class Address(BaseModel):
    full_name: str
    phone: str
    line1: str
    line2: Optional[str] = None
    city: str
    postal_code: Optional[str] = None
    country: str


class OrderItemIn(BaseModel):
    product_id: int
    variant_id: Optional[int] = None
    quantity: int


class OrderCreate(BaseModel):
    store_id: int
    items: List[OrderItemIn]
    shipping_address: Address
    billing_address: Optional[Address] = None
    coupon_code: Optional[str] = None
    notes: Optional[str] = None
    payment_method: Optional[str] = None


class OrderCreated(BaseModel):
    order_id: int
    order_number: str
    total_amount: int
    currency: str


class OrderItemOut(BaseModel):
    id: int
    product_id: int
    variant_id: Optional[int] = None
    title: str
    sku: Optional[str] = None
    quantity: int
    unit_price: int
    total_price: int

    class Config:
        from_attributes = True


class OrderOut(BaseModel):
    id: int
    order_number: str
    store_id: int
    customer_id: int
    currency: str
    status: OrderStatus
    payment_status: PaymentStatus
    subtotal: int
    shipping_amount: int
    discount_amount: int
    total_amount: int
    commission_amount: int
    coupon_code: Optional[str] = None
    shipping_address: Dict[str, Any]
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    created_at: datetime
    items: List[OrderItemOut]

    class Config:
        from_attributes = True


class StatusUpdate(BaseModel):
    status: OrderStatus
    tracking_number: Optional[str] = None
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class TrackingUpdate(BaseModel):
    tracking_number: str
    carrier: Optional[str] = None
    estimated_delivery: Optional[datetime] = None


class CancelRequest(BaseModel):
    reason: Optional[str] = None


class OrderEventOut(BaseModel):
    id: int
    type: OrderEventType
    description: str
    actor_type: ActorType
    actor_id: Optional[int] = None
    event_metadata: Optional[Dict[str, Any]] = None
    created_at: datetime

    class Config:
        from_attributes = True
