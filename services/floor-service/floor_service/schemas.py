from __future__ import annotations

from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field

from .models import (
    CreateOrderCommand,
    GuestItemGroup,
    LineItem,
    OrderPropertiesUpdate,
    OrderStatus,
    PaymentStatus,
    RefundStatus,
)


class HealthResponse(BaseModel):
    status: Literal["ok"]


class MessageResponse(BaseModel):
    message: str


class OrderItemIn(BaseModel):
    item_id: str = Field(..., description="Catalog id of the food or drink item")
    price: float = Field(
        default=0.0, ge=0, description="Client price; replaced by the catalog price"
    )
    discount: float = Field(default=0.0, ge=0, le=100)
    special_request: str = ""
    allergies: List[str] = Field(default_factory=list)


class GuestItemsIn(BaseModel):
    guest_number: int = Field(..., ge=1)
    items: List[OrderItemIn]

    def to_group(self) -> GuestItemGroup:
        return GuestItemGroup(
            guest_number=self.guest_number,
            items=[
                LineItem(
                    item_id=item.item_id,
                    price=item.price,
                    discount=item.discount,
                    guest_number=self.guest_number,
                    special_request=item.special_request,
                    allergies=list(item.allergies),
                )
                for item in self.items
            ],
        )


class CreateOrderRequest(BaseModel):
    table_number: int = Field(..., ge=1)
    guests_count: int = Field(..., ge=1)
    server_id: Optional[str] = None
    status: OrderStatus = OrderStatus.RECEIVED
    discount: float = Field(default=0.0, ge=0, le=100)
    tip: float = Field(default=0.0, ge=0)
    comments: Optional[str] = None
    allergies: List[str] = Field(default_factory=list)
    food_items: List[GuestItemsIn] = Field(default_factory=list)
    drink_items: List[GuestItemsIn] = Field(default_factory=list)

    def to_command(self) -> CreateOrderCommand:
        return CreateOrderCommand(
            table_number=self.table_number,
            guests_count=self.guests_count,
            server_id=self.server_id,
            status=self.status,
            discount=self.discount,
            tip=self.tip,
            comments=self.comments,
            allergies=list(self.allergies),
            food_items=[guest.to_group() for guest in self.food_items],
            drink_items=[guest.to_group() for guest in self.drink_items],
        )


class AddOrderItemsRequest(BaseModel):
    food_items: List[GuestItemsIn] = Field(default_factory=list)
    drink_items: List[GuestItemsIn] = Field(default_factory=list)
    expected_version: Optional[int] = Field(
        default=None, description="Reject the write unless the order is still at this version"
    )


class UpdateOrderRequest(BaseModel):
    status: Optional[OrderStatus] = None
    discount: Optional[float] = Field(default=None, ge=0, le=100)
    tip: Optional[float] = Field(default=None, ge=0)
    comments: Optional[str] = None
    allergies: Optional[List[str]] = None
    guests_count: Optional[int] = Field(default=None, ge=1)
    table_number: Optional[int] = Field(default=None, ge=1)
    server_id: Optional[str] = None
    expected_version: Optional[int] = None

    def to_update(self) -> OrderPropertiesUpdate:
        return OrderPropertiesUpdate(**self.model_dump(exclude={"expected_version"}))


class ItemIdsRequest(BaseModel):
    ids: List[str] = Field(..., min_length=1)


class LineItemOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    item_id: str
    name: Optional[str] = None
    guest_number: int
    price: float
    discount: float
    final_price: float
    special_request: str
    allergies: List[str]
    printed: bool
    fired: bool
    payment_status: PaymentStatus


class GuestItemsOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    guest_number: int
    items: List[LineItemOut]


class OrderSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    table_number: int
    server_id: Optional[str] = None
    guests_count: int
    status: OrderStatus
    discount: float
    total_amount: float
    tip: float
    comments: Optional[str] = None
    allergies: List[str]
    version: int
    created_at: str
    updated_at: str
    completion_time: Optional[str] = None


class OrderDetail(OrderSummary):
    food_items: List[GuestItemsOut]
    drink_items: List[GuestItemsOut]


class PriceRangeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    min: float
    max: float


class OrderListResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    orders: List[OrderSummary]
    price_range: PriceRangeOut
    total_count: int
    page: int
    page_size: int
    total_pages: int


class CreatePaymentRequest(BaseModel):
    order_id: str
    food_item_ids: List[str] = Field(default_factory=list)
    drink_item_ids: List[str] = Field(default_factory=list)


class RefundRequest(BaseModel):
    reason: str = Field(..., description="Why the payment is refunded")


class PaymentSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    amount: float
    tax: float
    service_charge: float
    total_amount: float
    tip: float
    status: PaymentStatus
    created_at: str
    completed_at: Optional[str] = None
    food_item_ids: List[str]
    drink_item_ids: List[str]


class PaymentListResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    payments: List[PaymentSummary]
    total_count: int
    page: int
    page_size: int
    total_pages: int


class RefundSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    payment_id: str
    reason: str
    amount: float
    status: RefundStatus
    created_at: str
