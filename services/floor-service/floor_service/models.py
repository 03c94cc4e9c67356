from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import List, Optional


class OrderStatus(str, Enum):
    AWAITING = "AWAITING"
    RECEIVED = "RECEIVED"
    SERVED = "SERVED"
    READY_TO_PAY = "READY_TO_PAY"
    COMPLETED = "COMPLETED"
    DISPUTED = "DISPUTED"
    CANCELED = "CANCELED"


# Statuses that stamp the order's completion time.
SETTLED_STATUSES = frozenset({OrderStatus.COMPLETED, OrderStatus.DISPUTED})

TERMINAL_STATUSES = frozenset(
    {OrderStatus.COMPLETED, OrderStatus.DISPUTED, OrderStatus.CANCELED}
)


class PaymentStatus(str, Enum):
    NONE = "NONE"
    PENDING = "PENDING"
    PAID = "PAID"
    REFUNDED = "REFUNDED"
    CANCELLED = "CANCELLED"


# A line item in one of these statuses is already committed to a payment.
COMMITTED_PAYMENT_STATUSES = frozenset({PaymentStatus.PENDING, PaymentStatus.PAID})


class RefundStatus(str, Enum):
    COMPLETED = "COMPLETED"


class ItemKind(str, Enum):
    FOOD = "food"
    DRINK = "drink"

    @property
    def items_table(self) -> str:
        return f"order_{self.value}_items"

    @property
    def catalog_table(self) -> str:
        return f"{self.value}_items"


@dataclass(frozen=True)
class LineItem:
    """One food or drink entry on an order.

    ``id`` is None for items that have not been stored yet.
    """

    item_id: str
    price: float
    discount: float = 0.0
    final_price: float = 0.0
    guest_number: int = 1
    special_request: str = ""
    allergies: List[str] = field(default_factory=list)
    printed: bool = False
    fired: bool = False
    payment_status: PaymentStatus = PaymentStatus.NONE
    id: Optional[str] = None
    name: Optional[str] = None


@dataclass(frozen=True)
class GuestItemGroup:
    guest_number: int
    items: List[LineItem]


@dataclass(frozen=True)
class OrderRecord:
    id: str
    table_number: int
    server_id: Optional[str]
    guests_count: int
    status: OrderStatus
    discount: float
    total_amount: float
    tip: float
    comments: Optional[str]
    allergies: List[str]
    version: int
    created_at: str
    updated_at: str
    completion_time: Optional[str]


@dataclass(frozen=True)
class OrderView(OrderRecord):
    """Order header plus its line items grouped by guest."""

    food_items: List[GuestItemGroup] = field(default_factory=list)
    drink_items: List[GuestItemGroup] = field(default_factory=list)


@dataclass(frozen=True)
class PaymentRecord:
    id: str
    order_id: str
    amount: float
    tax: float
    service_charge: float
    total_amount: float
    tip: float
    status: PaymentStatus
    created_at: str
    completed_at: Optional[str]
    food_item_ids: List[str] = field(default_factory=list)
    drink_item_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class RefundRecord:
    id: str
    payment_id: str
    reason: str
    amount: float
    status: RefundStatus
    created_at: str


@dataclass
class CreateOrderCommand:
    table_number: int
    guests_count: int
    food_items: List[GuestItemGroup] = field(default_factory=list)
    drink_items: List[GuestItemGroup] = field(default_factory=list)
    server_id: Optional[str] = None
    status: OrderStatus = OrderStatus.RECEIVED
    discount: float = 0.0
    tip: float = 0.0
    comments: Optional[str] = None
    allergies: List[str] = field(default_factory=list)


@dataclass
class OrderPropertiesUpdate:
    """Scalar order fields to patch; None leaves a field unchanged."""

    status: Optional[OrderStatus] = None
    discount: Optional[float] = None
    tip: Optional[float] = None
    comments: Optional[str] = None
    allergies: Optional[List[str]] = None
    guests_count: Optional[int] = None
    table_number: Optional[int] = None
    server_id: Optional[str] = None


@dataclass
class OrderFilter:
    status: Optional[OrderStatus] = None
    server_id: Optional[str] = None
    table_number: Optional[int] = None
    min_amount: Optional[float] = None
    max_amount: Optional[float] = None
    page: int = 1
    page_size: int = 10
    sort_by: str = "created_at"
    sort_order: str = "desc"


@dataclass(frozen=True)
class PriceRange:
    min: float
    max: float


@dataclass(frozen=True)
class OrderPage:
    orders: List[OrderRecord]
    price_range: PriceRange
    total_count: int
    page: int
    page_size: int
    total_pages: int


@dataclass
class PaymentFilter:
    order_id: Optional[str] = None
    status: Optional[PaymentStatus] = None
    page: int = 1
    page_size: int = 10
    sort_by: str = "created_at"
    sort_order: str = "desc"


@dataclass(frozen=True)
class PaymentPage:
    payments: List[PaymentRecord]
    total_count: int
    page: int
    page_size: int
    total_pages: int
