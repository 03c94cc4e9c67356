from __future__ import annotations

import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from pydantic import TypeAdapter

from . import cache as cache_keys
from .cache import CacheBackend, ReadThroughCache
from .errors import ConflictError, NotFoundError, ValidationError, handle_error
from .models import (
    COMMITTED_PAYMENT_STATUSES,
    ItemKind,
    LineItem,
    OrderStatus,
    PaymentFilter,
    PaymentPage,
    PaymentRecord,
    PaymentStatus,
    RefundRecord,
    RefundStatus,
)
from .repository import PAYMENT_SORT_FIELDS, OrderRepository, PaymentRepository, total_pages
from .totals import round2

logger = logging.getLogger("floor-service.payments")

TAX_RATE = 0.10
SERVICE_CHARGE_RATE = 0.05

_PAYMENT = TypeAdapter(PaymentRecord)
_PAYMENT_PAGE = TypeAdapter(PaymentPage)
_PAYMENT_FILTER = TypeAdapter(PaymentFilter)


def calculate_payment_amount(items: Iterable[LineItem]) -> float:
    return round2(sum(item.final_price for item in items))


def calculate_tax_and_charges(subtotal: float) -> Tuple[float, float, float]:
    """Return (tax, service charge, total) for a pre-tax subtotal."""
    tax = round2(subtotal * TAX_RATE)
    service_charge = round2(subtotal * SERVICE_CHARGE_RATE)
    return tax, service_charge, round2(subtotal + tax + service_charge)


class PaymentService:
    """Settle an order's line items through PENDING -> PAID/CANCELLED -> REFUNDED payments."""

    service_name = "PaymentService"

    def __init__(
        self,
        repository: PaymentRepository,
        orders: OrderRepository,
        cache: Optional[CacheBackend] = None,
    ):
        self._repo = repository
        self._orders = orders
        self._cache = ReadThroughCache(cache)

    def find_payments(self, criteria: PaymentFilter) -> PaymentPage:
        try:
            if criteria.page < 1 or criteria.page_size < 1:
                raise ValidationError("Page and page size must be positive")
            if criteria.sort_by not in PAYMENT_SORT_FIELDS:
                raise ValidationError(f"Cannot sort by {criteria.sort_by}")
            key = f"{cache_keys.PAYMENTS_LIST_PREFIX}{_PAYMENT_FILTER.dump_json(criteria).decode('utf-8')}"
            return self._cache.fetch(key, lambda: self._load_payments(criteria), _PAYMENT_PAGE)
        except Exception as exc:
            raise self._wrap(exc) from exc

    def find_payment_by_id(self, payment_id: str) -> PaymentRecord:
        try:
            return self._cache.fetch(
                cache_keys.payment_key(payment_id),
                lambda: self._load_payment(payment_id),
                _PAYMENT,
            )
        except Exception as exc:
            raise self._wrap(exc) from exc

    def find_refunds(self, payment_id: str) -> List[RefundRecord]:
        try:
            with self._repo.transaction() as conn:
                self._require_payment(conn, payment_id)
                return self._repo.get_refunds(conn, payment_id)
        except Exception as exc:
            raise self._wrap(exc) from exc

    def create_payment(
        self,
        order_id: str,
        drink_item_ids: Sequence[str] = (),
        food_item_ids: Sequence[str] = (),
    ) -> PaymentRecord:
        """Open a PENDING payment for the selected line items of an order.

        Items already PENDING or PAID on another payment are rejected, which
        keeps any line item on at most one active payment.
        """
        try:
            drink_item_ids = list(dict.fromkeys(drink_item_ids))
            food_item_ids = list(dict.fromkeys(food_item_ids))
            if not drink_item_ids and not food_item_ids:
                raise ValidationError("A payment needs at least one item")

            with self._repo.transaction() as conn:
                order = self._orders.get_order(conn, order_id, for_update=True)
                if order is None:
                    raise NotFoundError(f"Order {order_id} not found")
                if order.status is OrderStatus.COMPLETED:
                    raise ConflictError(f"Order {order_id} is already completed")

                selected_food = self._select_items(conn, order_id, ItemKind.FOOD, food_item_ids)
                selected_drinks = self._select_items(conn, order_id, ItemKind.DRINK, drink_item_ids)

                amount = calculate_payment_amount([*selected_food, *selected_drinks])
                tax, service_charge, total = calculate_tax_and_charges(amount)
                record = PaymentRecord(
                    id=f"pay-{uuid.uuid4()}",
                    order_id=order_id,
                    amount=amount,
                    tax=tax,
                    service_charge=service_charge,
                    total_amount=total,
                    tip=0.0,
                    status=PaymentStatus.PENDING,
                    created_at=_now(),
                    completed_at=None,
                    food_item_ids=food_item_ids,
                    drink_item_ids=drink_item_ids,
                )
                self._repo.insert_payment(conn, record)

                for kind, ids in ((ItemKind.FOOD, food_item_ids), (ItemKind.DRINK, drink_item_ids)):
                    updated = self._repo.update_item_status(
                        conn, kind, ids, PaymentStatus.PENDING, unless=COMMITTED_PAYMENT_STATUSES
                    )
                    if updated != len(ids):
                        raise ConflictError("Failed to update order items payment status")
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._invalidate(record.id, order_id)
        logger.info(
            "Created payment id=%s order=%s items=%d total=%.2f",
            record.id,
            order_id,
            len(food_item_ids) + len(drink_item_ids),
            record.total_amount,
        )
        return record

    def complete_payment(self, payment_id: str) -> PaymentRecord:
        """Mark a PENDING payment PAID and close the order once every item is paid."""
        try:
            with self._repo.transaction() as conn:
                payment = self._require_payment(conn, payment_id, for_update=True)
                order = self._orders.get_order(conn, payment.order_id, for_update=True)
                if order is None:
                    raise NotFoundError(f"Order {payment.order_id} not found")
                if order.status is OrderStatus.COMPLETED:
                    raise ConflictError(f"Order {order.id} is already completed")
                if payment.status is not PaymentStatus.PENDING:
                    raise ConflictError(
                        f"Payment {payment_id} is {payment.status.value}, only PENDING payments can be completed"
                    )

                now = _now()
                self._repo.update_status(conn, payment_id, PaymentStatus.PAID, completed_at=now)
                self._set_items_status(conn, payment, PaymentStatus.PAID)

                order_closed = self._is_fully_paid(conn, order.id)
                if order_closed:
                    self._orders.set_status(
                        conn,
                        order.id,
                        OrderStatus.COMPLETED,
                        completion_time=now,
                        updated_at=now,
                    )
                completed = self._require_payment(conn, payment_id)
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._invalidate(payment_id, completed.order_id)
        logger.info("Completed payment id=%s order=%s", payment_id, completed.order_id)
        if order_closed:
            logger.info("Order id=%s fully paid, marked COMPLETED", completed.order_id)
        return completed

    def refund_payment(self, payment_id: str, reason: str) -> PaymentRecord:
        """Refund a PENDING or PAID payment and reopen its order for settlement."""
        try:
            if not reason or not reason.strip():
                raise ValidationError("Refund reason cannot be empty")

            with self._repo.transaction() as conn:
                payment = self._require_payment(conn, payment_id, for_update=True)
                if payment.status is PaymentStatus.REFUNDED:
                    raise ConflictError(f"Payment {payment_id} already refunded")
                if payment.status is PaymentStatus.CANCELLED:
                    raise ConflictError(
                        f"Payment {payment_id} is already cancelled and cannot be refunded"
                    )

                now = _now()
                self._repo.insert_refund(
                    conn,
                    RefundRecord(
                        id=f"ref-{uuid.uuid4()}",
                        payment_id=payment_id,
                        reason=reason.strip(),
                        amount=payment.amount,
                        status=RefundStatus.COMPLETED,
                        created_at=now,
                    ),
                )
                self._repo.update_status(conn, payment_id, PaymentStatus.REFUNDED)
                self._set_items_status(conn, payment, PaymentStatus.REFUNDED)
                self._orders.set_status(
                    conn,
                    payment.order_id,
                    OrderStatus.READY_TO_PAY,
                    completion_time=None,
                    updated_at=now,
                )
                refunded = self._require_payment(conn, payment_id)
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._invalidate(payment_id, refunded.order_id)
        logger.info("Refunded payment id=%s order=%s", payment_id, refunded.order_id)
        return refunded

    def cancel_payment(self, payment_id: str) -> PaymentRecord:
        try:
            with self._repo.transaction() as conn:
                payment = self._require_payment(conn, payment_id, for_update=True)
                if payment.status is PaymentStatus.CANCELLED:
                    raise ConflictError(f"Payment {payment_id} already cancelled")
                if payment.status is PaymentStatus.REFUNDED:
                    raise ConflictError(
                        f"Payment {payment_id} is already refunded and cannot be cancelled"
                    )
                if payment.status is PaymentStatus.PAID:
                    raise ConflictError(
                        f"Payment {payment_id} is already paid and cannot be cancelled, use refund instead"
                    )

                now = _now()
                self._repo.update_status(conn, payment_id, PaymentStatus.CANCELLED)
                self._set_items_status(conn, payment, PaymentStatus.CANCELLED)
                self._orders.set_status(
                    conn,
                    payment.order_id,
                    OrderStatus.READY_TO_PAY,
                    completion_time=None,
                    updated_at=now,
                )
                cancelled = self._require_payment(conn, payment_id)
        except Exception as exc:
            raise self._wrap(exc) from exc

        self._invalidate(payment_id, cancelled.order_id)
        logger.info("Cancelled payment id=%s order=%s", payment_id, cancelled.order_id)
        return cancelled

    def _select_items(
        self, conn, order_id: str, kind: ItemKind, ids: Sequence[str]
    ) -> List[LineItem]:
        items = self._orders.get_items_by_ids(conn, order_id, kind, ids)
        found = {item.id for item in items}
        missing = [item_id for item_id in ids if item_id not in found]
        if missing:
            raise ValidationError(
                f"{kind.value.capitalize()} items {', '.join(missing)} are not on order {order_id}"
            )
        if any(item.payment_status in COMMITTED_PAYMENT_STATUSES for item in items):
            raise ValidationError(
                "Invalid items selected or cannot add processed items to another payment"
            )
        return items

    def _set_items_status(self, conn, payment: PaymentRecord, status: PaymentStatus) -> None:
        for kind, ids in (
            (ItemKind.FOOD, payment.food_item_ids),
            (ItemKind.DRINK, payment.drink_item_ids),
        ):
            self._repo.update_item_status(conn, kind, ids, status)

    def _is_fully_paid(self, conn, order_id: str) -> bool:
        statuses = self._orders.get_item_payment_statuses(conn, order_id)
        return bool(statuses) and all(status is PaymentStatus.PAID for status in statuses)

    def _require_payment(self, conn, payment_id: str, *, for_update: bool = False) -> PaymentRecord:
        payment = self._repo.get_payment(conn, payment_id, for_update=for_update)
        if payment is None:
            raise NotFoundError(f"Payment {payment_id} not found")
        return payment

    def _load_payment(self, payment_id: str) -> PaymentRecord:
        with self._repo.transaction() as conn:
            return self._require_payment(conn, payment_id)

    def _load_payments(self, criteria: PaymentFilter) -> PaymentPage:
        with self._repo.transaction() as conn:
            payments, total = self._repo.list_payments(conn, criteria)
        return PaymentPage(
            payments=payments,
            total_count=total,
            page=criteria.page,
            page_size=criteria.page_size,
            total_pages=total_pages(total, criteria.page_size),
        )

    def _invalidate(self, payment_id: str, order_id: str) -> None:
        self._cache.invalidate(
            keys=[cache_keys.payment_key(payment_id), cache_keys.order_key(order_id)],
            prefixes=[cache_keys.PAYMENTS_LIST_PREFIX, cache_keys.ORDERS_LIST_PREFIX],
        )

    def _wrap(self, exc: Exception):
        error = handle_error(exc, self.service_name)
        if error is not exc:
            logger.exception("Unexpected failure in %s", self.service_name)
        return error


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()
