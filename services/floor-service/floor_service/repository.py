from __future__ import annotations

import json
import math
import uuid
from contextlib import contextmanager
from typing import Iterable, List, Optional, Sequence, Tuple

from .database import get_connection
from .models import (
    ItemKind,
    LineItem,
    OrderFilter,
    OrderRecord,
    OrderStatus,
    PaymentFilter,
    PaymentRecord,
    PaymentStatus,
    RefundRecord,
    RefundStatus,
)

ORDER_COLUMNS = """
    id, table_number, server_id, guests_count, status, discount, total_amount,
    tip, comments, allergies_json, version, created_at, updated_at, completion_time
"""

PAYMENT_COLUMNS = """
    id, order_id, amount, tax, service_charge, total_amount, tip, status,
    created_at, completed_at
"""

ORDER_SORT_FIELDS = frozenset(
    {"created_at", "updated_at", "total_amount", "table_number", "guests_count", "status"}
)
PAYMENT_SORT_FIELDS = frozenset({"created_at", "completed_at", "total_amount", "status"})


class Repository:
    """Connection handling shared by the floor-service repositories."""

    def __init__(self, connection_factory=get_connection):
        self._connection_factory = connection_factory

    @contextmanager
    def _connection(self):
        conn = self._connection_factory()
        try:
            yield conn
        finally:
            conn.close()

    @contextmanager
    def transaction(self):
        """Yield one connection whose statements commit or roll back together."""
        with self._connection() as conn:
            if hasattr(conn, "transaction"):
                with conn.transaction():
                    yield conn
                return

            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()


class OrderRepository(Repository):
    """Data access for orders and their food/drink line items."""

    def insert_order(self, conn, record: OrderRecord) -> None:
        placeholder = _placeholder(conn)
        values = ", ".join(placeholder for _ in range(14))
        conn.execute(
            f"INSERT INTO orders ({ORDER_COLUMNS}) VALUES ({values});",
            (
                record.id,
                record.table_number,
                record.server_id,
                record.guests_count,
                record.status.value,
                record.discount,
                record.total_amount,
                record.tip,
                record.comments,
                json.dumps(record.allergies),
                record.version,
                record.created_at,
                record.updated_at,
                record.completion_time,
            ),
        )

    def get_order(self, conn, order_id: str, *, for_update: bool = False) -> Optional[OrderRecord]:
        placeholder = _placeholder(conn)
        row = conn.execute(
            f"SELECT {ORDER_COLUMNS} FROM orders WHERE id = {placeholder}{_lock_clause(conn, for_update)};",
            (order_id,),
        ).fetchone()
        if row is None:
            return None
        return _order_from_row(row)

    def get_items(self, conn, order_id: str, kind: ItemKind) -> List[LineItem]:
        placeholder = _placeholder(conn)
        rows = conn.execute(
            f"""
            SELECT i.id, i.item_id, i.guest_number, i.price, i.discount, i.final_price,
                   i.special_request, i.allergies_json, i.printed, i.fired,
                   i.payment_status, c.name
            FROM {kind.items_table} i
            LEFT JOIN {kind.catalog_table} c ON c.id = i.item_id
            WHERE i.order_id = {placeholder}
            ORDER BY i.guest_number ASC, c.name ASC, i.id ASC;
            """,
            (order_id,),
        ).fetchall()
        return [_item_from_row(row) for row in rows]

    def get_items_by_ids(
        self, conn, order_id: str, kind: ItemKind, ids: Sequence[str]
    ) -> List[LineItem]:
        if not ids:
            return []
        placeholder = _placeholder(conn)
        rows = conn.execute(
            f"""
            SELECT i.id, i.item_id, i.guest_number, i.price, i.discount, i.final_price,
                   i.special_request, i.allergies_json, i.printed, i.fired,
                   i.payment_status, NULL AS name
            FROM {kind.items_table} i
            WHERE i.order_id = {placeholder} AND i.id IN ({_in_list(placeholder, ids)});
            """,
            [order_id, *ids],
        ).fetchall()
        return [_item_from_row(row) for row in rows]

    def insert_items(self, conn, order_id: str, kind: ItemKind, items: Iterable[LineItem]) -> None:
        placeholder = _placeholder(conn)
        values = ", ".join(placeholder for _ in range(12))
        rows = [
            (
                item.id or str(uuid.uuid4()),
                order_id,
                item.item_id,
                item.guest_number,
                item.price,
                item.discount,
                item.final_price,
                item.special_request,
                json.dumps(list(item.allergies)),
                int(item.printed),
                int(item.fired),
                item.payment_status.value,
            )
            for item in items
        ]
        if not rows:
            return
        cur = conn.cursor()
        try:
            cur.executemany(
                f"""
                INSERT INTO {kind.items_table} (
                    id, order_id, item_id, guest_number, price, discount, final_price,
                    special_request, allergies_json, printed, fired, payment_status
                ) VALUES ({values});
                """,
                rows,
            )
        finally:
            cur.close()

    def replace_items(self, conn, order_id: str, kind: ItemKind, items: Iterable[LineItem]) -> None:
        placeholder = _placeholder(conn)
        conn.execute(
            f"DELETE FROM {kind.items_table} WHERE order_id = {placeholder};", (order_id,)
        )
        self.insert_items(conn, order_id, kind, items)

    def update_order(
        self,
        conn,
        order_id: str,
        *,
        version: int,
        updated_at: str,
        **fields,
    ) -> bool:
        """Write ``fields`` and bump the version if it still equals ``version``."""
        placeholder = _placeholder(conn)
        assignments = []
        params: list = []
        for column, value in fields.items():
            if column == "allergies":
                column, value = "allergies_json", json.dumps(value)
            elif isinstance(value, OrderStatus):
                value = value.value
            assignments.append(f"{column} = {placeholder}")
            params.append(value)
        assignments.append(f"updated_at = {placeholder}")
        params.append(updated_at)

        cursor = conn.execute(
            f"""
            UPDATE orders
            SET {", ".join(assignments)}, version = version + 1
            WHERE id = {placeholder} AND version = {placeholder};
            """,
            [*params, order_id, version],
        )
        return cursor.rowcount == 1

    def set_status(
        self,
        conn,
        order_id: str,
        status: OrderStatus,
        *,
        completion_time: Optional[str],
        updated_at: str,
    ) -> None:
        placeholder = _placeholder(conn)
        conn.execute(
            f"""
            UPDATE orders
            SET status = {placeholder}, completion_time = {placeholder},
                updated_at = {placeholder}, version = version + 1
            WHERE id = {placeholder};
            """,
            (status.value, completion_time, updated_at, order_id),
        )

    def set_item_flag(
        self, conn, order_id: str, kind: ItemKind, ids: Sequence[str], flag: str
    ) -> int:
        if not ids:
            return 0
        if flag not in ("printed", "fired"):
            raise ValueError(f"Unknown item flag {flag}")
        placeholder = _placeholder(conn)
        cursor = conn.execute(
            f"""
            UPDATE {kind.items_table}
            SET {flag} = 1
            WHERE order_id = {placeholder} AND id IN ({_in_list(placeholder, ids)});
            """,
            [order_id, *ids],
        )
        return cursor.rowcount

    def count_payments(self, conn, order_id: str) -> int:
        placeholder = _placeholder(conn)
        row = conn.execute(
            f"SELECT COUNT(1) AS cnt FROM payments WHERE order_id = {placeholder};",
            (order_id,),
        ).fetchone()
        return int(row["cnt"] or 0)

    def get_item_payment_statuses(self, conn, order_id: str) -> List[PaymentStatus]:
        placeholder = _placeholder(conn)
        rows = conn.execute(
            f"""
            SELECT payment_status FROM order_food_items WHERE order_id = {placeholder}
            UNION ALL
            SELECT payment_status FROM order_drink_items WHERE order_id = {placeholder};
            """,
            (order_id, order_id),
        ).fetchall()
        return [PaymentStatus(row["payment_status"]) for row in rows]

    def delete_order(self, conn, order_id: str) -> None:
        placeholder = _placeholder(conn)
        for kind in ItemKind:
            conn.execute(
                f"DELETE FROM {kind.items_table} WHERE order_id = {placeholder};", (order_id,)
            )
        conn.execute(f"DELETE FROM orders WHERE id = {placeholder};", (order_id,))

    def list_orders(
        self, conn, criteria: OrderFilter
    ) -> Tuple[List[OrderRecord], int, Optional[float], Optional[float]]:
        placeholder = _placeholder(conn)
        predicates: List[str] = []
        params: list = []
        if criteria.status is not None:
            predicates.append(f"status = {placeholder}")
            params.append(criteria.status.value)
        if criteria.server_id is not None:
            predicates.append(f"server_id = {placeholder}")
            params.append(criteria.server_id)
        if criteria.table_number is not None:
            predicates.append(f"table_number = {placeholder}")
            params.append(criteria.table_number)
        if criteria.min_amount is not None:
            predicates.append(f"total_amount >= {placeholder}")
            params.append(criteria.min_amount)
        if criteria.max_amount is not None:
            predicates.append(f"total_amount <= {placeholder}")
            params.append(criteria.max_amount)
        where = f"WHERE {' AND '.join(predicates)}" if predicates else ""

        direction = "ASC" if criteria.sort_order.lower() == "asc" else "DESC"
        rows = conn.execute(
            f"""
            SELECT {ORDER_COLUMNS}
            FROM orders
            {where}
            ORDER BY {criteria.sort_by} {direction}, id ASC
            LIMIT {placeholder} OFFSET {placeholder};
            """,
            [*params, criteria.page_size, (criteria.page - 1) * criteria.page_size],
        ).fetchall()
        stats = conn.execute(
            f"""
            SELECT COUNT(1) AS cnt, MIN(total_amount) AS min_amount, MAX(total_amount) AS max_amount
            FROM orders
            {where};
            """,
            params,
        ).fetchone()
        return (
            [_order_from_row(row) for row in rows],
            int(stats["cnt"] or 0),
            stats["min_amount"],
            stats["max_amount"],
        )


class PaymentRepository(Repository):
    """Data access for payments, their line-item links and refunds."""

    def insert_payment(self, conn, record: PaymentRecord) -> None:
        placeholder = _placeholder(conn)
        values = ", ".join(placeholder for _ in range(10))
        conn.execute(
            f"INSERT INTO payments ({PAYMENT_COLUMNS}) VALUES ({values});",
            (
                record.id,
                record.order_id,
                record.amount,
                record.tax,
                record.service_charge,
                record.total_amount,
                record.tip,
                record.status.value,
                record.created_at,
                record.completed_at,
            ),
        )
        self._link_items(conn, record.id, ItemKind.FOOD, record.food_item_ids)
        self._link_items(conn, record.id, ItemKind.DRINK, record.drink_item_ids)

    def get_payment(
        self, conn, payment_id: str, *, for_update: bool = False
    ) -> Optional[PaymentRecord]:
        placeholder = _placeholder(conn)
        row = conn.execute(
            f"SELECT {PAYMENT_COLUMNS} FROM payments WHERE id = {placeholder}{_lock_clause(conn, for_update)};",
            (payment_id,),
        ).fetchone()
        if row is None:
            return None
        links = self._linked_items(conn, [payment_id])
        return _payment_from_row(row, links)

    def update_status(
        self,
        conn,
        payment_id: str,
        status: PaymentStatus,
        *,
        completed_at: Optional[str] = None,
    ) -> None:
        placeholder = _placeholder(conn)
        conn.execute(
            f"""
            UPDATE payments
            SET status = {placeholder}, completed_at = COALESCE({placeholder}, completed_at)
            WHERE id = {placeholder};
            """,
            (status.value, completed_at, payment_id),
        )

    def update_item_status(
        self,
        conn,
        kind: ItemKind,
        ids: Sequence[str],
        status: PaymentStatus,
        *,
        unless: Iterable[PaymentStatus] = (),
    ) -> int:
        """Set ``payment_status`` on the given items and return the affected row count.

        Rows whose current status is in ``unless`` are left untouched.
        """
        if not ids:
            return 0
        placeholder = _placeholder(conn)
        params: list = [status.value, *ids]
        guard = ""
        skipped = [s.value for s in unless]
        if skipped:
            guard = f" AND payment_status NOT IN ({_in_list(placeholder, skipped)})"
            params.extend(skipped)
        cursor = conn.execute(
            f"""
            UPDATE {kind.items_table}
            SET payment_status = {placeholder}
            WHERE id IN ({_in_list(placeholder, ids)}){guard};
            """,
            params,
        )
        return cursor.rowcount

    def insert_refund(self, conn, record: RefundRecord) -> None:
        placeholder = _placeholder(conn)
        values = ", ".join(placeholder for _ in range(6))
        conn.execute(
            f"""
            INSERT INTO refund_payments (id, payment_id, reason, amount, status, created_at)
            VALUES ({values});
            """,
            (
                record.id,
                record.payment_id,
                record.reason,
                record.amount,
                record.status.value,
                record.created_at,
            ),
        )

    def get_refunds(self, conn, payment_id: str) -> List[RefundRecord]:
        placeholder = _placeholder(conn)
        rows = conn.execute(
            f"""
            SELECT id, payment_id, reason, amount, status, created_at
            FROM refund_payments
            WHERE payment_id = {placeholder}
            ORDER BY created_at ASC;
            """,
            (payment_id,),
        ).fetchall()
        return [
            RefundRecord(
                id=row["id"],
                payment_id=row["payment_id"],
                reason=row["reason"],
                amount=row["amount"],
                status=RefundStatus(row["status"]),
                created_at=row["created_at"],
            )
            for row in rows
        ]

    def list_payments(self, conn, criteria: PaymentFilter) -> Tuple[List[PaymentRecord], int]:
        placeholder = _placeholder(conn)
        predicates: List[str] = []
        params: list = []
        if criteria.order_id is not None:
            predicates.append(f"order_id = {placeholder}")
            params.append(criteria.order_id)
        if criteria.status is not None:
            predicates.append(f"status = {placeholder}")
            params.append(criteria.status.value)
        where = f"WHERE {' AND '.join(predicates)}" if predicates else ""

        direction = "ASC" if criteria.sort_order.lower() == "asc" else "DESC"
        rows = conn.execute(
            f"""
            SELECT {PAYMENT_COLUMNS}
            FROM payments
            {where}
            ORDER BY {criteria.sort_by} {direction}, id ASC
            LIMIT {placeholder} OFFSET {placeholder};
            """,
            [*params, criteria.page_size, (criteria.page - 1) * criteria.page_size],
        ).fetchall()
        total = conn.execute(
            f"SELECT COUNT(1) AS cnt FROM payments {where};", params
        ).fetchone()

        links = self._linked_items(conn, [row["id"] for row in rows])
        return [_payment_from_row(row, links) for row in rows], int(total["cnt"] or 0)

    def _link_items(self, conn, payment_id: str, kind: ItemKind, ids: Sequence[str]) -> None:
        if not ids:
            return
        placeholder = _placeholder(conn)
        cur = conn.cursor()
        try:
            cur.executemany(
                f"""
                INSERT INTO payment_items (payment_id, item_kind, item_id)
                VALUES ({placeholder}, {placeholder}, {placeholder});
                """,
                [(payment_id, kind.value, item_id) for item_id in ids],
            )
        finally:
            cur.close()

    def _linked_items(self, conn, payment_ids: Sequence[str]) -> dict:
        links: dict = {payment_id: {kind: [] for kind in ItemKind} for payment_id in payment_ids}
        if not payment_ids:
            return links
        placeholder = _placeholder(conn)
        rows = conn.execute(
            f"""
            SELECT payment_id, item_kind, item_id
            FROM payment_items
            WHERE payment_id IN ({_in_list(placeholder, payment_ids)})
            ORDER BY item_id ASC;
            """,
            list(payment_ids),
        ).fetchall()
        for row in rows:
            links[row["payment_id"]][ItemKind(row["item_kind"])].append(row["item_id"])
        return links


def _order_from_row(row) -> OrderRecord:
    return OrderRecord(
        id=row["id"],
        table_number=row["table_number"],
        server_id=row["server_id"],
        guests_count=row["guests_count"],
        status=OrderStatus(row["status"]),
        discount=row["discount"],
        total_amount=row["total_amount"],
        tip=row["tip"],
        comments=row["comments"],
        allergies=json.loads(row["allergies_json"]) if row["allergies_json"] else [],
        version=row["version"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completion_time=row["completion_time"],
    )


def _item_from_row(row) -> LineItem:
    return LineItem(
        id=row["id"],
        item_id=row["item_id"],
        name=row["name"],
        guest_number=row["guest_number"],
        price=row["price"],
        discount=row["discount"],
        final_price=row["final_price"],
        special_request=row["special_request"] or "",
        allergies=json.loads(row["allergies_json"]) if row["allergies_json"] else [],
        printed=bool(row["printed"]),
        fired=bool(row["fired"]),
        payment_status=PaymentStatus(row["payment_status"]),
    )


def _payment_from_row(row, links: dict) -> PaymentRecord:
    linked = links.get(row["id"], {})
    return PaymentRecord(
        id=row["id"],
        order_id=row["order_id"],
        amount=row["amount"],
        tax=row["tax"],
        service_charge=row["service_charge"],
        total_amount=row["total_amount"],
        tip=row["tip"],
        status=PaymentStatus(row["status"]),
        created_at=row["created_at"],
        completed_at=row["completed_at"],
        food_item_ids=list(linked.get(ItemKind.FOOD, [])),
        drink_item_ids=list(linked.get(ItemKind.DRINK, [])),
    )


def total_pages(total: int, page_size: int) -> int:
    return math.ceil(total / page_size) if page_size else 0


def _in_list(placeholder: str, values: Sequence) -> str:
    return ",".join(placeholder for _ in values)


def _lock_clause(conn, for_update: bool) -> str:
    # SQLite has no row locks; writers there rely on the order version check.
    if for_update and "psycopg" in conn.__class__.__module__:
        return " FOR UPDATE"
    return ""


def _placeholder(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
