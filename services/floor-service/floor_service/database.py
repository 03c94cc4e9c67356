from __future__ import annotations

import os
import sqlite3
import time
from typing import Iterable

import psycopg
from psycopg.rows import dict_row

SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS food_items (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    price REAL NOT NULL,
    available INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS drink_items (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    price REAL NOT NULL,
    available INTEGER NOT NULL DEFAULT 1
);

CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    table_number INTEGER NOT NULL,
    server_id TEXT,
    guests_count INTEGER NOT NULL,
    status TEXT NOT NULL,
    discount REAL NOT NULL DEFAULT 0,
    total_amount REAL NOT NULL DEFAULT 0,
    tip REAL NOT NULL DEFAULT 0,
    comments TEXT,
    allergies_json TEXT NOT NULL DEFAULT '[]',
    version INTEGER NOT NULL DEFAULT 1,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    completion_time TEXT
);

CREATE INDEX IF NOT EXISTS idx_orders_status ON orders (status);
CREATE INDEX IF NOT EXISTS idx_orders_table_number ON orders (table_number);

CREATE TABLE IF NOT EXISTS order_food_items (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    guest_number INTEGER NOT NULL,
    price REAL NOT NULL,
    discount REAL NOT NULL DEFAULT 0,
    final_price REAL NOT NULL,
    special_request TEXT NOT NULL DEFAULT '',
    allergies_json TEXT NOT NULL DEFAULT '[]',
    printed INTEGER NOT NULL DEFAULT 0,
    fired INTEGER NOT NULL DEFAULT 0,
    payment_status TEXT NOT NULL DEFAULT 'NONE',
    FOREIGN KEY (order_id) REFERENCES orders (id)
);

CREATE INDEX IF NOT EXISTS idx_order_food_items_order ON order_food_items (order_id);

CREATE TABLE IF NOT EXISTS order_drink_items (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    item_id TEXT NOT NULL,
    guest_number INTEGER NOT NULL,
    price REAL NOT NULL,
    discount REAL NOT NULL DEFAULT 0,
    final_price REAL NOT NULL,
    special_request TEXT NOT NULL DEFAULT '',
    allergies_json TEXT NOT NULL DEFAULT '[]',
    printed INTEGER NOT NULL DEFAULT 0,
    fired INTEGER NOT NULL DEFAULT 0,
    payment_status TEXT NOT NULL DEFAULT 'NONE',
    FOREIGN KEY (order_id) REFERENCES orders (id)
);

CREATE INDEX IF NOT EXISTS idx_order_drink_items_order ON order_drink_items (order_id);

CREATE TABLE IF NOT EXISTS payments (
    id TEXT PRIMARY KEY,
    order_id TEXT NOT NULL,
    amount REAL NOT NULL,
    tax REAL NOT NULL,
    service_charge REAL NOT NULL,
    total_amount REAL NOT NULL,
    tip REAL NOT NULL DEFAULT 0,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    FOREIGN KEY (order_id) REFERENCES orders (id)
);

CREATE INDEX IF NOT EXISTS idx_payments_order ON payments (order_id);

CREATE TABLE IF NOT EXISTS payment_items (
    payment_id TEXT NOT NULL,
    item_kind TEXT NOT NULL,
    item_id TEXT NOT NULL,
    PRIMARY KEY (payment_id, item_kind, item_id),
    FOREIGN KEY (payment_id) REFERENCES payments (id)
);

CREATE TABLE IF NOT EXISTS refund_payments (
    id TEXT PRIMARY KEY,
    payment_id TEXT NOT NULL,
    reason TEXT NOT NULL,
    amount REAL NOT NULL,
    status TEXT NOT NULL,
    created_at TEXT NOT NULL,
    FOREIGN KEY (payment_id) REFERENCES payments (id)
);
"""


def _build_database_url() -> str:
    if url := os.environ.get("DATABASE_URL"):
        return url
    user = os.environ.get("DB_USER", "floor")
    password = os.environ.get("DB_PASSWORD", "floor")
    host = os.environ.get("DB_HOST", "floor-db")
    port = os.environ.get("DB_PORT", "5432")
    name = os.environ.get("DB_NAME", "floor_service")
    return f"postgresql://{user}:{password}@{host}:{port}/{name}"


DATABASE_URL = _build_database_url()


def get_connection():
    """Return a connection against Postgres (default) or SQLite when configured."""
    retries = int(os.environ.get("DB_CONNECT_MAX_RETRIES", "30"))
    delay = float(os.environ.get("DB_CONNECT_RETRY_DELAY", "2"))
    last_exc: Exception | None = None
    for attempt in range(retries):
        try:
            return _connect_once()
        except Exception as exc:  # pragma: no cover - only hits when DB down
            last_exc = exc
            if attempt == retries - 1:
                raise
            time.sleep(delay)
    raise last_exc  # pragma: no cover


def _connect_once():
    if DATABASE_URL.startswith("sqlite://"):
        path = DATABASE_URL.replace("sqlite:///", "")
        conn = sqlite3.connect(path)
        conn.row_factory = sqlite3.Row
        return conn

    return psycopg.connect(DATABASE_URL, autocommit=True, row_factory=dict_row)


def init_db() -> None:
    conn = get_connection()
    try:
        apply_schema(conn)
        seed_if_empty(conn)
    finally:
        conn.close()


def apply_schema(conn) -> None:
    if hasattr(conn, "executescript"):
        conn.executescript(SCHEMA_SQL)
        conn.commit()
        return

    with conn.cursor() as cur:
        for statement in _split_statements(SCHEMA_SQL):
            cur.execute(statement)
    conn.commit()


def _split_statements(sql_blob: str) -> Iterable[str]:
    for statement in sql_blob.split(";"):
        stmt = statement.strip()
        if stmt:
            yield stmt


def seed_if_empty(conn) -> None:
    food_items = [
        ("food-carbonara", "Pasta Carbonara", 12.5, 1),
        ("food-margherita", "Pizza Margherita", 10.0, 1),
        ("food-caesar", "Caesar Salad", 9.0, 1),
        ("food-tiramisu", "Tiramisu", 6.0, 1),
    ]
    drink_items = [
        ("drink-espresso", "Espresso", 2.5, 1),
        ("drink-lemonade", "House Lemonade", 4.0, 1),
        ("drink-chianti", "Chianti (glass)", 7.5, 1),
    ]

    row = conn.execute("SELECT COUNT(1) AS cnt FROM food_items;").fetchone()
    count = 0
    if row is not None:
        if isinstance(row, dict):
            count = row.get("cnt", 0) or 0
        else:
            count = row[0] or 0
    if count > 0:
        return

    placeholder = _placeholder(conn)
    values = f"({placeholder}, {placeholder}, {placeholder}, {placeholder})"
    cur = conn.cursor()
    try:
        cur.executemany(
            f"INSERT INTO food_items (id, name, price, available) VALUES {values}", food_items
        )
        cur.executemany(
            f"INSERT INTO drink_items (id, name, price, available) VALUES {values}", drink_items
        )
    finally:
        cur.close()
    conn.commit()


def _placeholder(conn) -> str:
    module = conn.__class__.__module__
    return "%s" if "psycopg" in module else "?"
