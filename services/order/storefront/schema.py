"""
Order Service — テーブル定義

PostgreSQL と SQLite の両方で動く DDL のみを使う。
金額は最小通貨単位の整数、日時は UTC の ISO 8601 文字列で保存する。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS products (
        id          TEXT PRIMARY KEY,
        title       TEXT NOT NULL,
        price       BIGINT NOT NULL,
        inventory   BIGINT NOT NULL DEFAULT 0,
        CHECK (inventory >= 0)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS shipping_options (
        id              TEXT PRIMARY KEY,
        name            TEXT NOT NULL,
        price           BIGINT NOT NULL,
        delivery_time   TEXT NOT NULL DEFAULT '',
        status          TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS discounts (
        id              TEXT PRIMARY KEY,
        code            TEXT NOT NULL,
        code_key        TEXT NOT NULL UNIQUE,
        description     TEXT,
        kind            TEXT NOT NULL,
        value           BIGINT NOT NULL,
        usage_limit     BIGINT,
        usage_count     BIGINT NOT NULL DEFAULT 0,
        active_from     TEXT NOT NULL,
        active_until    TEXT,
        is_active       BOOLEAN NOT NULL,
        min_subtotal    BIGINT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS discount_products (
        discount_id TEXT NOT NULL,
        product_id  TEXT NOT NULL,
        PRIMARY KEY (discount_id, product_id)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS orders (
        id                  TEXT PRIMARY KEY,
        customer            TEXT NOT NULL,
        discount_id         TEXT,
        subtotal            BIGINT NOT NULL,
        discount_amount     BIGINT NOT NULL,
        total               BIGINT NOT NULL,
        shipping_option_id  TEXT,
        shipping_cost       BIGINT NOT NULL DEFAULT 0,
        status              TEXT NOT NULL,
        payment_reference   TEXT UNIQUE,
        version             INTEGER NOT NULL,
        created_at          TEXT NOT NULL,
        updated_at          TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS order_items (
        order_id    TEXT NOT NULL,
        position    INTEGER NOT NULL,
        product_id  TEXT NOT NULL,
        quantity    INTEGER NOT NULL,
        unit_price  BIGINT NOT NULL,
        PRIMARY KEY (order_id, position)
    )
    """,
    # (order_id, version) の一意制約が楽観的ロックの役割を果たす
    """
    CREATE TABLE IF NOT EXISTS order_events (
        order_id    TEXT NOT NULL,
        event_type  TEXT NOT NULL,
        event_data  TEXT NOT NULL,
        version     INTEGER NOT NULL,
        created_at  TEXT NOT NULL,
        PRIMARY KEY (order_id, version)
    )
    """,
]


async def create_all(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
