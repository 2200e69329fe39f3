"""
Storefront — テーブル定義

ドキュメント DB 風に、外部キーもマイグレーションも持たない。
フィールドは読み込み時にデフォルト値で補う。
起動時に何度実行しても安全 (IF NOT EXISTS)。
"""

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncEngine

DDL = [
    """
    CREATE TABLE IF NOT EXISTS stores (
        slug VARCHAR(64) PRIMARY KEY,
        name TEXT NOT NULL,
        owner_email TEXT,
        owner_phone TEXT,
        vpa TEXT NOT NULL,
        merchant_name TEXT NOT NULL,
        created_at BIGINT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS products (
        id VARCHAR(36) PRIMARY KEY,
        store_id VARCHAR(64) NOT NULL,
        name TEXT NOT NULL,
        price TEXT NOT NULL,
        unit TEXT NOT NULL,
        description TEXT,
        image_url TEXT,
        created_at BIGINT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_products_store_id ON products (store_id)",
    """
    CREATE TABLE IF NOT EXISTS orders (
        id VARCHAR(36) PRIMARY KEY,
        store_id VARCHAR(64) NOT NULL,
        user_id TEXT,
        order_ref VARCHAR(32) NOT NULL,
        customer TEXT NOT NULL,
        line_items TEXT NOT NULL,
        total_amount TEXT NOT NULL,
        status VARCHAR(16) NOT NULL,
        tracking_number TEXT,
        created_at BIGINT NOT NULL,
        updated_at BIGINT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS ix_orders_store_id ON orders (store_id)",
    # (aggregate_id, version) の主キーが楽観的ロックを兼ねる
    """
    CREATE TABLE IF NOT EXISTS order_events (
        aggregate_id VARCHAR(36) NOT NULL,
        aggregate_type VARCHAR(32) NOT NULL,
        event_type VARCHAR(32) NOT NULL,
        event_data TEXT NOT NULL,
        version INTEGER NOT NULL,
        created_at BIGINT NOT NULL,
        PRIMARY KEY (aggregate_id, version)
    )
    """,
]


async def create_tables(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        for statement in DDL:
            await conn.execute(text(statement))
