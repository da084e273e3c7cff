"""
Storefront — データストア

単一の一貫したデータストアを前提とする (Database per Service ではない)。
本番は PostgreSQL (asyncpg)、テストは SQLite (aiosqlite)。

在庫カウンタ・注文ステータス・Webhook 重複排除はすべて
条件付き UPDATE / INSERT でアトミックに書き込む。
アプリケーション側のロックは使わない。
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypeVar

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Integer,
    MetaData,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.exc import DBAPIError, OperationalError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from .errors import TransientStorageError

logger = logging.getLogger(__name__)

T = TypeVar("T")

metadata = MetaData()

# ── Catalog (カウンタは Inventory Ledger だけが書く) ──

product_variants = Table(
    "product_variants",
    metadata,
    Column("variant_id", String(64), primary_key=True),
    Column("product_id", String(64), nullable=False, index=True),
    Column("name", String(200), nullable=False, default=""),
    Column("unit_price", BigInteger, nullable=False),
    Column("discount_price", BigInteger, nullable=True),
    Column("available_quantity", Integer, nullable=True),
    Column("reserved_quantity", Integer, nullable=False, default=0),
    Column("in_stock", Boolean, nullable=False, default=True),
    Column("updated_at", DateTime(timezone=True), nullable=True),
    CheckConstraint("unit_price >= 0", name="ck_variant_unit_price"),
    CheckConstraint(
        "discount_price IS NULL OR discount_price >= 0",
        name="ck_variant_discount_price",
    ),
    CheckConstraint("reserved_quantity >= 0", name="ck_variant_reserved"),
    CheckConstraint(
        "available_quantity IS NULL OR reserved_quantity <= available_quantity",
        name="ck_variant_reserved_le_available",
    ),
)

shipping_settings = Table(
    "shipping_settings",
    metadata,
    Column("id", Integer, primary_key=True),
    Column("location_fees", JSON, nullable=False),
    Column("free_shipping_threshold", BigInteger, nullable=True),
    Column("updated_at", DateTime(timezone=True), nullable=True),
)

measurement_quotes = Table(
    "measurement_quotes",
    metadata,
    Column("measurement_id", String(64), primary_key=True),
    Column("description", Text, nullable=False, default=""),
    Column("price", BigInteger, nullable=True),
    Column("shipping_location", String(100), nullable=True),
    Column("quoted_at", DateTime(timezone=True), nullable=True),
    Column("order_number", String(32), nullable=True),
)

# ── Orders ───────────────────────────────────────

orders = Table(
    "orders",
    metadata,
    Column("order_number", String(32), primary_key=True),
    Column("order_type", String(16), nullable=False),
    Column("status", String(32), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("customer", JSON, nullable=False),
    Column("lines", JSON, nullable=False),
    Column("shipping_location", String(100), nullable=False),
    Column("subtotal", BigInteger, nullable=False),
    Column("shipping_fee", BigInteger, nullable=False),
    Column("tax", BigInteger, nullable=False),
    Column("total", BigInteger, nullable=False),
    Column("tax_rate", String(16), nullable=False),
    Column("free_shipping_threshold", BigInteger, nullable=True),
    Column("currency", String(8), nullable=False),
    Column("payment_reference", String(64), nullable=False, unique=True),
    Column("transaction_reference", String(128), nullable=True, unique=True),
    Column("checkout_url", Text, nullable=True),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("updated_at", DateTime(timezone=True), nullable=False),
    Column("expires_at", DateTime(timezone=True), nullable=True, index=True),
    Column("paid_at", DateTime(timezone=True), nullable=True),
)

# 追記専用のイベントログ。(order_number, version) の UNIQUE 制約で
# 同一バージョンへの二重書き込みを検知する (楽観的ロック)。
order_events = Table(
    "order_events",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("order_number", String(32), nullable=False, index=True),
    Column("version", Integer, nullable=False),
    Column("event_type", String(64), nullable=False),
    Column("event_data", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    UniqueConstraint("order_number", "version", name="uq_order_events_version"),
)

reservations = Table(
    "reservations",
    metadata,
    Column("order_number", String(32), primary_key=True),
    Column("state", String(16), nullable=False),
    Column("holds", JSON, nullable=False),
    Column("created_at", DateTime(timezone=True), nullable=False),
    Column("resolved_at", DateTime(timezone=True), nullable=True),
)

# 主キーへの INSERT 自体が重複排除のゲートになる。
webhook_events = Table(
    "webhook_events",
    metadata,
    Column("event_id", String(128), primary_key=True),
    Column("event_type", String(64), nullable=False),
    Column("transaction_reference", String(128), nullable=True),
    Column("outcome", String(16), nullable=False),
    Column("processed_at", DateTime(timezone=True), nullable=False),
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_aware(value: datetime | None) -> datetime | None:
    """SQLite はタイムゾーンを落とすので UTC として扱い直す。"""
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def create_engine(database_url: str, echo: bool = False) -> AsyncEngine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args["timeout"] = 30
    return create_async_engine(database_url, echo=echo, connect_args=connect_args)


def create_session_factory(engine: AsyncEngine) -> sessionmaker:
    return sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)


async def init_db(engine: AsyncEngine) -> None:
    async with engine.begin() as conn:
        await conn.run_sync(metadata.create_all)


def _is_transient(exc: DBAPIError) -> bool:
    return isinstance(exc, OperationalError) or exc.connection_invalidated


async def run_in_transaction(
    session_factory: sessionmaker,
    work: Callable[[AsyncSession], Awaitable[T]],
    *,
    attempts: int = 5,
    base_delay: float = 0.02,
) -> T:
    """
    work をひとつのトランザクションで実行する。

    ストレージ層の競合 (ロック待ちタイムアウト・シリアライズ失敗・接続断) は
    指数バックオフで attempts 回までやり直し、それでも失敗したら
    TransientStorageError を投げる。業務エラー (StorefrontError) は
    ロールバックしてそのまま伝播する。
    """
    for attempt in range(1, attempts + 1):
        try:
            async with session_factory() as session:
                async with session.begin():
                    return await work(session)
        except DBAPIError as e:
            if not _is_transient(e):
                raise
            if attempt == attempts:
                logger.error("Storage conflict persisted after %d attempts", attempts)
                raise TransientStorageError(
                    "The store is busy right now. Please try again shortly."
                ) from e
            delay = base_delay * (2 ** (attempt - 1))
            logger.warning(
                "Storage conflict (attempt %d/%d), retrying in %.3fs: %s",
                attempt,
                attempts,
                delay,
                e.orig,
            )
            await asyncio.sleep(delay)
    raise AssertionError("unreachable")
