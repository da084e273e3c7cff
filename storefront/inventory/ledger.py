"""
Inventory Ledger — 在庫カウンタのアトミック操作

ProductVariant ごとに available_quantity / reserved_quantity を持つ。
sellable = available - reserved。

reserve / commit / release はそれぞれ 1 本の条件付き UPDATE で、
「読んでから書く」をアプリケーション側で行わない。
同じ variant への同時 reserve はデータベースの行ロックで直列化されるため、
sellable を超えて引き当てることはない。

Ledger 自身は予約 (Reservation) の状態を知らない。
commit / release が 1 予約につき 1 回だけ呼ばれることは
注文のステートマシン側 (order.commands) が保証する。
"""

import logging

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import case, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..db import product_variants as pv
from ..db import run_in_transaction, utcnow
from ..errors import InsufficientStock, LedgerInvariantError

logger = logging.getLogger(__name__)


class Hold(BaseModel):
    """予約中の (variant, 数量)"""

    model_config = ConfigDict(frozen=True)

    variant_id: str
    quantity: int = Field(..., gt=0)


def _check_quantity(quantity: int) -> None:
    if quantity <= 0:
        raise ValueError(f"quantity must be positive, got {quantity}")


async def sellable_quantity(session: AsyncSession, variant_id: str) -> int:
    """現在の sellable。available が NULL (不明)、in_stock=false、未登録の variant は 0 扱い。"""
    row = (
        await session.execute(
            select(
                pv.c.available_quantity, pv.c.reserved_quantity, pv.c.in_stock
            ).where(pv.c.variant_id == variant_id)
        )
    ).first()
    if row is None or row.available_quantity is None or not row.in_stock:
        return 0
    return max(row.available_quantity - row.reserved_quantity, 0)


# ── 文レベルの操作 (呼び出し側のトランザクション内で実行) ──


async def try_reserve(session: AsyncSession, variant_id: str, quantity: int) -> bool:
    """in_stock かつ available - reserved >= quantity のときだけ reserved を増やす。"""
    _check_quantity(quantity)
    result = await session.execute(
        update(pv)
        .where(
            pv.c.variant_id == variant_id,
            pv.c.in_stock.is_(True),
            pv.c.available_quantity.is_not(None),
            pv.c.available_quantity - pv.c.reserved_quantity >= quantity,
        )
        .values(
            reserved_quantity=pv.c.reserved_quantity + quantity,
            updated_at=utcnow(),
        )
    )
    return result.rowcount == 1


async def apply_commit(session: AsyncSession, variant_id: str, quantity: int) -> None:
    """決済確定: available と reserved を両方減らす (在庫の恒久的な消費)。"""
    _check_quantity(quantity)
    remaining = pv.c.available_quantity - quantity
    result = await session.execute(
        update(pv)
        .where(
            pv.c.variant_id == variant_id,
            pv.c.available_quantity >= quantity,
            pv.c.reserved_quantity >= quantity,
        )
        .values(
            available_quantity=remaining,
            reserved_quantity=pv.c.reserved_quantity - quantity,
            in_stock=case((remaining > 0, True), else_=False),
            updated_at=utcnow(),
        )
    )
    if result.rowcount != 1:
        raise LedgerInvariantError(
            f"Cannot commit {quantity} of {variant_id}: not enough reserved stock."
        )


async def apply_release(session: AsyncSession, variant_id: str, quantity: int) -> None:
    """決済失敗・期限切れ・キャンセル: reserved だけ減らし sellable に戻す。"""
    _check_quantity(quantity)
    result = await session.execute(
        update(pv)
        .where(pv.c.variant_id == variant_id, pv.c.reserved_quantity >= quantity)
        .values(
            reserved_quantity=pv.c.reserved_quantity - quantity,
            updated_at=utcnow(),
        )
    )
    if result.rowcount != 1:
        raise LedgerInvariantError(
            f"Cannot release {quantity} of {variant_id}: not enough reserved stock."
        )


async def commit_holds(session: AsyncSession, holds: list[Hold]) -> None:
    for hold in holds:
        await apply_commit(session, hold.variant_id, hold.quantity)


async def release_holds(session: AsyncSession, holds: list[Hold]) -> None:
    for hold in holds:
        await apply_release(session, hold.variant_id, hold.quantity)


# ── 単独トランザクションの公開 API ─────────────────


class InventoryLedger:
    """
    reserve / commit / release をそれぞれ独立した短いトランザクションで実行する。
    ストレージの競合は run_in_transaction が有限回リトライする。
    在庫不足 (InsufficientStock) は業務上の結果なのでリトライしない。
    """

    def __init__(self, session_factory: sessionmaker, attempts: int = 5):
        self.session_factory = session_factory
        self.attempts = attempts

    async def reserve(self, variant_id: str, quantity: int) -> None:
        async def work(session: AsyncSession) -> int | None:
            if await try_reserve(session, variant_id, quantity):
                return None
            return await sellable_quantity(session, variant_id)

        sellable = await run_in_transaction(
            self.session_factory, work, attempts=self.attempts
        )
        if sellable is not None:
            logger.info(
                "Reservation refused: variant=%s requested=%d sellable=%d",
                variant_id,
                quantity,
                sellable,
            )
            raise InsufficientStock(
                [
                    {
                        "variant_id": variant_id,
                        "requested": quantity,
                        "available": sellable,
                    }
                ]
            )
        logger.debug("Reserved %d of %s", quantity, variant_id)

    async def commit(self, variant_id: str, quantity: int) -> None:
        async def work(session: AsyncSession) -> None:
            await apply_commit(session, variant_id, quantity)

        await run_in_transaction(self.session_factory, work, attempts=self.attempts)

    async def release(self, variant_id: str, quantity: int) -> None:
        async def work(session: AsyncSession) -> None:
            await apply_release(session, variant_id, quantity)

        await run_in_transaction(self.session_factory, work, attempts=self.attempts)
