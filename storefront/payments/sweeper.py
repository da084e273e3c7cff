"""
Reservation Expiry Sweeper — 期限切れ予約の解放

pending_payment のまま expires_at を過ぎた注文に RESERVATION_EXPIRED を適用する。
Webhook と同じガード付き遷移を通すので、先に Webhook が決着させた注文は
IllegalTransition になり、スキップされる。
"""

import asyncio
import logging
from datetime import datetime

import redis.asyncio as aioredis
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..db import run_in_transaction, utcnow
from ..errors import IllegalTransition, StorefrontError
from ..notifications import publish_order_event
from ..order import commands
from ..order.aggregate import OrderEvent
from ..order.queries import list_expired_order_numbers

logger = logging.getLogger(__name__)


async def sweep_expired(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None = None,
    now: datetime | None = None,
    batch_size: int = 100,
    attempts: int = 5,
) -> list[str]:
    """期限切れの注文を expired にし、期限切れにした注文番号を返す。"""
    now = now or utcnow()

    async def select_batch(session: AsyncSession) -> list[str]:
        return await list_expired_order_numbers(session, now, limit=batch_size)

    candidates = await run_in_transaction(session_factory, select_batch, attempts=attempts)
    expired: list[str] = []
    for order_number in candidates:

        async def expire(session: AsyncSession, order_number=order_number):
            return await commands.transition(
                session,
                order_number,
                OrderEvent.RESERVATION_EXPIRED,
                reason="reservation_ttl",
                actor="sweeper",
            )

        try:
            result = await run_in_transaction(session_factory, expire, attempts=attempts)
        except IllegalTransition as e:
            logger.info("Skipping %s: already %s", order_number, e.current)
            continue
        except StorefrontError:
            logger.exception("Failed to expire %s", order_number)
            continue

        expired.append(order_number)
        await publish_order_event(
            redis,
            OrderEvent.RESERVATION_EXPIRED.value,
            {
                "order_number": order_number,
                "status": result.to_status.value,
                "total": result.total,
                "currency": result.currency,
            },
        )

    if expired:
        logger.info("Expired %d reservations", len(expired))
    return expired


async def run_sweeper(
    session_factory: sessionmaker,
    redis: aioredis.Redis | None,
    shutdown_event: asyncio.Event,
    interval: float = 60.0,
    batch_size: int = 100,
    attempts: int = 5,
) -> None:
    """shutdown_event がセットされるまで interval 秒ごとに sweep_expired を実行する。"""
    logger.info("Reservation sweeper started (every %.0fs)", interval)
    while not shutdown_event.is_set():
        try:
            await sweep_expired(
                session_factory, redis, batch_size=batch_size, attempts=attempts
            )
        except Exception:
            logger.exception("Reservation sweep failed")
        try:
            await asyncio.wait_for(shutdown_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass
    logger.info("Reservation sweeper stopped")
