"""
Order — コマンドハンドラ (Write 側)

注文の作成と状態遷移。遷移は必ず transition() を通す。
transition() は 1 トランザクションの中で
  1. orders の条件付き UPDATE (WHERE status = 遷移元)  (唯一のガード)
  2. reservations の条件付き UPDATE (WHERE state = 'held')
  3. Inventory Ledger の commit / release
  4. order_events への追記
を行う。Webhook と Sweeper が同じ注文を同時に遷移させても、
1 の UPDATE で勝つのは片方だけなので、予約が commit と release の
両方を受けることはない。
"""

import logging
import secrets
import string
from datetime import datetime

from pydantic import BaseModel
from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import orders, reservations, utcnow
from ..errors import IllegalTransition, LedgerInvariantError, OrderNotFound
from ..inventory.ledger import Hold, commit_holds, release_holds
from ..pricing import PriceSnapshot
from . import event_store
from .aggregate import (
    OrderEvent,
    OrderStatus,
    OrderType,
    ReservationEffect,
    ReservationState,
    next_state,
)
from .events import OrderCreated, OrderTransitioned

logger = logging.getLogger(__name__)

ORDER_NUMBER_PREFIX = {
    OrderType.REGULAR: "ORD",
    OrderType.MEASUREMENT: "MSO",
}

_ALPHABET = string.ascii_uppercase + string.digits


def generate_order_number(order_type: OrderType, now: datetime | None = None) -> str:
    """ORD-YYYYMMDD-XXXXXX / MSO-YYYYMMDD-XXXXXX"""
    now = now or utcnow()
    suffix = "".join(secrets.choice(_ALPHABET) for _ in range(6))
    return f"{ORDER_NUMBER_PREFIX[order_type]}-{now:%Y%m%d}-{suffix}"


class TransitionResult(BaseModel):
    order_number: str
    event: OrderEvent
    from_status: OrderStatus
    to_status: OrderStatus
    effect: ReservationEffect
    version: int
    total: int
    currency: str


async def order_number_exists(session: AsyncSession, order_number: str) -> bool:
    row = (
        await session.execute(
            select(orders.c.order_number).where(orders.c.order_number == order_number)
        )
    ).first()
    return row is not None


async def create_order(
    session: AsyncSession,
    *,
    order_number: str,
    order_type: OrderType,
    customer: dict,
    lines: list[dict],
    snapshot: PriceSnapshot,
    holds: list[Hold],
    expires_at: datetime,
) -> OrderCreated:
    """
    注文作成コマンド

    注文行・予約行・OrderCreated イベントを同じトランザクションで書く。
    在庫の reserve 自体はこの前にオーケストレーターが済ませている。
    """
    now = utcnow()
    await session.execute(
        insert(orders).values(
            order_number=order_number,
            order_type=order_type.value,
            status=OrderStatus.PENDING_PAYMENT.value,
            version=1,
            customer=customer,
            lines=lines,
            shipping_location=snapshot.shipping_location,
            subtotal=snapshot.subtotal,
            shipping_fee=snapshot.shipping_fee,
            tax=snapshot.tax,
            total=snapshot.total,
            tax_rate=str(snapshot.tax_rate),
            free_shipping_threshold=snapshot.free_shipping_threshold,
            currency=snapshot.currency,
            payment_reference=order_number,
            created_at=now,
            updated_at=now,
            expires_at=expires_at,
        )
    )
    await session.execute(
        insert(reservations).values(
            order_number=order_number,
            state=ReservationState.HELD.value,
            holds=[h.model_dump() for h in holds],
            created_at=now,
        )
    )
    event = OrderCreated(
        order_number=order_number,
        order_type=order_type.value,
        status=OrderStatus.PENDING_PAYMENT.value,
        total=snapshot.total,
        currency=snapshot.currency,
        expires_at=expires_at,
        timestamp=now,
    )
    await event_store.append_event(
        session, order_number, "OrderCreated", event.model_dump(mode="json"), 0
    )
    return event


async def attach_payment_session(
    session: AsyncSession,
    order_number: str,
    transaction_reference: str,
    checkout_url: str,
) -> None:
    await session.execute(
        update(orders)
        .where(orders.c.order_number == order_number)
        .values(
            transaction_reference=transaction_reference,
            checkout_url=checkout_url,
            updated_at=utcnow(),
        )
    )


async def _resolve_reservation(
    session: AsyncSession, order_number: str, effect: ReservationEffect
) -> None:
    terminal = effect.terminal_state
    if terminal is None:
        return
    row = (
        await session.execute(
            select(reservations.c.holds).where(
                reservations.c.order_number == order_number
            )
        )
    ).first()
    result = await session.execute(
        update(reservations)
        .where(
            reservations.c.order_number == order_number,
            reservations.c.state == ReservationState.HELD.value,
        )
        .values(state=terminal.value, resolved_at=utcnow())
    )
    if row is None or result.rowcount != 1:
        raise LedgerInvariantError(
            f"Reservation for {order_number} is not held; refusing to {effect.value}."
        )
    holds = [Hold(**h) for h in row.holds]
    if effect is ReservationEffect.COMMIT:
        await commit_holds(session, holds)
    else:
        await release_holds(session, holds)


async def transition(
    session: AsyncSession,
    order_number: str,
    event: OrderEvent,
    *,
    reason: str = "",
    actor: str = "system",
    paid_at: datetime | None = None,
) -> TransitionResult:
    """
    状態遷移コマンド

    呼び出し側のトランザクション内で実行する (commit は呼び出し側)。
    遷移できない場合は IllegalTransition を投げ、何も書かない。
    """
    current = (
        await session.execute(
            select(
                orders.c.status, orders.c.version, orders.c.total, orders.c.currency
            ).where(orders.c.order_number == order_number)
        )
    ).first()
    if current is None:
        raise OrderNotFound(order_number)

    from_status = OrderStatus(current.status)
    to_status, effect = next_state(order_number, from_status, event)

    now = utcnow()
    values = {
        "status": to_status.value,
        "version": orders.c.version + 1,
        "updated_at": now,
    }
    if event is OrderEvent.PAYMENT_CONFIRMED:
        values["paid_at"] = paid_at or now

    # ガード: 遷移元ステータスのままの場合だけ更新する
    result = await session.execute(
        update(orders)
        .where(
            orders.c.order_number == order_number,
            orders.c.status == from_status.value,
            orders.c.version == current.version,
        )
        .values(**values)
    )
    if result.rowcount != 1:
        latest = (
            await session.execute(
                select(orders.c.status).where(orders.c.order_number == order_number)
            )
        ).scalar_one()
        logger.info(
            "Lost transition race for %s: %s while %s", order_number, event.value, latest
        )
        raise IllegalTransition(order_number, latest, event.value)

    await _resolve_reservation(session, order_number, effect)

    payload = OrderTransitioned(
        order_number=order_number,
        from_status=from_status.value,
        to_status=to_status.value,
        reservation=effect.value,
        total=current.total,
        currency=current.currency,
        reason=reason,
        actor=actor,
        timestamp=now,
    )
    version = await event_store.append_event(
        session,
        order_number,
        event.value,
        payload.model_dump(mode="json"),
        current.version,
    )
    logger.info(
        "Order %s: %s -> %s (%s, reservation %s)",
        order_number,
        from_status.value,
        to_status.value,
        event.value,
        effect.value,
    )
    return TransitionResult(
        order_number=order_number,
        event=event,
        from_status=from_status,
        to_status=to_status,
        effect=effect,
        version=version,
        total=current.total,
        currency=current.currency,
    )
