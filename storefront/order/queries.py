"""
Order — クエリハンドラ (Read 側)

ゲストの注文追跡用の読み取り専用プロジェクション。
顧客の連絡先はここからは返さない。
"""

from datetime import datetime

from sqlalchemy import or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import as_aware, orders, reservations
from ..pricing import format_major
from .aggregate import OrderStatus


def _iso(value: datetime | None) -> str | None:
    value = as_aware(value)
    return value.isoformat() if value else None


async def get_order(session: AsyncSession, order_number: str) -> dict | None:
    row = (
        await session.execute(
            select(orders, reservations.c.state.label("reservation_state"))
            .select_from(
                orders.outerjoin(
                    reservations,
                    reservations.c.order_number == orders.c.order_number,
                )
            )
            .where(orders.c.order_number == order_number)
        )
    ).first()
    if not row:
        return None
    pending = row.status == OrderStatus.PENDING_PAYMENT.value
    return {
        "order_number": row.order_number,
        "order_type": row.order_type,
        "status": row.status,
        "reservation": row.reservation_state,
        "lines": [
            {
                "product_id": line.get("product_id"),
                "variant_id": line.get("variant_id"),
                "name": line.get("name", ""),
                "quantity": line["quantity"],
                "unit_price": format_major(line["unit_price"]),
                "line_total": format_major(line["line_total"]),
            }
            for line in row.lines
        ],
        "shipping_location": row.shipping_location,
        "subtotal": format_major(row.subtotal),
        "shipping_fee": format_major(row.shipping_fee),
        "tax": format_major(row.tax),
        "total": format_major(row.total),
        "currency": row.currency,
        "created_at": _iso(row.created_at),
        "paid_at": _iso(row.paid_at),
        "expires_at": _iso(row.expires_at) if pending else None,
        "checkout_url": row.checkout_url if pending else None,
    }


async def get_order_row(session: AsyncSession, order_number: str):
    return (
        await session.execute(select(orders).where(orders.c.order_number == order_number))
    ).first()


async def find_order_number(session: AsyncSession, reference: str) -> str | None:
    """payment reference / transaction reference / 注文番号のどれでも引けるようにする。"""
    row = (
        await session.execute(
            select(orders.c.order_number).where(
                or_(
                    orders.c.payment_reference == reference,
                    orders.c.transaction_reference == reference,
                    orders.c.order_number == reference,
                )
            )
        )
    ).first()
    return row.order_number if row else None


async def get_reservation(session: AsyncSession, order_number: str) -> dict | None:
    row = (
        await session.execute(
            select(reservations).where(reservations.c.order_number == order_number)
        )
    ).first()
    if not row:
        return None
    return {
        "order_number": row.order_number,
        "state": row.state,
        "holds": row.holds,
        "created_at": _iso(row.created_at),
        "resolved_at": _iso(row.resolved_at),
    }


async def list_expired_order_numbers(
    session: AsyncSession, now: datetime, limit: int = 100
) -> list[str]:
    result = await session.execute(
        select(orders.c.order_number)
        .where(
            orders.c.status == OrderStatus.PENDING_PAYMENT.value,
            orders.c.expires_at < now,
        )
        .order_by(orders.c.expires_at.asc())
        .limit(limit)
    )
    return [row.order_number for row in result.fetchall()]
