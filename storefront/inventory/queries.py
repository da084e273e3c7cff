"""
Inventory — クエリ (Read 側)
"""

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import as_aware
from ..db import product_variants as pv
from ..pricing import discount_percentage, effective_unit_price, format_major


def _to_dict(row) -> dict:
    sellable = (
        max(row.available_quantity - row.reserved_quantity, 0)
        if row.available_quantity is not None
        else 0
    )
    updated_at = as_aware(row.updated_at)
    return {
        "variant_id": row.variant_id,
        "product_id": row.product_id,
        "name": row.name,
        "unit_price": format_major(row.unit_price),
        "price": format_major(effective_unit_price(row.unit_price, row.discount_price)),
        "discount_percentage": discount_percentage(row.unit_price, row.discount_price),
        "available_quantity": row.available_quantity,
        "reserved_quantity": row.reserved_quantity,
        "sellable_quantity": sellable,
        "in_stock": bool(row.in_stock) and sellable > 0,
        "updated_at": updated_at.isoformat() if updated_at else None,
    }


async def get_variant(session: AsyncSession, variant_id: str) -> dict | None:
    row = (
        await session.execute(select(pv).where(pv.c.variant_id == variant_id))
    ).first()
    if not row:
        return None
    return _to_dict(row)


async def list_variants(session: AsyncSession, product_id: str | None = None) -> list[dict]:
    stmt = select(pv).order_by(pv.c.product_id, pv.c.variant_id)
    if product_id is not None:
        stmt = stmt.where(pv.c.product_id == product_id)
    return [_to_dict(row) for row in (await session.execute(stmt)).fetchall()]
