"""
Checkout — カタログ・送料設定・採寸見積もりの読み書き

価格はここで product_variants から解決し、クライアントの値は使わない。
"""

import logging

from sqlalchemy import insert, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from ..db import measurement_quotes, product_variants, shipping_settings, utcnow
from ..errors import InvalidCart, MeasurementQuoteNotFound
from ..pricing import PricedLine, format_major
from ..schemas import CartLine

logger = logging.getLogger(__name__)

SHIPPING_SETTINGS_ID = 1


def merge_cart(items: list[CartLine]) -> list[CartLine]:
    """同じ variant の行は数量を合算して 1 行にまとめる (出現順を保つ)。"""
    merged: dict[str, CartLine] = {}
    for item in items:
        if item.variant_id in merged:
            prev = merged[item.variant_id]
            merged[item.variant_id] = prev.model_copy(
                update={"quantity": prev.quantity + item.quantity}
            )
        else:
            merged[item.variant_id] = item
    return list(merged.values())


async def resolve_lines(session: AsyncSession, items: list[CartLine]) -> list[PricedLine]:
    ids = [item.variant_id for item in items]
    rows = (
        await session.execute(
            select(product_variants).where(product_variants.c.variant_id.in_(ids))
        )
    ).fetchall()
    by_id = {row.variant_id: row for row in rows}

    missing = [vid for vid in ids if vid not in by_id]
    if missing:
        raise InvalidCart(
            "Some items in your cart are no longer available.", variant_ids=missing
        )
    mismatched = [
        item.variant_id
        for item in items
        if item.product_id and item.product_id != by_id[item.variant_id].product_id
    ]
    if mismatched:
        raise InvalidCart(
            "Some items in your cart do not match our catalog.", variant_ids=mismatched
        )

    return [
        PricedLine(
            variant_id=item.variant_id,
            product_id=by_id[item.variant_id].product_id,
            name=by_id[item.variant_id].name,
            unit_price=by_id[item.variant_id].unit_price,
            discount_price=by_id[item.variant_id].discount_price,
            quantity=item.quantity,
        )
        for item in items
    ]


# ── 送料設定 ─────────────────────────────────────


async def load_shipping_settings(session: AsyncSession) -> tuple[dict[str, int], int | None]:
    row = (
        await session.execute(
            select(shipping_settings).where(shipping_settings.c.id == SHIPPING_SETTINGS_ID)
        )
    ).first()
    if row is None:
        return {}, None
    return dict(row.location_fees), row.free_shipping_threshold


async def save_shipping_settings(
    session: AsyncSession,
    location_fees: dict[str, int],
    free_shipping_threshold: int | None = None,
) -> None:
    if any(fee < 0 for fee in location_fees.values()):
        raise ValueError("shipping fees must be non-negative")
    values = {
        "location_fees": location_fees,
        "free_shipping_threshold": free_shipping_threshold,
        "updated_at": utcnow(),
    }
    result = await session.execute(
        update(shipping_settings)
        .where(shipping_settings.c.id == SHIPPING_SETTINGS_ID)
        .values(**values)
    )
    if result.rowcount == 0:
        await session.execute(
            insert(shipping_settings).values(id=SHIPPING_SETTINGS_ID, **values)
        )
    logger.info(
        "Shipping settings updated: %d locations, threshold=%s",
        len(location_fees),
        free_shipping_threshold,
    )


def shipping_settings_view(location_fees: dict[str, int], threshold: int | None) -> dict:
    return {
        "locations": [
            {"location": name, "fee": format_major(fee)}
            for name, fee in sorted(location_fees.items())
        ],
        "free_shipping_threshold": format_major(threshold) if threshold else None,
    }


# ── 採寸見積もり ─────────────────────────────────


async def quote_measurement(
    session: AsyncSession,
    measurement_id: str,
    price: int,
    description: str = "",
    shipping_location: str | None = None,
) -> None:
    """スタッフが採寸オーダーに価格を付ける (チェックアウト前なら上書き可)。"""
    if price <= 0:
        raise ValueError("quoted price must be positive")
    values = {
        "price": price,
        "description": description,
        "shipping_location": shipping_location,
        "quoted_at": utcnow(),
    }
    result = await session.execute(
        update(measurement_quotes)
        .where(
            measurement_quotes.c.measurement_id == measurement_id,
            measurement_quotes.c.order_number.is_(None),
        )
        .values(**values)
    )
    if result.rowcount == 0:
        exists = (
            await session.execute(
                select(measurement_quotes.c.measurement_id).where(
                    measurement_quotes.c.measurement_id == measurement_id
                )
            )
        ).first()
        if exists:
            raise InvalidCart("This measurement order has already been checked out.")
        await session.execute(
            insert(measurement_quotes).values(measurement_id=measurement_id, **values)
        )


async def get_measurement_quote(session: AsyncSession, measurement_id: str):
    row = (
        await session.execute(
            select(measurement_quotes).where(
                measurement_quotes.c.measurement_id == measurement_id
            )
        )
    ).first()
    if row is None:
        raise MeasurementQuoteNotFound(
            f"Measurement order {measurement_id} was not found."
        )
    return row


async def claim_measurement_quote(
    session: AsyncSession, measurement_id: str, order_number: str, previous: str | None
) -> bool:
    """見積もりに注文番号を紐付ける。別のチェックアウトに先を越されたら False。"""
    condition = (
        measurement_quotes.c.order_number.is_(None)
        if previous is None
        else measurement_quotes.c.order_number == previous
    )
    result = await session.execute(
        update(measurement_quotes)
        .where(measurement_quotes.c.measurement_id == measurement_id, condition)
        .values(order_number=order_number)
    )
    return result.rowcount == 1
