"""
Pricing Engine — 価格スナップショットの算出

副作用なし。金額はすべて最小通貨単位 (kobo) の整数で計算する。
クライアントから送られた価格は使わず、サーバ側のカタログ値だけから算出する。
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from pydantic import BaseModel, ConfigDict, Field

from .errors import UnknownShippingLocation

MINOR_UNITS = 100


class PricedLine(BaseModel):
    """カタログから解決済みの明細 1 行"""

    model_config = ConfigDict(frozen=True)

    variant_id: str | None
    product_id: str | None = None
    name: str = ""
    unit_price: int = Field(..., ge=0)
    discount_price: int | None = Field(None, ge=0)
    quantity: int = Field(..., gt=0)

    @property
    def effective_unit_price(self) -> int:
        return effective_unit_price(self.unit_price, self.discount_price)

    @property
    def line_total(self) -> int:
        return self.effective_unit_price * self.quantity


class PriceSnapshot(BaseModel):
    """注文作成時に一度だけ算出され、以後再計算しない"""

    model_config = ConfigDict(frozen=True)

    subtotal: int
    shipping_fee: int
    tax: int
    total: int
    shipping_location: str
    free_shipping_threshold: int | None
    tax_rate: Decimal
    currency: str

    @property
    def free_shipping_applied(self) -> bool:
        return _threshold_met(self.subtotal, self.free_shipping_threshold)


def effective_unit_price(unit_price: int, discount_price: int | None) -> int:
    """割引価格は 0 < discount < unit の場合だけ有効。低いと決めつけない。"""
    if discount_price is not None and 0 < discount_price < unit_price:
        return discount_price
    return unit_price


def discount_percentage(unit_price: int, discount_price: int | None) -> int:
    if unit_price <= 0 or effective_unit_price(unit_price, discount_price) == unit_price:
        return 0
    saved = Decimal(unit_price - discount_price) * 100 / Decimal(unit_price)
    return int(saved.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def round_half_up(amount: Decimal) -> int:
    return int(amount.quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def compute_tax(base: int, rate_percent: Decimal) -> int:
    if rate_percent <= 0:
        return 0
    return round_half_up(Decimal(base) * rate_percent / 100)


def _threshold_met(subtotal: int, threshold: int | None) -> bool:
    return threshold is not None and threshold > 0 and subtotal >= threshold


def shipping_fee_for(
    location: str,
    location_fees: dict[str, int],
    subtotal: int,
    free_shipping_threshold: int | None,
) -> int:
    # 送料無料でも配送先は必ず検証する
    if location not in location_fees:
        raise UnknownShippingLocation(location)
    if _threshold_met(subtotal, free_shipping_threshold):
        return 0
    return location_fees[location]


def price_order(
    lines: Iterable[PricedLine],
    shipping_location: str,
    location_fees: dict[str, int],
    free_shipping_threshold: int | None = None,
    tax_rate: Decimal = Decimal("0"),
    tax_includes_shipping: bool = False,
    currency: str = "NGN",
) -> PriceSnapshot:
    """
    明細・配送先・送料表から PriceSnapshot を算出する。

    小計 = Σ(有効単価 × 数量)
    送料 = 配送先の完全一致で引く。小計 >= 送料無料しきい値なら 0
    税   = 小計 (+ 送料) × 税率、最小通貨単位へ四捨五入 (round-half-up)
    """
    subtotal = sum(line.line_total for line in lines)
    shipping_fee = shipping_fee_for(
        shipping_location, location_fees, subtotal, free_shipping_threshold
    )
    tax_base = subtotal + shipping_fee if tax_includes_shipping else subtotal
    tax = compute_tax(tax_base, tax_rate)
    return PriceSnapshot(
        subtotal=subtotal,
        shipping_fee=shipping_fee,
        tax=tax,
        total=subtotal + shipping_fee + tax,
        shipping_location=shipping_location,
        free_shipping_threshold=free_shipping_threshold,
        tax_rate=tax_rate,
        currency=currency,
    )


def to_major(amount: int) -> Decimal:
    return (Decimal(amount) / MINOR_UNITS).quantize(Decimal("0.01"))


def format_major(amount: int) -> str:
    """表示用: 26445 -> '264.45'"""
    return str(to_major(amount))


def to_minor(amount: Decimal | str | int) -> int:
    """ゲートウェイ等から受け取った主通貨単位の金額を最小通貨単位に戻す。"""
    return round_half_up(Decimal(str(amount)) * MINOR_UNITS)
