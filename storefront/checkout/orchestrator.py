"""
Checkout Orchestrator — カート / 採寸見積もり → 決済セッション

Saga パターン (オーケストレーション型):
  各ステップが失敗したら、それまでに成功したステップを補償して戻す。
  複数ステップの補償を行うのはこのオーケストレーターだけ。

  フロー:
  ┌──────────────────────────────────────────────────────────────┐
  │  1. カタログから価格を解決し PriceSnapshot を算出              │
  │  2. 全明細の在庫を reserve                                     │
  │     └─ 1 行でも不足 → 成功した行を release して InsufficientStock │
  │  3. 注文 + 予約 + OrderCreated を 1 トランザクションで作成       │
  │     └─ 失敗 → 2 の予約を release                              │
  │  4. 決済ゲートウェイでチェックアウトセッションを作成            │
  │     └─ 失敗 → CANCEL_REQUESTED で注文を取り消し (予約も解放)    │
  │  5. 取引参照とチェックアウト URL を注文に保存し、通知を発行      │
  └──────────────────────────────────────────────────────────────┘
"""

import asyncio
import logging
from datetime import datetime, timedelta

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..config import Settings
from ..db import run_in_transaction, utcnow
from ..errors import (
    GatewayUnavailable,
    InsufficientStock,
    InvalidCart,
    MeasurementQuoteNotPriced,
    StorefrontError,
    TransientStorageError,
)
from ..inventory.ledger import Hold, InventoryLedger
from ..notifications import publish_order_event
from ..order import commands
from ..order.aggregate import OrderEvent, OrderStatus, OrderType
from ..order.queries import get_order_row
from ..payments.gateway import CheckoutSessionRequest, MonnifyGateway
from ..pricing import PricedLine, PriceSnapshot, format_major, price_order
from ..schemas import CheckoutRequest, CustomerInfo, MeasurementCheckoutRequest
from . import catalog

logger = logging.getLogger(__name__)

MAX_ORDER_NUMBER_ATTEMPTS = 5

# 採寸見積もりを再度チェックアウトできる (前回の注文が終わっている) 状態
_REUSABLE_STATUSES = {
    OrderStatus.CANCELLED.value,
    OrderStatus.EXPIRED.value,
}


class CheckoutResult(BaseModel):
    order_number: str
    payment_session_url: str
    total: int
    currency: str
    expires_at: datetime

    def to_response(self) -> dict:
        return {
            "orderNumber": self.order_number,
            "paymentSessionUrl": self.payment_session_url,
            "total": format_major(self.total),
            "currency": self.currency,
            "expiresAt": self.expires_at,
        }


def _order_lines(lines: list[PricedLine]) -> list[dict]:
    result = []
    for line in lines:
        data = {
            "product_id": line.product_id,
            "variant_id": line.variant_id,
            "name": line.name,
            "quantity": line.quantity,
            "unit_price": line.effective_unit_price,
            "line_total": line.line_total,
        }
        if line.effective_unit_price != line.unit_price:
            data["list_price"] = line.unit_price
        result.append(data)
    return result


def _customer_record(customer: CustomerInfo) -> dict:
    return customer.model_dump(mode="json")


class CheckoutOrchestrator:
    """チェックアウト Saga のオーケストレーター"""

    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MonnifyGateway,
        settings: Settings,
        redis: aioredis.Redis | None = None,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.settings = settings
        self.redis = redis
        self.ledger = InventoryLedger(session_factory, attempts=settings.storage_retry_attempts)

    @property
    def session_timeout(self) -> float:
        # ログイン + 接続リトライを含めたセッション作成全体の上限
        s = self.settings
        return s.gateway_timeout_seconds * (s.gateway_retry_attempts + 1)

    async def _tx(self, work):
        return await run_in_transaction(
            self.session_factory, work, attempts=self.settings.storage_retry_attempts
        )

    # ── 通常注文 ─────────────────────────────────────

    async def checkout(self, request: CheckoutRequest) -> CheckoutResult:
        items = catalog.merge_cart(request.items)

        # Step 1: 価格 (ここまでは何も書き込まない)
        async def resolve(session: AsyncSession):
            lines = await catalog.resolve_lines(session, items)
            fees, threshold = await catalog.load_shipping_settings(session)
            return lines, fees, threshold

        lines, fees, threshold = await self._tx(resolve)
        snapshot = self._price(lines, request.shipping_location, fees, threshold)

        # Step 2: 在庫引き当て
        holds = [Hold(variant_id=line.variant_id, quantity=line.quantity) for line in lines]
        await self.reserve_all(holds)

        # Step 3: 注文作成
        try:
            order_number, expires_at = await self._create_order(
                OrderType.REGULAR,
                _customer_record(request.customer),
                _order_lines(lines),
                snapshot,
                holds,
            )
        except Exception:
            logger.warning("Order creation failed; releasing %d holds", len(holds))
            await self._release_all(holds)
            raise

        # Step 4-5: 決済セッション
        return await self._open_payment_session(
            order_number, OrderType.REGULAR, request.customer, snapshot, expires_at
        )

    def _price(
        self,
        lines: list[PricedLine],
        location: str,
        fees: dict[str, int],
        threshold: int | None,
        tax_includes_shipping: bool = False,
    ) -> PriceSnapshot:
        snapshot = price_order(
            lines,
            location,
            fees,
            free_shipping_threshold=threshold,
            tax_rate=self.settings.tax_rate_percent,
            tax_includes_shipping=tax_includes_shipping,
            currency=self.settings.currency,
        )
        if snapshot.total <= 0:
            raise InvalidCart("Order total must be greater than zero.")
        return snapshot

    async def reserve_all(self, holds: list[Hold]) -> None:
        """
        全明細を reserve する。途中で不足しても残りの行も試し、
        不足している variant をすべて集めてから成功分を release する。
        """
        reserved: list[Hold] = []
        shortages: list[dict] = []
        try:
            for hold in holds:
                try:
                    await self.ledger.reserve(hold.variant_id, hold.quantity)
                except InsufficientStock as e:
                    shortages.extend(e.shortages)
                else:
                    reserved.append(hold)
        except Exception:
            await self._release_all(reserved)
            raise
        if shortages:
            await self._release_all(reserved)
            raise InsufficientStock(shortages)

    async def _release_all(self, holds: list[Hold]) -> list[Hold]:
        """
        補償 release。1 件失敗しても残りの hold は必ず試す。
        失敗分はログに残して返し、呼び出し元の元の例外をそのまま伝播させる。
        """
        failed: list[Hold] = []
        for hold in holds:
            try:
                await self.ledger.release(hold.variant_id, hold.quantity)
            except StorefrontError:
                logger.exception(
                    "Compensating release failed: variant=%s quantity=%d",
                    hold.variant_id,
                    hold.quantity,
                )
                failed.append(hold)
        if failed:
            logger.error(
                "Leaked %d of %d holds during compensation: %s",
                len(failed),
                len(holds),
                ", ".join(f"{h.variant_id}x{h.quantity}" for h in failed),
            )
        return failed

    async def _create_order(
        self,
        order_type: OrderType,
        customer: dict,
        lines: list[dict],
        snapshot: PriceSnapshot,
        holds: list[Hold],
        after_create=None,
    ) -> tuple[str, datetime]:
        """注文番号が衝突したら作り直す (有限回)。"""
        expires_at = utcnow() + timedelta(minutes=self.settings.reservation_ttl_minutes)
        for _ in range(MAX_ORDER_NUMBER_ATTEMPTS):
            order_number = commands.generate_order_number(order_type)

            async def work(session: AsyncSession):
                if await commands.order_number_exists(session, order_number):
                    return None
                event = await commands.create_order(
                    session,
                    order_number=order_number,
                    order_type=order_type,
                    customer=customer,
                    lines=lines,
                    snapshot=snapshot,
                    holds=holds,
                    expires_at=expires_at,
                )
                if after_create is not None:
                    await after_create(session, order_number)
                return event

            try:
                event = await self._tx(work)
            except IntegrityError:
                event = None
            if event is not None:
                logger.info(
                    "Order %s created: total=%s %s, %d holds, expires %s",
                    order_number,
                    format_major(snapshot.total),
                    snapshot.currency,
                    len(holds),
                    expires_at.isoformat(),
                )
                return order_number, expires_at
            logger.warning("Order number collision on %s; regenerating", order_number)
        raise TransientStorageError("Could not allocate an order number. Please try again.")

    async def _open_payment_session(
        self,
        order_number: str,
        order_type: OrderType,
        customer: CustomerInfo,
        snapshot: PriceSnapshot,
        expires_at: datetime,
    ) -> CheckoutResult:
        request = CheckoutSessionRequest(
            payment_reference=order_number,
            amount=snapshot.total,
            currency=snapshot.currency,
            customer_name=customer.name,
            customer_email=customer.email,
            customer_phone=customer.phone,
            description=f"Payment for order {order_number}",
            redirect_url=(
                f"{self.settings.app_url.rstrip('/')}/payment/verify?order={order_number}"
            ),
            metadata={"orderNumber": order_number, "orderType": order_type.value},
        )
        try:
            session = await asyncio.wait_for(
                self.gateway.create_checkout_session(request),
                timeout=self.session_timeout,
            )
        except Exception as e:
            logger.error("Payment session failed for %s: %s", order_number, e)
            await self._cancel(order_number)
            if isinstance(e, asyncio.TimeoutError):
                raise GatewayUnavailable(
                    "The payment provider did not respond in time. Please try again."
                ) from e
            raise

        async def attach(s: AsyncSession) -> None:
            await commands.attach_payment_session(
                s, order_number, session.transaction_reference, session.checkout_url
            )

        try:
            await self._tx(attach)
        except TransientStorageError:
            # Webhook は payment reference (= 注文番号) でも注文を引ける
            logger.exception(
                "Could not store transaction reference %s on %s",
                session.transaction_reference,
                order_number,
            )

        await publish_order_event(
            self.redis,
            "OrderCreated",
            {
                "order_number": order_number,
                "order_type": order_type.value,
                "total": snapshot.total,
                "currency": snapshot.currency,
                "customer_email": customer.email,
                "expires_at": expires_at.isoformat(),
            },
        )
        return CheckoutResult(
            order_number=order_number,
            payment_session_url=session.checkout_url,
            total=snapshot.total,
            currency=snapshot.currency,
            expires_at=expires_at,
        )

    async def _cancel(self, order_number: str) -> None:
        """補償: 決済セッションを作れなかった注文を取り消し、予約を解放する。"""

        async def work(session: AsyncSession):
            return await commands.transition(
                session,
                order_number,
                OrderEvent.CANCEL_REQUESTED,
                reason="payment_session_failed",
                actor="checkout",
            )

        try:
            await self._tx(work)
        except StorefrontError:
            # 取り消せなかった予約は有効期限切れで Sweeper が解放する
            logger.exception("Compensating cancel failed for %s", order_number)

    # ── 採寸注文 ─────────────────────────────────────

    async def checkout_measurement(self, request: MeasurementCheckoutRequest) -> CheckoutResult:
        """スタッフが価格を付けた採寸見積もりを MSO- 注文としてチェックアウトする。在庫は引き当てない。"""

        async def resolve(session: AsyncSession):
            quote = await catalog.get_measurement_quote(session, request.measurement_id)
            previous = quote.order_number
            if previous is not None:
                prior = await get_order_row(session, previous)
                if prior is not None and prior.status not in _REUSABLE_STATUSES:
                    raise InvalidCart(
                        "This measurement order has already been checked out.",
                        order_number=previous,
                    )
            fees, threshold = await catalog.load_shipping_settings(session)
            return quote, fees, threshold

        quote, fees, threshold = await self._tx(resolve)
        if quote.price is None or quote.price <= 0:
            raise MeasurementQuoteNotPriced(
                "This measurement order has not been priced yet. Please wait for our quote."
            )
        location = request.shipping_location or quote.shipping_location
        if not location:
            raise InvalidCart("Please choose a shipping location.")

        line = PricedLine(
            variant_id=None,
            product_id=None,
            name=quote.description or f"Custom order {quote.measurement_id}",
            unit_price=quote.price,
            quantity=1,
        )
        snapshot = self._price([line], location, fees, threshold, tax_includes_shipping=True)

        async def claim(session: AsyncSession, order_number: str) -> None:
            if not await catalog.claim_measurement_quote(
                session, quote.measurement_id, order_number, quote.order_number
            ):
                raise InvalidCart("This measurement order has already been checked out.")

        order_number, expires_at = await self._create_order(
            OrderType.MEASUREMENT,
            {**_customer_record(request.customer), "measurement_id": quote.measurement_id},
            _order_lines([line]),
            snapshot,
            [],
            after_create=claim,
        )
        return await self._open_payment_session(
            order_number, OrderType.MEASUREMENT, request.customer, snapshot, expires_at
        )
