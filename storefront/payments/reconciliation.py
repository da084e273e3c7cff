"""
Reconciliation Worker — 決済結果を注文に反映する

入口は 2 つ:
  - handle_webhook(raw_body, signature)  ゲートウェイからの Webhook
  - verify(reference)                    顧客のリダイレクト後のポーリング

どちらも reconcile() に合流する。reconcile() は 1 トランザクションで
  1. webhook_events への insert-if-absent (重複なら何もせず duplicate)
  2. payment reference / transaction reference から注文を特定
  3. 決済ステータスを注文イベントに変換して遷移を適用
を行う。注文が見つからなければロールバックされるので重複排除の行も残らない。
ステートマシンが拒否した遷移や金額不足は mismatch として記録し、適用しない。
"""

import logging
from enum import Enum

import redis.asyncio as aioredis
from pydantic import BaseModel
from sqlalchemy import update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from ..db import run_in_transaction, utcnow, webhook_events
from ..errors import IllegalTransition, InvalidWebhookSignature, OrderNotFound, PaymentGatewayError
from ..notifications import publish_order_event
from ..order import commands
from ..order.aggregate import OrderEvent, OrderStatus
from ..order.queries import find_order_number, get_order_row
from ..pricing import format_major
from .gateway import GatewayEvent, MonnifyGateway

logger = logging.getLogger(__name__)

CONFIRMED_STATUSES = frozenset({"PAID", "OVERPAID"})
FAILED_STATUSES = frozenset(
    {"FAILED", "CANCELLED", "USER_CANCELLED", "EXPIRED", "REVERSED"}
)


class ReconcileOutcome(str, Enum):
    APPLIED = "applied"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    MISMATCH = "mismatch"


class ReconcileResult(BaseModel):
    outcome: ReconcileOutcome
    event_id: str
    order_number: str | None = None
    status: str | None = None

    def to_response(self) -> dict:
        return {
            "outcome": self.outcome.value,
            "orderNumber": self.order_number,
            "status": self.status,
        }


def map_payment_status(payment_status: str) -> OrderEvent | None:
    """PAID/OVERPAID → 確定、失敗系 → 失敗、それ以外 (PENDING 等) は None"""
    status = payment_status.upper()
    if status in CONFIRMED_STATUSES:
        return OrderEvent.PAYMENT_CONFIRMED
    if status in FAILED_STATUSES:
        return OrderEvent.PAYMENT_FAILED
    return None


_SETTLED_BY = {
    OrderEvent.PAYMENT_CONFIRMED: frozenset(
        {OrderStatus.PAID.value, OrderStatus.PROCESSING.value, OrderStatus.SHIPPED.value}
    ),
    OrderEvent.PAYMENT_FAILED: frozenset({OrderStatus.CANCELLED.value}),
}


def _already_reflected(status: str, order_event: OrderEvent) -> bool:
    """同じ決済結果が別経路 (Webhook と verify) で既に反映済みか"""
    return status in _SETTLED_BY.get(order_event, ())


async def insert_if_absent(session: AsyncSession, event: GatewayEvent) -> bool:
    """重複排除の行を入れる。既にあれば False (主キー衝突を ON CONFLICT DO NOTHING で吸収)。"""
    dialect = session.bind.dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = (
        insert(webhook_events)
        .values(
            event_id=event.event_id,
            event_type=event.event_type,
            transaction_reference=event.transaction_reference,
            outcome=ReconcileOutcome.APPLIED.value,
            processed_at=utcnow(),
        )
        .on_conflict_do_nothing(index_elements=[webhook_events.c.event_id])
    )
    result = await session.execute(stmt)
    return result.rowcount == 1


async def _record_outcome(
    session: AsyncSession, event_id: str, outcome: ReconcileOutcome
) -> None:
    await session.execute(
        update(webhook_events)
        .where(webhook_events.c.event_id == event_id)
        .values(outcome=outcome.value)
    )


class Reconciler:
    def __init__(
        self,
        session_factory: sessionmaker,
        gateway: MonnifyGateway,
        redis: aioredis.Redis | None = None,
        attempts: int = 5,
    ):
        self.session_factory = session_factory
        self.gateway = gateway
        self.redis = redis
        self.attempts = attempts

    async def handle_webhook(self, raw_body: bytes, signature: str | None) -> ReconcileResult:
        if not self.gateway.verify_signature(raw_body, signature):
            logger.warning("Rejected webhook with invalid signature (%d bytes)", len(raw_body))
            raise InvalidWebhookSignature("Invalid webhook signature.")
        event = self.gateway.parse_webhook(raw_body)
        logger.info(
            "Webhook received: %s transaction=%s status=%s",
            event.event_type,
            event.transaction_reference,
            event.payment_status,
        )
        return await self.reconcile(event)

    async def verify(self, reference: str) -> ReconcileResult:
        """
        リダイレクト後のポーリング。reference は transaction reference /
        payment reference / 注文番号のいずれでもよい。
        """

        async def lookup(session: AsyncSession):
            number = await find_order_number(session, reference)
            return await get_order_row(session, number) if number else None

        row = await run_in_transaction(self.session_factory, lookup, attempts=self.attempts)
        if row is None:
            raise OrderNotFound(reference)
        if row.status != OrderStatus.PENDING_PAYMENT.value:
            # Webhook などで既に決着済み
            return ReconcileResult(
                outcome=ReconcileOutcome.DUPLICATE,
                event_id="",
                order_number=row.order_number,
                status=row.status,
            )
        if not row.transaction_reference:
            raise PaymentGatewayError("We could not verify this payment yet.")

        event = await self.gateway.verify_transaction(row.transaction_reference)
        return await self.reconcile(event)

    async def reconcile(self, event: GatewayEvent) -> ReconcileResult:
        order_event = map_payment_status(event.payment_status)
        if order_event is None:
            logger.info(
                "Ignoring payment status %s for %s",
                event.payment_status or "<none>",
                event.payment_reference,
            )
            return ReconcileResult(outcome=ReconcileOutcome.IGNORED, event_id=event.event_id)

        async def work(session: AsyncSession) -> tuple[ReconcileResult, dict | None]:
            inserted = await insert_if_absent(session, event)

            number = await find_order_number(session, event.payment_reference)
            if number is None:
                number = await find_order_number(session, event.transaction_reference)
            if number is None:
                raise OrderNotFound(event.payment_reference)
            order = await get_order_row(session, number)

            if not inserted:
                logger.info("Duplicate payment event %s for %s", event.event_id, number)
                return (
                    ReconcileResult(
                        outcome=ReconcileOutcome.DUPLICATE,
                        event_id=event.event_id,
                        order_number=number,
                        status=order.status,
                    ),
                    None,
                )

            if _already_reflected(order.status, order_event):
                logger.info(
                    "Payment event %s already reflected on %s (%s)",
                    event.event_id,
                    number,
                    order.status,
                )
                await _record_outcome(session, event.event_id, ReconcileOutcome.DUPLICATE)
                return (
                    ReconcileResult(
                        outcome=ReconcileOutcome.DUPLICATE,
                        event_id=event.event_id,
                        order_number=number,
                        status=order.status,
                    ),
                    None,
                )

            if (
                order_event is OrderEvent.PAYMENT_CONFIRMED
                and event.amount_paid < order.total
            ):
                logger.error(
                    "Payment mismatch for %s: paid %s, order total %s",
                    number,
                    format_major(event.amount_paid),
                    format_major(order.total),
                )
                return await self._mismatch(session, event, order), None

            try:
                result = await commands.transition(
                    session,
                    number,
                    order_event,
                    reason=f"gateway:{event.payment_status}",
                    actor="payment_gateway",
                    paid_at=event.paid_on,
                )
            except IllegalTransition as e:
                # 読み取り後に別経路 (Webhook / verify) が同じ結果を先に反映した
                if _already_reflected(e.current, order_event):
                    logger.info(
                        "Payment event %s lost race on %s; already %s",
                        event.event_id,
                        number,
                        e.current,
                    )
                    await _record_outcome(session, event.event_id, ReconcileOutcome.DUPLICATE)
                    return (
                        ReconcileResult(
                            outcome=ReconcileOutcome.DUPLICATE,
                            event_id=event.event_id,
                            order_number=number,
                            status=e.current,
                        ),
                        None,
                    )
                logger.error(
                    "Payment mismatch for %s: %s while %s (transaction %s)",
                    number,
                    order_event.value,
                    e.current,
                    event.transaction_reference,
                )
                return await self._mismatch(session, event, order), None

            notification = {
                "order_number": number,
                "order_type": order.order_type,
                "status": result.to_status.value,
                "total": order.total,
                "currency": order.currency,
                "customer_email": (order.customer or {}).get("email"),
                "transaction_reference": event.transaction_reference,
            }
            return (
                ReconcileResult(
                    outcome=ReconcileOutcome.APPLIED,
                    event_id=event.event_id,
                    order_number=number,
                    status=result.to_status.value,
                ),
                notification,
            )

        result, notification = await run_in_transaction(
            self.session_factory, work, attempts=self.attempts
        )
        if notification is not None:
            await publish_order_event(self.redis, order_event.value, notification)
        return result

    async def _mismatch(
        self, session: AsyncSession, event: GatewayEvent, order
    ) -> ReconcileResult:
        await _record_outcome(session, event.event_id, ReconcileOutcome.MISMATCH)
        return ReconcileResult(
            outcome=ReconcileOutcome.MISMATCH,
            event_id=event.event_id,
            order_number=order.order_number,
            status=order.status,
        )
