"""
Order — ステートマシンと注文集約 (Order Aggregate)

遷移表 TRANSITIONS が状態遷移の唯一の定義。
散らばったフラグで状態を表さず、不正な遷移は黙って無視せず拒否する。

状態遷移:
    pending_payment → paid        (決済確定: 予約を commit)
    pending_payment → cancelled   (決済失敗 / 手動キャンセル: 予約を release)
    pending_payment → expired     (TTL 超過: 予約を release)
    paid            → processing  (発送準備開始)
    processing      → shipped     (発送)
    paid            → cancelled   (手動キャンセル: 予約は commit 済みのまま)

注文の現在状態は orders テーブルにあるが、すべての遷移は
order_events に追記されるので、イベント列から集約を再構築できる。
"""

from enum import Enum

from ..errors import IllegalTransition


class OrderStatus(str, Enum):
    PENDING_PAYMENT = "pending_payment"
    PAID = "paid"
    PROCESSING = "processing"
    SHIPPED = "shipped"
    EXPIRED = "expired"
    CANCELLED = "cancelled"


class OrderType(str, Enum):
    REGULAR = "regular"
    MEASUREMENT = "measurement"


class OrderEvent(str, Enum):
    PAYMENT_CONFIRMED = "PaymentConfirmed"
    PAYMENT_FAILED = "PaymentFailed"
    RESERVATION_EXPIRED = "ReservationExpired"
    FULFILLMENT_STARTED = "FulfillmentStarted"
    DISPATCHED = "OrderDispatched"
    CANCEL_REQUESTED = "OrderCancelled"


class ReservationState(str, Enum):
    HELD = "held"
    COMMITTED = "committed"
    RELEASED = "released"


class ReservationEffect(str, Enum):
    COMMIT = "commit"
    RELEASE = "release"
    NONE = "none"

    @property
    def terminal_state(self) -> ReservationState | None:
        return {
            ReservationEffect.COMMIT: ReservationState.COMMITTED,
            ReservationEffect.RELEASE: ReservationState.RELEASED,
        }.get(self)


S = OrderStatus
E = OrderEvent

TRANSITIONS: dict[tuple[OrderStatus, OrderEvent], tuple[OrderStatus, ReservationEffect]] = {
    (S.PENDING_PAYMENT, E.PAYMENT_CONFIRMED): (S.PAID, ReservationEffect.COMMIT),
    (S.PENDING_PAYMENT, E.PAYMENT_FAILED): (S.CANCELLED, ReservationEffect.RELEASE),
    (S.PENDING_PAYMENT, E.RESERVATION_EXPIRED): (S.EXPIRED, ReservationEffect.RELEASE),
    (S.PENDING_PAYMENT, E.CANCEL_REQUESTED): (S.CANCELLED, ReservationEffect.RELEASE),
    (S.PAID, E.FULFILLMENT_STARTED): (S.PROCESSING, ReservationEffect.NONE),
    (S.PAID, E.CANCEL_REQUESTED): (S.CANCELLED, ReservationEffect.NONE),
    (S.PROCESSING, E.DISPATCHED): (S.SHIPPED, ReservationEffect.NONE),
}

TERMINAL_STATUSES = frozenset({S.SHIPPED, S.EXPIRED, S.CANCELLED})


def next_state(
    order_number: str, current: OrderStatus | str, event: OrderEvent
) -> tuple[OrderStatus, ReservationEffect]:
    """遷移表を引く。定義のない組み合わせは IllegalTransition。"""
    current = OrderStatus(current)
    try:
        return TRANSITIONS[(current, event)]
    except KeyError:
        raise IllegalTransition(order_number, current.value, event.value) from None


def can_apply(current: OrderStatus | str, event: OrderEvent) -> bool:
    return (OrderStatus(current), event) in TRANSITIONS


class OrderAggregate:
    """注文集約: order_events から現在の状態を再構築する。"""

    def __init__(self) -> None:
        self.order_number: str | None = None
        self.order_type: OrderType | None = None
        self.total: int = 0
        self.status: OrderStatus | None = None
        self.reservation: ReservationState | None = None
        self.version: int = 0

    # ── イベント適用メソッド ──────────────────────────

    def apply_order_created(self, data: dict) -> None:
        self.order_number = data["order_number"]
        self.order_type = OrderType(data["order_type"])
        self.total = data["total"]
        self.status = OrderStatus.PENDING_PAYMENT
        self.reservation = ReservationState.HELD

    def apply_transition(self, event: OrderEvent, _data: dict) -> None:
        status, effect = next_state(self.order_number, self.status, event)
        self.status = status
        if effect.terminal_state is not None:
            self.reservation = effect.terminal_state

    # ── イベントリプレイ ─────────────────────────────

    def apply_event(self, event_type: str, event_data: dict) -> None:
        if event_type == "OrderCreated":
            self.apply_order_created(event_data)
        else:
            self.apply_transition(OrderEvent(event_type), event_data)

    @classmethod
    def from_events(cls, events: list[dict]) -> "OrderAggregate":
        agg = cls()
        for e in events:
            agg.apply_event(e["event_type"], e["event_data"])
            agg.version = e["version"]
        return agg
