import pytest

from storefront.errors import IllegalTransition, OrderNotFound
from storefront.order import commands, event_store
from storefront.order.aggregate import (
    TERMINAL_STATUSES,
    TRANSITIONS,
    OrderAggregate,
    OrderEvent,
    OrderStatus,
    OrderType,
    ReservationEffect,
    ReservationState,
    can_apply,
    next_state,
)

S = OrderStatus
E = OrderEvent


@pytest.mark.parametrize(
    "current,event,expected",
    [
        (S.PENDING_PAYMENT, E.PAYMENT_CONFIRMED, (S.PAID, ReservationEffect.COMMIT)),
        (S.PENDING_PAYMENT, E.PAYMENT_FAILED, (S.CANCELLED, ReservationEffect.RELEASE)),
        (S.PENDING_PAYMENT, E.RESERVATION_EXPIRED, (S.EXPIRED, ReservationEffect.RELEASE)),
        (S.PENDING_PAYMENT, E.CANCEL_REQUESTED, (S.CANCELLED, ReservationEffect.RELEASE)),
        (S.PAID, E.FULFILLMENT_STARTED, (S.PROCESSING, ReservationEffect.NONE)),
        (S.PAID, E.CANCEL_REQUESTED, (S.CANCELLED, ReservationEffect.NONE)),
        (S.PROCESSING, E.DISPATCHED, (S.SHIPPED, ReservationEffect.NONE)),
    ],
)
def test_transition_table(current, event, expected):
    assert next_state("ORD-1", current, event) == expected


def test_everything_else_is_illegal():
    for status in OrderStatus:
        for event in OrderEvent:
            if (status, event) in TRANSITIONS:
                continue
            assert not can_apply(status, event)
            with pytest.raises(IllegalTransition) as exc:
                next_state("ORD-1", status, event)
            assert exc.value.current == status.value


def test_terminal_states_have_no_exits():
    assert TERMINAL_STATUSES == {S.SHIPPED, S.EXPIRED, S.CANCELLED}
    for status in TERMINAL_STATUSES:
        assert not any(can_apply(status, e) for e in OrderEvent)


def test_order_number_format():
    number = commands.generate_order_number(OrderType.REGULAR)
    prefix, day, suffix = number.split("-")
    assert prefix == "ORD"
    assert len(day) == 8 and day.isdigit()
    assert len(suffix) == 6 and suffix.isalnum() and suffix.upper() == suffix
    assert commands.generate_order_number(OrderType.MEASUREMENT).startswith("MSO-")


async def test_confirm_commits_reservation(
    session_factory, seed_variant, place_order, counters, order_state
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 2)])

    async with session_factory() as session:
        async with session.begin():
            result = await commands.transition(session, order_number, E.PAYMENT_CONFIRMED)

    assert result.to_status is S.PAID
    assert result.version == 2
    assert await order_state(order_number) == ("paid", "committed")
    assert await counters("v1") == (3, 0)


async def test_cancel_after_payment_keeps_stock_consumed(
    session_factory, seed_variant, place_order, counters, order_state
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 2)])

    async with session_factory() as session:
        async with session.begin():
            await commands.transition(session, order_number, E.PAYMENT_CONFIRMED)
            await commands.transition(session, order_number, E.CANCEL_REQUESTED, actor="admin")

    assert await order_state(order_number) == ("cancelled", "committed")
    assert await counters("v1") == (3, 0)


async def test_illegal_transition_writes_nothing(
    session_factory, seed_variant, place_order, counters, order_state
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 1)])

    with pytest.raises(IllegalTransition):
        async with session_factory() as session:
            async with session.begin():
                await commands.transition(session, order_number, E.DISPATCHED)

    assert await order_state(order_number) == ("pending_payment", "held")
    assert await counters("v1") == (5, 1)
    async with session_factory() as session:
        events = await event_store.load_events(session, order_number)
    assert [e["event_type"] for e in events] == ["OrderCreated"]


async def test_unknown_order(session_factory):
    with pytest.raises(OrderNotFound):
        async with session_factory() as session:
            async with session.begin():
                await commands.transition(session, "ORD-20260101-ZZZZZZ", E.PAYMENT_FAILED)


async def test_aggregate_replays_event_log(session_factory, seed_variant, place_order):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 1)], total=123456)

    async with session_factory() as session:
        async with session.begin():
            await commands.transition(session, order_number, E.PAYMENT_CONFIRMED)
            await commands.transition(session, order_number, E.FULFILLMENT_STARTED)
            await commands.transition(session, order_number, E.DISPATCHED)

    async with session_factory() as session:
        events = await event_store.load_events(session, order_number)

    assert [e["version"] for e in events] == [1, 2, 3, 4]
    agg = OrderAggregate.from_events(events)
    assert agg.order_number == order_number
    assert agg.status is S.SHIPPED
    assert agg.reservation is ReservationState.COMMITTED
    assert agg.total == 123456
    assert agg.version == 4
