import asyncio
from datetime import timedelta
from types import SimpleNamespace

import pytest
from sqlalchemy import select

from storefront.checkout.orchestrator import CheckoutOrchestrator
from storefront.db import utcnow, webhook_events
from storefront.errors import InvalidWebhookSignature, OrderNotFound
from storefront.order import commands, event_store
from storefront.order.aggregate import OrderEvent
from storefront.payments import reconciliation
from storefront.payments.reconciliation import (
    ReconcileOutcome,
    Reconciler,
    map_payment_status,
)
from storefront.payments.sweeper import sweep_expired
from storefront.schemas import CheckoutRequest


@pytest.fixture
def reconciler(session_factory, gateway, redis):
    return Reconciler(session_factory, gateway, redis)


async def dedup_rows(session_factory) -> list[tuple[str, str]]:
    async with session_factory() as session:
        rows = await session.execute(
            select(webhook_events.c.transaction_reference, webhook_events.c.outcome)
        )
        return [tuple(r) for r in rows]


async def event_count(session_factory, order_number) -> int:
    async with session_factory() as session:
        return len(await event_store.load_events(session, order_number))


@pytest.mark.parametrize(
    "status,event",
    [
        ("PAID", OrderEvent.PAYMENT_CONFIRMED),
        ("OVERPAID", OrderEvent.PAYMENT_CONFIRMED),
        ("paid", OrderEvent.PAYMENT_CONFIRMED),
        ("FAILED", OrderEvent.PAYMENT_FAILED),
        ("USER_CANCELLED", OrderEvent.PAYMENT_FAILED),
        ("EXPIRED", OrderEvent.PAYMENT_FAILED),
        ("REVERSED", OrderEvent.PAYMENT_FAILED),
        ("PENDING", None),
        ("PARTIALLY_PAID", None),
        ("", None),
    ],
)
def test_status_mapping(status, event):
    assert map_payment_status(status) is event


async def test_paid_webhook_commits_once(
    reconciler, seed_variant, place_order, make_webhook, counters, order_state, session_factory
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 2)], total=2_000_000)
    body, signature = make_webhook(order_number, f"MNFY-{order_number}", amount=2_000_000)

    first = await reconciler.handle_webhook(body, signature)
    second = await reconciler.handle_webhook(body, signature)

    assert first.outcome is ReconcileOutcome.APPLIED
    assert first.status == "paid"
    assert second.outcome is ReconcileOutcome.DUPLICATE
    assert await order_state(order_number) == ("paid", "committed")
    assert await counters("v1") == (3, 0)
    assert await event_count(session_factory, order_number) == 2
    assert await dedup_rows(session_factory) == [(f"MNFY-{order_number}", "applied")]


async def test_concurrent_duplicate_deliveries(
    reconciler, seed_variant, place_order, make_webhook, counters
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 1)], total=500_000)
    body, signature = make_webhook(order_number, f"MNFY-{order_number}", amount=500_000)

    results = await asyncio.gather(
        *(reconciler.handle_webhook(body, signature) for _ in range(4))
    )

    outcomes = sorted(r.outcome.value for r in results)
    assert outcomes == ["applied", "duplicate", "duplicate", "duplicate"]
    assert await counters("v1") == (4, 0)


async def test_failed_payment_releases(
    reconciler, seed_variant, place_order, make_webhook, counters, order_state
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 2)])
    body, signature = make_webhook(
        order_number, f"MNFY-{order_number}", status="FAILED", event_type="FAILED_TRANSACTION"
    )

    result = await reconciler.handle_webhook(body, signature)

    assert result.outcome is ReconcileOutcome.APPLIED
    assert await order_state(order_number) == ("cancelled", "released")
    assert await counters("v1") == (5, 0)


async def test_bad_signature_writes_nothing(
    reconciler, seed_variant, place_order, make_webhook, order_state, session_factory
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 1)])
    body, _ = make_webhook(order_number, f"MNFY-{order_number}", amount=1_000_000)

    with pytest.raises(InvalidWebhookSignature):
        await reconciler.handle_webhook(body, "deadbeef")

    assert await order_state(order_number) == ("pending_payment", "held")
    assert await dedup_rows(session_factory) == []


async def test_unknown_order_leaves_no_dedup_row(reconciler, make_webhook, session_factory):
    body, signature = make_webhook("ORD-20260101-NOPE00", "MNFY-NOPE", amount=100)

    with pytest.raises(OrderNotFound):
        await reconciler.handle_webhook(body, signature)

    assert await dedup_rows(session_factory) == []


async def test_pending_status_is_ignored(
    reconciler, seed_variant, place_order, make_webhook, order_state, session_factory
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 1)])
    body, signature = make_webhook(order_number, f"MNFY-{order_number}", status="PENDING")

    result = await reconciler.handle_webhook(body, signature)

    assert result.outcome is ReconcileOutcome.IGNORED
    assert await order_state(order_number) == ("pending_payment", "held")
    assert await dedup_rows(session_factory) == []


async def test_late_payment_after_expiry_is_mismatch(
    reconciler, seed_variant, place_order, make_webhook, counters, order_state, session_factory
):
    await seed_variant("v1", available=5)
    order_number = await place_order(
        [("v1", 2)], total=700_000, expires_at=utcnow() - timedelta(minutes=1)
    )
    assert await sweep_expired(session_factory) == [order_number]

    body, signature = make_webhook(order_number, f"MNFY-{order_number}", amount=700_000)
    result = await reconciler.handle_webhook(body, signature)

    assert result.outcome is ReconcileOutcome.MISMATCH
    assert result.status == "expired"
    assert await order_state(order_number) == ("expired", "released")
    assert await counters("v1") == (5, 0)
    assert await dedup_rows(session_factory) == [(f"MNFY-{order_number}", "mismatch")]


async def test_underpayment_is_mismatch(
    reconciler, seed_variant, place_order, make_webhook, counters, order_state
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 1)], total=1_000_000)
    body, signature = make_webhook(order_number, f"MNFY-{order_number}", amount=999_999)

    result = await reconciler.handle_webhook(body, signature)

    assert result.outcome is ReconcileOutcome.MISMATCH
    assert await order_state(order_number) == ("pending_payment", "held")
    assert await counters("v1") == (5, 1)


async def test_webhook_and_sweeper_race_single_terminal_transition(
    reconciler, seed_variant, place_order, make_webhook, counters, order_state
):
    await seed_variant("v1", available=5)
    order_number = await place_order(
        [("v1", 3)], total=300_000, expires_at=utcnow() - timedelta(seconds=1)
    )
    body, signature = make_webhook(order_number, f"MNFY-{order_number}", amount=300_000)

    webhook, swept = await asyncio.gather(
        reconciler.handle_webhook(body, signature),
        sweep_expired(reconciler.session_factory),
    )

    status, reservation = await order_state(order_number)
    if webhook.outcome is ReconcileOutcome.APPLIED:
        assert swept == []
        assert (status, reservation) == ("paid", "committed")
        assert await counters("v1") == (2, 0)
    else:
        assert webhook.outcome is ReconcileOutcome.MISMATCH
        assert swept == [order_number]
        assert (status, reservation) == ("expired", "released")
        assert await counters("v1") == (5, 0)


async def test_verify_confirms_payment(
    reconciler, seed_variant, seed_shipping, gateway, monnify, settings, redis, order_state
):
    await seed_variant("v1", available=5)
    await seed_shipping()
    orchestrator = CheckoutOrchestrator(reconciler.session_factory, gateway, settings, redis)
    checkout = await orchestrator.checkout(
        CheckoutRequest.model_validate(
            {
                "items": [{"variantId": "v1", "quantity": 1}],
                "customer": {"name": "Ada", "email": "ada@example.com", "phone": "08031234567"},
                "shippingLocation": "Lagos",
            }
        )
    )

    pending = await reconciler.verify(checkout.order_number)
    assert pending.outcome is ReconcileOutcome.IGNORED

    monnify.settle(f"MNFY-{checkout.order_number}", "PAID")
    confirmed = await reconciler.verify(checkout.order_number)
    assert confirmed.outcome is ReconcileOutcome.APPLIED
    assert await order_state(checkout.order_number) == ("paid", "committed")

    # 決済済みの注文を再確認しても何も変わらない
    again = await reconciler.verify(f"MNFY-{checkout.order_number}")
    assert again.outcome is ReconcileOutcome.DUPLICATE


async def test_webhook_after_verify_is_duplicate(
    reconciler, seed_variant, place_order, make_webhook, monnify, counters
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 1)], total=100_000)
    transaction_reference = f"MNFY-{order_number}"
    monnify.transactions[transaction_reference] = {
        "transactionReference": transaction_reference,
        "paymentReference": order_number,
        "amountPaid": "1000.00",
        "paymentStatus": "PAID",
        "paidOn": "2026-10-18T10:15:00",
    }

    assert (await reconciler.verify(order_number)).outcome is ReconcileOutcome.APPLIED

    body, signature = make_webhook(order_number, transaction_reference, amount=100_000)
    result = await reconciler.handle_webhook(body, signature)

    assert result.outcome is ReconcileOutcome.DUPLICATE
    assert await counters("v1") == (4, 0)


async def test_verify_unknown_reference(reconciler):
    with pytest.raises(OrderNotFound):
        await reconciler.verify("ORD-20260101-XXXXXX")



async def test_payment_settled_between_read_and_transition_is_duplicate(
    reconciler, seed_variant, place_order, make_webhook, session_factory, monkeypatch
):
    await seed_variant("v1", available=5)
    order_number = await place_order([("v1", 1)], total=100_000)

    async with session_factory() as session:
        stale = (await reconciliation.get_order_row(session, order_number))._asdict()
    async with session_factory() as session:
        async with session.begin():
            await commands.transition(session, order_number, OrderEvent.PAYMENT_CONFIRMED)

    # 注文を読んだ時点ではまだ pending_payment だった
    async def stale_read(session, number):
        return SimpleNamespace(**stale)

    monkeypatch.setattr(reconciliation, "get_order_row", stale_read)

    body, signature = make_webhook(order_number, f"MNFY-{order_number}", amount=100_000)
    result = await reconciler.handle_webhook(body, signature)

    assert result.outcome is ReconcileOutcome.DUPLICATE
    assert result.status == "paid"
    assert await event_count(session_factory, order_number) == 2
    assert await dedup_rows(session_factory) == [(f"MNFY-{order_number}", "duplicate")]
