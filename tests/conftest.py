"""
テスト共通フィクスチャ

- SQLite (aiosqlite) のファイル DB をテストごとに作成
- Redis は fakeredis
- Monnify は httpx.MockTransport で差し替え
"""

import json
from datetime import timedelta
from decimal import Decimal

import httpx
import pytest
from fakeredis import aioredis as fake_aioredis
from sqlalchemy import insert, select

from storefront.config import Settings
from storefront.db import (
    create_engine,
    create_session_factory,
    init_db,
    product_variants,
    shipping_settings,
    utcnow,
)
from storefront.inventory.ledger import Hold, InventoryLedger
from storefront.order.aggregate import OrderType
from storefront.order.commands import attach_payment_session, create_order, generate_order_number
from storefront.order.queries import get_order_row, get_reservation
from storefront.payments.gateway import MonnifyGateway, compute_signature
from storefront.pricing import PriceSnapshot, format_major

WEBHOOK_SECRET = "sk_test_webhook_secret"

DEFAULT_FEES = {"Lagos": 250000, "Abuja": 400000}


@pytest.fixture
def settings():
    return Settings(
        monnify_base_url="https://sandbox.monnify.test",
        monnify_api_key="MK_TEST_ABCDEFGHIJ",
        monnify_secret_key=WEBHOOK_SECRET,
        monnify_contract_code="7059707855",
        app_url="https://shop.example.com",
        tax_rate_percent=Decimal("7.5"),
        reservation_ttl_minutes=30,
        gateway_timeout_seconds=1.0,
        gateway_retry_attempts=2,
        admin_api_token="admin-secret",
    )


@pytest.fixture
async def engine(tmp_path):
    engine = create_engine(f"sqlite+aiosqlite:///{tmp_path / 'storefront.db'}")
    await init_db(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine):
    return create_session_factory(engine)


@pytest.fixture
async def redis():
    conn = fake_aioredis.FakeRedis(decode_responses=True)
    yield conn
    await conn.aclose()


@pytest.fixture
def seed_variant(session_factory):
    async def _seed(
        variant_id: str,
        available: int | None,
        unit_price: int = 1_000_000,
        discount_price: int | None = None,
        product_id: str = "agbada-classic",
        reserved: int = 0,
        in_stock: bool | None = None,
    ) -> None:
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(product_variants).values(
                        variant_id=variant_id,
                        product_id=product_id,
                        name=f"Agbada {variant_id}",
                        unit_price=unit_price,
                        discount_price=discount_price,
                        available_quantity=available,
                        reserved_quantity=reserved,
                        in_stock=bool(available) if in_stock is None else in_stock,
                    )
                )

    return _seed


@pytest.fixture
def seed_shipping(session_factory):
    async def _seed(fees: dict | None = None, threshold: int | None = None) -> None:
        async with session_factory() as session:
            async with session.begin():
                await session.execute(
                    insert(shipping_settings).values(
                        id=1,
                        location_fees=DEFAULT_FEES if fees is None else fees,
                        free_shipping_threshold=threshold,
                    )
                )

    return _seed


@pytest.fixture
def counters(session_factory):
    """(available, reserved) を返す"""

    async def _read(variant_id: str) -> tuple[int | None, int]:
        async with session_factory() as session:
            row = (
                await session.execute(
                    select(
                        product_variants.c.available_quantity,
                        product_variants.c.reserved_quantity,
                    ).where(product_variants.c.variant_id == variant_id)
                )
            ).one()
        return row.available_quantity, row.reserved_quantity

    return _read


class FakeMonnify:
    """Monnify API の最小限の振る舞いを再現する MockTransport ハンドラ"""

    def __init__(self):
        self.calls: list[tuple[str, str]] = []
        self.login_status = 200
        self.init_mode = "ok"
        self.transactions: dict[str, dict] = {}
        self.checkouts: list[dict] = []
        self.logins = 0

    def count(self, path: str) -> int:
        return sum(1 for _, p in self.calls if p == path)

    def handler(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        self.calls.append((request.method, path))

        if path == "/api/v1/auth/login":
            if self.login_status != 200:
                return httpx.Response(
                    self.login_status,
                    json={"requestSuccessful": False, "responseMessage": "Invalid credentials"},
                )
            self.logins += 1
            return httpx.Response(
                200,
                json={
                    "requestSuccessful": True,
                    "responseMessage": "success",
                    "responseCode": "0",
                    "responseBody": {"accessToken": f"token-{self.logins}", "expiresIn": 3600},
                },
            )

        if path == "/api/v1/merchant/transactions/init-transaction":
            if self.init_mode == "timeout":
                raise httpx.ReadTimeout("timed out", request=request)
            if self.init_mode == "server_error":
                return httpx.Response(503, json={"requestSuccessful": False})
            if self.init_mode == "forbidden":
                return httpx.Response(
                    403, json={"requestSuccessful": False, "responseMessage": "Invalid contract"}
                )
            if self.init_mode == "rejected":
                return httpx.Response(
                    400,
                    json={"requestSuccessful": False, "responseMessage": "Invalid phone number"},
                )
            payload = json.loads(request.content)
            self.checkouts.append(payload)
            reference = payload["paymentReference"]
            transaction_reference = f"MNFY-{reference}"
            self.transactions[transaction_reference] = {
                "transactionReference": transaction_reference,
                "paymentReference": reference,
                "amountPaid": "0.00",
                "totalPayable": str(payload["amount"]),
                "paymentStatus": "PENDING",
                "paidOn": None,
            }
            return httpx.Response(
                200,
                json={
                    "requestSuccessful": True,
                    "responseMessage": "success",
                    "responseCode": "0",
                    "responseBody": {
                        "transactionReference": transaction_reference,
                        "paymentReference": reference,
                        "checkoutUrl": f"https://sandbox.sdk.monnify.test/checkout/{transaction_reference}",
                    },
                },
            )

        if path.startswith("/api/v2/transactions/"):
            transaction_reference = path.rsplit("/", 1)[-1]
            body = self.transactions.get(transaction_reference)
            if body is None:
                return httpx.Response(
                    404,
                    json={"requestSuccessful": False, "responseMessage": "Transaction not found"},
                )
            return httpx.Response(
                200,
                json={
                    "requestSuccessful": True,
                    "responseMessage": "success",
                    "responseCode": "0",
                    "responseBody": body,
                },
            )

        return httpx.Response(404, json={"requestSuccessful": False})

    def settle(self, transaction_reference: str, status: str = "PAID", amount: int | None = None):
        """取引を決済済み (または失敗) にする。amount は最小通貨単位。"""
        tx = self.transactions[transaction_reference]
        tx["paymentStatus"] = status
        if amount is not None:
            tx["amountPaid"] = format_major(amount)
        elif status == "PAID":
            tx["amountPaid"] = tx["totalPayable"]
        tx["paidOn"] = "2026-10-18T10:15:00"


@pytest.fixture
def monnify():
    return FakeMonnify()


@pytest.fixture
async def http_client(monnify):
    client = httpx.AsyncClient(transport=httpx.MockTransport(monnify.handler))
    yield client
    await client.aclose()


@pytest.fixture
def gateway(settings, http_client, redis):
    return MonnifyGateway(settings, http_client, redis, retry_backoff=0)


def webhook_body(
    payment_reference: str,
    transaction_reference: str,
    status: str = "PAID",
    amount: int = 0,
    event_type: str = "SUCCESSFUL_TRANSACTION",
) -> bytes:
    payload = {
        "eventType": event_type,
        "eventData": {
            "transactionReference": transaction_reference,
            "paymentReference": payment_reference,
            "amountPaid": format_major(amount),
            "totalPayable": format_major(amount),
            "paidOn": "2026-10-18 10:15:00.0",
            "paymentStatus": status,
            "paymentMethod": "CARD",
            "currency": "NGN",
            "metaData": {"orderNumber": payment_reference},
        },
    }
    return json.dumps(payload).encode()


def sign(body: bytes) -> str:
    return compute_signature(WEBHOOK_SECRET, body)


@pytest.fixture
def make_webhook():
    def _make(payment_reference, transaction_reference, status="PAID", amount=0, **kw):
        body = webhook_body(payment_reference, transaction_reference, status, amount, **kw)
        return body, sign(body)

    return _make


@pytest.fixture
def place_order(session_factory):
    """在庫を引き当てて pending_payment の注文を直接作る (チェックアウトを経由しない)"""

    async def _place(
        holds: list[tuple[str, int]],
        total: int = 1_000_000,
        expires_at=None,
        order_type: OrderType = OrderType.REGULAR,
    ) -> str:
        ledger = InventoryLedger(session_factory)
        for variant_id, quantity in holds:
            await ledger.reserve(variant_id, quantity)

        order_number = generate_order_number(order_type)
        snapshot = PriceSnapshot(
            subtotal=total,
            shipping_fee=0,
            tax=0,
            total=total,
            shipping_location="Lagos",
            free_shipping_threshold=None,
            tax_rate=Decimal("7.5"),
            currency="NGN",
        )
        async with session_factory() as session:
            async with session.begin():
                await create_order(
                    session,
                    order_number=order_number,
                    order_type=order_type,
                    customer={"name": "Ada", "email": "ada@example.com", "phone": "08031234567"},
                    lines=[],
                    snapshot=snapshot,
                    holds=[Hold(variant_id=v, quantity=q) for v, q in holds],
                    expires_at=expires_at or utcnow() + timedelta(minutes=30),
                )
                await attach_payment_session(
                    session,
                    order_number,
                    f"MNFY-{order_number}",
                    f"https://sandbox.sdk.monnify.test/checkout/MNFY-{order_number}",
                )
        return order_number

    return _place


@pytest.fixture
def order_state(session_factory):
    """(注文ステータス, 予約状態) を返す"""

    async def _read(order_number: str) -> tuple[str, str]:
        async with session_factory() as session:
            row = await get_order_row(session, order_number)
            reservation = await get_reservation(session, order_number)
        return row.status, reservation["state"]

    return _read


@pytest.fixture
def next_message():
    """pubsub から次のデータメッセージを待つ。subscribe 応答は読み飛ばす。"""

    async def _next(pubsub, attempts: int = 20) -> dict | None:
        for _ in range(attempts):
            message = await pubsub.get_message(ignore_subscribe_messages=True, timeout=0.1)
            if message is not None:
                return message
        return None

    return _next
