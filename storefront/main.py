"""
Storefront — FastAPI エントリーポイント

Command (POST) と Query (GET) のエンドポイントを分離。
注文の状態変更はすべて order.commands.transition() を通り、order_events に記録される。

lifespan で Redis 接続・httpx クライアント・予約期限 Sweeper を起動/停止する。
"""

import asyncio
import hmac
import logging
from contextlib import asynccontextmanager

import httpx
import redis.asyncio as aioredis
import uvicorn
from fastapi import FastAPI, Header, HTTPException, Query, Request
from fastapi.responses import JSONResponse
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import sessionmaker

from .checkout import catalog
from .checkout.orchestrator import CheckoutOrchestrator
from .config import Settings, load_settings
from .db import create_engine, create_session_factory, init_db, run_in_transaction
from .errors import IllegalTransition, OrderNotFound, StorefrontError
from .inventory import queries as inventory_queries
from .order import commands, event_store
from .order import queries as order_queries
from .order.aggregate import OrderEvent, OrderStatus
from .payments.gateway import SIGNATURE_HEADER, MonnifyGateway
from .payments.reconciliation import Reconciler
from .payments.sweeper import run_sweeper
from .schemas import (
    CancelRequest,
    CheckoutRequest,
    FulfillmentRequest,
    MeasurementCheckoutRequest,
    MeasurementQuoteRequest,
    ShippingSettingsRequest,
)

settings = load_settings()

logging.basicConfig(
    level=settings.log_level.upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)

engine = create_engine(settings.database_url)
async_session = create_session_factory(engine)
redis_pool: aioredis.Redis | None = None
http_client: httpx.AsyncClient | None = None
orchestrator: CheckoutOrchestrator | None = None
reconciler: Reconciler | None = None

FULFILLMENT_EVENTS = {
    "start": OrderEvent.FULFILLMENT_STARTED,
    "dispatch": OrderEvent.DISPATCHED,
    "cancel": OrderEvent.CANCEL_REQUESTED,
}


def configure(
    session_factory: sessionmaker,
    gateway: MonnifyGateway,
    redis: aioredis.Redis | None,
    app_settings: Settings | None = None,
) -> None:
    """オーケストレーターと Reconciler を組み立ててモジュールに設定する。"""
    global async_session, orchestrator, reconciler, settings
    settings = app_settings or settings
    async_session = session_factory
    orchestrator = CheckoutOrchestrator(session_factory, gateway, settings, redis)
    reconciler = Reconciler(
        session_factory, gateway, redis, attempts=settings.storage_retry_attempts
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    """起動時に Redis・httpx クライアント・Sweeper を用意し、終了時に閉じる。"""
    global redis_pool, http_client
    await init_db(engine)
    redis_pool = aioredis.from_url(settings.redis_url, decode_responses=True)
    http_client = httpx.AsyncClient(timeout=settings.gateway_timeout_seconds)
    configure(async_session, MonnifyGateway(settings, http_client, redis_pool), redis_pool)

    shutdown_event = asyncio.Event()
    sweeper_task = asyncio.create_task(
        run_sweeper(
            async_session,
            redis_pool,
            shutdown_event,
            interval=settings.sweep_interval_seconds,
            batch_size=settings.sweep_batch_size,
            attempts=settings.storage_retry_attempts,
        )
    )
    yield
    shutdown_event.set()
    sweeper_task.cancel()
    try:
        await sweeper_task
    except asyncio.CancelledError:
        pass
    await http_client.aclose()
    await redis_pool.aclose()
    await engine.dispose()


app = FastAPI(title="Storefront Checkout Service", lifespan=lifespan)


# ── Error handlers ───────────────────────────────


@app.exception_handler(StorefrontError)
async def handle_storefront_error(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


@app.exception_handler(Exception)
async def handle_unexpected_error(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return JSONResponse(
        status_code=500,
        content={"detail": "Something went wrong. Please try again.", "code": "internal_error"},
    )


async def _tx(work):
    return await run_in_transaction(
        async_session, work, attempts=settings.storage_retry_attempts
    )


def _require_admin(token: str | None) -> None:
    expected = settings.admin_api_token
    if not expected or not token or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


# ── Command Endpoints (Write 側) ─────────────────


@app.post("/checkout", status_code=201)
async def cmd_checkout(
    req: CheckoutRequest, x_user_id: str | None = Header(default=None)
):
    """カートから注文を作成し、決済ページの URL を返す"""
    if x_user_id:
        req.customer.user_id = x_user_id
    result = await orchestrator.checkout(req)
    return result.to_response()


@app.post("/checkout/measurement", status_code=201)
async def cmd_checkout_measurement(
    req: MeasurementCheckoutRequest, x_user_id: str | None = Header(default=None)
):
    """価格が付いた採寸見積もりから注文を作成する"""
    if x_user_id:
        req.customer.user_id = x_user_id
    result = await orchestrator.checkout_measurement(req)
    return result.to_response()


@app.post("/payments/webhook")
async def cmd_payment_webhook(request: Request):
    """決済ゲートウェイからの Webhook (署名は生ボディに対して検証する)"""
    raw_body = await request.body()
    result = await reconciler.handle_webhook(raw_body, request.headers.get(SIGNATURE_HEADER))
    return result.to_response()


def _owns_order(customer: dict, email: str | None, user_id: str | None) -> bool:
    """注文者本人か。ログイン済みなら user_id、ゲストならメールアドレスで照合する。"""
    owner_id = customer.get("user_id")
    if owner_id and user_id and hmac.compare_digest(str(owner_id).encode(), user_id.encode()):
        return True
    owner_email = str(customer.get("email") or "").strip().lower()
    given = (email or "").strip().lower()
    return bool(owner_email and given) and hmac.compare_digest(
        owner_email.encode(), given.encode()
    )


@app.post("/orders/{order_number}/cancel")
async def cmd_cancel_order(
    order_number: str,
    req: CancelRequest | None = None,
    x_user_id: str | None = Header(default=None),
):
    """顧客によるキャンセル (決済前の注文のみ)。本人以外には注文が存在しないように見せる。"""
    reason = req.reason if req else "customer_request"
    email = req.email if req else None

    async def work(session: AsyncSession):
        row = await order_queries.get_order_row(session, order_number)
        if row is None or not _owns_order(row.customer or {}, email, x_user_id):
            raise OrderNotFound(order_number)
        if row.status != OrderStatus.PENDING_PAYMENT.value:
            raise IllegalTransition(
                order_number, row.status, OrderEvent.CANCEL_REQUESTED.value
            )
        return await commands.transition(
            session, order_number, OrderEvent.CANCEL_REQUESTED, reason=reason, actor="customer"
        )

    result = await _tx(work)
    return {
        "orderNumber": result.order_number,
        "fromStatus": result.from_status.value,
        "toStatus": result.to_status.value,
        "version": result.version,
    }


@app.post("/admin/orders/{order_number}/fulfillment")
async def cmd_fulfillment(
    order_number: str,
    req: FulfillmentRequest,
    x_admin_token: str | None = Header(default=None),
):
    """スタッフによる発送準備開始 / 発送 / キャンセル"""
    _require_admin(x_admin_token)

    async def work(session: AsyncSession):
        return await commands.transition(
            session, order_number, FULFILLMENT_EVENTS[req.action], actor="admin"
        )

    result = await _tx(work)
    return {
        "orderNumber": result.order_number,
        "fromStatus": result.from_status.value,
        "toStatus": result.to_status.value,
        "version": result.version,
    }


@app.put("/admin/shipping-settings")
async def cmd_update_shipping_settings(
    req: ShippingSettingsRequest, x_admin_token: str | None = Header(default=None)
):
    """配送先ごとの送料と送料無料しきい値 (最小通貨単位) を更新する"""
    _require_admin(x_admin_token)
    if any(fee < 0 for fee in req.location_fees.values()):
        raise HTTPException(status_code=422, detail="Shipping fees must be non-negative")

    async def work(session: AsyncSession):
        await catalog.save_shipping_settings(
            session, req.location_fees, req.free_shipping_threshold
        )

    await _tx(work)
    return catalog.shipping_settings_view(req.location_fees, req.free_shipping_threshold)


@app.post("/admin/measurements/{measurement_id}/quote")
async def cmd_quote_measurement(
    measurement_id: str,
    req: MeasurementQuoteRequest,
    x_admin_token: str | None = Header(default=None),
):
    """採寸オーダーに価格 (最小通貨単位) を付ける"""
    _require_admin(x_admin_token)

    async def work(session: AsyncSession):
        await catalog.quote_measurement(
            session, measurement_id, req.price, req.description, req.shipping_location
        )

    await _tx(work)
    return {"measurementId": measurement_id, "status": "quoted"}


# ── Query Endpoints (Read 側) ────────────────────


@app.get("/payments/verify")
async def query_verify_payment(reference: str = Query(..., min_length=1)):
    """決済ページからの戻り先が呼ぶ。ゲートウェイに問い合わせて注文に反映する"""
    result = await reconciler.verify(reference)
    return result.to_response()


@app.get("/orders/{order_number}")
async def query_order(order_number: str):
    """注文追跡 (ゲストも注文番号で参照できる)"""
    async with async_session() as session:
        result = await order_queries.get_order(session, order_number)
    if not result:
        raise OrderNotFound(order_number)
    return result


@app.get("/orders/{order_number}/events")
async def query_order_events(order_number: str):
    """注文のイベント履歴 (Event Sourcing の生データ)"""
    async with async_session() as session:
        events = await event_store.load_events(session, order_number)
    if not events:
        raise OrderNotFound(order_number)
    return events


@app.get("/shipping-settings")
async def query_shipping_settings():
    async with async_session() as session:
        fees, threshold = await catalog.load_shipping_settings(session)
    return catalog.shipping_settings_view(fees, threshold)


@app.get("/queries/variants")
async def query_variants(product_id: str | None = None):
    async with async_session() as session:
        return await inventory_queries.list_variants(session, product_id)


@app.get("/queries/variants/{variant_id}")
async def query_variant(variant_id: str):
    async with async_session() as session:
        result = await inventory_queries.get_variant(session, variant_id)
    if not result:
        raise HTTPException(404, "Variant not found")
    return result


@app.get("/health")
async def health():
    return {"status": "ok", "service": "storefront"}


def run() -> None:
    uvicorn.run(
        "storefront.main:app",
        host="0.0.0.0",
        port=8000,
        log_level=settings.log_level.lower(),
    )
