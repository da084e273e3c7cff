"""
Payment Gateway Adapter — Monnify クライアント

外部決済プロセッサの認証付き REST API を包む薄いクライアント。状態は持たない
(アクセストークンのキャッシュだけは Redis に置く)。

  - POST /api/v1/auth/login                              トークン取得 (Basic 認証)
  - POST /api/v1/merchant/transactions/init-transaction  ホスト型チェックアウト作成
  - GET  /api/v2/transactions/{transactionReference}     取引ステータスの確認
  - Webhook 署名検証: HMAC-SHA512(secret_key, 生ボディ) を定数時間比較

エラーは「設定の誤り (認証情報・コントラクトコード)」と
「一時的な障害 (タイムアウト・ネットワーク・5xx)」を区別して投げる。
秘密情報はログに全体を出さない。
"""

import asyncio
import base64
import hashlib
import hmac
import json
import logging
import re
from datetime import datetime, timezone
from decimal import InvalidOperation
from urllib.parse import quote

import httpx
import redis.asyncio as aioredis
from pydantic import BaseModel

from ..config import Settings
from ..errors import (
    GatewayConfigurationError,
    GatewayUnavailable,
    MalformedWebhook,
    PaymentGatewayError,
)
from ..pricing import to_major, to_minor

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "monnify-signature"
TOKEN_CACHE_KEY = "monnify:access_token"
TOKEN_EXPIRY_MARGIN_SECONDS = 60
PAYMENT_METHODS = ["CARD", "USSD", "ACCOUNT_TRANSFER"]

# 認証情報・コントラクトコードの誤り。リトライしても直らない
CONFIGURATION_ERROR_CODES = (400, 401, 403)

# eventType だけで paymentStatus が省略された場合の補完
_EVENT_TYPE_STATUS = {
    "SUCCESSFUL_TRANSACTION": "PAID",
    "REVERSED_TRANSACTION": "REVERSED",
}


class CheckoutSessionRequest(BaseModel):
    payment_reference: str
    amount: int  # 最小通貨単位
    currency: str
    customer_name: str
    customer_email: str
    customer_phone: str
    description: str
    redirect_url: str
    metadata: dict = {}


class CheckoutSession(BaseModel):
    checkout_url: str
    transaction_reference: str
    payment_reference: str


class GatewayEvent(BaseModel):
    """Webhook / 取引確認の結果を正規化したもの"""
    event_id: str
    event_type: str
    transaction_reference: str
    payment_reference: str
    payment_status: str
    amount_paid: int
    paid_on: datetime | None = None


def mask(value: str, keep: int = 8) -> str:
    if not value:
        return ""
    return value[:keep] + "..."


def normalize_phone(phone: str) -> str:
    """
    ナイジェリアの電話番号を Monnify が期待する 234XXXXXXXXXX 形式にする。
    +2340903... -> 234903... / 0903... -> 234903...
    """
    cleaned = re.sub(r"[\s\-().]", "", phone).replace("+", "")
    if cleaned.startswith("2340"):
        cleaned = "234" + cleaned[4:]
    if cleaned.startswith("0"):
        cleaned = "234" + cleaned[1:]
    if not cleaned.startswith("234"):
        cleaned = "234" + cleaned
    return cleaned


def normalize_amount(amount: int) -> float:
    """最小通貨単位 -> 小数点以下 2 桁の主通貨単位"""
    return float(to_major(amount))


def compute_signature(secret: str, raw_body: bytes) -> str:
    return hmac.new(secret.encode(), raw_body, hashlib.sha512).hexdigest()


def event_identity(payload: dict) -> str:
    """ゲートウェイがイベント ID を送らない場合はペイロードの決定的ハッシュを使う。"""
    if payload.get("eventId"):
        return str(payload["eventId"])
    canonical = json.dumps(payload, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(canonical.encode()).hexdigest()


def _parse_paid_on(value) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.warning("Unrecognised paidOn value %r", value)
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def _parse_amount(value) -> int:
    """amountPaid (主通貨単位) を最小通貨単位へ。数値でなければ ValueError。"""
    try:
        return to_minor(value or 0)
    except (InvalidOperation, OverflowError) as e:
        raise ValueError(f"invalid amount {value!r}") from e


def _event_from_body(event_id: str, event_type: str, body: dict) -> GatewayEvent:
    status = str(body.get("paymentStatus") or _EVENT_TYPE_STATUS.get(event_type, ""))
    return GatewayEvent(
        event_id=event_id,
        event_type=event_type,
        transaction_reference=str(body["transactionReference"]),
        payment_reference=str(body["paymentReference"]),
        payment_status=status.upper(),
        amount_paid=_parse_amount(body.get("amountPaid")),
        paid_on=_parse_paid_on(body.get("paidOn")),
    )


class MonnifyGateway:
    def __init__(
        self,
        settings: Settings,
        client: httpx.AsyncClient,
        redis: aioredis.Redis | None = None,
        retry_backoff: float = 0.2,
    ):
        self.settings = settings
        self.client = client
        self.redis = redis
        self.retry_backoff = retry_backoff
        self._token: str | None = None
        self._token_expires_at: float = 0.0

    @property
    def base_url(self) -> str:
        return self.settings.monnify_base_url.rstrip("/")

    def _validate_config(self) -> None:
        s = self.settings
        if not s.monnify_api_key or not s.monnify_secret_key or not s.monnify_contract_code:
            raise GatewayConfigurationError(
                "Payment is temporarily unavailable. Please try again later."
            )

    # ── HTTP ─────────────────────────────────────────

    async def _send(
        self,
        method: str,
        path: str,
        *,
        headers: dict,
        json_body: dict | None = None,
        idempotent: bool = True,
        timeout: float | None = None,
    ) -> httpx.Response:
        """
        一時的な障害はバックオフ付きで有限回リトライする。
        冪等でないリクエスト (チェックアウト作成) は、送信前に失敗したと
        確実にいえる接続エラーだけをリトライする。
        """
        attempts = self.settings.gateway_retry_attempts
        timeout = timeout or self.settings.gateway_timeout_seconds
        for attempt in range(1, attempts + 1):
            try:
                response = await self.client.request(
                    method,
                    f"{self.base_url}{path}",
                    headers=headers,
                    json=json_body,
                    timeout=timeout,
                )
            except (httpx.ConnectError, httpx.ConnectTimeout) as e:
                error: Exception = e
            except (httpx.TimeoutException, httpx.TransportError) as e:
                if not idempotent:
                    logger.error("Monnify %s %s failed: %s", method, path, e)
                    raise GatewayUnavailable(
                        "The payment provider did not respond in time. Please try again."
                    ) from e
                error = e
            else:
                if response.status_code < 500:
                    return response
                if not idempotent:
                    logger.error(
                        "Monnify %s %s returned %d", method, path, response.status_code
                    )
                    raise GatewayUnavailable(
                        "The payment provider is unavailable. Please try again shortly."
                    )
                error = PaymentGatewayError(f"HTTP {response.status_code}")

            if attempt == attempts:
                logger.error(
                    "Monnify %s %s failed after %d attempts: %s",
                    method,
                    path,
                    attempts,
                    error,
                )
                raise GatewayUnavailable(
                    "The payment provider is unavailable. Please try again shortly."
                ) from error
            delay = self.retry_backoff * (2 ** (attempt - 1))
            logger.warning(
                "Monnify %s %s attempt %d/%d failed (%s); retrying in %.2fs",
                method,
                path,
                attempt,
                attempts,
                error,
                delay,
            )
            await asyncio.sleep(delay)
        raise AssertionError("unreachable")

    @staticmethod
    def _body(response: httpx.Response) -> dict:
        try:
            data = response.json()
        except ValueError:
            return {}
        return data if isinstance(data, dict) else {}

    # ── 認証 ─────────────────────────────────────────

    async def _cached_token(self) -> str | None:
        if self.redis is not None:
            return await self.redis.get(TOKEN_CACHE_KEY)
        loop_time = asyncio.get_running_loop().time()
        if self._token and loop_time < self._token_expires_at:
            return self._token
        return None

    async def _store_token(self, token: str, expires_in: int) -> None:
        ttl = max(int(expires_in) - TOKEN_EXPIRY_MARGIN_SECONDS, 1)
        if self.redis is not None:
            await self.redis.set(TOKEN_CACHE_KEY, token, ex=ttl)
        else:
            self._token = token
            self._token_expires_at = asyncio.get_running_loop().time() + ttl

    async def invalidate_token(self) -> None:
        self._token = None
        self._token_expires_at = 0.0
        if self.redis is not None:
            await self.redis.delete(TOKEN_CACHE_KEY)

    async def access_token(self) -> str:
        """アクセストークンを返す。期限の少し前まではキャッシュを使う。"""
        self._validate_config()
        cached = await self._cached_token()
        if cached:
            return cached

        s = self.settings
        credentials = base64.b64encode(
            f"{s.monnify_api_key}:{s.monnify_secret_key}".encode()
        ).decode()
        response = await self._send(
            "POST",
            "/api/v1/auth/login",
            headers={"Authorization": f"Basic {credentials}"},
            json_body={},
        )
        data = self._body(response)
        if response.status_code in CONFIGURATION_ERROR_CODES:
            logger.error(
                "Monnify authentication failed (HTTP %d); api key %s",
                response.status_code,
                mask(s.monnify_api_key),
            )
            raise GatewayConfigurationError(
                "Payment is temporarily unavailable. Please try again later."
            )
        body = data.get("responseBody") or {}
        if response.status_code != 200 or not data.get("requestSuccessful") or not body.get(
            "accessToken"
        ):
            logger.error(
                "Monnify auth returned an unusable response (HTTP %d): %s",
                response.status_code,
                data.get("responseMessage"),
            )
            raise PaymentGatewayError("Could not authenticate with the payment provider.")

        await self._store_token(body["accessToken"], body.get("expiresIn", 3600))
        logger.info("Monnify access token obtained")
        return body["accessToken"]

    async def _authorized(
        self,
        method: str,
        path: str,
        *,
        json_body: dict | None = None,
        idempotent: bool = True,
    ) -> httpx.Response:
        token = await self.access_token()
        response = await self._send(
            method,
            path,
            headers={"Authorization": f"Bearer {token}"},
            json_body=json_body,
            idempotent=idempotent,
        )
        if response.status_code == 401:
            # キャッシュ済みトークンが失効していた場合は一度だけ取り直す
            await self.invalidate_token()
            token = await self.access_token()
            response = await self._send(
                method,
                path,
                headers={"Authorization": f"Bearer {token}"},
                json_body=json_body,
                idempotent=idempotent,
            )
        return response

    # ── チェックアウト ───────────────────────────────

    async def create_checkout_session(self, request: CheckoutSessionRequest) -> CheckoutSession:
        self._validate_config()
        s = self.settings
        payload = {
            "amount": normalize_amount(request.amount),
            "customerName": request.customer_name.strip(),
            "customerEmail": request.customer_email.strip(),
            "customerPhoneNumber": normalize_phone(request.customer_phone),
            "paymentDescription": request.description.strip(),
            "currencyCode": request.currency,
            "contractCode": s.monnify_contract_code,
            "redirectUrl": request.redirect_url,
            "paymentReference": request.payment_reference,
            "paymentMethods": PAYMENT_METHODS,
        }
        if request.metadata:
            payload["metaData"] = request.metadata

        logger.info(
            "Creating Monnify checkout: reference=%s amount=%s contract=%s",
            request.payment_reference,
            payload["amount"],
            mask(s.monnify_contract_code),
        )
        response = await self._authorized(
            "POST",
            "/api/v1/merchant/transactions/init-transaction",
            json_body=payload,
            idempotent=False,
        )
        data = self._body(response)
        if response.status_code in CONFIGURATION_ERROR_CODES:
            logger.error(
                "Monnify rejected checkout for %s (HTTP %d): contract code %s may not match the credentials",
                request.payment_reference,
                response.status_code,
                mask(s.monnify_contract_code),
            )
            raise GatewayConfigurationError(
                "Payment is temporarily unavailable. Please try again later."
            )
        body = data.get("responseBody") or {}
        if response.status_code != 200 or not data.get("requestSuccessful") or not body.get(
            "checkoutUrl"
        ):
            logger.error(
                "Monnify checkout failed for %s (HTTP %d): %s",
                request.payment_reference,
                response.status_code,
                data.get("responseMessage"),
            )
            raise PaymentGatewayError(
                "We could not start the payment. Please check your details and try again."
            )

        logger.info(
            "Monnify checkout created: reference=%s transaction=%s",
            request.payment_reference,
            body.get("transactionReference"),
        )
        return CheckoutSession(
            checkout_url=body["checkoutUrl"],
            transaction_reference=body["transactionReference"],
            payment_reference=body.get("paymentReference", request.payment_reference),
        )

    # ── 取引確認 ─────────────────────────────────────

    async def verify_transaction(self, transaction_reference: str) -> GatewayEvent:
        response = await self._authorized(
            "GET", f"/api/v2/transactions/{quote(transaction_reference, safe='')}"
        )
        data = self._body(response)
        if response.status_code in CONFIGURATION_ERROR_CODES:
            raise GatewayConfigurationError(
                "Payment verification is temporarily unavailable."
            )
        body = data.get("responseBody") or {}
        if response.status_code != 200 or not data.get("requestSuccessful") or not body:
            logger.warning(
                "Monnify verification failed for %s (HTTP %d): %s",
                transaction_reference,
                response.status_code,
                data.get("responseMessage"),
            )
            raise PaymentGatewayError("We could not verify this payment yet.")
        try:
            identity = event_identity(
                {
                    "transactionReference": body["transactionReference"],
                    "paymentStatus": body.get("paymentStatus"),
                }
            )
            return _event_from_body(identity, "TRANSACTION_VERIFIED", body)
        except (KeyError, ValueError) as e:
            raise PaymentGatewayError("We could not verify this payment yet.") from e

    # ── Webhook ──────────────────────────────────────

    def verify_signature(self, raw_body: bytes, signature: str | None) -> bool:
        """生のリクエストボディに対して HMAC を計算し、定数時間で比較する。"""
        if not signature or not self.settings.monnify_secret_key:
            return False
        expected = compute_signature(self.settings.monnify_secret_key, raw_body)
        return hmac.compare_digest(expected, signature.strip().lower())

    def parse_webhook(self, raw_body: bytes) -> GatewayEvent:
        try:
            payload = json.loads(raw_body)
        except ValueError as e:
            raise MalformedWebhook("Invalid webhook payload.") from e
        if not isinstance(payload, dict):
            raise MalformedWebhook("Invalid webhook payload.")
        event_type = payload.get("eventType")
        body = payload.get("eventData")
        if (
            not event_type
            or not isinstance(body, dict)
            or not body.get("transactionReference")
            or not body.get("paymentReference")
        ):
            raise MalformedWebhook("Invalid webhook payload.")
        try:
            return _event_from_body(event_identity(payload), str(event_type), body)
        except ValueError as e:
            raise MalformedWebhook("Invalid webhook payload.") from e
