"""
Storefront — ドメイン例外

各例外は HTTP ステータスと、クライアントに返してよいメッセージを持つ。
内部の例外メッセージはそのままクライアントへは返さない (main.py のハンドラ参照)。
"""


class StorefrontError(Exception):
    status_code = 500
    code = "internal_error"

    def __init__(self, message: str, **details) -> None:
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        return {"detail": self.message, "code": self.code, **self.details}


# ── Validation (変更前に拒否) ────────────────────


class InvalidCart(StorefrontError):
    status_code = 400
    code = "invalid_cart"


class UnknownShippingLocation(StorefrontError):
    status_code = 400
    code = "unknown_shipping_location"

    def __init__(self, location: str) -> None:
        super().__init__(
            f"We do not ship to '{location}'. Please choose another location.",
            location=location,
        )
        self.location = location


class MeasurementQuoteNotFound(StorefrontError):
    status_code = 404
    code = "measurement_not_found"


class MeasurementQuoteNotPriced(StorefrontError):
    status_code = 400
    code = "measurement_not_priced"


# ── Business conflict ────────────────────────────


class InsufficientStock(StorefrontError):
    """在庫不足。自動リトライしない業務上の結果。"""

    status_code = 409
    code = "insufficient_stock"

    def __init__(self, shortages: list[dict]) -> None:
        names = ", ".join(s["variant_id"] for s in shortages)
        super().__init__(
            f"Not enough stock for: {names}. Please reduce the quantity or remove the item.",
            items=shortages,
        )
        self.shortages = shortages

    @property
    def variant_ids(self) -> list[str]:
        return [s["variant_id"] for s in self.shortages]


class IllegalTransition(StorefrontError):
    status_code = 409
    code = "illegal_transition"

    def __init__(self, order_number: str, current: str, event: str) -> None:
        super().__init__(
            f"Order {order_number} cannot handle '{event}' while '{current}'.",
            order_number=order_number,
            status=current,
        )
        self.order_number = order_number
        self.current = current
        self.event = event


class OrderNotFound(StorefrontError):
    status_code = 404
    code = "order_not_found"

    def __init__(self, reference: str) -> None:
        super().__init__(f"Order not found for reference {reference}.")
        self.reference = reference


# ── Transient infrastructure ─────────────────────


class TransientStorageError(StorefrontError):
    status_code = 503
    code = "storage_unavailable"


class LedgerInvariantError(StorefrontError):
    """commit/release が在庫カウンタを不正にしようとした。呼び出し側のバグ。"""

    status_code = 500
    code = "ledger_invariant"


# ── Payment gateway ──────────────────────────────


class PaymentGatewayError(StorefrontError):
    status_code = 502
    code = "payment_gateway_error"


class GatewayConfigurationError(PaymentGatewayError):
    """認証情報・コントラクトコードの誤りなど。リトライしても直らない。"""

    code = "payment_gateway_configuration"


class GatewayUnavailable(PaymentGatewayError):
    """タイムアウト・ネットワーク障害・5xx。"""

    status_code = 503
    code = "payment_gateway_unavailable"


# ── Security / webhook ───────────────────────────


class InvalidWebhookSignature(StorefrontError):
    status_code = 400
    code = "invalid_signature"


class MalformedWebhook(StorefrontError):
    status_code = 400
    code = "malformed_webhook"
