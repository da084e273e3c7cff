"""
Storefront — リクエスト / レスポンスのスキーマ

クライアントとの JSON は camelCase、内部は snake_case。
クライアントが送ってきた価格は受け付けない (フィールド自体を持たない)。
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, EmailStr, Field, field_validator
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class CartLine(CamelModel):
    product_id: str | None = None
    variant_id: str = Field(..., min_length=1, max_length=64)
    quantity: int = Field(..., ge=1, le=1000)


class CustomerInfo(CamelModel):
    name: str = Field(..., min_length=1, max_length=200)
    email: EmailStr
    phone: str = Field(..., min_length=7, max_length=20)
    user_id: str | None = None

    @field_validator("name", "phone")
    @classmethod
    def strip_text(cls, v: str) -> str:
        v = v.strip()
        if not v:
            raise ValueError("must not be blank")
        return v


class CheckoutRequest(CamelModel):
    items: list[CartLine] = Field(..., min_length=1, max_length=100)
    customer: CustomerInfo
    shipping_location: str = Field(..., min_length=1, max_length=100)


class MeasurementCheckoutRequest(CamelModel):
    measurement_id: str = Field(..., min_length=1, max_length=64)
    customer: CustomerInfo
    shipping_location: str | None = Field(None, max_length=100)


class CancelRequest(CamelModel):
    """注文時のメールアドレス (または X-User-Id) で本人確認する"""

    reason: str = Field("customer_request", max_length=200)
    email: EmailStr | None = None


class FulfillmentRequest(CamelModel):
    action: Literal["start", "dispatch", "cancel"]


class ShippingSettingsRequest(CamelModel):
    """金額はすべて最小通貨単位"""

    location_fees: dict[str, int]
    free_shipping_threshold: int | None = Field(None, ge=0)


class MeasurementQuoteRequest(CamelModel):
    price: int = Field(..., gt=0)
    description: str = ""
    shipping_location: str | None = None
