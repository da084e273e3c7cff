"""
Order — イベント定義

order_events に追記されるイベント。過去形で命名し、不変として扱う。
通知サービス向けには、コミット後に notifications.publish_order_event で
別途 Redis の order_events チャネルへ発行する。
"""

from datetime import datetime

from pydantic import BaseModel


class OrderCreated(BaseModel):
    """注文が作成され、在庫が予約された"""
    order_number: str
    order_type: str
    status: str
    total: int
    currency: str
    expires_at: datetime | None
    timestamp: datetime


class OrderTransitioned(BaseModel):
    """注文のステータスが遷移した (event_type は OrderEvent の値)"""
    order_number: str
    from_status: str
    to_status: str
    reservation: str
    total: int
    currency: str
    reason: str = ""
    actor: str = "system"
    timestamp: datetime
