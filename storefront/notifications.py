"""
Storefront — 通知イベントの発行

注文イベントを Redis Pub/Sub の order_events チャネルに発行する。
通知サービス (確認メール送信) が購読する。

発行はトランザクションのコミット後に行う。Redis の障害で
確定済みの決済処理を失敗させないよう、発行エラーはログに残して続行する。
"""

import json
import logging

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

ORDER_EVENTS_CHANNEL = "order_events"


async def publish_order_event(
    redis: aioredis.Redis | None, event_type: str, data: dict
) -> bool:
    if redis is None:
        logger.debug("No Redis connection; %s not published", event_type)
        return False
    try:
        await redis.publish(
            ORDER_EVENTS_CHANNEL,
            json.dumps({"event_type": event_type, "data": data}, default=str),
        )
    except RedisError:
        logger.exception(
            "Failed to publish %s for %s", event_type, data.get("order_number")
        )
        return False
    return True
