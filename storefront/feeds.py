"""
Storefront — リアルタイムフィード (Redis Pub/Sub)

書き込みが成功するたびに店舗ごとのチャネル store_events:<store_id> へ通知する。
購読側は通知を受けるたびにクエリを丸ごと読み直し、全件スナップショットを受け取る。

    ┌──────────────┐  publish   ┌───────┐  message   ┌────────────────┐
    │ commands /   │ ─────────▶ │ Redis │ ─────────▶ │ snapshots()    │
    │ catalog      │            │       │            │ → 全件再読込    │
    └──────────────┘            └───────┘            └────────────────┘

- 遅延評価・再開可能: snapshots() を呼び直せば最初の全件から始まる
- キャンセル可能: aclose() またはタスクのキャンセルで購読解除
- 別々のフィード同士の順序は保証しない

注意: Redis Pub/Sub は fire-and-forget。購読していない間の通知は失われるが、
次の通知で全件を読み直すので最終的な状態はそろう。
"""

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError

logger = logging.getLogger(__name__)

PRODUCTS = "products"
ORDERS = "orders"
STORES = "stores"


def channel_for(store_id: str) -> str:
    return f"store_events:{store_id}"


async def publish(
    redis: aioredis.Redis,
    store_id: str,
    collection: str,
    event_type: str,
    data: dict,
) -> None:
    """
    変更を通知する。コミット後に呼ぶこと。
    通知の失敗で書き込み自体を失敗させない。
    """
    try:
        await redis.publish(channel_for(store_id), json.dumps({
            "collection": collection,
            "event_type": event_type,
            "data": data,
        }, default=str))
    except RedisError as e:
        logger.warning("Publish of %s for store %s failed: %s", event_type, store_id, e)


async def snapshots(
    redis: aioredis.Redis,
    store_id: str,
    collection: str,
    load_snapshot: Callable[[], Awaitable[list]],
) -> AsyncIterator[list]:
    """
    collection の変更ごとに全件スナップショットを返し続ける。
    最初に 1 回、購読開始時点の全件を返す。
    """
    pubsub = redis.pubsub()
    await pubsub.subscribe(channel_for(store_id))
    logger.info("Subscribed to %s feed of store %s", collection, store_id)

    try:
        yield await load_snapshot()
        while True:
            message = await pubsub.get_message(
                ignore_subscribe_messages=True, timeout=1.0
            )
            if message and message["type"] == "message":
                try:
                    event = json.loads(message["data"])
                except (TypeError, ValueError):
                    logger.warning("Ignoring malformed message on %s", channel_for(store_id))
                    continue
                if event.get("collection") == collection:
                    yield await load_snapshot()
            else:
                await asyncio.sleep(0.1)
    finally:
        await pubsub.unsubscribe(channel_for(store_id))
        await pubsub.aclose()
