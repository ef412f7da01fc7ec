"""
实时推送的跨副本消息通道

- LocalPubSub: 单进程，publish 直接回调本地处理函数
- RedisPubSub: 多副本共享 Redis 频道 (REALTIME_CHANNEL)，每个副本
  (包括发布者自己) 都从频道收到消息
"""
import asyncio
import json
import logging
from typing import Any, Awaitable, Callable, Dict, Optional

from pulse.core.config import settings

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], Awaitable[None]]


class LocalPubSub:
    """进程内消息通道"""

    name = "local"

    def __init__(self):
        self._handler: Optional[Handler] = None

    async def start(self, handler: Handler) -> None:
        self._handler = handler

    async def publish(self, message: Dict[str, Any]) -> None:
        if self._handler is None:
            return
        try:
            await self._handler(message)
        except Exception as e:
            logger.error(f"处理实时消息失败: {e}")

    async def stop(self) -> None:
        self._handler = None


class RedisPubSub:
    """Redis 发布/订阅通道"""

    name = "redis"

    def __init__(self, url: str, channel: str):
        import redis.asyncio as redis_asyncio

        self.url = url
        self.channel = channel
        self._client = redis_asyncio.from_url(url, decode_responses=True)
        self._pubsub = None
        self._handler: Optional[Handler] = None
        self._task: Optional[asyncio.Task] = None

    async def start(self, handler: Handler) -> None:
        self._handler = handler
        self._pubsub = self._client.pubsub()
        await self._pubsub.subscribe(self.channel)
        self._task = asyncio.create_task(self._listen())
        logger.info(f"✅ 实时消息通道已订阅: {self.channel}")

    async def _listen(self) -> None:
        async for message in self._pubsub.listen():
            if message.get("type") != "message":
                continue
            try:
                payload = json.loads(message["data"])
            except (TypeError, ValueError) as e:
                logger.warning(f"忽略无法解析的实时消息: {e}")
                continue
            try:
                await self._handler(payload)
            except Exception as e:
                logger.error(f"处理实时消息失败: {e}")

    async def publish(self, message: Dict[str, Any]) -> None:
        try:
            await self._client.publish(self.channel, json.dumps(message, default=str))
        except Exception as e:
            # Redis 不可用时至少保证本副本的订阅者收到
            logger.warning(f"发布实时消息失败，仅本地投递: {e}")
            if self._handler is not None:
                await self._handler(message)

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        try:
            if self._pubsub is not None:
                await self._pubsub.unsubscribe(self.channel)
                await self._pubsub.aclose()
            await self._client.aclose()
        except Exception as e:
            logger.warning(f"关闭实时消息通道失败: {e}")


async def create_transport(handler: Handler):
    """按配置创建并启动消息通道；Redis 不可用时退回进程内通道"""
    if settings.REDIS_ENABLED:
        try:
            transport = RedisPubSub(settings.REDIS_URL, settings.REALTIME_CHANNEL)
            await transport.start(handler)
            return transport
        except Exception as e:
            logger.warning(f"Redis 实时通道不可用，使用进程内通道: {e}")
    transport = LocalPubSub()
    await transport.start(handler)
    return transport
