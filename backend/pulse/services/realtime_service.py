"""
实时推送 (Realtime Broadcaster)

模型:
- 每个 Dashboard 一个房间 (Room)，房间是一个后台任务，从命令队列读取
  join / leave / tick / refresh / invalidate / stop 命令并串行处理；
  每个连接同一时刻最多有一个 tick 在队列中
- 每个连接 (Subscriber) 有一个有界发送队列和唯一的写任务，保证单连接内消息有序；
  队列满时丢弃最早的待发送 dashboard:data
- 房间表的增删在按 Dashboard 划分的 asyncio.Lock 下进行
- 失效通知经 pubsub 通道广播到所有副本，再由各副本推送给本地订阅者

消息格式: {"event": "...", "data": ...}
"""
import asyncio
import logging
import uuid
from collections import deque
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Awaitable, Callable, Deque, Dict, List, Optional, Set, Tuple

from pulse.core import metrics
from pulse.core.config import settings
from pulse.core.errors import PulseError
from pulse.core.timeutil import isoformat, utcnow
from pulse.db.session import get_db_session
from pulse.services.dashboard_service import dashboard_service
from pulse.services.pubsub import create_transport

logger = logging.getLogger(__name__)

# 服务端事件
EVENT_AUTHENTICATED = "authenticated"
EVENT_DATA = "dashboard:data"
EVENT_UPDATE = "dashboard:update"
EVENT_PONG = "pong"
EVENT_ERROR = "error"

SendFunc = Callable[[Dict[str, Any]], Awaitable[None]]
ComposeFunc = Callable[[int, bool, bool], Awaitable[Dict[str, Any]]]


async def compose_dashboard(dashboard_id: int, auto_refresh: bool, track_view: bool) -> Dict[str, Any]:
    """后台任务中的组合渲染，使用独立数据库会话"""
    with get_db_session() as db:
        return await dashboard_service.compose(
            db,
            dashboard_id,
            skip_view_tracking=not track_view,
            auto_refresh=auto_refresh,
        )


class Subscriber:
    """单个实时连接"""

    def __init__(self, send: SendFunc, user: Optional[str] = None, queue_size: Optional[int] = None):
        self.id = uuid.uuid4().hex
        self.user = user
        self.authenticated = user is not None
        self.rooms: Set[int] = set()
        self.dropped = 0
        self._send = send
        self._max_pending = max(1, queue_size or settings.REALTIME_SEND_QUEUE_SIZE)
        self._pending: Deque[Dict[str, Any]] = deque()
        self._wakeup = asyncio.Event()
        self._closed = False
        self._writer = asyncio.create_task(self._write_loop())

    @property
    def closed(self) -> bool:
        return self._closed

    def send(self, event: str, data: Any = None) -> bool:
        """非阻塞入队；连接已关闭时返回 False"""
        if self._closed:
            return False
        if len(self._pending) >= self._max_pending:
            self._drop_one()
        self._pending.append({"event": event, "data": data})
        self._wakeup.set()
        return True

    def _drop_one(self) -> None:
        for index, message in enumerate(self._pending):
            if message["event"] == EVENT_DATA:
                del self._pending[index]
                break
        else:
            self._pending.popleft()
        self.dropped += 1
        logger.debug(f"实时连接发送队列已满，丢弃消息: sid={self.id}")

    async def _write_loop(self) -> None:
        try:
            while True:
                await self._wakeup.wait()
                self._wakeup.clear()
                while self._pending:
                    message = self._pending.popleft()
                    await self._send(message)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.info(f"实时连接写入失败，关闭: sid={self.id}, {e}")
            self._closed = True

    async def close(self) -> None:
        self._closed = True
        self._pending.clear()
        self._writer.cancel()
        try:
            await self._writer
        except asyncio.CancelledError:
            pass


class Room:
    """Dashboard 房间：单任务串行处理命令"""

    def __init__(self, dashboard_id: int, compose: ComposeFunc):
        self.dashboard_id = dashboard_id
        self.member_ids: Set[str] = set()
        self._compose = compose
        self._members: Dict[str, Subscriber] = {}
        self._timers: Dict[str, asyncio.Task] = {}
        # 已入队但尚未处理的 tick
        self._queued_ticks: Set[str] = set()
        self._commands: "asyncio.Queue[Tuple[str, Any]]" = asyncio.Queue()
        self._task = asyncio.create_task(self._run())

    def post(self, command: str, payload: Any = None) -> None:
        self._commands.put_nowait((command, payload))

    async def wait_closed(self) -> None:
        await self._task

    def cancel(self) -> None:
        self._task.cancel()
        for timer in self._timers.values():
            timer.cancel()

    async def _run(self) -> None:
        while True:
            command, payload = await self._commands.get()
            try:
                if command == "stop":
                    break
                await self._handle(command, payload)
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"房间命令处理失败: dashboard={self.dashboard_id}, command={command}")
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._members.clear()

    async def _handle(self, command: str, payload: Any) -> None:
        if command == "join":
            subscriber: Subscriber = payload
            self._members[subscriber.id] = subscriber
            composed = await self._render(auto_refresh=False, track_view=True, targets=[subscriber])
            if composed is not None:
                self._start_timer(subscriber, composed)
        elif command == "leave":
            self._members.pop(payload, None)
            self._queued_ticks.discard(payload)
            timer = self._timers.pop(payload, None)
            if timer is not None:
                timer.cancel()
        elif command in ("tick", "refresh"):
            if command == "tick":
                self._queued_ticks.discard(payload)
            subscriber = self._members.get(payload)
            if subscriber is not None and not subscriber.closed:
                await self._render(auto_refresh=True, track_view=False, targets=[subscriber])
        elif command == "invalidate":
            targets = [s for s in self._members.values() if not s.closed]
            if not targets:
                return
            composed = await self._compose_safe(auto_refresh=False, targets=targets)
            if composed is None:
                return
            update = {
                "dashboardId": self.dashboard_id,
                "reason": payload,
                "timestamp": isoformat(utcnow()),
                "data": composed,
            }
            for subscriber in targets:
                subscriber.send(EVENT_UPDATE, update)

    async def _compose_safe(self, auto_refresh: bool, targets, track_view: bool = False) -> Optional[Dict[str, Any]]:
        try:
            return await self._compose(self.dashboard_id, auto_refresh, track_view)
        except PulseError as e:
            for subscriber in targets:
                subscriber.send(EVENT_ERROR, {"dashboardId": self.dashboard_id, **e.to_dict()})
            return None

    async def _render(self, auto_refresh: bool, track_view: bool, targets) -> Optional[Dict[str, Any]]:
        composed = await self._compose_safe(auto_refresh, targets, track_view=track_view)
        if composed is not None:
            for subscriber in targets:
                subscriber.send(EVENT_DATA, composed)
        return composed

    def _start_timer(self, subscriber: Subscriber, composed: Dict[str, Any]) -> None:
        info = composed.get("dashboard") or {}
        interval = info.get("refreshInterval")
        if not interval and info.get("isRealtime"):
            interval = settings.REALTIME_DEFAULT_REFRESH_SECONDS
        if not interval or subscriber.id in self._timers:
            return
        self._timers[subscriber.id] = asyncio.create_task(self._tick_loop(subscriber.id, float(interval)))

    async def _tick_loop(self, subscriber_id: str, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if subscriber_id in self._queued_ticks:
                continue
            self._queued_ticks.add(subscriber_id)
            self.post("tick", subscriber_id)


class RealtimeBroadcaster:
    """实时推送管理"""

    def __init__(self, compose: Optional[ComposeFunc] = None):
        self._compose = compose or compose_dashboard
        self._rooms: Dict[int, Room] = {}
        # dashboard_id -> [lock, 使用者数]
        self._locks: Dict[int, List[Any]] = {}
        self._subscribers: Dict[str, Subscriber] = {}
        self._transport = None

    @property
    def transport_name(self) -> Optional[str]:
        return self._transport.name if self._transport else None

    def use_compose(self, compose: ComposeFunc) -> None:
        self._compose = compose

    async def start(self) -> None:
        if self._transport is None:
            self._transport = await create_transport(self._on_message)
            logger.info(f"实时推送已启动: transport={self._transport.name}")

    @asynccontextmanager
    async def _lock(self, dashboard_id: int) -> AsyncIterator[None]:
        """按 Dashboard 加锁；房间已删除且无人等待时释放锁对象"""
        entry = self._locks.get(dashboard_id)
        if entry is None:
            entry = self._locks[dashboard_id] = [asyncio.Lock(), 0]
        entry[1] += 1
        try:
            async with entry[0]:
                yield
        finally:
            entry[1] -= 1
            if entry[1] == 0 and dashboard_id not in self._rooms:
                self._locks.pop(dashboard_id, None)

    def _update_gauge(self) -> None:
        metrics.realtime_connections.set(len(self._subscribers))

    # ---- 连接 ----

    def connect(self, send: SendFunc, user: Optional[str] = None) -> Subscriber:
        subscriber = Subscriber(send, user=user)
        self._subscribers[subscriber.id] = subscriber
        self._update_gauge()
        logger.info(f"实时连接建立: sid={subscriber.id}, user={user}")
        return subscriber

    async def disconnect(self, subscriber: Subscriber) -> None:
        for dashboard_id in list(subscriber.rooms):
            await self.unsubscribe(subscriber, dashboard_id)
        self._subscribers.pop(subscriber.id, None)
        await subscriber.close()
        self._update_gauge()
        logger.info(f"实时连接断开: sid={subscriber.id}")

    # ---- 房间 ----

    async def subscribe(self, subscriber: Subscriber, dashboard_id: int) -> None:
        async with self._lock(dashboard_id):
            if dashboard_id in subscriber.rooms:
                return
            room = self._rooms.get(dashboard_id)
            if room is None:
                room = self._rooms[dashboard_id] = Room(dashboard_id, self._compose)
            room.member_ids.add(subscriber.id)
            subscriber.rooms.add(dashboard_id)
            room.post("join", subscriber)
        logger.debug(f"订阅 Dashboard: sid={subscriber.id}, dashboard={dashboard_id}")

    async def unsubscribe(self, subscriber: Subscriber, dashboard_id: int) -> None:
        async with self._lock(dashboard_id):
            subscriber.rooms.discard(dashboard_id)
            room = self._rooms.get(dashboard_id)
            if room is None:
                return
            room.member_ids.discard(subscriber.id)
            room.post("leave", subscriber.id)
            if not room.member_ids:
                room.post("stop")
                del self._rooms[dashboard_id]

    async def refresh(self, subscriber: Subscriber, dashboard_id: int) -> bool:
        room = self._rooms.get(dashboard_id)
        if room is None or subscriber.id not in room.member_ids:
            return False
        room.post("refresh", subscriber.id)
        return True

    # ---- 失效通知 ----

    async def notify_update(self, dashboard_id: int, reason: str = "update") -> None:
        """向所有副本广播 Dashboard 失效"""
        message = {"type": "invalidate", "dashboardId": dashboard_id, "reason": reason}
        if self._transport is None:
            await self._on_message(message)
            return
        await self._transport.publish(message)

    async def _on_message(self, message: Dict[str, Any]) -> None:
        if message.get("type") != "invalidate":
            return
        room = self._rooms.get(message.get("dashboardId"))
        if room is not None:
            room.post("invalidate", message.get("reason"))

    # ---- 统计 / 关闭 ----

    def stats(self) -> Dict[str, Any]:
        return {
            "connections": len(self._subscribers),
            "rooms": len(self._rooms),
            "perRoomCounts": [
                {"dashboardId": dashboard_id, "connections": len(room.member_ids)}
                for dashboard_id, room in sorted(self._rooms.items())
            ],
            "transport": self.transport_name,
        }

    async def shutdown(self) -> None:
        """停止所有房间、关闭所有连接和消息通道"""
        rooms = list(self._rooms.values())
        self._rooms.clear()
        for dashboard_id in [d for d, entry in self._locks.items() if entry[1] == 0]:
            del self._locks[dashboard_id]
        for room in rooms:
            room.post("stop")
        for room in rooms:
            try:
                await asyncio.wait_for(room.wait_closed(), timeout=5)
            except asyncio.TimeoutError:
                logger.warning(f"房间停止超时: dashboard={room.dashboard_id}")
                room.cancel()
        for subscriber in list(self._subscribers.values()):
            await subscriber.close()
        self._subscribers.clear()
        self._update_gauge()
        if self._transport is not None:
            await self._transport.stop()
            self._transport = None
        logger.info("实时推送已停止")


# 全局实例
broadcaster = RealtimeBroadcaster()
