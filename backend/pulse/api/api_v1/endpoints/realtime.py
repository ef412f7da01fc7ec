"""
实时推送 WebSocket 端点

客户端事件: auth / subscribe:dashboard / unsubscribe:dashboard / dashboard:refresh / ping
服务端事件: authenticated / dashboard:data / dashboard:update / pong / error
"""
import logging
from typing import Any, Dict, Optional

from fastapi import APIRouter, Depends, WebSocket, WebSocketDisconnect

from pulse.api import deps
from pulse.core.config import settings
from pulse.schemas.common import ApiResponse, ok
from pulse.services.realtime_service import (
    EVENT_AUTHENTICATED,
    EVENT_ERROR,
    EVENT_PONG,
    Subscriber,
    broadcaster,
)

logger = logging.getLogger(__name__)

router = APIRouter()
ws_router = APIRouter()


@router.get("/stats", response_model=ApiResponse)
def realtime_stats(
    current_user: deps.CurrentUser = Depends(deps.get_current_user),
) -> Any:
    """
    Open connections, active dashboard rooms and per-room subscriber counts.
    """
    return ok(broadcaster.stats())


def _dashboard_id(data: Any) -> Optional[int]:
    if isinstance(data, dict):
        data = data.get("dashboardId", data.get("dashboard_id"))
    try:
        return int(data)
    except (TypeError, ValueError):
        return None


async def handle_event(subscriber: Subscriber, message: Dict[str, Any]) -> None:
    """处理一条客户端消息"""
    event = message.get("event")
    data = message.get("data")

    if event == "ping":
        subscriber.send(EVENT_PONG, data)
        return

    if event == "auth":
        token = data.get("token") if isinstance(data, dict) else data
        user = deps.user_from_token(token)
        if user is None:
            subscriber.send(EVENT_ERROR, {"error": "Unauthorized", "message": "Invalid or expired token"})
            return
        subscriber.user = user.id
        subscriber.authenticated = True
        subscriber.send(EVENT_AUTHENTICATED, {"userId": user.id})
        return

    if not subscriber.authenticated:
        subscriber.send(EVENT_ERROR, {"error": "Unauthorized", "message": "Authenticate before subscribing"})
        return

    if event not in ("subscribe:dashboard", "unsubscribe:dashboard", "dashboard:refresh"):
        subscriber.send(EVENT_ERROR, {"error": "BadInput", "message": f"Unknown event: {event}"})
        return

    dashboard_id = _dashboard_id(data)
    if dashboard_id is None:
        subscriber.send(EVENT_ERROR, {"error": "BadInput", "message": "dashboardId is required"})
        return

    if event == "subscribe:dashboard":
        await broadcaster.subscribe(subscriber, dashboard_id)
    elif event == "unsubscribe:dashboard":
        await broadcaster.unsubscribe(subscriber, dashboard_id)
    elif not await broadcaster.refresh(subscriber, dashboard_id):
        subscriber.send(
            EVENT_ERROR,
            {"error": "BadInput", "dashboardId": dashboard_id, "message": "Not subscribed to dashboard"},
        )


@ws_router.websocket("/pulse-realtime")
async def realtime_socket(websocket: WebSocket, token: Optional[str] = None) -> None:
    await websocket.accept()
    user = deps.user_from_token(token)
    if token and user is None:
        await websocket.send_json({"event": EVENT_ERROR, "data": {"error": "Unauthorized", "message": "Invalid or expired token"}})
        await websocket.close(code=4401)
        return

    subscriber = broadcaster.connect(websocket.send_json, user=user.id if user else None)
    if user is None and not settings.AUTH_REQUIRED:
        subscriber.authenticated = True
    if user is not None:
        subscriber.send(EVENT_AUTHENTICATED, {"userId": user.id})

    try:
        while True:
            try:
                message = await websocket.receive_json()
            except ValueError:
                subscriber.send(EVENT_ERROR, {"error": "BadInput", "message": "Frames must be JSON objects"})
                continue
            if not isinstance(message, dict):
                subscriber.send(EVENT_ERROR, {"error": "BadInput", "message": "Frames must be JSON objects"})
                continue
            await handle_event(subscriber, message)
    except WebSocketDisconnect:
        pass
    finally:
        await broadcaster.disconnect(subscriber)
