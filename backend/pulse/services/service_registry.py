"""
服务注册中心客户端

启动时注册、定期心跳、关闭时注销；另外为 internal-service 数据源按
serviceTag 解析服务地址。注册中心不可用时只记录日志，不影响服务运行。
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from pulse.core.config import settings
from pulse.core.errors import PulseError
from pulse.core.security import create_service_token
from pulse.services.deadline import run_with_deadline
from pulse.services.http_client import http_request

logger = logging.getLogger(__name__)


class ServiceRegistryClient:
    """服务注册中心客户端 (尽力而为)"""

    def __init__(self):
        self._heartbeat_task: Optional[asyncio.Task] = None
        self._registered = False

    @property
    def enabled(self) -> bool:
        return bool(settings.SERVICE_REGISTRY_URL)

    @property
    def registered(self) -> bool:
        return self._registered

    def _url(self, path: str) -> str:
        return f"{settings.SERVICE_REGISTRY_URL.rstrip('/')}{path}"

    def _headers(self) -> Dict[str, str]:
        return {"Authorization": f"Bearer {create_service_token('service-registry')}"}

    def _registration(self) -> Dict[str, Any]:
        scheme = "https" if settings.TLS_ENABLED else "http"
        return {
            "name": settings.SERVICE_NAME,
            "version": settings.VERSION,
            "url": settings.SERVICE_PUBLIC_URL or f"{scheme}://{settings.HOST}:{settings.PORT}",
            "healthCheck": "/health",
        }

    async def _call(self, method: str, path: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        try:
            response = await run_with_deadline(
                http_request,
                method,
                self._url(path),
                headers=self._headers(),
                json_body=payload,
                timeout=settings.SERVICE_HEARTBEAT_TIMEOUT,
                deadline=settings.SERVICE_HEARTBEAT_TIMEOUT,
                operation=f"service registry {method} {path}",
            )
        except PulseError as e:
            logger.warning(f"服务注册中心调用失败 ({method} {path}): {e}")
            return False
        if response.status_code >= 400:
            logger.warning(f"服务注册中心返回 {response.status_code} ({method} {path})")
            return False
        return True

    async def register(self) -> bool:
        if not self.enabled:
            return False
        self._registered = await self._call("POST", "/services", self._registration())
        if self._registered:
            logger.info(f"✅ 已注册到服务注册中心: {settings.SERVICE_REGISTRY_URL}")
        return self._registered

    async def heartbeat(self) -> bool:
        if not self.enabled:
            return False
        return await self._call("PUT", f"/services/{settings.SERVICE_NAME}/heartbeat")

    async def deregister(self) -> bool:
        await self.stop_heartbeat()
        if not self.enabled or not self._registered:
            return False
        ok = await self._call("DELETE", f"/services/{settings.SERVICE_NAME}")
        self._registered = False
        return ok

    def start_heartbeat(self) -> None:
        if not self.enabled or self._heartbeat_task is not None:
            return
        self._heartbeat_task = asyncio.create_task(self._heartbeat_loop())

    async def stop_heartbeat(self) -> None:
        task, self._heartbeat_task = self._heartbeat_task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _heartbeat_loop(self) -> None:
        while True:
            await asyncio.sleep(settings.SERVICE_HEARTBEAT_INTERVAL)
            await self.heartbeat()

    def resolve(self, service_tag: str) -> Optional[str]:
        """
        按 serviceTag 解析服务地址 (同步，供线程池中调用)

        Returns:
            服务 base URL，解析失败返回 None
        """
        if not self.enabled:
            return None
        try:
            response = http_request(
                "GET",
                self._url(f"/services/{service_tag}"),
                headers=self._headers(),
                timeout=settings.SERVICE_HEARTBEAT_TIMEOUT,
            )
            if response.status_code != 200:
                return None
            body = response.json()
        except (PulseError, ValueError) as e:
            logger.warning(f"解析服务地址失败 ({service_tag}): {e}")
            return None
        return body.get("url") or (body.get("data") or {}).get("url")


# 全局实例
service_registry = ServiceRegistryClient()
