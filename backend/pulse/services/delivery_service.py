"""
报表投递

渠道:
- email: smtplib，在线程池中发送，附件为报表产物
- webhook: requests POST，默认 10 秒截止时间
- storage: 写入 OBJECT_STORE_DIR

deliver() 不抛异常：每个渠道的结果记录为 {success, error?, ...}，
单个渠道失败不影响其他渠道。
"""
import base64
import logging
import os
import smtplib
from email.message import EmailMessage
from typing import Any, Dict, List, Optional

from pulse.core.config import settings
from pulse.services.deadline import run_with_deadline
from pulse.services.http_client import http_request
from pulse.services.report_service import Artifact

logger = logging.getLogger(__name__)

SMTP_TIMEOUT = 30


def channel_name(channel: Dict[str, Any]) -> str:
    return channel.get("name") or channel["type"]


def is_required(channel: Dict[str, Any]) -> bool:
    return bool(channel.get("required", True))


def send_email(recipients: List[str], subject: str, body: str, artifact: Artifact) -> None:
    """同步发送邮件 (在线程池中调用)"""
    message = EmailMessage()
    message["From"] = settings.SMTP_FROM
    message["To"] = ", ".join(recipients)
    message["Subject"] = subject
    message.set_content(body)
    maintype, _, subtype = artifact.content_type.partition("/")
    message.add_attachment(
        artifact.content,
        maintype=maintype or "application",
        subtype=subtype or "octet-stream",
        filename=artifact.filename,
    )
    with smtplib.SMTP(settings.SMTP_HOST, settings.SMTP_PORT, timeout=SMTP_TIMEOUT) as smtp:
        if settings.SMTP_USE_TLS:
            smtp.starttls()
        if settings.SMTP_USER:
            smtp.login(settings.SMTP_USER, settings.SMTP_PASSWORD)
        smtp.send_message(message)


def write_object(root: str, relative_dir: Optional[str], filename: str, content: bytes) -> str:
    """写入对象存储目录，返回文件路径；路径不允许越出存储根目录"""
    base = os.path.abspath(root)
    target_dir = os.path.abspath(os.path.join(base, relative_dir or ""))
    if os.path.commonpath([base, target_dir]) != base:
        raise ValueError(f"storage path escapes object store: {relative_dir}")
    os.makedirs(target_dir, exist_ok=True)
    path = os.path.join(target_dir, filename)
    with open(path, "wb") as f:
        f.write(content)
    return path


class DeliveryService:
    """报表投递服务"""

    def __init__(self, object_store_dir: Optional[str] = None):
        self._object_store_dir = object_store_dir

    @property
    def object_store_dir(self) -> str:
        return self._object_store_dir or settings.OBJECT_STORE_DIR

    async def deliver(
        self,
        channels: List[Dict[str, Any]],
        artifact: Artifact,
        context: Dict[str, Any],
    ) -> Dict[str, Dict[str, Any]]:
        """
        按渠道依次投递

        Args:
            channels: 渠道配置列表
            artifact: 报表产物
            context: 上下文 (scheduleId / scheduleName / executionId / reportId)

        Returns:
            {渠道名称: {success, error?, ...}}
        """
        results: Dict[str, Dict[str, Any]] = {}
        for channel in channels:
            name = channel_name(channel)
            try:
                handler = getattr(self, f"_deliver_{channel['type']}", None)
                if handler is None:
                    raise ValueError(f"unsupported delivery channel: {channel['type']}")
                detail = await handler(channel, artifact, context)
                results[name] = {"success": True, **(detail or {})}
            except Exception as e:
                logger.warning(f"报表投递失败: channel={name}, {type(e).__name__}: {e}")
                results[name] = {"success": False, "error": str(e) or type(e).__name__}
        return results

    async def _deliver_email(self, channel: Dict[str, Any], artifact: Artifact, context: Dict[str, Any]) -> Dict[str, Any]:
        recipients = [r for r in channel.get("recipients") or [] if r]
        if not recipients:
            raise ValueError("email channel has no recipients")
        title = context.get("scheduleName") or f"Report {context.get('reportId')}"
        subject = channel.get("subject") or f"[Pulse] {title}"
        body = f"{title}\n\nGenerated at {context.get('generatedAt', '')}. See attached {artifact.filename}."
        await run_with_deadline(
            send_email,
            recipients,
            subject,
            body,
            artifact,
            deadline=SMTP_TIMEOUT,
            operation="SMTP 投递",
        )
        logger.info(f"邮件投递成功: recipients={len(recipients)}, file={artifact.filename}")
        return {"recipients": len(recipients)}

    async def _deliver_webhook(self, channel: Dict[str, Any], artifact: Artifact, context: Dict[str, Any]) -> Dict[str, Any]:
        url = channel.get("url")
        if not url:
            raise ValueError("webhook channel has no url")
        payload = {
            **context,
            "filename": artifact.filename,
            "contentType": artifact.content_type,
            "size": artifact.size,
            "content": base64.b64encode(artifact.content).decode("ascii"),
        }
        response = await run_with_deadline(
            http_request,
            "POST",
            url,
            headers=channel.get("headers") or None,
            json_body=payload,
            timeout=settings.WEBHOOK_TIMEOUT,
            deadline=settings.WEBHOOK_TIMEOUT,
            operation="Webhook 投递",
        )
        if not 200 <= response.status_code < 300:
            raise RuntimeError(f"webhook responded with HTTP {response.status_code}")
        return {"status": response.status_code}

    async def _deliver_storage(self, channel: Dict[str, Any], artifact: Artifact, context: Dict[str, Any]) -> Dict[str, Any]:
        path = await run_with_deadline(
            write_object,
            self.object_store_dir,
            channel.get("path"),
            artifact.filename,
            artifact.content,
            deadline=None,
            operation="对象存储写入",
        )
        return {"path": path}


# 全局实例
delivery_service = DeliveryService()
