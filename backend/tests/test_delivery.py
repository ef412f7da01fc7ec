"""
报表投递渠道测试
"""
import base64
import os
from unittest.mock import MagicMock, patch

import pytest

from pulse.services.delivery_service import DeliveryService, channel_name, is_required, write_object
from pulse.services.report_service import Artifact

ARTIFACT = Artifact(content=b"category,amount\nA,10\n", content_type="text/csv", filename="report-1.csv")
CONTEXT = {"scheduleId": 1, "scheduleName": "Daily", "executionId": 5, "reportId": 2}


class TestChannelHelpers:

    def test_name_defaults_to_type(self):
        assert channel_name({"type": "email"}) == "email"
        assert channel_name({"type": "email", "name": "ops"}) == "ops"

    def test_required_by_default(self):
        assert is_required({"type": "webhook"})
        assert not is_required({"type": "webhook", "required": False})


class TestWriteObject:
    """测试对象存储写入"""

    def test_writes_under_root(self, tmp_path):
        path = write_object(str(tmp_path), "2024/01", "a.csv", b"x")
        assert path == os.path.join(str(tmp_path), "2024", "01", "a.csv")
        with open(path, "rb") as f:
            assert f.read() == b"x"

    def test_path_escape_rejected(self, tmp_path):
        with pytest.raises(ValueError):
            write_object(str(tmp_path), "../outside", "a.csv", b"x")


class TestDeliver:
    """测试 deliver 的渠道隔离"""

    @pytest.mark.asyncio
    async def test_storage(self, tmp_path):
        service = DeliveryService(str(tmp_path))
        results = await service.deliver([{"type": "storage", "path": "daily"}], ARTIFACT, CONTEXT)
        assert results["storage"]["success"] is True
        assert results["storage"]["path"].endswith(os.path.join("daily", "report-1.csv"))

    @pytest.mark.asyncio
    async def test_webhook_payload(self, tmp_path):
        response = MagicMock(status_code=202)
        with patch("pulse.services.http_client.requests.request", return_value=response) as request:
            results = await DeliveryService(str(tmp_path)).deliver(
                [{"type": "webhook", "url": "https://hooks.example.com/r", "headers": {"X-Key": "k"}}],
                ARTIFACT,
                CONTEXT,
            )
        assert results == {"webhook": {"success": True, "status": 202}}
        args, kwargs = request.call_args
        assert args == ("POST", "https://hooks.example.com/r")
        assert kwargs["headers"] == {"X-Key": "k"}
        payload = kwargs["json"]
        assert payload["scheduleId"] == 1
        assert payload["filename"] == "report-1.csv"
        assert base64.b64decode(payload["content"]) == ARTIFACT.content

    @pytest.mark.asyncio
    async def test_webhook_error_status(self, tmp_path):
        with patch(
            "pulse.services.http_client.requests.request",
            return_value=MagicMock(status_code=500),
        ):
            results = await DeliveryService(str(tmp_path)).deliver(
                [{"type": "webhook", "url": "https://hooks.example.com/r"}], ARTIFACT, CONTEXT
            )
        assert results["webhook"]["success"] is False
        assert "500" in results["webhook"]["error"]

    @pytest.mark.asyncio
    async def test_one_failure_does_not_stop_others(self, tmp_path):
        channels = [
            {"type": "email", "recipients": []},
            {"type": "fax"},
            {"type": "storage", "name": "archive"},
        ]
        results = await DeliveryService(str(tmp_path)).deliver(channels, ARTIFACT, CONTEXT)
        assert results["email"] == {"success": False, "error": "email channel has no recipients"}
        assert results["fax"]["success"] is False
        assert "unsupported" in results["fax"]["error"]
        assert results["archive"]["success"] is True

    @pytest.mark.asyncio
    async def test_email_uses_smtp_settings(self, tmp_path):
        with patch("pulse.services.delivery_service.smtplib.SMTP") as smtp_cls, \
                patch("pulse.services.delivery_service.settings") as settings:
            settings.SMTP_HOST = "mail.example.com"
            settings.SMTP_PORT = 2525
            settings.SMTP_USE_TLS = False
            settings.SMTP_USER = "bot"
            settings.SMTP_PASSWORD = "pw"
            settings.SMTP_FROM = "pulse@example.com"
            results = await DeliveryService(str(tmp_path)).deliver(
                [{"type": "email", "recipients": ["ops@example.com"], "subject": "Numbers"}],
                ARTIFACT,
                CONTEXT,
            )

        assert results["email"] == {"success": True, "recipients": 1}
        smtp_cls.assert_called_once_with("mail.example.com", 2525, timeout=30)
        smtp = smtp_cls.return_value.__enter__.return_value
        smtp.starttls.assert_not_called()
        smtp.login.assert_called_once_with("bot", "pw")
        message = smtp.send_message.call_args[0][0]
        assert message["Subject"] == "Numbers"
        attachments = list(message.iter_attachments())
        assert attachments[0].get_filename() == "report-1.csv"
