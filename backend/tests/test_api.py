"""
HTTP 外层测试: 健康检查、指标、错误包装和鉴权
"""
from unittest.mock import patch

from pulse.core.security import create_access_token


class TestServiceEndpoints:
    """测试 /health、/metrics 和 API 根路径"""

    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] == "connected"
        assert body["cache"]["enabled"] is False
        assert body["realtime"] == {"connections": 0, "dashboards": 0}
        assert {"service", "version", "timestamp"} <= set(body)

    def test_metrics_use_route_templates(self, client):
        client.get("/api/queries/999")
        response = client.get("/metrics")
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/plain")
        text = response.text
        assert "pulse_uptime_seconds" in text
        assert 'pulse_http_requests_total{method="GET",path="/api/queries/{query_id}",status="404"}' in text

    def test_trace_header(self, client):
        response = client.get("/api/")
        assert response.status_code == 200
        assert response.headers["X-Trace-Id"].startswith("req")
        assert response.json()["endpoints"]["realtime"] == "/pulse-realtime"


class TestErrorEnvelope:
    """测试统一的错误响应格式"""

    def test_not_found(self, client):
        response = client.get("/api/queries/999")
        assert response.status_code == 404
        body = response.json()
        assert body["success"] is False
        assert body["error"] == "NotFound"
        assert body["message"] == "Query 999 not found"

    def test_validation_error_is_bad_input(self, client):
        response = client.post("/api/datasources/", json={"kind": "sql"})
        assert response.status_code == 400
        assert response.json()["error"] == "BadInput"

    def test_unknown_route(self, client):
        response = client.get("/api/nothing-here")
        assert response.status_code == 404
        assert response.json()["error"] == "NotFound"


class TestAuth:
    """测试令牌与角色"""

    def test_viewer_cannot_modify(self, client):
        token = create_access_token("bob", roles=["viewer"])
        headers = {"Authorization": f"Bearer {token}"}
        response = client.post("/api/cache/flush", headers=headers)
        assert response.status_code == 403
        assert response.json()["error"] == "Forbidden"
        assert response.json()["message"].startswith("Not enough permissions")

        # 只读接口不受角色限制
        assert client.get("/api/cache/stats", headers=headers).status_code == 200

    def test_editor_can_modify(self, client):
        token = create_access_token("carol", roles=["editor"])
        response = client.post("/api/cache/flush", headers={"Authorization": f"Bearer {token}"})
        assert response.status_code == 200
        assert response.json()["data"]["pattern"] == "pulse:*"

    def test_token_required_when_configured(self, client):
        with patch("pulse.api.deps.settings") as settings:
            settings.AUTH_REQUIRED = True
            missing = client.get("/api/queries/")
            invalid = client.get("/api/queries/", headers={"Authorization": "Bearer nope"})
            valid = client.get(
                "/api/queries/",
                headers={"Authorization": f"Bearer {create_access_token('alice')}"},
            )
        assert missing.status_code == 401
        assert missing.json()["error"] == "Unauthorized"
        assert invalid.status_code == 401
        assert valid.status_code == 200


class TestCacheApi:

    def test_stats_and_flush(self, client, sales_query):
        client.post(f"/api/queries/{sales_query.id}/execute", json={})
        stats = client.get("/api/cache/stats").json()["data"]
        assert stats["backend"] == "memory"
        assert stats["misses"] >= 1
        assert stats["health"]["connected"] is True

        flushed = client.post("/api/cache/flush", params={"pattern": "pulse:query:*"}).json()["data"]
        assert flushed["removed"] == 1
