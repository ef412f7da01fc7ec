"""
报表执行与产物渲染测试
"""
import json

import pytest

from pulse import schemas
from pulse.core.errors import BadInput
from pulse.services.report_service import render_csv, report_queries, report_service


class TestDefinition:
    """测试 definition 解析"""

    def test_single_query(self):
        assert report_queries({"queryId": 3}) is None

    def test_named_queries(self):
        assert report_queries({"queries": {"orders": 1, "users": 2}}) == [
            {"name": "orders", "queryId": 1},
            {"name": "users", "queryId": 2},
        ]
        assert report_queries({"queries": [{"queryId": 4}]}) == [{"name": "query_4", "queryId": 4}]

    def test_invalid(self):
        with pytest.raises(BadInput):
            report_queries({})
        with pytest.raises(BadInput):
            report_queries({"queries": [{"name": "x"}]})


class TestRenderCsv:

    def test_single_table(self):
        content = render_csv([{"a": 1, "b": "x"}, {"a": 2, "b": "y"}]).decode("utf-8")
        assert content.splitlines() == ["a,b", "1,x", "2,y"]

    def test_multi_query_has_query_column_first(self):
        content = render_csv({"first": [{"a": 1}], "second": [{"a": 2}]}).decode("utf-8")
        assert content.splitlines() == ["query,a", "first,1", "second,2"]


class TestReportService:
    """测试报表执行"""

    @pytest.mark.asyncio
    async def test_json_artifact(self, db, sales_query):
        report = report_service.create(
            db,
            obj_in=schemas.ReportCreate(
                name="Sales",
                definition={"queryId": sales_query.id},
                filters=[
                    {"field": "category", "operator": "equals", "value": "B"},
                    {"field": "amount", "operator": "equals", "value": 0, "isActive": False},
                ],
            ),
        )
        artifact = await report_service.execute(db, report.id)
        assert artifact.content_type == "application/json"
        assert artifact.filename.startswith(f"report-{report.id}-")
        assert artifact.filename.endswith(".json")
        document = json.loads(artifact.content)
        assert document["report"]["name"] == "Sales"
        assert document["data"] == [{"category": "B", "amount": 7}]

    @pytest.mark.asyncio
    async def test_report_parameters_reach_queries(self, db, sales_source):
        from pulse.services.query_engine import query_engine

        query = query_engine.create(
            db,
            obj_in=schemas.QueryCreate(
                name="by category",
                data_source_id=sales_source.id,
                kind="sql",
                definition={"sql": "SELECT amount FROM sales WHERE category = :category ORDER BY id"},
                parameter_defs=[{"name": "category", "type": "string", "required": True}],
            ),
        )
        report = report_service.create(
            db,
            obj_in=schemas.ReportCreate(
                name="Per category",
                definition={"queryId": query.id},
                parameter_defs=[{"name": "category", "type": "select", "options": ["A", "B"]}],
                default_format="csv",
            ),
        )
        artifact = await report_service.execute(db, report.id, {"category": "A"})
        assert artifact.content.decode("utf-8").splitlines() == ["amount", "10", "5"]

    @pytest.mark.asyncio
    async def test_unsupported_format(self, db, sales_query):
        report = report_service.create(
            db, obj_in=schemas.ReportCreate(name="Sales", definition={"queryId": sales_query.id})
        )
        with pytest.raises(BadInput):
            await report_service.execute(db, report.id, format="pdf")

    def test_create_checks_queries(self, db):
        from pulse.core.errors import NotFound

        with pytest.raises(NotFound):
            report_service.create(db, obj_in=schemas.ReportCreate(name="x", definition={"queryId": 77}))


class TestReportApi:
    """测试报表接口"""

    def test_execute_csv(self, client, sales_query):
        report_id = client.post(
            "/api/reports/",
            json={"name": "Sales", "definition": {"queryId": sales_query.id}},
        ).json()["data"]["id"]

        response = client.post(f"/api/reports/{report_id}/execute", json={"format": "csv"})
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/csv")
        assert "attachment;" in response.headers["content-disposition"]
        assert response.text.splitlines() == ["category,amount", "A,10", "B,7", "A,5"]

        report = client.get(f"/api/reports/{report_id}").json()["data"]
        assert report["executionCount"] == 1

    def test_execute_multi_query(self, client, sales_query):
        report_id = client.post(
            "/api/reports/",
            json={
                "name": "Both",
                "definition": {"queries": {"all": sales_query.id, "again": sales_query.id}},
            },
        ).json()["data"]["id"]
        response = client.post(f"/api/reports/{report_id}/execute", json={"format": "csv"})
        lines = response.text.splitlines()
        assert lines[0] == "query,category,amount"
        assert lines[1] == "all,A,10"
        assert lines[-1] == "again,A,5"
        assert len(lines) == 7

    def test_delete_referenced_by_schedule(self, client, sales_query):
        report_id = client.post(
            "/api/reports/",
            json={"name": "Sales", "definition": {"queryId": sales_query.id}},
        ).json()["data"]["id"]
        client.post(
            "/api/schedules/",
            json={"name": "Nightly", "reportId": report_id, "cron": "0 2 * * *", "isActive": False},
        )

        response = client.delete(f"/api/reports/{report_id}")
        assert response.status_code == 409
        assert response.json()["error"] == "Conflict"

    def test_delete_unreferenced(self, client, sales_query):
        report_id = client.post(
            "/api/reports/",
            json={"name": "Sales", "definition": {"queryId": sales_query.id}},
        ).json()["data"]["id"]
        assert client.delete(f"/api/reports/{report_id}").status_code == 200
        assert client.get(f"/api/reports/{report_id}").status_code == 404
