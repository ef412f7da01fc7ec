"""
查询引擎与数据源注册表的测试
SQL 查询使用临时 SQLite 业务库，REST 查询 mock requests
"""
import time
from unittest.mock import MagicMock, patch

import pytest

from pulse import crud, schemas
from pulse.core.errors import (
    BadInput,
    BadParameter,
    Conflict,
    DecodeError,
    NotFound,
    SourceRejected,
    SourceTimeout,
    SourceUnavailable,
)
from pulse.services.cache_service import result_cache
from pulse.services.query_engine import extract_data_path, normalize_rows, query_engine
from pulse.services.source_registry import check_query_kind, public_config, source_registry


def fake_response(status_code=200, body=None, content=None):
    response = MagicMock()
    response.status_code = status_code
    response.content = content if content is not None else (b"{}" if body is not None else b"")
    response.text = str(body)
    response.json.return_value = body
    return response


@pytest.fixture
def rest_source(db):
    return crud.data_source.create(
        db,
        obj_in=schemas.DataSourceCreate(
            name="orders api",
            kind="rest",
            config={"baseUrl": "https://api.example.com", "auth": {"type": "bearer", "token": "s3cret"}},
        ),
    )


class TestHelpers:
    """测试结果规范化"""

    def test_extract_data_path(self):
        body = {"data": {"items": [{"id": 1}, {"id": 2}]}}
        assert extract_data_path(body, "data.items") == [{"id": 1}, {"id": 2}]
        assert extract_data_path(body, "data.items.1.id") == 2
        with pytest.raises(DecodeError):
            extract_data_path(body, "data.missing")

    def test_normalize_rows_fills_missing_keys(self):
        rows = normalize_rows([{"a": 1}, {"b": 2}, 3])
        assert rows == [
            {"a": 1, "b": None, "value": None},
            {"a": None, "b": 2, "value": None},
            {"a": None, "b": None, "value": 3},
        ]

    def test_normalize_scalar_and_object(self):
        assert normalize_rows(5) == [{"value": 5}]
        assert normalize_rows({"x": 1}) == [{"x": 1}]
        assert normalize_rows(None) == []


class TestSqlQueries:
    """测试 SQL 查询执行与结果缓存"""

    @pytest.mark.asyncio
    async def test_execute_returns_rows_and_schema(self, db, sales_query):
        result = await query_engine.execute(db, sales_query.id)
        assert result["rows"] == [
            {"category": "A", "amount": 10},
            {"category": "B", "amount": 7},
            {"category": "A", "amount": 5},
        ]
        assert result["rowCount"] == 3
        assert result["columnCount"] == 2
        assert result["schema"]["amount"]["type"] == "number"
        assert result["schema"]["category"]["type"] == "string"
        assert result["cached"] is False

    @pytest.mark.asyncio
    async def test_second_execution_is_cached(self, db, sales_query):
        """第二次执行命中缓存，缓存命中也计入执行次数"""
        first = await query_engine.execute(db, sales_query.id)
        second = await query_engine.execute(db, sales_query.id)
        assert first["cached"] is False
        assert second["cached"] is True
        assert second["rows"] == first["rows"]

        query = crud.query.get(db, sales_query.id)
        assert query.execution_count == 2
        assert query.last_executed_at is not None

    @pytest.mark.asyncio
    async def test_skip_cache_and_clear_cache(self, db, sales_query):
        await query_engine.execute(db, sales_query.id)
        again = await query_engine.execute(db, sales_query.id, skip_cache=True)
        assert again["cached"] is False

        assert await query_engine.clear_cache(sales_query.id) == 1
        after = await query_engine.execute(db, sales_query.id)
        assert after["cached"] is False

    @pytest.mark.asyncio
    async def test_cache_disabled_query(self, db, sales_source):
        query = crud.query.create(
            db,
            obj_in=schemas.QueryCreate(
                name="uncached",
                data_source_id=sales_source.id,
                kind="sql",
                definition={"sql": "SELECT COUNT(*) AS n FROM sales"},
                cache_ttl=0,
            ),
        )
        await query_engine.execute(db, query.id)
        result = await query_engine.execute(db, query.id)
        assert result["cached"] is False
        assert result["rows"] == [{"n": 3}]

    @pytest.mark.asyncio
    async def test_parameterized_query(self, db, sales_source):
        query = query_engine.create(
            db,
            obj_in=schemas.QueryCreate(
                name="by category",
                data_source_id=sales_source.id,
                kind="sql",
                definition={
                    "sql": "SELECT id, amount FROM sales WHERE category IN :cats AND amount >= :min ORDER BY id"
                },
                parameter_defs=[
                    {"name": "cats", "type": "multi", "required": True},
                    {"name": "min", "type": "number", "defaultValue": 0},
                ],
            ),
        )
        result = await query_engine.execute(db, query.id, {"cats": ["A"], "min": "6"})
        assert result["rows"] == [{"id": 1, "amount": 10}]

        both = await query_engine.execute(db, query.id, {"cats": "B,A"})
        assert [r["id"] for r in both["rows"]] == [1, 2, 3]

        with pytest.raises(BadParameter):
            await query_engine.execute(db, query.id, {})

    @pytest.mark.asyncio
    async def test_parameter_order_shares_cache_entry(self, db, sales_source):
        query = query_engine.create(
            db,
            obj_in=schemas.QueryCreate(
                name="multi",
                data_source_id=sales_source.id,
                kind="sql",
                definition={"sql": "SELECT id FROM sales WHERE category IN :cats"},
                parameter_defs=[{"name": "cats", "type": "multi"}],
            ),
        )
        await query_engine.execute(db, query.id, {"cats": ["A", "B"]})
        result = await query_engine.execute(db, query.id, {"cats": ["B", "A"]})
        assert result["cached"] is True

    def test_non_select_rejected(self, db, sales_source):
        with pytest.raises(BadInput):
            query_engine.create(
                db,
                obj_in=schemas.QueryCreate(
                    name="bad",
                    data_source_id=sales_source.id,
                    kind="sql",
                    definition={"sql": "DELETE FROM sales"},
                ),
            )
        with pytest.raises(BadInput):
            query_engine.create(
                db,
                obj_in=schemas.QueryCreate(
                    name="bad",
                    data_source_id=sales_source.id,
                    kind="sql",
                    definition={"sql": "SELECT 1; DROP TABLE sales"},
                ),
            )

    @pytest.mark.asyncio
    async def test_unknown_query(self, db):
        with pytest.raises(NotFound):
            await query_engine.execute(db, 999)

    @pytest.mark.asyncio
    async def test_missing_table_is_rejected(self, db, sales_source):
        query = crud.query.create(
            db,
            obj_in=schemas.QueryCreate(
                name="broken",
                data_source_id=sales_source.id,
                kind="sql",
                definition={"sql": "SELECT * FROM nope"},
            ),
        )
        with pytest.raises((SourceRejected, SourceUnavailable)):
            await query_engine.execute(db, query.id)

    @pytest.mark.asyncio
    async def test_delete_query_with_datasets_conflicts(self, db, sales_query):
        crud.dataset.create(db, obj_in={"query_id": sales_query.id, "rows": [], "is_snapshot": True})
        with pytest.raises(Conflict):
            await query_engine.delete(db, query_id=sales_query.id)

    @pytest.mark.asyncio
    async def test_update_invalidates_cache(self, db, sales_query):
        await query_engine.execute(db, sales_query.id)
        await query_engine.update(
            db,
            query_id=sales_query.id,
            obj_in=schemas.QueryUpdate(definition={"sql": "SELECT category FROM sales ORDER BY id"}),
        )
        result = await query_engine.execute(db, sales_query.id)
        assert result["cached"] is False
        assert result["columnCount"] == 1


class TestRestQueries:
    """测试 REST 查询"""

    @pytest.mark.asyncio
    async def test_rest_query_with_data_path(self, db, rest_source):
        query = query_engine.create(
            db,
            obj_in=schemas.QueryCreate(
                name="orders",
                data_source_id=rest_source.id,
                kind="rest",
                definition={"url": "/orders/:status", "dataPath": "data.items"},
                parameter_defs=[{"name": "status", "type": "string", "defaultValue": "open"}],
            ),
        )
        body = {"data": {"items": [{"id": 1, "total": 9.5}, {"id": 2, "total": 3}]}}
        with patch(
            "pulse.services.http_client.requests.request",
            return_value=fake_response(200, body),
        ) as mock_request:
            result = await query_engine.execute(db, query.id)

        assert result["rowCount"] == 2
        assert result["rows"][0] == {"id": 1, "total": 9.5}
        args, kwargs = mock_request.call_args
        assert args == ("GET", "https://api.example.com/orders/open")
        assert kwargs["headers"]["Authorization"] == "Bearer s3cret"

    @pytest.mark.asyncio
    async def test_upstream_errors_are_classified(self, db, rest_source):
        query = crud.query.create(
            db,
            obj_in=schemas.QueryCreate(
                name="orders",
                data_source_id=rest_source.id,
                kind="rest",
                definition={"url": "/orders"},
                cache_enabled=False,
            ),
        )
        with patch("pulse.services.http_client.requests.request", return_value=fake_response(502, {})):
            with pytest.raises(SourceUnavailable):
                await query_engine.execute(db, query.id)
        with patch("pulse.services.http_client.requests.request", return_value=fake_response(404, {})):
            with pytest.raises(SourceRejected):
                await query_engine.execute(db, query.id)
        with patch(
            "pulse.services.http_client.requests.request",
            return_value=fake_response(204, content=b""),
        ):
            result = await query_engine.execute(db, query.id)
            assert result["rows"] == []

    @pytest.mark.asyncio
    async def test_deadline_exceeded(self, db, rest_source):
        query = crud.query.create(
            db,
            obj_in=schemas.QueryCreate(
                name="slow",
                data_source_id=rest_source.id,
                kind="rest",
                definition={"url": "/slow"},
                cache_enabled=False,
            ),
        )

        def slow_request(*args, **kwargs):
            time.sleep(0.5)
            return fake_response(200, [])

        with patch("pulse.services.http_client.requests.request", side_effect=slow_request):
            with pytest.raises(SourceTimeout):
                await query_engine.execute(db, query.id, deadline=0.05)

    def test_sql_query_on_rest_source_rejected(self, db, rest_source):
        with pytest.raises(BadInput):
            query_engine.create(
                db,
                obj_in=schemas.QueryCreate(
                    name="bad",
                    data_source_id=rest_source.id,
                    kind="sql",
                    definition={"sql": "SELECT 1"},
                ),
            )


class TestExpressionQueries:
    """测试 expression 查询"""

    @pytest.mark.asyncio
    async def test_expression_over_query(self, db, sales_source, sales_query):
        query = query_engine.create(
            db,
            obj_in=schemas.QueryCreate(
                name="big sales",
                data_source_id=sales_source.id,
                kind="expression",
                definition={
                    "expression": "$[?(@.amount > 6)]",
                    "source": {"queryId": sales_query.id},
                },
            ),
        )
        result = await query_engine.execute(db, query.id)
        assert result["rows"] == [
            {"category": "A", "amount": 10},
            {"category": "B", "amount": 7},
        ]

    @pytest.mark.asyncio
    async def test_scalar_expression_wrapped(self, db, sales_source, sales_query):
        query = query_engine.create(
            db,
            obj_in=schemas.QueryCreate(
                name="total",
                data_source_id=sales_source.id,
                kind="expression",
                definition={"expression": "sum($.amount)", "source": {"queryId": sales_query.id}},
            ),
        )
        result = await query_engine.execute(db, query.id)
        assert result["rows"] == [{"value": 22}]

    def test_invalid_expression_rejected_on_create(self, db, sales_source, sales_query):
        with pytest.raises(BadInput):
            query_engine.create(
                db,
                obj_in=schemas.QueryCreate(
                    name="bad",
                    data_source_id=sales_source.id,
                    kind="expression",
                    definition={"expression": "$.__class__", "source": {"queryId": sales_query.id}},
                ),
            )

    def test_custom_kind_rejected(self):
        with pytest.raises(BadInput):
            check_query_kind("sql", "custom")


class TestSourceRegistry:
    """测试数据源注册表"""

    def test_public_config_masks_secrets(self):
        masked = public_config({"host": "db", "password": "pw", "auth": {"type": "bearer", "token": "t"}})
        assert masked["host"] == "db"
        assert masked["password"] == "***"
        assert masked["auth"] == "***"
        nested = public_config({"headers": {"X-Trace": "1"}, "token": ""})
        assert nested == {"headers": {"X-Trace": "1"}, "token": ""}

    def test_create_validates_config(self, db):
        with pytest.raises(BadInput):
            source_registry.create(
                db, obj_in=schemas.DataSourceCreate(name="x", kind="rest", config={})
            )
        with pytest.raises(BadInput):
            source_registry.create(
                db, obj_in=schemas.DataSourceCreate(name="x", kind="sql", config={"dialect": "oracle", "database": "d"})
            )

    def test_delete_with_queries_conflicts(self, db, sales_source, sales_query):
        with pytest.raises(Conflict):
            source_registry.delete(db, source_id=sales_source.id)

    def test_delete_is_soft(self, db, sales_source):
        source_registry.delete(db, source_id=sales_source.id)
        with pytest.raises(NotFound):
            source_registry.get(db, sales_source.id)
        assert crud.data_source.get(db, sales_source.id).deleted_at is not None

    @pytest.mark.asyncio
    async def test_probe_and_discover_sql(self, db, sales_source):
        probe = await source_registry.probe(db, sales_source.id)
        assert probe["ok"] is True
        assert probe["detail"]["dialect"] == "sqlite"
        assert crud.data_source.get(db, sales_source.id).probe_status == "ok"

        discovered = await source_registry.discover(db, sales_source.id)
        assert discovered["ok"] is True
        tables = {t["name"]: t for t in discovered["metadata"]["tables"]}
        assert [c["name"] for c in tables["sales"]["columns"]] == ["id", "category", "amount"]

    @pytest.mark.asyncio
    async def test_probe_classifies_auth_failure(self, db, rest_source):
        with patch("pulse.services.http_client.requests.request", return_value=fake_response(401, {})):
            probe = await source_registry.probe(db, rest_source.id)
        assert probe["ok"] is False
        assert probe["kind"] == "auth"
        assert crud.data_source.get(db, rest_source.id).probe_status == "auth"

    @pytest.mark.asyncio
    async def test_cache_entries_use_query_prefix(self, db, sales_query):
        await query_engine.execute(db, sales_query.id)
        keys = await result_cache._backend.keys(f"pulse:query:{sales_query.id}:*")
        assert len(keys) == 1
