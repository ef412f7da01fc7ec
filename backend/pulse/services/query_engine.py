"""
查询引擎

执行流程：
1. 加载查询和数据源，检查查询类型与数据源类型是否兼容
2. 按 parameterDefs 绑定参数 (ParameterBinder)
3. 缓存查找：pulse:query:{id}:{sha256(id|canonical(params))}
4. 调用数据源执行 (sql / rest) 或对上游结果求值 ExpressionLang (expression)
5. 结果规范化：行列表 + schema
6. 写缓存、更新执行统计

失败、超时或取消的执行既不写缓存也不更新统计。
"""
import logging
import re
import time
import base64
import uuid
from datetime import date, datetime, time as dt_time
from decimal import Decimal
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from pulse import crud
from pulse.core import metrics
from pulse.core.config import settings
from pulse.core.errors import BadInput, Conflict, DecodeError, NotFound
from pulse.models.data_source import DataSource
from pulse.models.query import Query
from pulse.schemas.query import QueryCreate, QueryUpdate
from pulse.services.cache_service import ResultCache, cache_key, result_cache
from pulse.services.db_service import validate_select
from pulse.services.expression import ExpressionParser
from pulse.services.parameter_binding import parameter_binder, parameter_fingerprint, substitute_tokens
from pulse.services.source_registry import check_query_kind, get_variant

logger = logging.getLogger(__name__)

# expression 查询可以引用其它查询，限制嵌套深度防止循环引用
MAX_EXPRESSION_DEPTH = 5

_ISO_DATE_RE = re.compile(
    r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$"
)


def to_json_value(value: Any) -> Any:
    """把驱动返回的值转换为 JSON 可序列化的形式"""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Decimal):
        return int(value) if value == value.to_integral_value() else float(value)
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (date, dt_time)):
        return value.isoformat()
    if isinstance(value, (bytes, bytearray, memoryview)):
        raw = bytes(value)
        try:
            return raw.decode("utf-8")
        except UnicodeDecodeError:
            return base64.b64encode(raw).decode("ascii")
    if isinstance(value, uuid.UUID):
        return str(value)
    if isinstance(value, dict):
        return {str(k): to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [to_json_value(v) for v in value]
    return str(value)


def extract_data_path(data: Any, path: str) -> Any:
    """
    按点号路径取值，数字段对列表取下标

    Raises:
        DecodeError: 路径无法解析
    """
    current = data
    for segment in [s for s in str(path).split(".") if s != ""]:
        if isinstance(current, dict) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            if not -len(current) <= index < len(current):
                raise DecodeError(f"dataPath '{path}' index {index} out of range")
            current = current[index]
        else:
            raise DecodeError(f"dataPath '{path}' does not resolve at '{segment}'")
    return current


def normalize_rows(data: Any, columns: Optional[List[str]] = None) -> List[Dict[str, Any]]:
    """
    规范化为行列表

    - 标量包装为 {"value": x}
    - 非列表包装为单元素列表
    - 所有行具有相同的键集合，缺失键补 None，键顺序按首次出现
    """
    if data is None:
        items: List[Any] = []
    elif isinstance(data, list):
        items = data
    else:
        items = [data]

    records = []
    for item in items:
        if isinstance(item, dict):
            records.append({str(k): to_json_value(v) for k, v in item.items()})
        else:
            records.append({"value": to_json_value(item)})

    keys: List[str] = list(columns or [])
    seen = set(keys)
    for record in records:
        for key in record:
            if key not in seen:
                seen.add(key)
                keys.append(key)

    return [{key: record.get(key) for key in keys} for record in records]


def infer_type(value: Any) -> str:
    if value is None:
        return "unknown"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float, Decimal)):
        return "number"
    if isinstance(value, (datetime, date)):
        return "date"
    if isinstance(value, str):
        return "date" if _ISO_DATE_RE.match(value) else "string"
    if isinstance(value, (list, tuple)):
        return "array"
    if isinstance(value, dict):
        return "object"
    return "unknown"


def infer_schema(rows: List[Dict[str, Any]]) -> Dict[str, Dict[str, Any]]:
    """以第一行推断 schema"""
    if not rows:
        return {}
    first = rows[0]
    return {
        name: {"name": name, "type": infer_type(value), "nullable": value is None}
        for name, value in first.items()
    }


def build_result(data: Any, columns: Optional[List[str]] = None) -> Dict[str, Any]:
    rows = normalize_rows(data, columns)
    schema = infer_schema(rows)
    return {
        "rows": rows,
        "schema": schema,
        "rowCount": len(rows),
        "columnCount": len(schema) if schema else len(columns or []),
    }


class QueryEngine:
    """查询引擎"""

    def __init__(self, cache: Optional[ResultCache] = None):
        self._cache = cache

    @property
    def cache(self) -> ResultCache:
        return self._cache or result_cache

    # ---- 定义管理 ----

    def get_query(self, db: Session, query_id: int) -> Query:
        query = crud.query.get(db, query_id)
        if not query or not query.is_active:
            raise NotFound("Query", query_id)
        return query

    def _get_source(self, db: Session, source_id: int) -> DataSource:
        source = crud.data_source.get_active(db, source_id)
        if not source:
            raise NotFound("DataSource", source_id)
        return source

    def validate_definition(self, source_kind: str, kind: str, definition: Dict[str, Any]) -> None:
        """创建/更新时校验查询定义"""
        check_query_kind(source_kind, kind)
        definition = definition or {}
        if kind == "sql":
            validate_select(definition.get("sql") or definition.get("query") or "")
        elif kind == "rest":
            if not (definition.get("url") or definition.get("urlTemplate") or definition.get("endpoint")):
                raise BadInput("REST query definition requires 'url'")
        elif kind == "expression":
            ExpressionParser(definition.get("expression") or "")
            source = self._expression_source(definition)
            if source is None:
                raise BadInput("expression query requires 'source' with 'queryId' or 'rest'")

    def create(self, db: Session, *, obj_in: QueryCreate, user: Optional[str] = None) -> Query:
        source = self._get_source(db, obj_in.data_source_id)
        self.validate_definition(source.kind, obj_in.kind, obj_in.definition)
        query = crud.query.create(db, obj_in=obj_in, created_by=user)
        logger.info(f"创建查询: id={query.id}, kind={query.kind}")
        return query

    async def update(self, db: Session, *, query_id: int, obj_in: QueryUpdate) -> Query:
        # 停用的查询也允许更新 (重新启用)
        query = crud.query.get(db, query_id)
        if not query:
            raise NotFound("Query", query_id)
        update_data = obj_in.model_dump(exclude_unset=True)
        if "definition" in update_data:
            self.validate_definition(query.data_source.kind, query.kind, update_data["definition"])
        query = crud.query.update(db, db_obj=query, obj_in=update_data)
        await self.clear_cache(query_id)
        return query

    async def delete(self, db: Session, *, query_id: int) -> Query:
        if not crud.query.get(db, query_id):
            raise NotFound("Query", query_id)
        dependents = crud.query.count_dependent_datasets(db, query_id=query_id)
        if dependents:
            raise Conflict(f"Query {query_id} is referenced by {dependents} datasets")
        removed = crud.query.remove(db, id=query_id)
        await self.clear_cache(query_id)
        return removed

    # ---- 执行 ----

    def _default_deadline(self, kind: str) -> float:
        if kind == "sql":
            return float(settings.SQL_QUERY_TIMEOUT)
        return float(settings.REST_REQUEST_TIMEOUT)

    def result_key(self, query_id: int, bound: Dict[str, Any]) -> str:
        return cache_key("query", query_id, parameter_fingerprint(query_id, bound))

    async def execute(
        self,
        db: Session,
        query_id: int,
        params: Optional[Dict[str, Any]] = None,
        skip_cache: bool = False,
        deadline: Optional[float] = None,
        user: Optional[str] = None,
        _depth: int = 0,
    ) -> Dict[str, Any]:
        """
        执行查询

        Args:
            query_id: 查询ID
            params: 调用方参数
            skip_cache: 跳过缓存查找
            deadline: 超时秒数，默认取查询的 timeout_ms 或全局配置
            user: 调用方用户

        Returns:
            {rows, schema, rowCount, columnCount, executionTime, cached}
        """
        query = self.get_query(db, query_id)
        bound = parameter_binder.bind(query.parameter_defs, params)
        key = self.result_key(query.id, bound)
        cacheable = bool(query.cache_enabled) and (query.cache_ttl or 0) > 0

        start = time.perf_counter()
        if cacheable and not skip_cache:
            cached = await self.cache.get(key)
            if cached is not None:
                elapsed_ms = round((time.perf_counter() - start) * 1000, 3)
                crud.query.record_execution(db, query_id=query.id, duration_ms=elapsed_ms)
                metrics.queries_executed_total.inc(cached="true")
                logger.debug(f"查询命中缓存: query_id={query_id}")
                return {**cached, "cached": True}

        if deadline is None:
            deadline = query.timeout_ms / 1000.0 if query.timeout_ms else self._default_deadline(query.kind)

        source = self._get_source(db, query.data_source_id)
        start = time.perf_counter()
        result = await self._run(db, source, query.kind, query.definition or {}, bound, deadline, _depth)
        elapsed_ms = round((time.perf_counter() - start) * 1000, 3)
        result["executionTime"] = elapsed_ms
        result["cached"] = False

        crud.query.record_execution(db, query_id=query.id, duration_ms=elapsed_ms)
        metrics.queries_executed_total.inc(cached="false")
        logger.info(
            f"查询执行成功: query_id={query_id}, kind={query.kind}, "
            f"rows={result['rowCount']}, {elapsed_ms}ms, user={user}"
        )

        if cacheable:
            await self.cache.set_ex(key, result, query.cache_ttl)
        return result

    async def test(
        self,
        db: Session,
        *,
        source_id: int,
        kind: str,
        definition: Dict[str, Any],
        param_defs: Optional[List[Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        deadline: Optional[float] = None,
    ) -> Dict[str, Any]:
        """执行未保存的查询定义，不读写缓存也不记录统计"""
        source = self._get_source(db, source_id)
        self.validate_definition(source.kind, kind, definition)
        bound = parameter_binder.bind(param_defs, params)
        start = time.perf_counter()
        result = await self._run(
            db, source, kind, definition, bound, deadline or self._default_deadline(kind), 0
        )
        result["executionTime"] = round((time.perf_counter() - start) * 1000, 3)
        result["cached"] = False
        return result

    async def _run(
        self,
        db: Session,
        source: DataSource,
        kind: str,
        definition: Dict[str, Any],
        bound: Dict[str, Any],
        deadline: float,
        depth: int,
    ) -> Dict[str, Any]:
        check_query_kind(source.kind, kind)
        if kind == "expression":
            data = await self._run_expression(db, source, definition, bound, deadline, depth)
            return build_result(data)

        raw = await get_variant(source).execute(kind, definition, bound, deadline)
        data = raw.data
        if kind == "rest" and definition.get("dataPath"):
            data = extract_data_path(data, definition["dataPath"])
        return build_result(data, raw.columns)

    @staticmethod
    def _expression_source(definition: Dict[str, Any]) -> Optional[Dict[str, Any]]:
        source = definition.get("source")
        if isinstance(source, dict) and ("queryId" in source or "rest" in source):
            return source
        if definition.get("sourceType") == "query" and definition.get("sourceQueryId"):
            return {"queryId": definition["sourceQueryId"]}
        if definition.get("sourceType") == "rest" and isinstance(source, dict):
            return {"rest": source}
        return None

    async def _run_expression(
        self,
        db: Session,
        source: DataSource,
        definition: Dict[str, Any],
        bound: Dict[str, Any],
        deadline: float,
        depth: int,
    ) -> Any:
        parser = ExpressionParser(definition.get("expression") or "")
        selector = self._expression_source(definition)
        if selector is None:
            raise BadInput("expression query requires 'source' with 'queryId' or 'rest'")

        if "queryId" in selector:
            if depth >= MAX_EXPRESSION_DEPTH:
                raise BadInput("expression query nesting is too deep")
            upstream_params = substitute_tokens(selector.get("parameters") or dict(bound), bound)
            upstream = await self.execute(
                db,
                int(selector["queryId"]),
                upstream_params,
                deadline=deadline,
                _depth=depth + 1,
            )
            rows = upstream["rows"]
        else:
            check_query_kind(source.kind, "rest")
            raw = await get_variant(source).execute("rest", selector["rest"], bound, deadline)
            rows = raw.data
            if selector["rest"].get("dataPath"):
                rows = extract_data_path(rows, selector["rest"]["dataPath"])

        return parser.evaluate(rows)

    async def clear_cache(self, query_id: int) -> int:
        """失效查询的全部缓存结果"""
        removed = await self.cache.invalidate_prefix(f"{cache_key('query', query_id)}:*")
        logger.info(f"查询缓存已清除: query_id={query_id}, removed={removed}")
        return removed


# 全局实例
query_engine = QueryEngine()
