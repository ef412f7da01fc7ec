"""
报表服务

报表 = 一个或多个查询 + 报表级参数 + 过滤条件，执行后渲染为产物 (Artifact)。
支持的输出格式: json / csv；html / pdf / excel 需要模板渲染，不在服务端生成。

definition 形式:
    {"queryId": 1}
    {"queries": {"orders": 1, "users": 2}}
    {"queries": [{"queryId": 1, "name": "orders"}, ...]}
"""
import io
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union

import pandas as pd
from sqlalchemy.orm import Session

from pulse import crud
from pulse.core.errors import BadInput, Conflict, NotFound
from pulse.core.timeutil import isoformat, utcnow
from pulse.models.report import Report
from pulse.schemas.report import ReportCreate, ReportUpdate
from pulse.services.cache_service import cache_key, result_cache, ttl_for
from pulse.services.parameter_binding import parameter_binder, parameter_fingerprint
from pulse.services.query_engine import QueryEngine, query_engine
from pulse.services.transforms import apply_filters

logger = logging.getLogger(__name__)

ARTIFACT_FORMATS = {
    "json": "application/json",
    "csv": "text/csv",
}

ReportData = Union[List[Dict[str, Any]], Dict[str, List[Dict[str, Any]]]]


@dataclass
class Artifact:
    """报表产物"""
    content: bytes
    content_type: str
    filename: str

    @property
    def size(self) -> int:
        return len(self.content)


def report_queries(definition: Dict[str, Any]) -> Optional[List[Dict[str, Any]]]:
    """
    解析 definition 中的查询列表

    Returns:
        None 表示单查询 (queryId)，否则为 [{name, queryId}]
    """
    queries = definition.get("queries")
    if queries:
        if isinstance(queries, dict):
            return [{"name": str(name), "queryId": query_id} for name, query_id in queries.items()]
        if isinstance(queries, list):
            entries = []
            for entry in queries:
                if not isinstance(entry, dict) or entry.get("queryId") is None:
                    raise BadInput("each entry of definition.queries needs a queryId")
                entries.append({
                    "name": str(entry.get("name") or f"query_{entry['queryId']}"),
                    "queryId": entry["queryId"],
                })
            return entries
        raise BadInput("definition.queries must be an object or a list")
    if definition.get("queryId") is not None:
        return None
    raise BadInput("Report definition must contain queryId or queries")


def active_filters(filters: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    return [f for f in filters or [] if f.get("isActive", f.get("is_active", True))]


def render_json(report: Report, data: ReportData, parameters: Dict[str, Any]) -> bytes:
    document = {
        "report": {"id": report.id, "name": report.name, "description": report.description},
        "generatedAt": isoformat(utcnow()),
        "parameters": parameters,
        "data": data,
    }
    return json.dumps(document, ensure_ascii=False, indent=2, default=str).encode("utf-8")


def render_csv(data: ReportData) -> bytes:
    """多查询报表合并为一张表，首列 query 标识来源"""
    if isinstance(data, dict):
        frames = [pd.DataFrame(rows).assign(query=name) for name, rows in data.items()]
        frame = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()
        if "query" in frame.columns:
            frame = frame[["query"] + [c for c in frame.columns if c != "query"]]
    else:
        frame = pd.DataFrame(data)
    buffer = io.StringIO()
    frame.to_csv(buffer, index=False)
    return buffer.getvalue().encode("utf-8")


class ReportService:
    """报表服务"""

    def __init__(self, engine: Optional[QueryEngine] = None):
        self._engine = engine

    @property
    def engine(self) -> QueryEngine:
        return self._engine or query_engine

    def get(self, db: Session, report_id: int) -> Report:
        report = crud.report.get(db, report_id)
        if not report:
            raise NotFound("Report", report_id)
        return report

    def _validate(self, db: Session, definition: Dict[str, Any]) -> None:
        entries = report_queries(definition)
        query_ids = [definition["queryId"]] if entries is None else [e["queryId"] for e in entries]
        for query_id in query_ids:
            self.engine.get_query(db, query_id)

    def create(self, db: Session, *, obj_in: ReportCreate, user: Optional[str] = None) -> Report:
        self._validate(db, obj_in.definition)
        report = crud.report.create(db, obj_in=obj_in, created_by=user)
        logger.info(f"创建报表: id={report.id}, name={report.name}")
        return report

    async def update(self, db: Session, *, report_id: int, obj_in: ReportUpdate) -> Report:
        report = self.get(db, report_id)
        if obj_in.definition is not None:
            self._validate(db, obj_in.definition)
        report = crud.report.update(db, db_obj=report, obj_in=obj_in)
        await result_cache.invalidate_entity("report", report_id)
        return report

    async def delete(self, db: Session, *, report_id: int) -> Report:
        self.get(db, report_id)
        schedules = crud.schedule.get_multi_filtered(db, report_id=report_id, limit=1)
        if schedules:
            raise Conflict(f"Report {report_id} is referenced by schedules")
        removed = crud.report.remove(db, id=report_id)
        await result_cache.invalidate_entity("report", report_id)
        logger.info(f"删除报表: id={report_id}")
        return removed

    async def _collect(self, db: Session, report: Report, params: Dict[str, Any]) -> ReportData:
        definition = report.definition or {}
        entries = report_queries(definition)
        if entries is None:
            result = await self.engine.execute(db, definition["queryId"], params)
            return result["rows"]
        data: Dict[str, List[Dict[str, Any]]] = {}
        for entry in entries:
            result = await self.engine.execute(db, entry["queryId"], params)
            data[entry["name"]] = result["rows"]
        return data

    async def execute(
        self,
        db: Session,
        report_id: int,
        params: Optional[Dict[str, Any]] = None,
        format: Optional[str] = None,
        skip_cache: bool = False,
    ) -> Artifact:
        """
        执行报表并生成产物

        Args:
            report_id: 报表ID
            params: 报表参数
            format: 输出格式，默认取报表的 default_format
            skip_cache: 跳过报表数据缓存 (定时任务使用)

        Raises:
            BadInput: 格式不支持或 definition 无效
            BadParameter: 参数校验失败
        """
        report = self.get(db, report_id)
        output_format = (format or report.default_format or "json").lower()
        if output_format not in ARTIFACT_FORMATS:
            raise BadInput(f"Unsupported report format: {output_format}")

        start = time.perf_counter()
        bound = parameter_binder.bind(report.parameter_defs, params)
        # 查询自身声明的参数也从调用方参数中取值
        query_params = {**(params or {}), **bound}
        key = cache_key("report", report.id, parameter_fingerprint(report.id, query_params))

        data = None if skip_cache else await result_cache.get(key)
        if data is None:
            data = await self._collect(db, report, query_params)
            filters = active_filters(report.filters)
            if filters:
                if isinstance(data, dict):
                    data = {name: apply_filters(rows, filters) for name, rows in data.items()}
                else:
                    data = apply_filters(data, filters)
            await result_cache.set_ex(key, data, ttl_for("report"))

        if output_format == "csv":
            content = render_csv(data)
        else:
            content = render_json(report, data, bound)

        elapsed_ms = round((time.perf_counter() - start) * 1000, 3)
        crud.report.record_execution(db, report_id=report.id, duration_ms=elapsed_ms)

        stamp = utcnow().strftime("%Y%m%d%H%M%S")
        artifact = Artifact(
            content=content,
            content_type=ARTIFACT_FORMATS[output_format],
            filename=f"report-{report.id}-{stamp}.{output_format}",
        )
        logger.info(
            f"报表执行成功: id={report.id}, format={output_format}, "
            f"size={artifact.size}, {elapsed_ms}ms"
        )
        return artifact


# 全局实例
report_service = ReportService()
