"""
数据源注册表

数据源类型是封闭集合，每种类型一个实现类，统一提供
probe / discover / execute 三个操作：

- InternalServiceSource: 内部微服务，使用服务间令牌访问
- SqlSource: 关系型数据库 (mysql / postgresql / sqlite)
- RestSource: 外部 REST 接口

未知类型在校验阶段直接拒绝。探测和元数据发现的失败不会抛给调用方，
而是返回 {ok: False, kind, message}，kind ∈ auth / network / timeout / unsupported。
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type
from urllib.parse import quote

from requests.auth import HTTPBasicAuth
from sqlalchemy.orm import Session

from pulse import crud
from pulse.core.config import settings
from pulse.core.errors import (
    BadInput,
    Conflict,
    DecodeError,
    NotFound,
    PulseError,
    SourceRejected,
    SourceTimeout,
    SourceUnavailable,
)
from pulse.core.security import create_service_token
from pulse.models.data_source import DataSource
from pulse.schemas.data_source import DataSourceCreate, DataSourceUpdate
from pulse.services import db_service
from pulse.services.deadline import run_with_deadline
from pulse.services.http_client import http_request
from pulse.services.parameter_binding import substitute_tokens
from pulse.services.service_registry import service_registry

logger = logging.getLogger(__name__)

SENSITIVE_KEYS = {"password", "token", "secret", "apikey", "api_key", "clientsecret", "auth"}
MASK = "***"


def public_config(config: Any) -> Any:
    """返回脱敏后的配置（凭据字段替换为 ***）"""
    if isinstance(config, dict):
        masked = {}
        for key, value in config.items():
            if key.lower() in SENSITIVE_KEYS and value not in (None, ""):
                masked[key] = MASK
            else:
                masked[key] = public_config(value)
        return masked
    if isinstance(config, list):
        return [public_config(v) for v in config]
    return config


@dataclass
class RawResult:
    """数据源返回的原始结果，由查询引擎做规范化"""
    data: Any
    columns: Optional[List[str]] = None


class SourceVariant:
    """数据源实现基类"""

    kind: str = ""
    query_kinds: Tuple[str, ...] = ()

    def __init__(self, source_id: Optional[int], config: Dict[str, Any], service_tag: Optional[str] = None):
        self.source_id = source_id
        self.config = dict(config or {})
        self.service_tag = service_tag

    @classmethod
    def validate_config(cls, config: Dict[str, Any], service_tag: Optional[str] = None) -> None:
        raise NotImplementedError

    async def probe(self, deadline: float) -> Dict[str, Any]:
        raise NotImplementedError

    async def discover(self, deadline: float) -> Dict[str, Any]:
        raise NotImplementedError

    async def execute(
        self,
        query_kind: str,
        definition: Dict[str, Any],
        bound: Dict[str, Any],
        deadline: float,
    ) -> RawResult:
        raise NotImplementedError


class SqlSource(SourceVariant):
    """关系型数据库数据源"""

    kind = "sql"
    query_kinds = ("sql", "expression")

    @classmethod
    def validate_config(cls, config: Dict[str, Any], service_tag: Optional[str] = None) -> None:
        dialect = db_service.get_dialect(config)
        if not config.get("database"):
            raise BadInput("SQL data source requires 'database'")
        if dialect.name != "sqlite" and not config.get("host"):
            raise BadInput("SQL data source requires 'host'")

    async def probe(self, deadline: float) -> Dict[str, Any]:
        return await run_with_deadline(
            db_service.test_connection,
            self.config,
            deadline,
            deadline=deadline,
            operation=f"probe sql source {self.source_id}",
        )

    async def discover(self, deadline: float) -> Dict[str, Any]:
        return await run_with_deadline(
            db_service.inspect_schema,
            self.config,
            deadline,
            deadline=deadline,
            operation=f"discover sql source {self.source_id}",
        )

    async def execute(self, query_kind, definition, bound, deadline) -> RawResult:
        if query_kind != "sql":
            raise BadInput(f"SQL data source cannot execute '{query_kind}' queries directly")
        sql = definition.get("sql") or definition.get("query")
        if not sql:
            raise BadInput("SQL query definition requires 'sql'")
        columns, rows = await run_with_deadline(
            db_service.execute_query,
            self.config,
            sql,
            bound,
            deadline,
            deadline=deadline,
            operation=f"sql query on source {self.source_id}",
        )
        return RawResult(data=rows, columns=columns)


class HttpSource(SourceVariant):
    """HTTP 类数据源公共逻辑"""

    query_kinds = ("rest", "expression")
    default_health_path = ""

    def base_url(self) -> str:
        base = self.config.get("baseUrl") or self.config.get("url")
        if not base and self.service_tag:
            base = service_registry.resolve(self.service_tag)
        if not base:
            raise SourceUnavailable(f"Cannot resolve base URL for data source {self.source_id}")
        return str(base).rstrip("/")

    def auth_headers(self) -> Dict[str, str]:
        headers = {str(k): str(v) for k, v in (self.config.get("headers") or {}).items()}
        auth = self.config.get("auth") or {}
        if auth.get("type") == "bearer" and auth.get("token"):
            headers["Authorization"] = f"Bearer {auth['token']}"
        elif self.config.get("apiKey"):
            headers[self.config.get("apiKeyHeader", "X-API-Key")] = str(self.config["apiKey"])
        return headers

    def basic_auth(self) -> Optional[HTTPBasicAuth]:
        auth = self.config.get("auth") or {}
        if auth.get("type") == "basic":
            return HTTPBasicAuth(auth.get("username", ""), auth.get("password", ""))
        return None

    def resolve_url(self, url: str) -> str:
        if url.startswith("http://") or url.startswith("https://"):
            return url
        return f"{self.base_url()}/{url.lstrip('/')}"

    def build_request(self, definition: Dict[str, Any], bound: Dict[str, Any]) -> Dict[str, Any]:
        """
        按绑定参数展开 REST 查询定义

        Returns:
            {method, url, headers, params, body}
        """
        template = definition.get("urlTemplate") or definition.get("url") or definition.get("endpoint")
        if not template:
            raise BadInput("REST query definition requires 'url'")
        url = substitute_tokens(str(template), bound, encode=lambda s: quote(s, safe=""))
        headers = self.auth_headers()
        headers.update(
            {k: str(v) for k, v in substitute_tokens(definition.get("headers") or {}, bound).items()}
        )
        params = substitute_tokens(definition.get("params") or {}, bound)
        params = {k: v for k, v in params.items() if v is not None}
        body = substitute_tokens(definition.get("body"), bound) if definition.get("body") is not None else None
        return {
            "method": str(definition.get("method") or "GET").upper(),
            "url": self.resolve_url(url),
            "headers": headers,
            "params": params or None,
            "body": body,
        }

    def _fetch(self, request: Dict[str, Any], timeout: float) -> Any:
        response = http_request(
            request["method"],
            request["url"],
            headers=request["headers"],
            params=request["params"],
            json_body=request["body"],
            auth=self.basic_auth(),
            timeout=timeout,
        )
        status = response.status_code
        if status >= 500:
            raise SourceUnavailable(f"Upstream returned HTTP {status}")
        if status >= 400:
            raise SourceRejected(
                f"Upstream rejected request with HTTP {status}",
                detail={"status": status, "body": response.text[:500]},
            )
        if status == 204 or not response.content:
            return []
        try:
            return response.json()
        except ValueError as e:
            raise DecodeError(f"Upstream response is not valid JSON: {e}")

    async def execute(self, query_kind, definition, bound, deadline) -> RawResult:
        if query_kind != "rest":
            raise BadInput(f"{self.kind} data source cannot execute '{query_kind}' queries directly")
        request = self.build_request(definition, bound)
        data = await run_with_deadline(
            self._fetch,
            request,
            deadline,
            deadline=deadline,
            operation=f"{request['method']} {request['url']}",
        )
        return RawResult(data=data)

    def _health_request(self) -> Dict[str, Any]:
        path = self.config.get("healthPath", self.default_health_path) or ""
        return {
            "method": "GET",
            "url": f"{self.base_url()}{path}",
            "headers": self.auth_headers(),
            "params": None,
            "body": None,
        }

    async def probe(self, deadline: float) -> Dict[str, Any]:
        request = self._health_request()
        body = await run_with_deadline(
            self._fetch, request, deadline, deadline=deadline, operation=f"probe {request['url']}"
        )
        detail: Dict[str, Any] = {"url": request["url"]}
        if isinstance(body, dict) and body.get("version"):
            detail["version"] = body["version"]
        return detail

    async def discover(self, deadline: float) -> Dict[str, Any]:
        request = self._health_request()
        body = await run_with_deadline(
            self._fetch, request, deadline, deadline=deadline, operation=f"discover {request['url']}"
        )
        if isinstance(body, dict):
            shape = {"type": "object", "keys": sorted(body.keys())}
        elif isinstance(body, list):
            first = body[0] if body else None
            shape = {
                "type": "array",
                "length": len(body),
                "keys": sorted(first.keys()) if isinstance(first, dict) else [],
            }
        else:
            shape = {"type": type(body).__name__}
        return {"url": request["url"], "response": shape}


class RestSource(HttpSource):
    """外部 REST 数据源"""

    kind = "rest"

    @classmethod
    def validate_config(cls, config: Dict[str, Any], service_tag: Optional[str] = None) -> None:
        if not (config.get("baseUrl") or config.get("url")):
            raise BadInput("REST data source requires 'baseUrl'")
        auth = config.get("auth")
        if auth and auth.get("type") not in ("bearer", "basic"):
            raise BadInput("REST auth type must be 'bearer' or 'basic'")


class InternalServiceSource(HttpSource):
    """内部微服务数据源，所有请求附带服务间令牌"""

    kind = "internal-service"
    default_health_path = "/health"

    @classmethod
    def validate_config(cls, config: Dict[str, Any], service_tag: Optional[str] = None) -> None:
        if not (config.get("baseUrl") or service_tag or config.get("serviceTag")):
            raise BadInput("internal-service data source requires 'baseUrl' or 'serviceTag'")

    def __init__(self, source_id, config, service_tag=None):
        super().__init__(source_id, config, service_tag or config.get("serviceTag"))

    def auth_headers(self) -> Dict[str, str]:
        headers = super().auth_headers()
        headers["Authorization"] = f"Bearer {create_service_token(self.service_tag)}"
        return headers

    async def discover(self, deadline: float) -> Dict[str, Any]:
        request = self._health_request()
        request["url"] = f"{self.base_url()}{self.config.get('metadataPath', '/metadata')}"
        try:
            body = await run_with_deadline(
                self._fetch, request, deadline, deadline=deadline, operation=f"discover {request['url']}"
            )
        except SourceRejected:
            return await super().discover(deadline)
        return {"url": request["url"], "metadata": body}


SOURCE_VARIANTS: Dict[str, Type[SourceVariant]] = {
    cls.kind: cls for cls in (InternalServiceSource, SqlSource, RestSource)
}


def variant_class(kind: str) -> Type[SourceVariant]:
    if kind not in SOURCE_VARIANTS:
        raise BadInput(f"Unsupported data source kind: {kind}")
    return SOURCE_VARIANTS[kind]


def get_variant(source: DataSource) -> SourceVariant:
    return variant_class(source.kind)(source.id, source.config or {}, source.service_tag)


def validate_source_config(kind: str, config: Dict[str, Any], service_tag: Optional[str] = None) -> None:
    variant_class(kind).validate_config(config or {}, service_tag)


def check_query_kind(source_kind: str, query_kind: str) -> None:
    """查询类型必须是数据源类型支持的子集"""
    if query_kind == "custom":
        raise BadInput("custom query kind is not supported, use an expression query")
    if query_kind not in variant_class(source_kind).query_kinds:
        raise BadInput(f"Query kind '{query_kind}' is not compatible with {source_kind} data source")


def classify_failure(error: Exception) -> Dict[str, Any]:
    """把探测异常转换为 {ok: False, kind, message}"""
    if isinstance(error, SourceTimeout):
        kind = "timeout"
    elif isinstance(error, SourceRejected) and isinstance(error.detail, dict) and error.detail.get("status") in (401, 403):
        kind = "auth"
    elif isinstance(error, BadInput):
        kind = "unsupported"
    elif isinstance(error, PulseError):
        kind = "network"
    else:
        kind = "network"
    return {"ok": False, "kind": kind, "message": str(error)}


class SourceRegistry:
    """数据源注册表"""

    def get(self, db: Session, source_id: int) -> DataSource:
        source = crud.data_source.get_active(db, source_id)
        if not source:
            raise NotFound("DataSource", source_id)
        return source

    def create(self, db: Session, *, obj_in: DataSourceCreate, user: Optional[str] = None) -> DataSource:
        validate_source_config(obj_in.kind, obj_in.config, obj_in.service_tag)
        source = crud.data_source.create(db, obj_in=obj_in, created_by=user)
        logger.info(f"创建数据源: id={source.id}, kind={source.kind}")
        return source

    def update(self, db: Session, *, source_id: int, obj_in: DataSourceUpdate) -> DataSource:
        source = self.get(db, source_id)
        update_data = obj_in.model_dump(exclude_unset=True)
        if "config" in update_data or "service_tag" in update_data:
            validate_source_config(
                source.kind,
                update_data.get("config", source.config),
                update_data.get("service_tag", source.service_tag),
            )
        return crud.data_source.update(db, db_obj=source, obj_in=update_data)

    def delete(self, db: Session, *, source_id: int) -> DataSource:
        source = self.get(db, source_id)
        dependents = crud.data_source.count_dependent_queries(db, data_source_id=source_id)
        if dependents:
            raise Conflict(f"DataSource {source_id} is referenced by {dependents} queries")
        return crud.data_source.soft_delete(db, db_obj=source)

    async def probe(self, db: Session, source_id: int) -> Dict[str, Any]:
        """
        连通性探测，固定 5 秒超时

        Returns:
            {ok: True, detail} 或 {ok: False, kind, message}
        """
        source = self.get(db, source_id)
        try:
            detail = await get_variant(source).probe(settings.SOURCE_PROBE_TIMEOUT)
            result = {"ok": True, "detail": detail}
        except PulseError as e:
            result = classify_failure(e)
            logger.warning(f"数据源探测失败: id={source_id}, kind={result['kind']}, {result['message']}")
        crud.data_source.update_probe(
            db, db_obj=source, status="ok" if result["ok"] else result["kind"]
        )
        return result

    async def discover(self, db: Session, source_id: int) -> Dict[str, Any]:
        """
        元数据发现，结果写入数据源的 metadata_snapshot

        Returns:
            {ok: True, metadata} 或 {ok: False, kind, message}
        """
        source = self.get(db, source_id)
        try:
            metadata = await get_variant(source).discover(settings.SOURCE_PROBE_TIMEOUT)
        except PulseError as e:
            result = classify_failure(e)
            logger.warning(f"数据源元数据发现失败: id={source_id}, {result['message']}")
            return result
        crud.data_source.update(db, db_obj=source, obj_in={"metadata_snapshot": metadata})
        return {"ok": True, "metadata": metadata}


# 全局实例
source_registry = SourceRegistry()
