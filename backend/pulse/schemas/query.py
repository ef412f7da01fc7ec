"""查询 Schema定义"""
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from pydantic import Field, field_validator

from pulse.schemas.common import PulseModel

ParameterType = Literal[
    "string", "number", "boolean", "date", "datetime", "select", "multi", "user", "range"
]
QueryKind = Literal["sql", "rest", "expression", "custom"]

PARAMETER_NAME_PATTERN = r"^[A-Za-z_][A-Za-z0-9_]*$"


class ParameterValidation(PulseModel):
    """参数校验规则"""
    min: Optional[float] = None
    max: Optional[float] = None
    pattern: Optional[str] = None


class ParameterDef(PulseModel):
    """查询参数定义"""
    name: str = Field(..., pattern=PARAMETER_NAME_PATTERN, description="参数名")
    type: ParameterType = Field("string", description="参数类型")
    label: Optional[str] = None
    required: bool = False
    default_value: Optional[Any] = Field(None, description="默认值")
    options: Optional[List[Any]] = Field(None, description="select/multi 可选值")
    validation: Optional[ParameterValidation] = None


class QueryBase(PulseModel):
    """查询基础Schema"""
    name: str = Field(..., min_length=1, max_length=255, description="查询名称")
    description: Optional[str] = None
    data_source_id: int = Field(..., description="数据源ID")
    kind: QueryKind = Field(..., description="查询类型: sql/rest/expression")
    definition: Dict[str, Any] = Field(default_factory=dict, description="查询定义")
    parameter_defs: List[ParameterDef] = Field(default_factory=list, description="参数定义")
    cache_enabled: bool = True
    cache_ttl: int = Field(180, ge=0, description="缓存TTL(秒)")
    timeout_ms: Optional[int] = Field(None, gt=0)

    @field_validator("kind")
    @classmethod
    def reject_custom_kind(cls, v: str) -> str:
        if v == "custom":
            raise ValueError("custom query kind is not supported, use an expression query")
        return v


class QueryCreate(QueryBase):
    """创建查询的请求Schema"""
    pass


class QueryUpdate(PulseModel):
    """更新查询的请求Schema"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    definition: Optional[Dict[str, Any]] = None
    parameter_defs: Optional[List[ParameterDef]] = None
    cache_enabled: Optional[bool] = None
    cache_ttl: Optional[int] = Field(None, ge=0)
    timeout_ms: Optional[int] = Field(None, gt=0)
    is_active: Optional[bool] = None


class QueryResponse(QueryBase):
    """查询响应Schema"""
    id: int
    execution_count: int = 0
    avg_execution_time: float = 0.0
    last_executed_at: Optional[datetime] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class QueryExecuteRequest(PulseModel):
    """执行查询请求"""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    skip_cache: bool = False
    deadline: Optional[float] = Field(None, gt=0, description="超时(秒)")


class QueryTestRequest(PulseModel):
    """测试未保存的查询定义"""
    data_source_id: int
    kind: QueryKind
    definition: Dict[str, Any] = Field(default_factory=dict)
    parameter_defs: List[ParameterDef] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    deadline: Optional[float] = Field(None, gt=0)
