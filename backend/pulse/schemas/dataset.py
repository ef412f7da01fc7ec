"""数据集 Schema定义"""
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from pydantic import Field

from pulse.schemas.common import PulseModel


class DatasetCreate(PulseModel):
    """由查询创建数据集"""
    query_id: int = Field(..., description="查询ID")
    parameters: Dict[str, Any] = Field(default_factory=dict)
    name: Optional[str] = None
    is_snapshot: bool = False


class DatasetResponse(PulseModel):
    """数据集响应Schema (不含 rows)"""
    id: int
    name: Optional[str] = None
    query_id: Optional[int] = None
    source_dataset_id: Optional[int] = None
    operations: Optional[List[Dict[str, Any]]] = None
    result_schema: Dict[str, Any] = Field(default_factory=dict, serialization_alias="schema")
    row_count: int = 0
    column_count: int = 0
    byte_size: int = 0
    execution_time: float = 0.0
    parameters: Dict[str, Any] = Field(default_factory=dict)
    expires_at: Optional[datetime] = None
    is_snapshot: bool = False
    refresh_count: int = 0
    last_refreshed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime


class DatasetDetail(DatasetResponse):
    """数据集详情 (含 rows)"""
    rows: List[Dict[str, Any]] = Field(default_factory=list)


class TransformOp(PulseModel):
    """数据集变换操作

    filter: field / operator / value
    project: fields
    aggregate: group_by / agg / on
    derive: name / expression
    """
    op: Literal["filter", "project", "aggregate", "derive"]
    field: Optional[str] = None
    operator: Optional[str] = None
    value: Optional[Any] = None
    case_sensitive: bool = False
    fields: Optional[List[str]] = None
    group_by: Optional[str] = None
    agg: Optional[str] = None
    on: Optional[str] = None
    name: Optional[str] = None
    expression: Optional[str] = None


class DatasetTransformRequest(PulseModel):
    """数据集变换请求"""
    operations: List[TransformOp] = Field(..., min_length=1)
    name: Optional[str] = None
