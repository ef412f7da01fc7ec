"""报表 Schema定义"""
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from pydantic import Field

from pulse.schemas.common import PulseModel
from pulse.schemas.query import ParameterDef

ReportFormat = Literal["json", "csv", "html", "pdf", "excel"]


class ReportBase(PulseModel):
    """报表基础Schema"""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    definition: Dict[str, Any] = Field(..., description='{"queryId": 1} 或 {"queries": {"name": 1}}')
    parameter_defs: List[ParameterDef] = Field(default_factory=list)
    filters: List[Dict[str, Any]] = Field(default_factory=list)
    default_format: ReportFormat = "json"


class ReportCreate(ReportBase):
    """创建报表的请求Schema"""
    pass


class ReportUpdate(PulseModel):
    """更新报表的请求Schema"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    definition: Optional[Dict[str, Any]] = None
    parameter_defs: Optional[List[ParameterDef]] = None
    filters: Optional[List[Dict[str, Any]]] = None
    default_format: Optional[ReportFormat] = None


class ReportResponse(ReportBase):
    """报表响应Schema"""
    id: int
    execution_count: int = 0
    avg_execution_time: float = 0.0
    last_executed_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class ReportExecuteRequest(PulseModel):
    """执行报表请求"""
    parameters: Dict[str, Any] = Field(default_factory=dict)
    format: Optional[ReportFormat] = None
