"""数据源 Schema定义"""
from typing import Any, Dict, Literal, Optional
from datetime import datetime

from pydantic import Field

from pulse.schemas.common import PulseModel

DataSourceKind = Literal["internal-service", "sql", "rest"]


class DataSourceBase(PulseModel):
    """数据源基础Schema"""
    name: str = Field(..., min_length=1, max_length=255, description="数据源名称")
    description: Optional[str] = Field(None, description="描述")
    kind: DataSourceKind = Field(..., description="类型: internal-service/sql/rest")
    config: Dict[str, Any] = Field(default_factory=dict, description="连接配置")
    service_tag: Optional[str] = Field(None, description="内部服务标识")


class DataSourceCreate(DataSourceBase):
    """创建数据源的请求Schema"""
    pass


class DataSourceUpdate(PulseModel):
    """更新数据源的请求Schema"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    config: Optional[Dict[str, Any]] = None
    service_tag: Optional[str] = None
    is_active: Optional[bool] = None


class DataSourceResponse(DataSourceBase):
    """数据源响应Schema (config 中的凭据已脱敏)"""
    id: int
    metadata_snapshot: Optional[Dict[str, Any]] = None
    last_probe_at: Optional[datetime] = None
    probe_status: Optional[str] = None
    is_active: bool = True
    created_at: datetime
    updated_at: datetime


class ProbeResult(PulseModel):
    """探测结果"""
    ok: bool
    kind: Optional[str] = Field(None, description="失败类型: auth/network/timeout/unsupported")
    message: Optional[str] = None
    detail: Optional[Dict[str, Any]] = None
