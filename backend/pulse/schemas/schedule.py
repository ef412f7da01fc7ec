"""定时任务 Schema定义"""
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from pydantic import Field, field_validator

from pulse.schemas.common import PulseModel
from pulse.schemas.report import ReportFormat


class DeliveryChannel(PulseModel):
    """投递渠道配置

    email: recipients / subject
    webhook: url / headers
    storage: path (相对对象存储目录)
    """
    type: Literal["email", "webhook", "storage"]
    name: Optional[str] = Field(None, description="渠道名称，默认为 type")
    required: bool = True
    recipients: Optional[List[str]] = None
    subject: Optional[str] = None
    url: Optional[str] = None
    headers: Optional[Dict[str, str]] = None
    path: Optional[str] = None


class ScheduleBase(PulseModel):
    """定时任务基础Schema"""
    name: str = Field(..., min_length=1, max_length=255)
    report_id: int
    cron: str = Field(..., description="cron 表达式 (5 段)")
    timezone: str = "UTC"
    parameters: Dict[str, Any] = Field(default_factory=dict)
    format: ReportFormat = "json"
    delivery_channels: List[DeliveryChannel] = Field(default_factory=list)
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    is_active: bool = True


class ScheduleCreate(ScheduleBase):
    """创建定时任务的请求Schema"""

    @field_validator("cron")
    @classmethod
    def validate_cron(cls, v: str) -> str:
        from pulse.core.errors import BadInput
        from pulse.services.cron import validate_cron

        try:
            return validate_cron(v)
        except BadInput as e:
            raise ValueError(e.message)

    @field_validator("timezone")
    @classmethod
    def validate_timezone(cls, v: str) -> str:
        from pulse.core.errors import BadInput
        from pulse.services.cron import get_timezone

        try:
            get_timezone(v)
        except BadInput as e:
            raise ValueError(e.message)
        return v


class ScheduleUpdate(PulseModel):
    """更新定时任务的请求Schema"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    cron: Optional[str] = None
    timezone: Optional[str] = None
    parameters: Optional[Dict[str, Any]] = None
    format: Optional[ReportFormat] = None
    delivery_channels: Optional[List[DeliveryChannel]] = None
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None
    is_active: Optional[bool] = None


class ScheduleResponse(ScheduleBase):
    """定时任务响应Schema"""
    id: int
    next_fire_at: Optional[datetime] = None
    last_run_at: Optional[datetime] = None
    run_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    created_at: datetime
    updated_at: datetime


class ScheduleExecutionResponse(PulseModel):
    """执行记录响应Schema"""
    id: int
    schedule_id: int
    state: str
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    error: Optional[str] = None
    delivery: Dict[str, Any] = Field(default_factory=dict)
    artifact_size: Optional[int] = None
    trace_id: Optional[str] = None
    created_at: datetime


class ToggleRequest(PulseModel):
    """启停请求"""
    is_active: bool
