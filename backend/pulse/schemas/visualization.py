"""可视化 Schema定义"""
from typing import Any, Dict, List, Literal, Optional
from datetime import datetime

from pydantic import Field

from pulse.schemas.common import PulseModel

RendererKind = Literal["chartjs", "d3", "custom"]


class VisualizationBase(PulseModel):
    """可视化基础Schema"""
    name: str = Field(..., min_length=1, max_length=255)
    description: Optional[str] = None
    dataset_id: int = Field(..., description="数据集ID")
    type: str = Field(..., description="图表类型: bar/line/pie/scatter/table/metric/gauge...")
    renderer: RendererKind = "chartjs"
    config: Dict[str, Any] = Field(default_factory=dict)
    data_mapping: Dict[str, Any] = Field(default_factory=dict, description="字段映射 x/y/category...")
    filters: List[Dict[str, Any]] = Field(default_factory=list)
    aggregations: List[Dict[str, Any]] = Field(default_factory=list)


class VisualizationCreate(VisualizationBase):
    """创建可视化的请求Schema"""
    pass


class VisualizationUpdate(PulseModel):
    """更新可视化的请求Schema"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    dataset_id: Optional[int] = None
    type: Optional[str] = None
    renderer: Optional[RendererKind] = None
    config: Optional[Dict[str, Any]] = None
    data_mapping: Optional[Dict[str, Any]] = None
    filters: Optional[List[Dict[str, Any]]] = None
    aggregations: Optional[List[Dict[str, Any]]] = None


class VisualizationResponse(VisualizationBase):
    """可视化响应Schema"""
    id: int
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class RenderRequest(PulseModel):
    """渲染选项"""
    auto_refresh: bool = False
    skip_cache: bool = False


class CloneRequest(PulseModel):
    """复制请求"""
    name: Optional[str] = None
