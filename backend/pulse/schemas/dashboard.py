"""Dashboard Schema定义"""
from typing import Any, Dict, List, Optional
from datetime import datetime

from pydantic import Field

from pulse.schemas.common import PulseModel


class Position(PulseModel):
    """网格位置，坐标为非负整数"""
    x: int = Field(0, ge=0)
    y: int = Field(0, ge=0)
    w: int = Field(4, ge=0)
    h: int = Field(4, ge=0)


class DashboardBase(PulseModel):
    """Dashboard基础Schema"""
    name: str = Field(..., min_length=1, max_length=255, description="Dashboard名称")
    description: Optional[str] = None
    layout: Dict[str, Any] = Field(default_factory=dict)
    theme: str = "light"
    refresh_interval: Optional[int] = Field(None, gt=0, description="刷新间隔(秒)")
    is_realtime: bool = False
    is_public: bool = False
    is_template: bool = False
    tags: Optional[List[str]] = None


class DashboardCreate(DashboardBase):
    """创建Dashboard的请求Schema"""
    pass


class DashboardUpdate(PulseModel):
    """更新Dashboard的请求Schema"""
    name: Optional[str] = Field(None, min_length=1, max_length=255)
    description: Optional[str] = None
    layout: Optional[Dict[str, Any]] = None
    theme: Optional[str] = None
    refresh_interval: Optional[int] = Field(None, gt=0)
    is_realtime: Optional[bool] = None
    is_public: Optional[bool] = None
    is_template: Optional[bool] = None
    tags: Optional[List[str]] = None


class DashboardItemCreate(PulseModel):
    """添加Dashboard组件"""
    visualization_id: int
    position: Optional[Position] = None
    title: Optional[str] = Field(None, max_length=255)
    is_locked: bool = False
    config: Optional[Dict[str, Any]] = None


class DashboardItemUpdate(PulseModel):
    """更新Dashboard组件"""
    position: Optional[Position] = None
    title: Optional[str] = Field(None, max_length=255)
    is_locked: Optional[bool] = None
    config: Optional[Dict[str, Any]] = None


class DashboardItemResponse(PulseModel):
    """Dashboard组件响应Schema"""
    id: int
    dashboard_id: int
    visualization_id: int
    position: Dict[str, Any]
    title: Optional[str] = None
    order: int
    is_locked: bool = False
    config: Optional[Dict[str, Any]] = None


class DashboardResponse(DashboardBase):
    """Dashboard响应Schema"""
    id: int
    view_count: int = 0
    last_viewed_at: Optional[datetime] = None
    created_by: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    items: List[DashboardItemResponse] = Field(default_factory=list)


class LayoutItem(PulseModel):
    """布局中单个组件的位置"""
    id: int
    position: Position


class LayoutUpdateRequest(PulseModel):
    """批量更新布局请求"""
    items: List[LayoutItem]


class ReorderRequest(PulseModel):
    """组件排序请求"""
    item_ids: List[int]


class InstantiateRequest(PulseModel):
    """从模板创建Dashboard"""
    name: str = Field(..., min_length=1, max_length=255)
