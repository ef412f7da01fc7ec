"""
Dashboard 服务

组合渲染 (compose)：按 order 排列的组件并发渲染，并发度受
DASHBOARD_RENDER_CONCURRENCY 限制；单个组件失败只影响该组件，
返回 {id, position, title, error: {message, kind}}。
"""
import asyncio
import logging
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from pulse import crud
from pulse.core.config import settings
from pulse.core.errors import BadInput, Conflict, NotFound, PulseError
from pulse.core.timeutil import isoformat, utcnow
from pulse.models.dashboard import Dashboard
from pulse.models.dashboard_item import DashboardItem
from pulse.schemas.dashboard import (
    DashboardCreate,
    DashboardItemCreate,
    DashboardItemUpdate,
    DashboardUpdate,
    LayoutItem,
)
from pulse.services.cache_service import cache_key, result_cache, ttl_for
from pulse.services.invalidation import invalidate_dashboards, notify_dashboards
from pulse.services.visualization_service import VisualizationService, visualization_service

logger = logging.getLogger(__name__)

DEFAULT_POSITION = {"x": 0, "y": 0, "w": 4, "h": 4}


class DashboardService:
    """Dashboard 服务"""

    def __init__(self, visualizations: Optional[VisualizationService] = None):
        self._visualizations = visualizations

    @property
    def visualizations(self) -> VisualizationService:
        return self._visualizations or visualization_service

    def get(self, db: Session, dashboard_id: int) -> Dashboard:
        dashboard = crud.dashboard.get_with_items(db, dashboard_id=dashboard_id)
        if not dashboard:
            raise NotFound("Dashboard", dashboard_id)
        return dashboard

    def _get_item(self, db: Session, dashboard_id: int, item_id: int) -> DashboardItem:
        item = crud.dashboard_item.get(db, item_id)
        if not item or item.dashboard_id != dashboard_id:
            raise NotFound("DashboardItem", item_id)
        return item

    async def _changed(self, dashboard_id: int) -> None:
        await invalidate_dashboards([dashboard_id])
        await notify_dashboards([dashboard_id], reason="dashboard")

    # ---- 组合渲染 ----

    async def _render_item(
        self,
        db: Session,
        item: DashboardItem,
        semaphore: asyncio.Semaphore,
        auto_refresh: bool,
    ) -> Dict[str, Any]:
        base = {
            "id": item.id,
            "visualizationId": item.visualization_id,
            "position": item.position or dict(DEFAULT_POSITION),
            "title": item.title,
            "order": item.order,
        }
        async with semaphore:
            try:
                rendered = await self.visualizations.render(
                    db, item.visualization_id, auto_refresh=auto_refresh
                )
            except PulseError as e:
                logger.warning(
                    f"Dashboard 组件渲染失败: item={item.id}, "
                    f"visualization={item.visualization_id}, {e.kind}: {e.message}"
                )
                return {**base, "error": {"message": e.message, "kind": e.kind}}
            except Exception as e:
                logger.exception(f"Dashboard 组件渲染异常: item={item.id}")
                return {**base, "error": {"message": str(e), "kind": "Internal"}}
        if not base["title"]:
            base["title"] = rendered["visualization"]["name"]
        return {**base, "visualization": rendered}

    async def compose(
        self,
        db: Session,
        dashboard_id: int,
        skip_view_tracking: bool = False,
        auto_refresh: bool = False,
        skip_cache: bool = False,
    ) -> Dict[str, Any]:
        """
        渲染整个 Dashboard

        Args:
            dashboard_id: Dashboard ID
            skip_view_tracking: 不记录浏览
            auto_refresh: 过期数据集自动刷新
            skip_cache: 跳过组合结果缓存

        Returns:
            {dashboard, items, metadata: {renderedAt, itemCount}}
        """
        dashboard = self.get(db, dashboard_id)
        key = cache_key("dashboard", dashboard_id)
        payload = None
        if not skip_cache and not auto_refresh:
            payload = await result_cache.get(key)

        if payload is None:
            items = sorted(dashboard.items, key=lambda i: (i.order, i.id))
            semaphore = asyncio.Semaphore(max(1, settings.DASHBOARD_RENDER_CONCURRENCY))
            rendered = await asyncio.gather(
                *[self._render_item(db, item, semaphore, auto_refresh) for item in items]
            )
            payload = {
                "dashboard": {
                    "id": dashboard.id,
                    "name": dashboard.name,
                    "description": dashboard.description,
                    "layout": dashboard.layout or {},
                    "theme": dashboard.theme,
                    "refreshInterval": dashboard.refresh_interval,
                    "isRealtime": bool(dashboard.is_realtime),
                },
                "items": list(rendered),
                "metadata": {
                    "renderedAt": isoformat(utcnow()),
                    "itemCount": len(rendered),
                },
            }
            # 含失败组件的结果不缓存
            if not any("error" in item for item in rendered):
                await result_cache.set_ex(key, payload, ttl_for("dashboard"))

        if not skip_view_tracking:
            crud.dashboard.record_view(db, dashboard_id=dashboard_id)
        return payload

    # ---- Dashboard 管理 ----

    def create(self, db: Session, *, obj_in: DashboardCreate, user: Optional[str] = None) -> Dashboard:
        dashboard = crud.dashboard.create(db, obj_in=obj_in, created_by=user)
        logger.info(f"创建 Dashboard: id={dashboard.id}, name={dashboard.name}")
        return dashboard

    async def update(self, db: Session, *, dashboard_id: int, obj_in: DashboardUpdate) -> Dashboard:
        dashboard = self.get(db, dashboard_id)
        dashboard = crud.dashboard.update(db, db_obj=dashboard, obj_in=obj_in)
        await self._changed(dashboard_id)
        return dashboard

    async def delete(self, db: Session, *, dashboard_id: int) -> Dashboard:
        self.get(db, dashboard_id)
        removed = crud.dashboard.remove(db, id=dashboard_id)
        await invalidate_dashboards([dashboard_id])
        logger.info(f"删除 Dashboard: id={dashboard_id}")
        return removed

    # ---- 组件管理 ----

    async def add_item(self, db: Session, *, dashboard_id: int, obj_in: DashboardItemCreate) -> DashboardItem:
        self.get(db, dashboard_id)
        self.visualizations.get(db, obj_in.visualization_id)
        item = crud.dashboard_item.create(
            db,
            obj_in={
                "dashboard_id": dashboard_id,
                "visualization_id": obj_in.visualization_id,
                "position": obj_in.position.model_dump() if obj_in.position else dict(DEFAULT_POSITION),
                "title": obj_in.title,
                "order": crud.dashboard_item.next_order(db, dashboard_id=dashboard_id),
                "is_locked": obj_in.is_locked,
                "config": obj_in.config,
            },
        )
        logger.info(
            f"添加 Dashboard 组件: dashboard={dashboard_id}, item={item.id}, "
            f"visualization={obj_in.visualization_id}"
        )
        await self._changed(dashboard_id)
        return item

    async def update_item(
        self,
        db: Session,
        *,
        dashboard_id: int,
        item_id: int,
        obj_in: DashboardItemUpdate,
    ) -> DashboardItem:
        item = self._get_item(db, dashboard_id, item_id)
        update_data = obj_in.model_dump(exclude_unset=True)
        if item.is_locked and update_data.get("position") is not None and update_data.get("is_locked") is not False:
            raise Conflict(f"DashboardItem {item_id} is locked")
        item = crud.dashboard_item.update(db, db_obj=item, obj_in=update_data)
        await self._changed(dashboard_id)
        return item

    async def remove_item(self, db: Session, *, dashboard_id: int, item_id: int) -> DashboardItem:
        """删除组件，剩余组件的 order 重新编号为 0..n-1"""
        item = self._get_item(db, dashboard_id, item_id)
        try:
            db.delete(item)
            db.flush()
            remaining = crud.dashboard_item.get_by_dashboard(db, dashboard_id=dashboard_id)
            for index, other in enumerate(remaining):
                other.order = index
            db.commit()
        except Exception:
            db.rollback()
            raise
        logger.info(f"删除 Dashboard 组件: dashboard={dashboard_id}, item={item_id}")
        await self._changed(dashboard_id)
        return item

    async def update_layout(self, db: Session, *, dashboard_id: int, items: List[LayoutItem]) -> Dashboard:
        """
        批量更新组件位置：全部校验通过后一次提交

        Raises:
            BadInput: 组件不属于该 Dashboard 或 ID 重复
            Conflict: 组件已锁定
        """
        dashboard = self.get(db, dashboard_id)
        by_id = {item.id: item for item in dashboard.items}
        seen = set()
        for entry in items:
            if entry.id in seen:
                raise BadInput(f"DashboardItem {entry.id} appears more than once")
            seen.add(entry.id)
            if entry.id not in by_id:
                raise BadInput(f"DashboardItem {entry.id} does not belong to dashboard {dashboard_id}")
            if by_id[entry.id].is_locked:
                raise Conflict(f"DashboardItem {entry.id} is locked")
        try:
            for entry in items:
                by_id[entry.id].position = entry.position.model_dump()
            db.commit()
            db.refresh(dashboard)
        except Exception:
            db.rollback()
            raise
        logger.info(f"Dashboard 布局已更新: dashboard={dashboard_id}, items={len(items)}")
        await self._changed(dashboard_id)
        return dashboard

    async def reorder_items(self, db: Session, *, dashboard_id: int, item_ids: List[int]) -> Dashboard:
        """按给定 ID 顺序重排组件，必须包含全部组件"""
        dashboard = self.get(db, dashboard_id)
        by_id = {item.id: item for item in dashboard.items}
        if sorted(item_ids) != sorted(by_id):
            raise BadInput("item_ids must list every item of the dashboard exactly once")
        try:
            for index, item_id in enumerate(item_ids):
                by_id[item_id].order = index
            db.commit()
            db.refresh(dashboard)
        except Exception:
            db.rollback()
            raise
        logger.info(f"Dashboard 组件已重排: dashboard={dashboard_id}")
        await self._changed(dashboard_id)
        return dashboard

    def _copy(self, db: Session, source: Dashboard, *, name: str, user: Optional[str], template_id: Optional[int] = None) -> Dashboard:
        layout = dict(source.layout or {})
        if template_id is not None:
            layout["templateId"] = template_id
        try:
            copy = Dashboard(
                name=name,
                description=source.description,
                layout=layout,
                theme=source.theme,
                refresh_interval=source.refresh_interval,
                is_realtime=source.is_realtime,
                is_public=False,
                is_template=False,
                tags=list(source.tags) if source.tags else None,
                created_by=user,
            )
            for item in sorted(source.items, key=lambda i: (i.order, i.id)):
                copy.items.append(DashboardItem(
                    visualization_id=item.visualization_id,
                    position=dict(item.position or DEFAULT_POSITION),
                    title=item.title,
                    order=item.order,
                    is_locked=item.is_locked,
                    config=dict(item.config) if item.config else None,
                ))
            db.add(copy)
            db.commit()
            db.refresh(copy)
        except Exception:
            db.rollback()
            raise
        return copy

    def clone(self, db: Session, *, dashboard_id: int, name: Optional[str] = None, user: Optional[str] = None) -> Dashboard:
        original = self.get(db, dashboard_id)
        cloned = self._copy(db, original, name=name or f"{original.name} (Copy)", user=user)
        logger.info(f"复制 Dashboard: {dashboard_id} -> {cloned.id}, items={len(cloned.items)}")
        return cloned

    def create_from_template(self, db: Session, *, template_id: int, name: str, user: Optional[str] = None) -> Dashboard:
        template = self.get(db, template_id)
        if not template.is_template:
            raise BadInput(f"Dashboard {template_id} is not a template")
        dashboard = self._copy(db, template, name=name, user=user, template_id=template_id)
        logger.info(f"从模板创建 Dashboard: template={template_id} -> {dashboard.id}")
        return dashboard

    def dashboards_for_visualization(self, db: Session, visualization_id: int) -> List[int]:
        return crud.dashboard_item.get_dashboard_ids_for_visualization(
            db, visualization_id=visualization_id
        )

    def statistics(self, db: Session) -> Dict[str, Any]:
        return crud.dashboard.statistics(db)


# 全局实例
dashboard_service = DashboardService()
