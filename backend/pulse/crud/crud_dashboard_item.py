"""Dashboard Item CRUD操作"""
from typing import List
from sqlalchemy.orm import Session
from sqlalchemy import func

from pulse.crud.base import CRUDBase
from pulse.models.dashboard_item import DashboardItem
from pulse.schemas.dashboard import DashboardItemCreate, DashboardItemUpdate


class CRUDDashboardItem(CRUDBase[DashboardItem, DashboardItemCreate, DashboardItemUpdate]):
    """Dashboard Item CRUD操作类"""

    def get_by_dashboard(self, db: Session, *, dashboard_id: int) -> List[DashboardItem]:
        """获取Dashboard的所有组件 (按 order 排序)

        Args:
            dashboard_id: Dashboard ID

        Returns:
            组件列表
        """
        return db.query(DashboardItem).filter(
            DashboardItem.dashboard_id == dashboard_id
        ).order_by(DashboardItem.order, DashboardItem.id).all()

    def next_order(self, db: Session, *, dashboard_id: int) -> int:
        current = db.query(func.max(DashboardItem.order)).filter(
            DashboardItem.dashboard_id == dashboard_id
        ).scalar()
        return 0 if current is None else current + 1

    def get_dashboard_ids_for_visualization(
        self,
        db: Session,
        *,
        visualization_id: int
    ) -> List[int]:
        """反向索引: 引用该可视化的所有 Dashboard ID"""
        rows = db.query(DashboardItem.dashboard_id).filter(
            DashboardItem.visualization_id == visualization_id
        ).distinct().all()
        return sorted(r[0] for r in rows)

    def get_dashboard_ids_for_visualizations(
        self,
        db: Session,
        *,
        visualization_ids: List[int]
    ) -> List[int]:
        if not visualization_ids:
            return []
        rows = db.query(DashboardItem.dashboard_id).filter(
            DashboardItem.visualization_id.in_(visualization_ids)
        ).distinct().all()
        return sorted(r[0] for r in rows)

    def delete_by_visualization(self, db: Session, *, visualization_id: int) -> int:
        """删除引用该可视化的组件 (不提交事务)"""
        return db.query(DashboardItem).filter(
            DashboardItem.visualization_id == visualization_id
        ).delete(synchronize_session=False)


dashboard_item = CRUDDashboardItem(DashboardItem)
