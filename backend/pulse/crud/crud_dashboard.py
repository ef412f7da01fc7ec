"""Dashboard CRUD操作"""
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session, selectinload
from sqlalchemy import func, update
import logging

from pulse.core.timeutil import utcnow
from pulse.crud.base import CRUDBase
from pulse.models.dashboard import Dashboard
from pulse.models.dashboard_item import DashboardItem
from pulse.schemas.dashboard import DashboardCreate, DashboardUpdate

logger = logging.getLogger(__name__)


class CRUDDashboard(CRUDBase[Dashboard, DashboardCreate, DashboardUpdate]):
    """Dashboard CRUD操作类"""

    def get_with_items(self, db: Session, *, dashboard_id: int) -> Optional[Dashboard]:
        """获取Dashboard并预加载组件，避免 N+1 查询"""
        return db.query(Dashboard).options(
            selectinload(Dashboard.items)
        ).filter(Dashboard.id == dashboard_id).first()

    def get_multi_filtered(
        self,
        db: Session,
        *,
        is_template: Optional[bool] = None,
        search: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[Dashboard]:
        query = db.query(Dashboard)
        if is_template is not None:
            query = query.filter(Dashboard.is_template == is_template)
        if search:
            # 参数化查询防止 SQL 注入
            query = query.filter(Dashboard.name.ilike(f"%{search}%"))
        return query.order_by(Dashboard.id).offset(skip).limit(limit).all()

    def record_view(self, db: Session, *, dashboard_id: int) -> None:
        """浏览计数 +1 并记录最近浏览时间 (单条 UPDATE)"""
        stmt = (
            update(Dashboard)
            .where(Dashboard.id == dashboard_id)
            .values(view_count=Dashboard.view_count + 1, last_viewed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        try:
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise

    def statistics(self, db: Session) -> Dict[str, Any]:
        total, total_views = db.query(
            func.count(Dashboard.id),
            func.coalesce(func.sum(Dashboard.view_count), 0),
        ).one()
        realtime = db.query(Dashboard).filter(Dashboard.is_realtime.is_(True)).count()
        templates = db.query(Dashboard).filter(Dashboard.is_template.is_(True)).count()
        items = db.query(DashboardItem).count()
        most_viewed = db.query(Dashboard).order_by(
            Dashboard.view_count.desc()
        ).limit(5).all()
        return {
            "total": int(total),
            "realtime": realtime,
            "templates": templates,
            "totalItems": items,
            "totalViews": int(total_views),
            "mostViewed": [
                {"id": d.id, "name": d.name, "viewCount": d.view_count} for d in most_viewed
            ],
        }


dashboard = CRUDDashboard(Dashboard)
