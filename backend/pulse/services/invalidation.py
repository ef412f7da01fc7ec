"""
缓存失效传播

数据集 → 可视化 → Dashboard 的反向索引均来自数据库：
- visualizations.dataset_id
- dashboard_items.visualization_id

失效后向订阅了受影响 Dashboard 的实时连接推送 dashboard:update。
"""
import logging
from typing import Iterable, List

from sqlalchemy.orm import Session

from pulse import crud
from pulse.services.cache_service import result_cache

logger = logging.getLogger(__name__)


async def notify_dashboards(dashboard_ids: Iterable[int], reason: str) -> None:
    # 延迟导入: realtime_service 依赖 dashboard_service
    from pulse.services.realtime_service import broadcaster

    for dashboard_id in dashboard_ids:
        await broadcaster.notify_update(dashboard_id, reason=reason)


async def invalidate_dashboards(dashboard_ids: Iterable[int]) -> None:
    for dashboard_id in dashboard_ids:
        await result_cache.invalidate_entity("dashboard", dashboard_id)


async def invalidate_visualization(db: Session, visualization_id: int, notify: bool = True) -> List[int]:
    """
    失效可视化及引用它的 Dashboard

    Returns:
        受影响的 Dashboard ID
    """
    await result_cache.invalidate_entity("visualization", visualization_id)
    dashboard_ids = crud.dashboard_item.get_dashboard_ids_for_visualization(
        db, visualization_id=visualization_id
    )
    await invalidate_dashboards(dashboard_ids)
    if notify and dashboard_ids:
        await notify_dashboards(dashboard_ids, reason="visualization")
    return dashboard_ids


async def invalidate_dataset(db: Session, dataset_id: int, notify: bool = True) -> List[int]:
    """
    失效数据集、引用它的可视化以及这些可视化所在的 Dashboard

    Returns:
        受影响的 Dashboard ID
    """
    await result_cache.invalidate_entity("dataset", dataset_id)
    visualization_ids = [
        v.id for v in crud.visualization.get_by_dataset(db, dataset_id=dataset_id)
    ]
    for visualization_id in visualization_ids:
        await result_cache.invalidate_entity("visualization", visualization_id)
    dashboard_ids = crud.dashboard_item.get_dashboard_ids_for_visualizations(
        db, visualization_ids=visualization_ids
    )
    await invalidate_dashboards(dashboard_ids)
    if dashboard_ids:
        logger.debug(f"数据集 {dataset_id} 失效，影响 Dashboard: {dashboard_ids}")
    if notify and dashboard_ids:
        await notify_dashboards(dashboard_ids, reason="dataset")
    return dashboard_ids
