"""可视化 CRUD操作"""
from typing import List, Optional
from sqlalchemy.orm import Session

from pulse.crud.base import CRUDBase
from pulse.models.visualization import Visualization
from pulse.schemas.visualization import VisualizationCreate, VisualizationUpdate


class CRUDVisualization(CRUDBase[Visualization, VisualizationCreate, VisualizationUpdate]):
    """可视化 CRUD操作类"""

    def get_by_dataset(self, db: Session, *, dataset_id: int) -> List[Visualization]:
        """反向索引: 引用该数据集的所有可视化"""
        return db.query(Visualization).filter(
            Visualization.dataset_id == dataset_id
        ).order_by(Visualization.id).all()

    def get_multi_filtered(
        self,
        db: Session,
        *,
        dataset_id: Optional[int] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[Visualization]:
        query = db.query(Visualization)
        if dataset_id is not None:
            query = query.filter(Visualization.dataset_id == dataset_id)
        return query.order_by(Visualization.id).offset(skip).limit(limit).all()


visualization = CRUDVisualization(Visualization)
