"""数据源 CRUD操作"""
from typing import List, Optional
from sqlalchemy.orm import Session
import logging

from pulse.core.timeutil import utcnow
from pulse.crud.base import CRUDBase
from pulse.models.data_source import DataSource
from pulse.models.query import Query
from pulse.schemas.data_source import DataSourceCreate, DataSourceUpdate

logger = logging.getLogger(__name__)


class CRUDDataSource(CRUDBase[DataSource, DataSourceCreate, DataSourceUpdate]):
    """数据源 CRUD操作类"""

    def get_active(self, db: Session, id: int) -> Optional[DataSource]:
        """获取未删除的数据源"""
        return db.query(DataSource).filter(
            DataSource.id == id,
            DataSource.deleted_at.is_(None)
        ).first()

    def get_multi_active(
        self,
        db: Session,
        *,
        kind: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[DataSource]:
        query = db.query(DataSource).filter(DataSource.deleted_at.is_(None))
        if kind:
            query = query.filter(DataSource.kind == kind)
        return query.order_by(DataSource.id).offset(skip).limit(limit).all()

    def count_dependent_queries(self, db: Session, *, data_source_id: int) -> int:
        return db.query(Query).filter(Query.data_source_id == data_source_id).count()

    def soft_delete(self, db: Session, *, db_obj: DataSource) -> DataSource:
        try:
            db_obj.deleted_at = utcnow()
            db_obj.is_active = False
            db.commit()
            db.refresh(db_obj)
        except Exception:
            db.rollback()
            raise
        return db_obj

    def update_probe(
        self,
        db: Session,
        *,
        db_obj: DataSource,
        status: str
    ) -> DataSource:
        """记录探测结果"""
        try:
            db_obj.last_probe_at = utcnow()
            db_obj.probe_status = status
            db.commit()
            db.refresh(db_obj)
        except Exception:
            db.rollback()
            raise
        return db_obj


data_source = CRUDDataSource(DataSource)
