"""查询 CRUD操作"""
from typing import List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import update
import logging

from pulse.core.timeutil import utcnow
from pulse.crud.base import CRUDBase
from pulse.models.dataset import Dataset
from pulse.models.query import Query
from pulse.schemas.query import QueryCreate, QueryUpdate

logger = logging.getLogger(__name__)


class CRUDQuery(CRUDBase[Query, QueryCreate, QueryUpdate]):
    """查询 CRUD操作类"""

    def get_multi_filtered(
        self,
        db: Session,
        *,
        data_source_id: Optional[int] = None,
        kind: Optional[str] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[Query]:
        query = db.query(Query)
        if data_source_id is not None:
            query = query.filter(Query.data_source_id == data_source_id)
        if kind:
            query = query.filter(Query.kind == kind)
        return query.order_by(Query.id).offset(skip).limit(limit).all()

    def count_dependent_datasets(self, db: Session, *, query_id: int) -> int:
        return db.query(Dataset).filter(Dataset.query_id == query_id).count()

    def record_execution(self, db: Session, *, query_id: int, duration_ms: float) -> None:
        """更新执行统计

        单条 UPDATE 语句完成读-改-写，并发执行时不会丢失计数

        Args:
            query_id: 查询ID
            duration_ms: 本次耗时(毫秒)
        """
        stmt = (
            update(Query)
            .where(Query.id == query_id)
            .values(
                avg_execution_time=(
                    (Query.avg_execution_time * Query.execution_count + duration_ms)
                    / (Query.execution_count + 1)
                ),
                execution_count=Query.execution_count + 1,
                last_executed_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        try:
            db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise


query = CRUDQuery(Query)
