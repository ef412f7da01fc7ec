"""数据集 CRUD操作"""
from datetime import datetime
from typing import Any, Dict, List, Optional
from sqlalchemy.orm import Session
from sqlalchemy import delete, func
import logging

from pulse.crud.base import CRUDBase
from pulse.models.dataset import Dataset
from pulse.schemas.dataset import DatasetCreate

logger = logging.getLogger(__name__)


class CRUDDataset(CRUDBase[Dataset, DatasetCreate, DatasetCreate]):
    """数据集 CRUD操作类"""

    def get_multi_filtered(
        self,
        db: Session,
        *,
        query_id: Optional[int] = None,
        is_snapshot: Optional[bool] = None,
        skip: int = 0,
        limit: int = 100
    ) -> List[Dataset]:
        query = db.query(Dataset)
        if query_id is not None:
            query = query.filter(Dataset.query_id == query_id)
        if is_snapshot is not None:
            query = query.filter(Dataset.is_snapshot == is_snapshot)
        return query.order_by(Dataset.id.desc()).offset(skip).limit(limit).all()

    def delete_expired(self, db: Session, *, now: datetime) -> int:
        """删除已过期的非快照数据集

        单条 DELETE 语句，重复或并发调用都是安全的

        Returns:
            删除的行数
        """
        stmt = (
            delete(Dataset)
            .where(
                Dataset.is_snapshot.is_(False),
                Dataset.expires_at.is_not(None),
                Dataset.expires_at < now,
            )
            .execution_options(synchronize_session=False)
        )
        try:
            result = db.execute(stmt)
            db.commit()
        except Exception:
            db.rollback()
            raise
        return result.rowcount or 0

    def statistics(self, db: Session, *, now: datetime) -> Dict[str, Any]:
        total, total_bytes, total_rows = db.query(
            func.count(Dataset.id),
            func.coalesce(func.sum(Dataset.byte_size), 0),
            func.coalesce(func.sum(Dataset.row_count), 0),
        ).one()
        snapshots = db.query(Dataset).filter(Dataset.is_snapshot.is_(True)).count()
        expired = db.query(Dataset).filter(
            Dataset.is_snapshot.is_(False),
            Dataset.expires_at < now,
        ).count()
        return {
            "total": int(total),
            "snapshots": snapshots,
            "expired": expired,
            "totalBytes": int(total_bytes),
            "totalRows": int(total_rows),
        }


dataset = CRUDDataset(Dataset)
