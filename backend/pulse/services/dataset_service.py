"""
数据集服务

数据集是一次查询结果的物化：行数据、schema 与统计都保存在数据集记录中。
- 非快照数据集在 expires_at 之后过期，由后台任务定期清理
- 快照 (is_snapshot) 永不过期；transform 产生的快照不能刷新
"""
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy.orm import Session

from pulse import crud
from pulse.core import metrics
from pulse.core.errors import BadInput, NotFound
from pulse.core.timeutil import utcnow
from pulse.models.dataset import Dataset
from pulse.services.invalidation import invalidate_dataset
from pulse.services.parameter_binding import canonical_json
from pulse.services.query_engine import QueryEngine, build_result, query_engine
from pulse.services.transforms import apply_operations

logger = logging.getLogger(__name__)


def result_fields(result: Dict[str, Any]) -> Dict[str, Any]:
    """查询结果 → 数据集字段"""
    rows = result["rows"]
    return {
        "rows": rows,
        "result_schema": result["schema"],
        "row_count": result["rowCount"],
        "column_count": result["columnCount"],
        "byte_size": len(canonical_json(rows).encode("utf-8")),
        "execution_time": float(result.get("executionTime") or 0.0),
    }


def expiry_for(created_at: datetime, ttl_seconds: Optional[int]) -> datetime:
    # TTL 为 0 时仍保证 expires_at > created_at
    return created_at + timedelta(seconds=max(int(ttl_seconds or 0), 1))


def is_expired(dataset: Dataset, now: Optional[datetime] = None) -> bool:
    if dataset.is_snapshot or dataset.expires_at is None:
        return False
    return dataset.expires_at < (now or utcnow())


class DatasetService:
    """数据集服务"""

    def __init__(self, engine: Optional[QueryEngine] = None):
        self._engine = engine

    @property
    def engine(self) -> QueryEngine:
        return self._engine or query_engine

    def _get(self, db: Session, dataset_id: int) -> Dataset:
        dataset = crud.dataset.get(db, dataset_id)
        if not dataset:
            raise NotFound("Dataset", dataset_id)
        return dataset

    async def create(
        self,
        db: Session,
        *,
        query_id: int,
        params: Optional[Dict[str, Any]] = None,
        name: Optional[str] = None,
        is_snapshot: bool = False,
        user: Optional[str] = None,
    ) -> Dataset:
        """
        执行查询并物化为数据集

        Args:
            query_id: 查询ID
            params: 查询参数 (刷新时复用)
            name: 数据集名称
            is_snapshot: 快照不过期
        """
        query = self.engine.get_query(db, query_id)
        result = await self.engine.execute(db, query_id, params, skip_cache=True, user=user)

        now = utcnow()
        data = {
            "name": name or f"{query.name} @ {now.strftime('%Y-%m-%d %H:%M:%S')}",
            "query_id": query.id,
            "parameters": params or {},
            "is_snapshot": is_snapshot,
            "expires_at": None if is_snapshot else expiry_for(now, query.cache_ttl),
            "created_at": now,
            "updated_at": now,
            "created_by": user,
            **result_fields(result),
        }
        dataset = crud.dataset.create(db, obj_in=data)
        logger.info(
            f"创建数据集: id={dataset.id}, query_id={query_id}, rows={dataset.row_count}, "
            f"snapshot={is_snapshot}"
        )
        return dataset

    async def refresh(self, db: Session, dataset_id: int) -> Dataset:
        """使用保存的参数重新执行查询，原地更新数据集"""
        dataset = self._get(db, dataset_id)
        if dataset.source_dataset_id is not None or dataset.query_id is None:
            raise BadInput(f"Dataset {dataset_id} is a derived snapshot and cannot be refreshed")

        try:
            query = self.engine.get_query(db, dataset.query_id)
            result = await self.engine.execute(
                db, dataset.query_id, dataset.parameters or {}, skip_cache=True
            )
        except Exception:
            metrics.dataset_refresh_total.inc(status="failure")
            logger.warning(f"数据集刷新失败: id={dataset_id}")
            raise

        now = utcnow()
        update_data = {
            **result_fields(result),
            "refresh_count": Dataset.refresh_count + 1,
            "last_refreshed_at": now,
            "expires_at": None if dataset.is_snapshot else expiry_for(now, query.cache_ttl),
        }
        dataset = crud.dataset.update(db, db_obj=dataset, obj_in=update_data)
        metrics.dataset_refresh_total.inc(status="success")
        logger.info(f"数据集已刷新: id={dataset_id}, rows={dataset.row_count}")

        await invalidate_dataset(db, dataset_id)
        return dataset

    async def get(self, db: Session, dataset_id: int, auto_refresh: bool = False) -> Dataset:
        """获取数据集；过期且 auto_refresh 时先刷新"""
        dataset = self._get(db, dataset_id)
        if auto_refresh and is_expired(dataset) and dataset.source_dataset_id is None:
            logger.info(f"数据集已过期，自动刷新: id={dataset_id}")
            dataset = await self.refresh(db, dataset_id)
        return dataset

    async def cleanup_expired(self, db: Session) -> int:
        """
        删除过期的非快照数据集 (单条 DELETE，幂等)

        Returns:
            删除数量
        """
        now = utcnow()
        expired_ids = [
            row[0] for row in db.query(Dataset.id).filter(
                Dataset.is_snapshot.is_(False),
                Dataset.expires_at < now,
            ).all()
        ]
        deleted = crud.dataset.delete_expired(db, now=now)
        for dataset_id in expired_ids:
            await invalidate_dataset(db, dataset_id, notify=False)
        if deleted:
            logger.info(f"清理过期数据集: {deleted} 条")
        return deleted

    async def transform(
        self,
        db: Session,
        *,
        dataset_id: int,
        operations: List[Dict[str, Any]],
        name: Optional[str] = None,
        user: Optional[str] = None,
    ) -> Dataset:
        """
        对数据集执行变换，结果保存为新的快照

        Args:
            operations: [{op: filter|project|aggregate|derive, ...}]
        """
        source = self._get(db, dataset_id)
        if not operations:
            raise BadInput("transform requires at least one operation")

        rows = apply_operations(list(source.rows or []), operations)
        result = build_result(rows)
        now = utcnow()
        data = {
            "name": name or f"{source.name or 'Dataset'} (transformed)",
            "query_id": None,
            "source_dataset_id": source.id,
            "operations": operations,
            "parameters": source.parameters or {},
            "is_snapshot": True,
            "expires_at": None,
            "created_at": now,
            "updated_at": now,
            "created_by": user,
            **result_fields(result),
        }
        dataset = crud.dataset.create(db, obj_in=data)
        logger.info(f"数据集变换: source={dataset_id} -> id={dataset.id}, ops={len(operations)}")
        return dataset

    async def delete(self, db: Session, dataset_id: int) -> Dataset:
        """删除数据集；引用它的可视化保留弱引用，渲染时报告 NotFound"""
        self._get(db, dataset_id)
        removed = crud.dataset.remove(db, id=dataset_id)
        await invalidate_dataset(db, dataset_id)
        logger.info(f"删除数据集: id={dataset_id}")
        return removed

    def statistics(self, db: Session) -> Dict[str, Any]:
        return crud.dataset.statistics(db, now=utcnow())


# 全局实例
dataset_service = DatasetService()
