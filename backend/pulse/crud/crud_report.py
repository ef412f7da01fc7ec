"""报表 CRUD操作"""
from sqlalchemy.orm import Session
from sqlalchemy import update

from pulse.core.timeutil import utcnow
from pulse.crud.base import CRUDBase
from pulse.models.report import Report
from pulse.schemas.report import ReportCreate, ReportUpdate


class CRUDReport(CRUDBase[Report, ReportCreate, ReportUpdate]):
    """报表 CRUD操作类"""

    def record_execution(self, db: Session, *, report_id: int, duration_ms: float) -> None:
        stmt = (
            update(Report)
            .where(Report.id == report_id)
            .values(
                avg_execution_time=(
                    (Report.avg_execution_time * Report.execution_count + duration_ms)
                    / (Report.execution_count + 1)
                ),
                execution_count=Report.execution_count + 1,
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


report = CRUDReport(Report)
