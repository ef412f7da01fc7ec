import logging

from sqlalchemy import text

from pulse.db import base  # noqa: F401  注册所有模型
from pulse.db.base_class import Base
from pulse.db.session import engine

logger = logging.getLogger(__name__)


def init_db(bind=None) -> None:
    # Create tables
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Tables created")


def check_db_connection(bind=None) -> bool:
    """元数据库连通性检查 (SELECT 1)"""
    try:
        with (bind or engine).connect() as conn:
            conn.execute(text("SELECT 1"))
        return True
    except Exception as e:
        logger.warning(f"数据库连接检查失败: {e}")
        return False
