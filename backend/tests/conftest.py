import os
import sqlite3
import sys
from pathlib import Path

import pytest

# 测试环境: 内存元数据库、进程内缓存、不启动定时任务
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["AUTH_REQUIRED"] = "false"
os.environ["REDIS_ENABLED"] = "false"
os.environ["SCHEDULER_ENABLED"] = "false"
os.environ["SERVICE_REGISTRY_URL"] = ""

backend_dir = Path(__file__).resolve().parents[1]
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from pulse import crud, schemas  # noqa: E402
from pulse.db.base_class import Base  # noqa: E402
from pulse.db.init_db import init_db  # noqa: E402
from pulse.db.session import SessionLocal, engine  # noqa: E402
from pulse.services.cache_service import MemoryBackend, result_cache  # noqa: E402


@pytest.fixture(autouse=True)
def _fresh_database():
    """每个测试使用空的元数据库和空缓存"""
    init_db()
    result_cache.use_backend(MemoryBackend(1000))
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client():
    from fastapi.testclient import TestClient

    from pulse_server import app

    # 不进入 lifespan: 不连接 Redis、不启动后台任务
    return TestClient(app)


@pytest.fixture
def sales_db(tmp_path):
    """被查询的业务库: sales(id, category, amount)"""
    path = tmp_path / "sales.db"
    conn = sqlite3.connect(str(path))
    conn.execute("CREATE TABLE sales (id INTEGER PRIMARY KEY, category TEXT, amount INTEGER)")
    conn.executemany(
        "INSERT INTO sales (id, category, amount) VALUES (?, ?, ?)",
        [(1, "A", 10), (2, "B", 7), (3, "A", 5)],
    )
    conn.commit()
    conn.close()
    return str(path)


@pytest.fixture
def sales_source(db, sales_db):
    return crud.data_source.create(
        db,
        obj_in=schemas.DataSourceCreate(
            name="sales",
            kind="sql",
            config={"dialect": "sqlite", "database": sales_db},
        ),
    )


@pytest.fixture
def sales_query(db, sales_source):
    return crud.query.create(
        db,
        obj_in=schemas.QueryCreate(
            name="all sales",
            data_source_id=sales_source.id,
            kind="sql",
            definition={"sql": "SELECT category, amount FROM sales ORDER BY id"},
            cache_ttl=60,
        ),
    )
