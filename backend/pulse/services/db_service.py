"""
SQL 数据源访问

按数据源配置创建短生命周期的 SQLAlchemy 引擎，执行只读查询。
用户参数一律通过命名占位符 (:name) 交给驱动绑定，不拼接进 SQL 文本。
这里的函数都是同步的，由调用方放到线程池中执行并施加超时。
"""
import logging
import re
import urllib.parse
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy
import sqlparse
from sqlalchemy import bindparam, create_engine, inspect, text
from sqlalchemy.pool import NullPool

from pulse.core.errors import BadInput, SourceRejected, SourceUnavailable

logger = logging.getLogger(__name__)

# 匹配 :name 占位符，排除 PostgreSQL 的 ::type 转换
_PLACEHOLDER_RE = re.compile(r"(?<![:\w]):([A-Za-z_][A-Za-z0-9_]*)")


@dataclass
class DialectConfig:
    """数据库方言配置"""
    name: str
    driver: str
    default_port: Optional[int] = None
    # 会话级语句超时 (毫秒)
    statement_timeout_sql: Optional[str] = None


_DIALECT_MAP: Dict[str, DialectConfig] = {
    "mysql": DialectConfig(
        name="mysql",
        driver="mysql+pymysql",
        default_port=3306,
        statement_timeout_sql="SET SESSION MAX_EXECUTION_TIME = :ms",
    ),
    "postgresql": DialectConfig(
        name="postgresql",
        driver="postgresql+psycopg",
        default_port=5432,
        statement_timeout_sql="SET statement_timeout = :ms",
    ),
    "sqlite": DialectConfig(name="sqlite", driver="sqlite"),
}


def get_dialect(config: Dict[str, Any]) -> DialectConfig:
    dialect = str(config.get("dialect") or config.get("dbType") or "mysql").lower()
    if dialect == "postgres":
        dialect = "postgresql"
    if dialect not in _DIALECT_MAP:
        raise BadInput(f"Unsupported database dialect: {dialect}")
    return _DIALECT_MAP[dialect]


def build_source_url(config: Dict[str, Any]) -> str:
    """
    由数据源配置生成 SQLAlchemy 连接串

    Args:
        config: {dialect, host, port, database, username, password}
    """
    dialect = get_dialect(config)
    database = config.get("database") or config.get("databaseName")
    if not database:
        raise BadInput("SQL data source requires 'database'")

    if dialect.name == "sqlite":
        # SQLite: database 为文件路径或 :memory:
        return f"sqlite:///{database}"

    host = config.get("host")
    if not host:
        raise BadInput("SQL data source requires 'host'")
    port = config.get("port") or dialect.default_port
    username = urllib.parse.quote_plus(str(config.get("username") or ""))
    password = urllib.parse.quote_plus(str(config.get("password") or ""))
    credentials = f"{username}:{password}@" if username else ""
    return f"{dialect.driver}://{credentials}{host}:{port}/{database}"


def get_source_engine(config: Dict[str, Any], timeout_seconds: Optional[float] = None):
    """
    Create a short-lived SQLAlchemy engine for a SQL data source.
    """
    dialect = get_dialect(config)
    url = build_source_url(config)
    connect_args: Dict[str, Any] = {}
    if timeout_seconds is not None:
        timeout = max(1, int(timeout_seconds))
        if dialect.name == "mysql":
            connect_args = {
                "connect_timeout": min(timeout, 60),
                "read_timeout": timeout,
                "write_timeout": timeout,
            }
        elif dialect.name == "postgresql":
            connect_args = {"connect_timeout": min(timeout, 60)}
        elif dialect.name == "sqlite":
            connect_args = {"timeout": timeout}
    if dialect.name == "sqlite":
        connect_args["check_same_thread"] = False
    try:
        return create_engine(url, poolclass=NullPool, connect_args=connect_args)
    except (sqlalchemy.exc.NoSuchModuleError, ImportError) as e:
        raise SourceUnavailable(f"Database driver for '{dialect.name}' not available: {e}")


def validate_select(sql: str) -> None:
    """
    只允许单条只读 SELECT 语句

    Raises:
        BadInput: 为空、多条语句或非 SELECT
    """
    if not sql or not sql.strip():
        raise BadInput("SQL definition is empty")
    statements = [s for s in sqlparse.parse(sql) if s.token_first(skip_cm=True) is not None]
    if len(statements) != 1:
        raise BadInput("SQL definition must contain exactly one statement")
    stmt = statements[0]
    stmt_type = stmt.get_type().upper()
    if stmt_type == "SELECT":
        return
    # WITH ... SELECT 在 sqlparse 中的类型取决于 CTE 后的首个 DML 关键字
    first = stmt.token_first(skip_cm=True)
    if first is not None and first.normalized.upper() == "WITH" and stmt_type in ("SELECT", "UNKNOWN"):
        return
    raise BadInput("SQL definition must be a read-only SELECT statement")


def placeholder_names(sql: str) -> List[str]:
    """SQL 文本中出现的命名占位符"""
    return list(dict.fromkeys(_PLACEHOLDER_RE.findall(sql)))


def prepare_statement(sql: str, bound: Dict[str, Any]) -> Tuple[Any, Dict[str, Any]]:
    """
    构造带绑定参数的语句

    - list 值 (multi) 使用 expanding 占位符，生成 IN (...) 绑定
    - range 值展开为 name_start / name_end
    - 只传递 SQL 中实际出现的参数

    Returns:
        (TextClause, 参数字典)
    """
    flat: Dict[str, Any] = {}
    for name, value in bound.items():
        if isinstance(value, dict) and set(value) == {"start", "end"}:
            flat[f"{name}_start"] = value["start"]
            flat[f"{name}_end"] = value["end"]
        flat[name] = value

    names = placeholder_names(sql)
    missing = [n for n in names if n not in flat]
    if missing:
        raise BadInput(f"SQL references undeclared parameters: {', '.join(missing)}")

    stmt = text(sql)
    expanding = [bindparam(n, expanding=True) for n in names if isinstance(flat[n], list)]
    if expanding:
        stmt = stmt.bindparams(*expanding)
    return stmt, {n: flat[n] for n in names}


def _classify_db_error(error: Exception) -> Exception:
    if isinstance(error, (SourceUnavailable, SourceRejected, BadInput)):
        return error
    if isinstance(error, (sqlalchemy.exc.OperationalError, sqlalchemy.exc.InterfaceError)):
        return SourceUnavailable(f"Database unavailable: {error.orig if hasattr(error, 'orig') else error}")
    if isinstance(error, sqlalchemy.exc.DBAPIError):
        return SourceRejected("Query rejected by database", detail=str(getattr(error, "orig", error)))
    if isinstance(error, sqlalchemy.exc.ArgumentError):
        return BadInput(str(error))
    return SourceUnavailable(f"Database error: {error}")


def test_connection(config: Dict[str, Any], timeout_seconds: Optional[float] = None) -> Dict[str, Any]:
    """
    Test if a SQL data source is reachable (SELECT 1).

    Returns:
        {"dialect": ..., "serverVersion": ...}
    """
    engine = get_source_engine(config, timeout_seconds)
    try:
        with engine.connect() as conn:
            conn.execute(text("SELECT 1"))
            info = engine.dialect.server_version_info
        version = ".".join(str(p) for p in info) if info else None
        return {"dialect": engine.dialect.name, "serverVersion": version}
    except Exception as e:
        raise _classify_db_error(e)
    finally:
        engine.dispose()


def execute_query(
    config: Dict[str, Any],
    sql: str,
    bound: Dict[str, Any],
    timeout_seconds: Optional[float] = None,
) -> Tuple[List[str], List[Dict[str, Any]]]:
    """
    Execute a read-only SQL query on the data source.

    Returns:
        (列名列表, 行列表)
    """
    validate_select(sql)
    stmt, params = prepare_statement(sql, bound)
    dialect = get_dialect(config)
    engine = get_source_engine(config, timeout_seconds)
    try:
        with engine.connect() as conn:
            if timeout_seconds is not None and dialect.statement_timeout_sql:
                try:
                    conn.execute(
                        text(dialect.statement_timeout_sql),
                        {"ms": int(timeout_seconds * 1000)},
                    )
                except sqlalchemy.exc.DBAPIError as e:
                    logger.debug(f"设置语句超时失败: {e}")
                    conn.rollback()
            result = conn.execute(stmt, params)
            columns = list(result.keys())
            rows = [dict(zip(columns, row)) for row in result.fetchall()]
        return columns, rows
    except Exception as e:
        raise _classify_db_error(e)
    finally:
        engine.dispose()


def inspect_schema(config: Dict[str, Any], timeout_seconds: Optional[float] = None) -> Dict[str, Any]:
    """读取表和列信息，作为数据源元数据快照"""
    engine = get_source_engine(config, timeout_seconds)
    try:
        inspector = inspect(engine)
        tables = []
        for table_name in inspector.get_table_names():
            columns = [
                {
                    "name": col["name"],
                    "type": str(col["type"]),
                    "nullable": bool(col.get("nullable", True)),
                }
                for col in inspector.get_columns(table_name)
            ]
            tables.append({"name": table_name, "columns": columns})
        return {"dialect": engine.dialect.name, "tables": tables}
    except Exception as e:
        raise _classify_db_error(e)
    finally:
        engine.dispose()
