"""
请求追踪模块

为 HTTP 请求、定时任务执行和实时推送生成 trace_id，并通过 contextvars
在协程之间传递，日志格式中自动带上 trace_id。

使用方式：
    from pulse.core.tracing import TraceContext

    with TraceContext(prefix="sched") as ctx:
        logger.info(f"[{ctx.trace_id}] 开始执行定时任务")
"""
import uuid
import time
import logging
import contextvars
from typing import Optional, Dict, Any
from dataclasses import dataclass, field

logger = logging.getLogger(__name__)


_trace_id_var: contextvars.ContextVar[Optional[str]] = contextvars.ContextVar(
    'pulse_trace_id', default=None
)


def generate_trace_id(prefix: str = "req") -> str:
    """
    生成唯一的追踪 ID

    格式: {prefix}-{timestamp_hex}-{random_hex}
    """
    timestamp_hex = hex(int(time.time() * 1000))[-8:]
    random_hex = uuid.uuid4().hex[:8]
    return f"{prefix}-{timestamp_hex}-{random_hex}"


def get_trace_id() -> Optional[str]:
    return _trace_id_var.get()


def set_trace_id(trace_id: str) -> contextvars.Token:
    return _trace_id_var.set(trace_id)


@dataclass
class TraceContext:
    """
    追踪上下文

    进入时设置当前 trace_id，退出时恢复并记录耗时。
    """
    prefix: str = "req"
    trace_id: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    start_time: float = field(default_factory=time.time)
    duration_ms: Optional[float] = None

    _token: Optional[contextvars.Token] = field(default=None, repr=False)

    def __post_init__(self):
        if not self.trace_id:
            self.trace_id = generate_trace_id(self.prefix)

    def __enter__(self) -> 'TraceContext':
        self._token = _trace_id_var.set(self.trace_id)
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.duration_ms = (time.time() - self.start_time) * 1000
        if self._token is not None:
            _trace_id_var.reset(self._token)

        if exc_type is not None:
            logger.warning(
                f"[{self.trace_id}] 异常完成: duration={self.duration_ms:.0f}ms, "
                f"error={exc_type.__name__}"
            )
        else:
            logger.debug(f"[{self.trace_id}] 完成: duration={self.duration_ms:.0f}ms")
        return False


class TraceLogFilter(logging.Filter):
    """日志过滤器：自动添加 trace_id"""

    def filter(self, record: logging.LogRecord) -> bool:
        record.trace_id = get_trace_id() or "-"
        return True


def setup_trace_logging(level: str = "INFO") -> None:
    """
    初始化根日志器格式，带上 trace_id

    Args:
        level: 日志级别名称
    """
    logging.basicConfig(level=getattr(logging, level.upper(), logging.INFO))
    root = logging.getLogger()
    trace_filter = TraceLogFilter()
    formatter = logging.Formatter(
        '[%(asctime)s] [%(trace_id)s] %(levelname)s %(name)s: %(message)s'
    )
    for handler in root.handlers:
        handler.addFilter(trace_filter)
        handler.setFormatter(formatter)


__all__ = [
    "TraceContext",
    "TraceLogFilter",
    "generate_trace_id",
    "get_trace_id",
    "set_trace_id",
    "setup_trace_logging",
]
