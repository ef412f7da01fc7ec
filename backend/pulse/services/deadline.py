"""
外部调用超时控制

同步驱动 (SQLAlchemy 数据源引擎、requests、smtplib) 放到默认线程池执行，
由 asyncio.wait_for 施加截止时间；超时统一转换为 SourceTimeout。
"""
import asyncio
import functools
import logging
from typing import Any, Callable, Optional

from pulse.core.errors import SourceTimeout

logger = logging.getLogger(__name__)


async def run_with_deadline(
    func: Callable[..., Any],
    *args: Any,
    deadline: Optional[float],
    operation: str = "operation",
    **kwargs: Any,
) -> Any:
    """
    在线程池中执行同步函数并施加超时

    Args:
        func: 同步函数
        deadline: 超时秒数，None 表示不限制
        operation: 日志/错误中的操作名称

    Raises:
        SourceTimeout: 超过截止时间
    """
    loop = asyncio.get_running_loop()
    call = loop.run_in_executor(None, functools.partial(func, *args, **kwargs))
    try:
        if deadline is None:
            return await call
        return await asyncio.wait_for(call, timeout=deadline)
    except asyncio.TimeoutError:
        logger.warning(f"{operation} 超时 ({deadline}s)")
        raise SourceTimeout(f"{operation} exceeded deadline of {deadline}s")
