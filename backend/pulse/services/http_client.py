"""
出站 HTTP 调用 (requests)

REST 数据源、内部服务探测、Webhook 投递、服务注册中心共用。
函数本身是同步的，由 run_with_deadline 在线程池中执行。
"""
import logging
from typing import Any, Dict, Optional

import requests

from pulse.core.errors import SourceTimeout, SourceUnavailable

logger = logging.getLogger(__name__)


def http_request(
    method: str,
    url: str,
    *,
    headers: Optional[Dict[str, str]] = None,
    params: Optional[Dict[str, Any]] = None,
    json_body: Any = None,
    data: Any = None,
    auth: Optional[Any] = None,
    timeout: Optional[float] = None,
) -> requests.Response:
    """
    发送 HTTP 请求

    Raises:
        SourceTimeout: 请求超时
        SourceUnavailable: 连接失败等网络错误
    """
    try:
        return requests.request(
            method.upper(),
            url,
            headers=headers,
            params=params,
            json=json_body,
            data=data,
            auth=auth,
            timeout=timeout,
        )
    except requests.Timeout as e:
        raise SourceTimeout(f"HTTP {method.upper()} {url} timed out: {e}")
    except requests.RequestException as e:
        raise SourceUnavailable(f"HTTP {method.upper()} {url} failed: {e}")
