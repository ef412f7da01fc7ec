"""Pulse 错误类型

所有业务错误都继承自 PulseError，每个子类携带对外暴露的错误类型名
(kind) 和对应的 HTTP 状态码。HTTP 层的异常处理器统一渲染为
``{"success": false, "error": kind, "message": message}``。
"""
from typing import Any, Dict, Optional


class PulseError(Exception):
    """Base exception for all Pulse errors."""

    kind = "Internal"
    status_code = 500

    def __init__(self, message: str = "", details: Optional[Dict[str, Any]] = None) -> None:
        self.message = message or self.kind
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"error": self.kind, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class BadInput(PulseError):
    """Raised when a request or entity definition fails validation."""

    kind = "BadInput"
    status_code = 400


class NotFound(PulseError):
    """Raised when an entity cannot be found."""

    kind = "NotFound"
    status_code = 404

    def __init__(self, entity: str, entity_id: Any = None) -> None:
        self.entity = entity
        self.entity_id = entity_id
        message = f"{entity} not found" if entity_id is None else f"{entity} {entity_id} not found"
        super().__init__(message, {"entity": entity, "id": entity_id})


class Conflict(PulseError):
    """Raised when an operation conflicts with the current state."""

    kind = "Conflict"
    status_code = 409


class BadParameter(PulseError):
    """Raised when parameter binding fails."""

    kind = "BadParameter"
    status_code = 400

    def __init__(self, name: str, reason: str) -> None:
        self.name = name
        self.reason = reason
        super().__init__(f"Parameter '{name}': {reason}", {"name": name, "reason": reason})


class SourceUnavailable(PulseError):
    """Raised when a data source cannot be reached."""

    kind = "SourceUnavailable"
    status_code = 503


class SourceTimeout(PulseError):
    """Raised when a call to a data source exceeds its deadline."""

    kind = "SourceTimeout"
    status_code = 503


class SourceRejected(PulseError):
    """Raised when a data source rejects the request."""

    kind = "SourceRejected"
    status_code = 500

    def __init__(self, message: str, detail: Any = None) -> None:
        self.detail = detail
        super().__init__(message, {"detail": detail} if detail is not None else None)


class DecodeError(PulseError):
    """Raised when a data source response cannot be decoded."""

    kind = "DecodeError"
    status_code = 500


class CacheUnavailable(PulseError):
    """Cache transport failure; only used internally and never surfaced."""

    kind = "CacheUnavailable"
    status_code = 500


class Internal(PulseError):
    kind = "Internal"
    status_code = 500


__all__ = [
    "PulseError",
    "BadInput",
    "NotFound",
    "Conflict",
    "BadParameter",
    "SourceUnavailable",
    "SourceTimeout",
    "SourceRejected",
    "DecodeError",
    "CacheUnavailable",
    "Internal",
]
