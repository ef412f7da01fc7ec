"""通用 Schema：统一响应信封"""
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class PulseModel(BaseModel):
    """请求/响应模型基类：字段 snake_case，JSON 使用 camelCase，两种写法都接受"""
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )


class ApiResponse(BaseModel):
    """统一响应信封"""
    success: bool = True
    data: Optional[Any] = None
    error: Optional[str] = None
    message: Optional[str] = None


def ok(data: Any = None, message: Optional[str] = None) -> dict:
    """成功响应"""
    payload: dict = {"success": True, "data": data}
    if message:
        payload["message"] = message
    return payload


def fail(error: str, message: str) -> dict:
    """失败响应"""
    return {"success": False, "error": error, "message": message}


def dump(model_cls, obj: Any) -> dict:
    """ORM 对象 → camelCase 字典"""
    return model_cls.model_validate(obj).model_dump(by_alias=True, mode="json")
