"""
查询参数绑定

按查询声明的 parameterDefs 对调用方传入的参数做：
1. 必填检查 / 默认值
2. 类型转换 (string/number/boolean/date/datetime/select/multi/user/range)
3. 校验规则 (min/max/pattern)
4. 规范化：键按字典序排列，值转为规范形式

规范化后的参数表用于 SQL 命名占位符绑定、REST 模板替换和缓存键计算。
"""
import hashlib
import json
import logging
import math
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from pulse.core.errors import BadParameter

logger = logging.getLogger(__name__)

PARAMETER_NAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")
PARAMETER_TYPES = {
    "string", "number", "boolean", "date", "datetime", "select", "multi", "user", "range"
}

_TRUE_VALUES = {"true", "1", "yes"}
_FALSE_VALUES = {"false", "0", "no"}


def canonical_json(value: Any) -> str:
    """排序键、紧凑分隔符的 JSON，作为参数表的规范形式"""
    return json.dumps(value, sort_keys=True, separators=(",", ":"), default=str, ensure_ascii=False)


def parameter_fingerprint(query_id: Any, bound: Dict[str, Any]) -> str:
    """H(queryId ‖ canonical(boundParams))"""
    payload = f"{query_id}|{canonical_json(bound)}"
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


def _def_get(param_def: Any, *names: str) -> Any:
    """兼容 dict (snake_case / camelCase) 与 pydantic 对象"""
    for name in names:
        if isinstance(param_def, dict):
            if name in param_def:
                return param_def[name]
        elif hasattr(param_def, name):
            return getattr(param_def, name)
    return None


def _is_missing(value: Any) -> bool:
    return value is None or (isinstance(value, str) and value.strip() == "")


def _parse_iso_datetime(name: str, value: Any) -> datetime:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, date):
        parsed = datetime(value.year, value.month, value.day)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith("Z") or text.endswith("z"):
            text = text[:-1] + "+00:00"
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            raise BadParameter(name, "invalid datetime")
    else:
        raise BadParameter(name, "invalid datetime")
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.astimezone(timezone.utc)


def _option_values(options: Optional[Iterable[Any]]) -> List[Any]:
    values = []
    for option in options or []:
        if isinstance(option, dict) and "value" in option:
            values.append(option["value"])
        else:
            values.append(option)
    return values


class ParameterBinder:
    """参数绑定器"""

    def bind(self, param_defs: Optional[List[Any]], values: Optional[Dict[str, Any]]) -> Dict[str, Any]:
        """
        绑定参数

        Args:
            param_defs: 参数定义列表
            values: 调用方传入的参数

        Returns:
            规范化后的参数表（键有序）

        Raises:
            BadParameter: 必填缺失、类型转换失败或校验失败
        """
        values = values or {}
        bound: Dict[str, Any] = {}

        for param_def in param_defs or []:
            name = _def_get(param_def, "name")
            if not name or not PARAMETER_NAME_RE.match(str(name)):
                raise BadParameter(str(name), "invalid parameter name")
            ptype = _def_get(param_def, "type") or "string"
            if ptype not in PARAMETER_TYPES:
                raise BadParameter(name, f"unsupported type '{ptype}'")

            raw = values.get(name)
            if _is_missing(raw):
                default = _def_get(param_def, "default_value", "defaultValue", "default")
                if not _is_missing(default):
                    raw = default
                elif _def_get(param_def, "required"):
                    raise BadParameter(name, "required")
                else:
                    bound[name] = None
                    continue

            value = self.coerce(name, ptype, raw, _def_get(param_def, "options"))
            self.validate(name, ptype, value, _def_get(param_def, "validation"))
            bound[name] = value

        ignored = set(values) - set(bound)
        if ignored:
            logger.debug(f"忽略未声明的参数: {sorted(ignored)}")

        return {k: bound[k] for k in sorted(bound)}

    def coerce(self, name: str, ptype: str, value: Any, options: Optional[List[Any]] = None) -> Any:
        if ptype in ("string", "user"):
            return str(value).strip()

        if ptype == "number":
            return self._to_number(name, value)

        if ptype == "boolean":
            if isinstance(value, bool):
                return value
            if isinstance(value, (int, float)) and value in (0, 1):
                return bool(value)
            text = str(value).strip().lower()
            if text in _TRUE_VALUES:
                return True
            if text in _FALSE_VALUES:
                return False
            raise BadParameter(name, "invalid boolean")

        if ptype == "date":
            if isinstance(value, date) and not isinstance(value, datetime):
                return value.isoformat()
            if isinstance(value, str) and len(value.strip()) == 10:
                try:
                    return date.fromisoformat(value.strip()).isoformat()
                except ValueError:
                    raise BadParameter(name, "invalid date")
            return _parse_iso_datetime(name, value).date().isoformat()

        if ptype == "datetime":
            parsed = _parse_iso_datetime(name, value)
            return parsed.replace(tzinfo=None).isoformat() + "Z"

        if ptype == "select":
            allowed = _option_values(options)
            if allowed and value not in allowed and str(value) not in [str(a) for a in allowed]:
                raise BadParameter(name, "value not in options")
            return value

        if ptype == "multi":
            if isinstance(value, str):
                items = [v.strip() for v in value.split(",") if v.strip()]
            elif isinstance(value, (list, tuple, set)):
                items = list(value)
            else:
                items = [value]
            allowed = _option_values(options)
            if allowed:
                allowed_text = [str(a) for a in allowed]
                for item in items:
                    if item not in allowed and str(item) not in allowed_text:
                        raise BadParameter(name, f"value '{item}' not in options")
            unique = {canonical_json(item): item for item in items}
            return [unique[k] for k in sorted(unique)]

        if ptype == "range":
            if isinstance(value, dict):
                start, end = value.get("start"), value.get("end")
            elif isinstance(value, (list, tuple)) and len(value) == 2:
                start, end = value
            else:
                raise BadParameter(name, "range must have start and end")
            return {"end": self._range_bound(name, end), "start": self._range_bound(name, start)}

        raise BadParameter(name, f"unsupported type '{ptype}'")

    def validate(self, name: str, ptype: str, value: Any, rules: Any) -> None:
        if not rules:
            return
        minimum = _def_get(rules, "min")
        maximum = _def_get(rules, "max")
        pattern = _def_get(rules, "pattern")

        if ptype == "number":
            measured = [value]
        elif ptype == "range":
            measured = [v for v in (value["start"], value["end"]) if isinstance(v, (int, float))]
        elif isinstance(value, str):
            measured = [len(value)]
        else:
            measured = []

        for m in measured:
            if minimum is not None and m < minimum:
                raise BadParameter(name, f"must be >= {minimum}")
            if maximum is not None and m > maximum:
                raise BadParameter(name, f"must be <= {maximum}")

        if pattern:
            candidates = value if isinstance(value, list) else [value]
            for candidate in candidates:
                if not re.search(pattern, str(candidate)):
                    raise BadParameter(name, "does not match pattern")

    def _to_number(self, name: str, value: Any) -> Any:
        if isinstance(value, bool):
            raise BadParameter(name, "invalid number")
        try:
            number = float(value)
        except (TypeError, ValueError):
            raise BadParameter(name, "invalid number")
        if math.isnan(number) or math.isinf(number):
            raise BadParameter(name, "invalid number")
        if number.is_integer():
            return int(number)
        return number

    def _range_bound(self, name: str, value: Any) -> Any:
        if _is_missing(value):
            raise BadParameter(name, "range must have start and end")
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return self._to_number(name, value)
        text = str(value).strip()
        try:
            return self._to_number(name, text)
        except BadParameter:
            pass
        try:
            return _parse_iso_datetime(name, text).replace(tzinfo=None).isoformat() + "Z"
        except BadParameter:
            return text


parameter_binder = ParameterBinder()


_TOKEN_RE = re.compile(r"(?<![:\w]):([A-Za-z_][A-Za-z0-9_]*)")


def _token_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, list):
        return ",".join(_token_text(v) for v in value)
    if isinstance(value, dict):
        return canonical_json(value)
    return str(value)


def substitute_tokens(value: Any, bound: Dict[str, Any], encode: Optional[Any] = None) -> Any:
    """
    深度优先替换模板中的 :name 令牌

    - 字符串恰好为 ``:name`` 时替换为绑定值本身（保留类型）
    - 嵌入在字符串中的令牌按文本替换，encode 用于 URL 编码
    - 未绑定的令牌保持原样

    Args:
        value: 模板 (str / dict / list / 其它)
        bound: 规范化参数表
        encode: 可选的文本编码函数
    """
    if isinstance(value, str):
        whole = _TOKEN_RE.fullmatch(value)
        if whole and whole.group(1) in bound:
            return bound[whole.group(1)]

        def _replace(match: "re.Match") -> str:
            name = match.group(1)
            if name not in bound:
                return match.group(0)
            text = _token_text(bound[name])
            return encode(text) if encode else text

        return _TOKEN_RE.sub(_replace, value)
    if isinstance(value, dict):
        return {k: substitute_tokens(v, bound, encode) for k, v in value.items()}
    if isinstance(value, list):
        return [substitute_tokens(v, bound, encode) for v in value]
    return value
