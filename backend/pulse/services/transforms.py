"""
行数据变换

可视化渲染、数据集 transform 和报表过滤共用的纯函数：
过滤 (filter)、分组聚合 (aggregate)、投影 (project)、派生列 (derive)。
输入行不会被修改。
"""
import logging
from typing import Any, Dict, Iterable, List, Optional

from pulse.core.errors import BadInput
from pulse.services.expression import ExpressionParser
from pulse.services.parameter_binding import canonical_json

logger = logging.getLogger(__name__)

FILTER_OPERATORS = {
    "equals",
    "not_equals",
    "contains",
    "not_contains",
    "greater_than",
    "less_than",
    "greater_than_or_equal",
    "less_than_or_equal",
    "between",
    "in",
    "not_in",
    "is_null",
    "is_not_null",
}

AGGREGATE_FUNCTIONS = ("sum", "avg", "min", "max", "count", "count_distinct")

GROUP_FIELD_KEYS = ("x", "category", "dimension")


def _get(spec: Dict[str, Any], *names: str, default: Any = None) -> Any:
    for name in names:
        if name in spec:
            return spec[name]
    return default


def _as_number(value: Any) -> Optional[float]:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip())
        except ValueError:
            return None
    return None


def _fold(value: Any, case_sensitive: bool) -> Any:
    if isinstance(value, str) and not case_sensitive:
        return value.casefold()
    return value


def _equal(left: Any, right: Any, case_sensitive: bool) -> bool:
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, str) and isinstance(right, str):
        return _fold(left, case_sensitive) == _fold(right, case_sensitive)
    if isinstance(left, bool) or isinstance(right, bool):
        return left == right
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        return ln == rn
    return left == right


def _order(left: Any, right: Any) -> Optional[int]:
    """比较大小，不可比较时返回 None"""
    if left is None or right is None:
        return None
    ln, rn = _as_number(left), _as_number(right)
    if ln is not None and rn is not None:
        return (ln > rn) - (ln < rn)
    if isinstance(left, str) and isinstance(right, str):
        return (left > right) - (left < right)
    return None


def _range_bounds(value: Any):
    if isinstance(value, dict):
        return _get(value, "start", "min", "from"), _get(value, "end", "max", "to")
    if isinstance(value, (list, tuple)) and len(value) == 2:
        return value[0], value[1]
    raise BadInput("between filter requires a two-element value")


def match_filter(row: Dict[str, Any], spec: Dict[str, Any]) -> bool:
    """单个过滤条件；未知运算符视为通过"""
    field = _get(spec, "field")
    operator = _get(spec, "operator", "op")
    expected = _get(spec, "value")
    case_sensitive = bool(_get(spec, "caseSensitive", "case_sensitive", default=False))
    value = row.get(field) if isinstance(row, dict) else None

    if operator == "equals":
        return _equal(value, expected, case_sensitive)
    if operator == "not_equals":
        return not _equal(value, expected, case_sensitive)
    if operator in ("contains", "not_contains"):
        if value is None:
            found = False
        else:
            found = str(_fold(str(expected), case_sensitive)) in str(_fold(str(value), case_sensitive))
        return found if operator == "contains" else not found
    if operator in ("greater_than", "less_than", "greater_than_or_equal", "less_than_or_equal"):
        cmp = _order(value, expected)
        if cmp is None:
            return False
        return {
            "greater_than": cmp > 0,
            "less_than": cmp < 0,
            "greater_than_or_equal": cmp >= 0,
            "less_than_or_equal": cmp <= 0,
        }[operator]
    if operator == "between":
        low, high = _range_bounds(expected)
        lower, upper = _order(value, low), _order(value, high)
        return lower is not None and upper is not None and lower >= 0 and upper <= 0
    if operator in ("in", "not_in"):
        candidates = expected if isinstance(expected, (list, tuple)) else [expected]
        found = any(_equal(value, c, case_sensitive) for c in candidates)
        return found if operator == "in" else not found
    if operator == "is_null":
        return value is None
    if operator == "is_not_null":
        return value is not None
    return True


def apply_filters(rows: List[Dict[str, Any]], filters: Optional[Iterable[Dict[str, Any]]]) -> List[Dict[str, Any]]:
    """
    过滤行，多个条件按 AND 组合

    Args:
        rows: 输入行
        filters: [{field, operator, value, caseSensitive}]
    """
    specs = list(filters or [])
    if not specs:
        return list(rows)
    for spec in specs:
        operator = _get(spec, "operator", "op")
        if operator not in FILTER_OPERATORS:
            logger.warning(f"未知的过滤运算符 '{operator}'，已忽略")
    return [row for row in rows if all(match_filter(row, spec) for spec in specs)]


def group_field(mapping: Optional[Dict[str, Any]], explicit: Optional[str] = None) -> Optional[str]:
    """分组字段：显式 groupBy，否则取映射中第一个非空的 x / category / dimension"""
    if explicit:
        return explicit
    mapping = mapping or {}
    for key in GROUP_FIELD_KEYS:
        if mapping.get(key):
            return mapping[key]
    return None


def _tidy(value: Any) -> Any:
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def _aggregate_values(function: str, values: List[Any]) -> Any:
    if function == "count":
        return len(values)
    if function == "count_distinct":
        return len({canonical_json(v) for v in values})
    numbers = []
    for v in values:
        n = _as_number(v)
        numbers.append(0.0 if n is None else n)
    if function == "sum":
        return _tidy(sum(numbers))
    if not numbers:
        return None
    if function == "avg":
        return _tidy(sum(numbers) / len(numbers))
    if function == "min":
        return _tidy(min(numbers))
    if function == "max":
        return _tidy(max(numbers))
    raise BadInput(f"Unsupported aggregate function: {function}")


def aggregation_column(spec: Dict[str, Any]) -> str:
    field = _get(spec, "field", "on")
    function = _get(spec, "function", "agg", default="sum")
    return f"{field}_{function}"


def aggregate(
    rows: List[Dict[str, Any]],
    group_by: Optional[str],
    aggregations: Iterable[Dict[str, Any]],
) -> List[Dict[str, Any]]:
    """
    分组聚合

    Args:
        rows: 输入行
        group_by: 分组字段，None 表示整体聚合为一行
        aggregations: [{field, function}]，function ∈ sum/avg/min/max/count/count_distinct

    Returns:
        每组一行：{group_by: key, "<field>_<function>": value}，按首次出现顺序
    """
    specs = list(aggregations)
    for spec in specs:
        function = _get(spec, "function", "agg", default="sum")
        if function not in AGGREGATE_FUNCTIONS:
            raise BadInput(f"Unsupported aggregate function: {function}")
        if not _get(spec, "field", "on"):
            raise BadInput("Aggregation requires 'field'")

    groups: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        key_value = row.get(group_by) if group_by else None
        key = canonical_json(key_value)
        if key not in groups:
            groups[key] = {"value": key_value, "rows": []}
        groups[key]["rows"].append(row)

    result = []
    for group in groups.values():
        output: Dict[str, Any] = {}
        if group_by:
            output[group_by] = group["value"]
        for spec in specs:
            field = _get(spec, "field", "on")
            function = _get(spec, "function", "agg", default="sum")
            values = [r.get(field) for r in group["rows"] if r.get(field) is not None]
            output[f"{field}_{function}"] = _aggregate_values(function, values)
        result.append(output)
    return result


def project(rows: List[Dict[str, Any]], fields: List[str]) -> List[Dict[str, Any]]:
    if not fields:
        raise BadInput("project requires 'fields'")
    return [{f: row.get(f) for f in fields} for row in rows]


def derive(rows: List[Dict[str, Any]], name: str, expression: str) -> List[Dict[str, Any]]:
    """新增派生列，表达式中 @ 为当前行"""
    if not name:
        raise BadInput("derive requires 'name'")
    parser = ExpressionParser(expression or "")
    return [{**row, name: parser.evaluate(rows, current=row)} for row in rows]


def apply_operation(rows: List[Dict[str, Any]], op: Dict[str, Any]) -> List[Dict[str, Any]]:
    kind = op.get("op")
    if kind == "filter":
        # "op" 是操作类型，运算符只能来自 operator
        operator = op.get("operator")
        if not operator:
            raise BadInput("filter requires 'operator'")
        return apply_filters(rows, [op])
    if kind == "project":
        return project(rows, op.get("fields") or [])
    if kind == "aggregate":
        return aggregate(
            rows,
            _get(op, "groupBy", "group_by"),
            [{"field": op.get("on"), "function": op.get("agg") or "sum"}],
        )
    if kind == "derive":
        return derive(rows, op.get("name"), op.get("expression"))
    raise BadInput(f"Unsupported transform operation: {kind}")


def apply_operations(rows: List[Dict[str, Any]], operations: Iterable[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """按顺序执行变换操作"""
    for op in operations:
        rows = apply_operation(rows, op)
    return rows
