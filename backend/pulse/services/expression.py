"""
ExpressionLang: 只读的 JSON 查询表达式

用于 expression 查询和数据集 derive 操作。表达式在构造时完成解析，
求值时不会执行任何 Python 代码，也不能访问对象属性。

语法::

    $                 根 (记录列表或记录)
    @                 当前元素 (过滤器内 / derive 中的当前行)
    .name ['name']    字段访问，作用于列表时逐项取值
    [n] [*]           下标 / 全部元素
    [?(cond)]         过滤
    + - * / %         算术
    == != < <= > >=   比较
    and or not        逻辑 (也接受 && || !)
    sum avg min max count concat upper lower length

示例::

    ExpressionParser("$[?(@.amount > 10)]").evaluate(rows)
    ExpressionParser("@.price * @.qty").evaluate(rows, current=row)
"""
import logging
import re
from typing import Any, Callable, List, Optional, Tuple

from pulse.core.errors import BadInput

logger = logging.getLogger(__name__)

MAX_EXPRESSION_LENGTH = 4096
MAX_NESTING_DEPTH = 64


class ExpressionSyntaxError(BadInput):
    """表达式语法错误"""


class ExpressionSecurityError(BadInput):
    """表达式包含被禁止的结构"""


class ExpressionEvaluationError(BadInput):
    """表达式求值失败"""


_TOKEN_SPEC = [
    ("NUMBER", r"\d+\.\d*|\.\d+|\d+"),
    ("STRING", r"'(?:[^'\\]|\\.)*'|\"(?:[^\"\\]|\\.)*\""),
    ("NAME", r"[A-Za-z_][A-Za-z0-9_]*"),
    ("OP", r"==|!=|<=|>=|&&|\|\||\[\?\(|[$@.\[\]()*,+\-/%<>!:]"),
    ("SKIP", r"\s+"),
    ("MISMATCH", r"."),
]
_TOKEN_RE = re.compile("|".join(f"(?P<{name}>{pattern})" for name, pattern in _TOKEN_SPEC))

_KEYWORDS = {"and", "or", "not", "true", "false", "null"}

Token = Tuple[str, Any, int]


def tokenize(source: str) -> List[Token]:
    tokens: List[Token] = []
    for match in _TOKEN_RE.finditer(source):
        kind = match.lastgroup
        text = match.group()
        pos = match.start()
        if kind == "SKIP":
            continue
        if kind == "MISMATCH":
            raise ExpressionSyntaxError(f"Unexpected character {text!r} at position {pos}")
        if kind == "NUMBER":
            tokens.append(("NUMBER", float(text) if "." in text else int(text), pos))
        elif kind == "STRING":
            body = text[1:-1]
            body = re.sub(r"\\(.)", r"\1", body)
            tokens.append(("STRING", body, pos))
        elif kind == "NAME" and text in _KEYWORDS:
            tokens.append(("KEYWORD", text, pos))
        else:
            tokens.append((kind, text, pos))
    tokens.append(("EOF", None, len(source)))
    return tokens


# ---- 内置函数 ----

def _numbers(value: Any) -> List[float]:
    items = value if isinstance(value, list) else [value]
    return [v for v in items if isinstance(v, (int, float)) and not isinstance(v, bool)]


def _fn_sum(value):
    return sum(_numbers(value))


def _fn_avg(value):
    numbers = _numbers(value)
    return sum(numbers) / len(numbers) if numbers else None


def _fn_min(value):
    numbers = _numbers(value)
    return min(numbers) if numbers else None


def _fn_max(value):
    numbers = _numbers(value)
    return max(numbers) if numbers else None


def _fn_count(value):
    if isinstance(value, list):
        return len([v for v in value if v is not None])
    return 0 if value is None else 1


def _fn_concat(*values):
    return "".join(_to_text(v) for v in values if v is not None)


def _fn_upper(value):
    return None if value is None else _to_text(value).upper()


def _fn_lower(value):
    return None if value is None else _to_text(value).lower()


def _fn_length(value):
    if value is None:
        return 0
    if isinstance(value, (list, dict, str)):
        return len(value)
    return len(_to_text(value))


FUNCTIONS = {
    "sum": _fn_sum,
    "avg": _fn_avg,
    "min": _fn_min,
    "max": _fn_max,
    "count": _fn_count,
    "concat": _fn_concat,
    "upper": _fn_upper,
    "lower": _fn_lower,
    "length": _fn_length,
}


def _to_text(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


# ---- 求值辅助 ----

class _Context:
    __slots__ = ("root", "current")

    def __init__(self, root: Any, current: Any):
        self.root = root
        self.current = current


Node = Callable[[_Context], Any]


def _check_field(name: str) -> None:
    if name.startswith("__"):
        raise ExpressionSecurityError(f"Access to '{name}' is not allowed")


def _get_field(value: Any, name: str) -> Any:
    if isinstance(value, dict):
        return value.get(name)
    if isinstance(value, list):
        picked = [_get_field(item, name) for item in value]
        return [v for v in picked if v is not None]
    return None


def _get_index(value: Any, index: int) -> Any:
    if isinstance(value, list):
        if -len(value) <= index < len(value):
            return value[index]
        return None
    return None


def _wildcard(value: Any) -> Any:
    if isinstance(value, list):
        return value
    if isinstance(value, dict):
        return list(value.values())
    return []


def _arith(op: str, left: Any, right: Any) -> Any:
    if left is None or right is None:
        return None
    if op == "+" and (isinstance(left, str) or isinstance(right, str)):
        return _to_text(left) + _to_text(right)
    if not all(isinstance(v, (int, float)) and not isinstance(v, bool) for v in (left, right)):
        raise ExpressionEvaluationError(f"Operator '{op}' requires numbers")
    if op == "+":
        return left + right
    if op == "-":
        return left - right
    if op == "*":
        return left * right
    if right == 0:
        return None
    if op == "/":
        return left / right
    return left % right


def _compare(op: str, left: Any, right: Any) -> bool:
    if op == "==":
        return left == right
    if op == "!=":
        return left != right
    if left is None or right is None:
        return False
    try:
        if op == "<":
            return left < right
        if op == "<=":
            return left <= right
        if op == ">":
            return left > right
        return left >= right
    except TypeError:
        return False


def _truthy(value: Any) -> bool:
    if isinstance(value, list):
        return len(value) > 0
    return bool(value)


class ExpressionParser:
    """
    递归下降解析器，构造时解析，evaluate 时求值

    Raises:
        ExpressionSyntaxError: 语法错误
        ExpressionSecurityError: 调用未知函数或访问双下划线字段
    """

    def __init__(self, source: str):
        if not isinstance(source, str) or not source.strip():
            raise ExpressionSyntaxError("Expression is empty")
        if len(source) > MAX_EXPRESSION_LENGTH:
            raise ExpressionSyntaxError("Expression is too long")
        self.source = source
        self._tokens = tokenize(source)
        self._pos = 0
        self._depth = 0
        self._node = self._parse_or()
        if self._peek()[0] != "EOF":
            tok = self._peek()
            raise ExpressionSyntaxError(f"Unexpected token {tok[1]!r} at position {tok[2]}")

    def evaluate(self, data: Any, current: Any = None) -> Any:
        """
        求值

        Args:
            data: 根数据 ($)
            current: 当前元素 (@)，默认与根相同
        """
        return self._node(_Context(data, data if current is None else current))

    # ---- token 操作 ----

    def _peek(self) -> Token:
        return self._tokens[self._pos]

    def _advance(self) -> Token:
        tok = self._tokens[self._pos]
        self._pos += 1
        return tok

    def _match(self, *values: str) -> Optional[Token]:
        tok = self._peek()
        if tok[0] in ("OP", "KEYWORD") and tok[1] in values:
            return self._advance()
        return None

    def _expect(self, value: str) -> Token:
        tok = self._match(value)
        if tok is None:
            found = self._peek()
            raise ExpressionSyntaxError(
                f"Expected {value!r} at position {found[2]}, found {found[1]!r}"
            )
        return tok

    def _enter(self) -> None:
        self._depth += 1
        if self._depth > MAX_NESTING_DEPTH:
            raise ExpressionSyntaxError("Expression is nested too deeply")

    def _leave(self) -> None:
        self._depth -= 1

    # ---- 语法规则 ----

    def _parse_or(self) -> Node:
        left = self._parse_and()
        while self._match("or", "||"):
            right = self._parse_and()
            left = (lambda l, r: lambda ctx: _truthy(l(ctx)) or _truthy(r(ctx)))(left, right)
        return left

    def _parse_and(self) -> Node:
        left = self._parse_not()
        while self._match("and", "&&"):
            right = self._parse_not()
            left = (lambda l, r: lambda ctx: _truthy(l(ctx)) and _truthy(r(ctx)))(left, right)
        return left

    def _parse_not(self) -> Node:
        if self._match("not", "!"):
            self._enter()
            operand = self._parse_not()
            self._leave()
            return lambda ctx: not _truthy(operand(ctx))
        return self._parse_comparison()

    def _parse_comparison(self) -> Node:
        left = self._parse_additive()
        tok = self._match("==", "!=", "<", "<=", ">", ">=")
        if tok:
            op = tok[1]
            right = self._parse_additive()
            return lambda ctx: _compare(op, left(ctx), right(ctx))
        return left

    def _parse_additive(self) -> Node:
        left = self._parse_multiplicative()
        while True:
            tok = self._match("+", "-")
            if not tok:
                return left
            right = self._parse_multiplicative()
            left = (lambda op, l, r: lambda ctx: _arith(op, l(ctx), r(ctx)))(tok[1], left, right)

    def _parse_multiplicative(self) -> Node:
        left = self._parse_unary()
        while True:
            tok = self._match("*", "/", "%")
            if not tok:
                return left
            right = self._parse_unary()
            left = (lambda op, l, r: lambda ctx: _arith(op, l(ctx), r(ctx)))(tok[1], left, right)

    def _parse_unary(self) -> Node:
        if self._match("-"):
            self._enter()
            operand = self._parse_unary()
            self._leave()
            return lambda ctx: _arith("-", 0, operand(ctx))
        return self._parse_postfix(self._parse_primary())

    def _parse_primary(self) -> Node:
        tok = self._advance()
        kind, value, pos = tok

        if kind in ("NUMBER", "STRING"):
            return lambda ctx: value
        if kind == "KEYWORD" and value in ("true", "false", "null"):
            constant = {"true": True, "false": False, "null": None}[value]
            return lambda ctx: constant
        if kind == "OP" and value == "$":
            return lambda ctx: ctx.root
        if kind == "OP" and value == "@":
            return lambda ctx: ctx.current
        if kind == "OP" and value == "(":
            self._enter()
            inner = self._parse_or()
            self._expect(")")
            self._leave()
            return inner
        if kind == "NAME":
            if self._match("("):
                return self._parse_call(value, pos)
            _check_field(value)
            # 裸字段名等价于 @.name
            return lambda ctx: _get_field(ctx.current, value)
        if kind == "EOF":
            raise ExpressionSyntaxError("Unexpected end of expression")
        raise ExpressionSyntaxError(f"Unexpected token {value!r} at position {pos}")

    def _parse_call(self, name: str, pos: int) -> Node:
        if name not in FUNCTIONS:
            raise ExpressionSecurityError(f"Unknown function '{name}' at position {pos}")
        func = FUNCTIONS[name]
        args: List[Node] = []
        self._enter()
        if not self._match(")"):
            while True:
                args.append(self._parse_or())
                if self._match(")"):
                    break
                self._expect(",")
        self._leave()
        if name != "concat" and len(args) != 1:
            raise ExpressionSyntaxError(f"Function '{name}' takes exactly one argument")
        return lambda ctx: func(*[a(ctx) for a in args])

    def _parse_postfix(self, node: Node) -> Node:
        while True:
            if self._match("."):
                tok = self._advance()
                if tok[0] not in ("NAME", "KEYWORD"):
                    raise ExpressionSyntaxError(f"Expected field name at position {tok[2]}")
                name = tok[1]
                _check_field(name)
                node = (lambda n, f: lambda ctx: _get_field(n(ctx), f))(node, name)
            elif self._match("[?("):
                self._enter()
                cond = self._parse_or()
                self._expect(")")
                self._expect("]")
                self._leave()
                node = self._filter_node(node, cond)
            elif self._match("["):
                node = self._parse_subscript(node)
            else:
                return node

    def _parse_subscript(self, node: Node) -> Node:
        if self._match("*"):
            self._expect("]")
            return lambda ctx: _wildcard(node(ctx))
        tok = self._advance()
        negative = False
        if tok[0] == "OP" and tok[1] == "-":
            negative = True
            tok = self._advance()
        if tok[0] == "NUMBER" and isinstance(tok[1], int):
            index = -tok[1] if negative else tok[1]
            self._expect("]")
            return lambda ctx: _get_index(node(ctx), index)
        if tok[0] == "STRING" and not negative:
            name = tok[1]
            _check_field(name)
            self._expect("]")
            return lambda ctx: _get_field(node(ctx), name)
        raise ExpressionSyntaxError(f"Invalid subscript at position {tok[2]}")

    @staticmethod
    def _filter_node(node: Node, cond: Node) -> Node:
        def evaluate(ctx: _Context) -> Any:
            value = node(ctx)
            items = value if isinstance(value, list) else ([] if value is None else [value])
            return [item for item in items if _truthy(cond(_Context(ctx.root, item)))]
        return evaluate


def evaluate_expression(source: str, data: Any, current: Any = None) -> Any:
    """解析并求值 (一次性使用)"""
    return ExpressionParser(source).evaluate(data, current)
