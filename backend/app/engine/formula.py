"""
Sandboxed evaluation of user formulas.

Routing conditions, SET_VALUE / HTTP templates, data-mapper expressions
and reconciliation comparison formulas are all user-authored.  They are
parsed with ``ast`` and interpreted by a small whitelist evaluator:

    - no imports, comprehensions, lambdas, assignments or attribute
      access on anything but plain mappings / sequences
    - calls only to the functions listed in ``SAFE_FUNCTIONS`` / ``MATH``
    - a node budget (``FORMULA_MAX_NODES``) checked at parse time
    - a wall-clock deadline (``FORMULA_TIMEOUT_MS``) checked on every node
    - integer powers and products size-checked before they are computed
    - bounded string repetition

Formulas may use the JavaScript-flavoured spelling the workflow editor
produces (``$document.total``, ``&&``, ``||``, ``===``, ``!x``,
``true`` / ``false`` / ``null``); it is normalised before parsing.
"""

from __future__ import annotations

import ast
import math
import operator
import re
import time
from functools import lru_cache
from typing import Any, Mapping

from app.core.config import settings
from app.engine.errors import FormulaError

_MAX_EXPONENT = 100
_MAX_INT_BITS = 65_536
_MAX_STRING_LENGTH = 100_000

_TEMPLATE_RE = re.compile(r"^\{\{(.+)\}\}$", re.DOTALL)
_NUMERIC_RE = re.compile(r"^\s*[-+]?(\d+(\.\d*)?|\.\d+)([eE][-+]?\d+)?\s*$")

DOCUMENT_PREFIX = "$document."


# ═══════════════════════════════════════════════════════════
#  Value helpers
# ═══════════════════════════════════════════════════════════

def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def to_number(value: Any) -> float | int | None:
    """Loose numeric coercion: numbers pass, numeric strings parse, else None."""
    if is_number(value):
        return value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, str) and _NUMERIC_RE.match(value):
        number = float(value)
        return int(number) if number.is_integer() and "." not in value and "e" not in value.lower() else number
    return None


def get_path(obj: Any, path: str) -> Any:
    """Follow a dotted path through nested mappings / lists; missing → None."""
    value = obj
    for part in path.split("."):
        if value is None:
            return None
        if isinstance(value, Mapping):
            value = value.get(part)
        elif isinstance(value, (list, tuple)) and part.lstrip("-").isdigit():
            index = int(part)
            value = value[index] if -len(value) <= index < len(value) else None
        else:
            return None
    return value


def _safe_round(value: Any, ndigits: int | None = None) -> Any:
    number = _require_number(value, "round")
    if ndigits is None:
        return round(number)
    if not isinstance(ndigits, int) or abs(ndigits) > 20:
        raise FormulaError("round() precision out of range")
    return round(number, ndigits)


def _safe_pow(base: Any, exponent: Any) -> Any:
    base = _require_number(base, "**")
    exponent = _require_number(exponent, "**")
    if abs(exponent) > _MAX_EXPONENT:
        raise FormulaError(f"Exponent {exponent} exceeds the allowed maximum of {_MAX_EXPONENT}")
    if isinstance(base, int) and isinstance(exponent, int) and exponent > 0:
        _check_int_size(abs(base).bit_length() * exponent)
    try:
        return base ** exponent
    except (OverflowError, ZeroDivisionError) as exc:
        raise FormulaError(f"Invalid exponentiation: {exc}") from exc


def _check_int_size(bits: int) -> None:
    if bits > _MAX_INT_BITS:
        raise FormulaError(f"Integer result too large (over {_MAX_INT_BITS} bits)")


def to_string(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _require_number(value: Any, where: str) -> float | int:
    number = to_number(value)
    if number is None:
        raise FormulaError(f"{where}: expected a number, got {value!r}")
    return number


SAFE_FUNCTIONS: dict[str, Any] = {
    "abs": abs,
    "round": _safe_round,
    "min": min,
    "max": max,
    "len": len,
    "sum": sum,
    "float": float,
    "int": int,
    "str": to_string,
    "bool": bool,
    "Number": lambda value: to_number(value),
    "String": to_string,
    "Boolean": bool,
}

MATH: dict[str, Any] = {
    "abs": abs,
    "round": _safe_round,
    "min": min,
    "max": max,
    "floor": math.floor,
    "ceil": math.ceil,
    "pow": _safe_pow,
    "sqrt": math.sqrt,
}

_CALLABLES = {id(fn) for fn in (*SAFE_FUNCTIONS.values(), *MATH.values())}

_CONSTANTS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "Math": MATH,
}


# ═══════════════════════════════════════════════════════════
#  Normalisation
# ═══════════════════════════════════════════════════════════

def normalize(expression: str) -> str:
    """Rewrite editor (JS-style) operators into Python, leaving string literals alone."""
    out: list[str] = []
    i = 0
    quote: str | None = None
    text = expression.strip()

    while i < len(text):
        ch = text[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(text):
                out.append(text[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue

        if ch in ("'", '"'):
            quote = ch
            out.append(ch)
            i += 1
            continue

        rest = text[i:]
        if rest.startswith("==="):
            out.append("==")
            i += 3
        elif rest.startswith("!=="):
            out.append("!=")
            i += 3
        elif rest.startswith("!="):
            out.append("!=")
            i += 2
        elif rest.startswith("&&"):
            out.append(" and ")
            i += 2
        elif rest.startswith("||"):
            out.append(" or ")
            i += 2
        elif ch == "!":
            out.append(" not ")
            i += 1
        elif ch == "$":
            # $document → document
            i += 1
        else:
            out.append(ch)
            i += 1

    if quote:
        raise FormulaError(f"Unterminated string literal in formula: {expression!r}")
    return "".join(out).strip()


# ═══════════════════════════════════════════════════════════
#  Parse + validate (cached)
# ═══════════════════════════════════════════════════════════

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp, ast.And, ast.Or,
    ast.BinOp, ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod, ast.Pow,
    ast.UnaryOp, ast.USub, ast.UAdd, ast.Not,
    ast.Compare, ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot,
    ast.IfExp,
    ast.Call,
    ast.Name, ast.Load,
    ast.Constant,
    ast.Attribute,
    ast.Subscript,
    ast.List, ast.Tuple,
)


@lru_cache(maxsize=1024)
def _compile(normalized: str, max_nodes: int) -> ast.Expression:
    try:
        tree = ast.parse(normalized, mode="eval")
    except SyntaxError as exc:
        raise FormulaError(f"Invalid formula syntax: {exc.msg}") from exc

    count = 0
    for node in ast.walk(tree):
        count += 1
        if count > max_nodes:
            raise FormulaError(f"Formula exceeds the node budget of {max_nodes}")
        if not isinstance(node, _ALLOWED_NODES):
            raise FormulaError(f"Formula construct not allowed: {type(node).__name__}")
        if isinstance(node, ast.Call) and node.keywords:
            raise FormulaError("Keyword arguments are not allowed in formulas")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise FormulaError(f"Access to '{node.attr}' is not allowed")
    return tree


# ═══════════════════════════════════════════════════════════
#  Evaluator
# ═══════════════════════════════════════════════════════════

_COMPARE_OPS = {
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
}


class _Interpreter:
    """Walks one validated expression tree against a name environment."""

    def __init__(self, names: Mapping[str, Any], deadline: float) -> None:
        self.names = names
        self.deadline = deadline

    def visit(self, node: ast.AST) -> Any:
        if time.monotonic() > self.deadline:
            raise FormulaError("Formula evaluation timed out")
        method = getattr(self, f"visit_{type(node).__name__}")
        return method(node)

    # ── Leaves ────────────────────────────────

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.names:
            return self.names[node.id]
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        if node.id in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[node.id]
        raise FormulaError(f"Unknown name '{node.id}' in formula")

    def visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(element) for element in node.elts)

    # ── Access ────────────────────────────────

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if isinstance(value, Mapping):
            return value.get(node.attr)
        if node.attr == "length" and isinstance(value, (str, list, tuple)):
            return len(value)
        if value is None:
            return None
        raise FormulaError(f"Cannot read '{node.attr}' of {type(value).__name__}")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(value, Mapping):
            return value.get(key) if not isinstance(key, (list, dict)) else None
        if isinstance(value, (list, tuple, str)):
            index = to_number(key)
            if not isinstance(index, int):
                raise FormulaError(f"Invalid index {key!r}")
            return value[index] if -len(value) <= index < len(value) else None
        if value is None:
            return None
        raise FormulaError(f"Cannot index {type(value).__name__}")

    # ── Operators ─────────────────────────────

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        if isinstance(node.op, ast.And):
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        number = _require_number(operand, "unary operator")
        return -number if isinstance(node.op, ast.USub) else +number

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        op = node.op

        try:
            if isinstance(op, ast.Add):
                return self._add(left, right)
            if isinstance(op, ast.Mult) and (isinstance(left, str) or isinstance(right, str)):
                return self._repeat(left, right)
            if isinstance(op, ast.Pow):
                return _safe_pow(left, right)

            a = _require_number(left, "arithmetic")
            b = _require_number(right, "arithmetic")
            if isinstance(op, ast.Sub):
                return a - b
            if isinstance(op, ast.Mult):
                if isinstance(a, int) and isinstance(b, int):
                    _check_int_size(abs(a).bit_length() + abs(b).bit_length())
                return a * b
            if isinstance(op, ast.Div):
                return a / b
            if isinstance(op, ast.FloorDiv):
                return a // b
            if isinstance(op, ast.Mod):
                return a % b
        except ZeroDivisionError as exc:
            raise FormulaError("Division by zero in formula") from exc
        raise FormulaError(f"Operator not allowed: {type(op).__name__}")

    def _add(self, left: Any, right: Any) -> Any:
        if isinstance(left, str) and isinstance(right, str):
            result = left + right
        elif isinstance(left, str) or isinstance(right, str):
            a, b = to_number(left), to_number(right)
            if a is not None and b is not None and (is_number(left) or is_number(right)):
                return a + b
            result = to_string(left) + to_string(right)
        elif isinstance(left, list) and isinstance(right, list):
            if len(left) + len(right) > _MAX_STRING_LENGTH:
                raise FormulaError("List result too large")
            return left + right
        else:
            return _require_number(left, "+") + _require_number(right, "+")

        if len(result) > _MAX_STRING_LENGTH:
            raise FormulaError("String result too large")
        return result

    def _repeat(self, left: Any, right: Any) -> str:
        text, times = (left, right) if isinstance(left, str) else (right, left)
        if not isinstance(times, int) or isinstance(times, bool):
            raise FormulaError("String repetition requires an integer")
        if len(text) * max(times, 0) > _MAX_STRING_LENGTH:
            raise FormulaError("String result too large")
        return text * times

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not self._compare(op, left, right):
                return False
            left = right
        return True

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, ast.Eq):
            return loose_equals(left, right)
        if isinstance(op, ast.NotEq):
            return not loose_equals(left, right)
        if isinstance(op, ast.Is):
            return left is right
        if isinstance(op, ast.IsNot):
            return left is not right
        if isinstance(op, (ast.In, ast.NotIn)):
            try:
                contained = left in right
            except TypeError as exc:
                raise FormulaError(f"Invalid membership test: {exc}") from exc
            return contained if isinstance(op, ast.In) else not contained

        compare = _COMPARE_OPS[type(op)]
        a, b = to_number(left), to_number(right)
        if a is not None and b is not None and not (isinstance(left, str) and isinstance(right, str)):
            return compare(a, b)
        try:
            return compare(left, right)
        except TypeError as exc:
            raise FormulaError(f"Cannot compare {left!r} and {right!r}") from exc

    def visit_Call(self, node: ast.Call) -> Any:
        func = self.visit(node.func)
        if id(func) not in _CALLABLES:
            raise FormulaError("Only whitelisted functions may be called in formulas")
        args = [self.visit(arg) for arg in node.args]
        try:
            return func(*args)
        except FormulaError:
            raise
        except (TypeError, ValueError, OverflowError) as exc:
            raise FormulaError(f"Function call failed: {exc}") from exc


def loose_equals(left: Any, right: Any) -> bool:
    """Equality that treats ``"100"`` and ``100`` as equal, like the editor does."""
    if left is None or right is None:
        return left is None and right is None
    if is_number(left) or is_number(right):
        a, b = to_number(left), to_number(right)
        if a is not None and b is not None:
            return a == b
    return left == right


class FormulaEvaluator:
    """
    Entry point for every user formula.

    Usage::

        evaluator = FormulaEvaluator()
        evaluator.evaluate("document.total > 100", {"document": metadata})
        evaluator.resolve_value("{{ $document.amount * 2 }}", metadata)
    """

    def __init__(self, timeout_ms: int | None = None, max_nodes: int | None = None) -> None:
        self.timeout_ms = timeout_ms if timeout_ms is not None else settings.FORMULA_TIMEOUT_MS
        self.max_nodes = max_nodes if max_nodes is not None else settings.FORMULA_MAX_NODES

    def compile(self, expression: str) -> ast.Expression:
        if not isinstance(expression, str) or not expression.strip():
            raise FormulaError("Formula is empty")
        return _compile(normalize(expression), self.max_nodes)

    def _run(self, node: ast.AST, names: Mapping[str, Any]) -> Any:
        deadline = time.monotonic() + self.timeout_ms / 1000
        return _Interpreter(names, deadline).visit(node)

    def evaluate(self, expression: str, names: Mapping[str, Any]) -> Any:
        return self._run(self.compile(expression), names)

    def evaluate_bool(self, expression: str, names: Mapping[str, Any]) -> bool:
        return bool(self.evaluate(expression, names))

    def equality_sides(self, expression: str, names: Mapping[str, Any]) -> tuple[Any, Any] | None:
        """For a bare ``a == b`` formula return the evaluated sides, else None."""
        tree = self.compile(expression)
        body = tree.body
        if not (isinstance(body, ast.Compare) and len(body.ops) == 1 and isinstance(body.ops[0], ast.Eq)):
            return None
        return self._run(body.left, names), self._run(body.comparators[0], names)

    def resolve_value(self, value: Any, metadata: Mapping[str, Any]) -> Any:
        """
        Resolve a configured value against document metadata.

        - ``"{{ expression }}"`` → evaluated with ``document`` bound to metadata
        - ``"$document.a.b"``     → field reference
        - anything else          → returned unchanged (literal)
        """
        if not isinstance(value, str):
            return value

        template = _TEMPLATE_RE.match(value.strip())
        if template:
            return self.evaluate(template.group(1), {"document": metadata})

        if value.startswith(DOCUMENT_PREFIX):
            return get_path(metadata, value[len(DOCUMENT_PREFIX):])

        return value
