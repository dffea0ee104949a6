"""Restricted expression interpreter.

Transform, guard and validation expressions arrive as strings inside action
definitions. They are parsed with :mod:`ast` and evaluated by walking a
whitelisted subset of nodes; nothing is ever passed to ``eval`` and the
interpreter has no access to builtins, modules or Python attributes.

Supported:
    literals, names bound by the caller, ``a.b`` / ``a['b']`` / ``a[0]`` on
    JSON data (missing keys read as ``None``), arithmetic, comparisons,
    ``and`` / ``or`` / ``not``, ``x if c else y``, list and dict literals,
    and calls to the functions in ``FUNCTIONS`` plus a few string methods.

JavaScript-style operators are accepted and rewritten first: ``&&``, ``||``,
``!``, ``===``, ``!==``, ``true``/``false``/``null``/``undefined``. ``@``
(the current item in a JSONPath filter) and ``$`` (the document root) are
rewritten into ordinary names.
"""

from __future__ import annotations

import ast
import json
import math
import operator
import re
from functools import lru_cache
from typing import Any, Callable

from actionrail.core.errors import ValidationError

_CURRENT = "_current"
_ROOT = "_root"

_MAX_POWER = 100
_MAX_SEQUENCE = 10_000

_CONSTANTS: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "None": None,
    "True": True,
    "False": False,
}


class ExpressionError(ValidationError):
    """The expression is malformed, uses a forbidden construct, or failed to evaluate."""

    default_code = "EXPRESSION_ERROR"


def _contains(container: Any, item: Any) -> bool:
    if container is None:
        return False
    return item in container


def _join(items: Any, sep: str = ",") -> str:
    return sep.join(_to_text(i) for i in items or [])


def _split(text: Any, sep: str | None = None) -> list[str]:
    return _to_text(text).split(sep)


def _matches(text: Any, pattern: str) -> bool:
    return re.search(pattern, _to_text(text)) is not None


def _merge(*objects: Any) -> dict[str, Any]:
    merged: dict[str, Any] = {}
    for obj in objects:
        if isinstance(obj, dict):
            merged.update(obj)
    return merged


FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": lambda v: 0 if v is None else len(v),
    "str": lambda v: _to_text(v),
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "sum": sum,
    "round": round,
    "floor": math.floor,
    "ceil": math.ceil,
    "sorted": sorted,
    "any": any,
    "all": all,
    "lower": lambda v: _to_text(v).lower(),
    "upper": lambda v: _to_text(v).upper(),
    "trim": lambda v: _to_text(v).strip(),
    "contains": _contains,
    "startswith": lambda v, p: _to_text(v).startswith(p),
    "endswith": lambda v, p: _to_text(v).endswith(p),
    "matches": _matches,
    "keys": lambda v: list(v.keys()) if isinstance(v, dict) else [],
    "values": lambda v: list(v.values()) if isinstance(v, dict) else [],
    "join": _join,
    "split": _split,
    "merge": _merge,
    "json": lambda v: json.dumps(v, default=str),
    "coalesce": lambda *vs: next((v for v in vs if v is not None), None),
}

# receiver.method(...) on strings and lists, JavaScript names included.
_METHODS: dict[str, Callable[..., Any]] = {
    "lower": lambda s: s.lower(),
    "toLowerCase": lambda s: s.lower(),
    "upper": lambda s: s.upper(),
    "toUpperCase": lambda s: s.upper(),
    "strip": lambda s: s.strip(),
    "trim": lambda s: s.strip(),
    "startswith": lambda s, p: s.startswith(p),
    "startsWith": lambda s, p: s.startswith(p),
    "endswith": lambda s, p: s.endswith(p),
    "endsWith": lambda s, p: s.endswith(p),
    "includes": lambda s, p: p in s,
    "split": lambda s, sep=None: s.split(sep),
    "replace": lambda s, a, b: s.replace(a, b),
    "join": lambda lst, sep=",": sep.join(_to_text(i) for i in lst),
}

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
    ast.Pow: operator.pow,
}

_CMP_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: _contains(b, a),
    ast.NotIn: lambda a, b: not _contains(b, a),
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.Constant,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.Slice,
    ast.BinOp,
    ast.UnaryOp,
    ast.BoolOp,
    ast.Compare,
    ast.IfExp,
    ast.Call,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.And,
    ast.Or,
    ast.Not,
    ast.USub,
    ast.UAdd,
    *_BIN_OPS,
    *_CMP_OPS,
)


def _to_text(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def normalize(source: str) -> str:
    """Rewrite JavaScript-style operators and the ``@`` / ``$`` roots, outside string literals."""
    out: list[str] = []
    i = 0
    quote: str | None = None
    while i < len(source):
        ch = source[i]
        if quote:
            out.append(ch)
            if ch == "\\" and i + 1 < len(source):
                out.append(source[i + 1])
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in "'\"":
            quote = ch
            out.append(ch)
        elif source.startswith("===", i) or source.startswith("!==", i):
            out.append("==" if ch == "=" else "!=")
            i += 3
            continue
        elif source.startswith("&&", i):
            out.append(" and ")
            i += 2
            continue
        elif source.startswith("||", i):
            out.append(" or ")
            i += 2
            continue
        elif ch == "!" and not source.startswith("!=", i):
            out.append(" not ")
        elif ch == "@":
            out.append(_CURRENT)
        elif ch == "$":
            out.append(_ROOT)
        else:
            out.append(ch)
        i += 1
    return "".join(out).strip()


class Expression:
    """A parsed, validated expression ready for repeated evaluation."""

    def __init__(self, source: str) -> None:
        self.source = source
        try:
            self._tree = ast.parse(normalize(source), mode="eval")
        except SyntaxError as exc:
            raise ExpressionError(f"Invalid expression {source!r}: {exc.msg}") from exc
        for node in ast.walk(self._tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise ExpressionError(
                    f"Unsupported construct {type(node).__name__} in {source!r}"
                )
            if isinstance(node, ast.Call):
                self._check_call(node)

    def _check_call(self, node: ast.Call) -> None:
        if node.keywords:
            raise ExpressionError(f"Keyword arguments are not supported in {self.source!r}")
        func = node.func
        if isinstance(func, ast.Name) and func.id in FUNCTIONS:
            return
        if isinstance(func, ast.Attribute) and func.attr in _METHODS:
            return
        name = getattr(func, "id", None) or getattr(func, "attr", "?")
        raise ExpressionError(f"Unknown function {name!r} in {self.source!r}")

    def names(self) -> set[str]:
        """Free variable names referenced by the expression."""
        return {
            n.id
            for n in ast.walk(self._tree)
            if isinstance(n, ast.Name) and n.id not in _CONSTANTS and n.id not in FUNCTIONS
        }

    def evaluate(self, names: dict[str, Any] | None = None) -> Any:
        env = dict(names or {})
        if "@" in env:
            env[_CURRENT] = env.pop("@")
        if "$" in env:
            env[_ROOT] = env.pop("$")
        try:
            return _Evaluator(env, self.source).visit(self._tree.body)
        except ExpressionError:
            raise
        except (TypeError, ValueError, ZeroDivisionError, KeyError, IndexError, OverflowError, re.error) as exc:
            raise ExpressionError(f"Failed to evaluate {self.source!r}: {exc}") from exc


class _Evaluator:
    def __init__(self, env: dict[str, Any], source: str) -> None:
        self.env = env
        self.source = source

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported construct {type(node).__name__} in {self.source!r}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.env:
            return self.env[node.id]
        if node.id in _CONSTANTS:
            return _CONSTANTS[node.id]
        return None

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        return _lookup(self.visit(node.value), node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        target = self.visit(node.value)
        if isinstance(node.slice, ast.Slice):
            if not isinstance(target, (list, str)):
                return None
            lower = self.visit(node.slice.lower) if node.slice.lower else None
            upper = self.visit(node.slice.upper) if node.slice.upper else None
            step = self.visit(node.slice.step) if node.slice.step else None
            return target[lower:upper:step]
        return _lookup(target, self.visit(node.slice))

    def visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if isinstance(node.op, ast.Add) and (isinstance(left, str) or isinstance(right, str)):
            return _to_text(left) + _to_text(right)
        if isinstance(node.op, ast.Pow) and isinstance(right, (int, float)) and abs(right) > _MAX_POWER:
            raise ExpressionError(f"Exponent too large in {self.source!r}")
        if isinstance(node.op, ast.Mult) and (isinstance(left, (str, list)) or isinstance(right, (str, list))):
            other = right if isinstance(left, (str, list)) else left
            if isinstance(other, int) and other > _MAX_SEQUENCE:
                raise ExpressionError(f"Sequence repetition too large in {self.source!r}")
        return _BIN_OPS[type(node.op)](left, right)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        return +operand

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            value: Any = True
            for item in node.values:
                value = self.visit(item)
                if not value:
                    return value
            return value
        value = False
        for item in node.values:
            value = self.visit(item)
            if value:
                return value
        return value

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            try:
                ok = _CMP_OPS[type(op)](left, right)
            except TypeError:
                # Ordering against None or mismatched types is simply false.
                ok = False
            if not ok:
                return False
            left = right
        return True

    def visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(e) for e in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> list[Any]:
        return [self.visit(e) for e in node.elts]

    def visit_Dict(self, node: ast.Dict) -> dict[Any, Any]:
        result: dict[Any, Any] = {}
        for key, value in zip(node.keys, node.values):
            if key is None:
                spread = self.visit(value)
                if isinstance(spread, dict):
                    result.update(spread)
                continue
            result[self.visit(key)] = self.visit(value)
        return result

    def visit_Call(self, node: ast.Call) -> Any:
        args = [self.visit(a) for a in node.args]
        func = node.func
        if isinstance(func, ast.Name):
            return FUNCTIONS[func.id](*args)
        receiver = self.visit(func.value)  # type: ignore[attr-defined]
        if func.attr == "join":  # type: ignore[attr-defined]
            if not isinstance(receiver, list):
                raise ExpressionError(f"join() needs a list in {self.source!r}")
        elif not isinstance(receiver, str):
            if receiver is None:
                return None
            raise ExpressionError(
                f"{func.attr}() needs a string in {self.source!r}"  # type: ignore[attr-defined]
            )
        return _METHODS[func.attr](receiver, *args)  # type: ignore[attr-defined]


def _lookup(target: Any, key: Any) -> Any:
    """Null-safe field access on JSON data."""
    if target is None:
        return None
    if isinstance(target, dict):
        return target.get(key if not isinstance(key, int) else str(key), target.get(key))
    if isinstance(target, (list, str)):
        if key == "length":
            return len(target)
        if isinstance(key, bool):
            return None
        if isinstance(key, int) or (isinstance(key, str) and key.lstrip("-").isdigit()):
            idx = int(key)
            if -len(target) <= idx < len(target):
                return target[idx]
        return None
    return None


@lru_cache(maxsize=1024)
def compile_expression(source: str) -> Expression:
    if not isinstance(source, str) or not source.strip():
        raise ExpressionError("Expression is empty")
    return Expression(source)


def evaluate(source: str, names: dict[str, Any] | None = None) -> Any:
    """Parse (cached) and evaluate ``source`` with the given bindings."""
    return compile_expression(source).evaluate(names)


def is_valid(source: str) -> bool:
    try:
        compile_expression(source)
    except ExpressionError:
        return False
    return True
