"""
Restricted expression language for edge adapters and calculated fields.

Caller-supplied transforms are written in Python expression syntax, parsed
with ``ast`` and interpreted node by node against a whitelist. Nothing is
compiled or passed to ``eval``/``exec``; a construct that is not explicitly
handled below raises ExpressionError.

Accepted function bodies (see ``compile_function``):

    output.rows                                   single expression
    return [r for r in output.rows if r.active]   return statement
    lambda output, context: len(output)           lambda shorthand
    total = sum(output.values)                    assignments ending in return
    return {"total": total}

Allowed:
    - literals, list/tuple/set/dict displays, f-strings
    - names bound by the caller, local assignments, comprehension variables
    - attribute access on dicts (``output.rows`` == ``output["rows"]``,
      missing keys give None) and a fixed set of str/list/dict methods
    - subscripts and slices, arithmetic, comparisons, ``and``/``or``/``not``,
      conditional expressions, comprehensions
    - ``lambda`` only as an argument of a call (``sorted(rows, key=lambda r: r.score)``)
    - calls to the functions in SAFE_FUNCTIONS
    - ``if``/``else`` statements in multi-line bodies

Never allowed: imports, dunder attributes, attribute access on anything but
str/list/dict values, arbitrary callables, ``while``/``for`` statements,
``global``, ``del``, ``with``, ``try``, ``class``, ``def``.
"""

from __future__ import annotations

import ast
import functools
import logging
import operator
from collections.abc import Callable, Mapping
from typing import Any

from .exceptions import WorkflowEngineError

logger = logging.getLogger(__name__)

MAX_RANGE = 10_000
MAX_SEQUENCE_REPEAT = 100_000
MAX_EXPONENT = 1_000


class ExpressionError(WorkflowEngineError):
    """An expression was rejected or failed while being evaluated."""


# ============================================================================
# Whitelists
# ============================================================================


def _safe_range(*args: int) -> list[int]:
    values = range(*args)
    if len(values) > MAX_RANGE:
        raise ExpressionError(f"range() larger than {MAX_RANGE} items")
    return list(values)


def _safe_map(func: Callable[[Any], Any], iterable: Any) -> list[Any]:
    return [func(item) for item in iterable]


def _safe_filter(func: Callable[[Any], Any] | None, iterable: Any) -> list[Any]:
    if func is None:
        return [item for item in iterable if item]
    return [item for item in iterable if func(item)]


SAFE_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "sum": sum,
    "min": min,
    "max": max,
    "sorted": sorted,
    "abs": abs,
    "round": round,
    "list": list,
    "dict": dict,
    "set": set,
    "tuple": tuple,
    "any": any,
    "all": all,
    "filter": _safe_filter,
    "map": _safe_map,
    "enumerate": lambda iterable, start=0: list(enumerate(iterable, start)),
    "zip": lambda *iterables: list(zip(*iterables, strict=False)),
    "range": _safe_range,
}

SAFE_CONSTANTS: dict[str, Any] = {"None": None, "True": True, "False": False}

SAFE_METHODS: dict[type, frozenset[str]] = {
    str: frozenset(
        {
            "lower", "upper", "strip", "lstrip", "rstrip", "split", "rsplit", "join",
            "replace", "startswith", "endswith", "find", "count", "title", "capitalize",
            "isdigit", "isalpha", "isalnum", "zfill", "splitlines",
        }
    ),
    list: frozenset({"index", "count", "copy"}),
    dict: frozenset({"get", "keys", "values", "items", "copy"}),
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

_UNARY_OPS: dict[type, Callable[[Any], Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


# ============================================================================
# Interpreter
# ============================================================================


class _Return(Exception):
    def __init__(self, value: Any):
        self.value = value


class _Lambda:
    """A lambda created as a call argument. Callable only by whitelisted functions."""

    def __init__(self, node: ast.Lambda, interpreter: _Interpreter, scope: dict[str, Any]):
        self.params = [arg.arg for arg in node.args.args]
        self.body = node.body
        self.interpreter = interpreter
        self.scope = scope

    def __call__(self, *args: Any) -> Any:
        if len(args) != len(self.params):
            raise ExpressionError(
                f"lambda expects {len(self.params)} argument(s), got {len(args)}"
            )
        scope = dict(self.scope)
        scope.update(zip(self.params, args, strict=True))
        return self.interpreter.eval(self.body, scope)


def _check_name(name: str) -> None:
    if name.startswith("__"):
        raise ExpressionError(f"Access to '{name}' is not allowed")


class _Interpreter:
    def eval(self, node: ast.AST, scope: dict[str, Any]) -> Any:
        handler = getattr(self, f"_eval_{type(node).__name__}", None)
        if handler is None:
            raise ExpressionError(f"Unsupported expression: {type(node).__name__}")
        return handler(node, scope)

    # -- statements ---------------------------------------------------------

    def run(self, body: list[ast.stmt], scope: dict[str, Any]) -> Any:
        try:
            self._run_block(body, scope)
        except _Return as result:
            return result.value
        return None

    def _run_block(self, body: list[ast.stmt], scope: dict[str, Any]) -> None:
        for statement in body:
            if isinstance(statement, ast.Return):
                raise _Return(None if statement.value is None else self.eval(statement.value, scope))
            if isinstance(statement, ast.Assign):
                value = self.eval(statement.value, scope)
                for target in statement.targets:
                    self._assign(target, value, scope)
            elif isinstance(statement, ast.AugAssign):
                if not isinstance(statement.target, ast.Name):
                    raise ExpressionError("Only simple names can be updated")
                op = _BIN_OPS.get(type(statement.op))
                if op is None:
                    raise ExpressionError(f"Unsupported operator: {type(statement.op).__name__}")
                current = self._eval_Name(statement.target, scope)
                scope[statement.target.id] = self._binary(op, current, self.eval(statement.value, scope))
            elif isinstance(statement, ast.If):
                branch = statement.body if self.eval(statement.test, scope) else statement.orelse
                self._run_block(branch, scope)
            elif isinstance(statement, ast.Expr):
                self.eval(statement.value, scope)
            elif isinstance(statement, ast.Pass):
                continue
            else:
                raise ExpressionError(f"Unsupported statement: {type(statement).__name__}")

    def _assign(self, target: ast.expr, value: Any, scope: dict[str, Any]) -> None:
        if isinstance(target, ast.Name):
            _check_name(target.id)
            scope[target.id] = value
        elif isinstance(target, (ast.Tuple, ast.List)):
            values = list(value)
            if len(values) != len(target.elts):
                raise ExpressionError("Cannot unpack: wrong number of values")
            for sub_target, sub_value in zip(target.elts, values, strict=True):
                self._assign(sub_target, sub_value, scope)
        else:
            raise ExpressionError("Only names can be assigned")

    # -- expressions --------------------------------------------------------

    def _eval_Constant(self, node: ast.Constant, scope: dict[str, Any]) -> Any:
        return node.value

    def _eval_Name(self, node: ast.Name, scope: dict[str, Any]) -> Any:
        _check_name(node.id)
        if node.id in scope:
            return scope[node.id]
        if node.id in SAFE_CONSTANTS:
            return SAFE_CONSTANTS[node.id]
        if node.id in SAFE_FUNCTIONS:
            return SAFE_FUNCTIONS[node.id]
        raise ExpressionError(f"Unknown name: {node.id}")

    def _eval_List(self, node: ast.List, scope: dict[str, Any]) -> list[Any]:
        return [self.eval(item, scope) for item in node.elts]

    def _eval_Tuple(self, node: ast.Tuple, scope: dict[str, Any]) -> tuple[Any, ...]:
        return tuple(self.eval(item, scope) for item in node.elts)

    def _eval_Set(self, node: ast.Set, scope: dict[str, Any]) -> set[Any]:
        return {self.eval(item, scope) for item in node.elts}

    def _eval_Dict(self, node: ast.Dict, scope: dict[str, Any]) -> dict[Any, Any]:
        result: dict[Any, Any] = {}
        for key, value in zip(node.keys, node.values, strict=True):
            if key is None:
                spread = self.eval(value, scope)
                if not isinstance(spread, Mapping):
                    raise ExpressionError("Only dicts can be spread with **")
                result.update(spread)
            else:
                result[self.eval(key, scope)] = self.eval(value, scope)
        return result

    def _eval_JoinedStr(self, node: ast.JoinedStr, scope: dict[str, Any]) -> str:
        parts: list[str] = []
        for value in node.values:
            if isinstance(value, ast.Constant):
                parts.append(str(value.value))
            elif isinstance(value, ast.FormattedValue):
                if value.format_spec is not None:
                    raise ExpressionError("Format specs are not supported in f-strings")
                parts.append(str(self.eval(value.value, scope)))
            else:
                raise ExpressionError("Unsupported f-string part")
        return "".join(parts)

    def _binary(self, op: Callable[[Any, Any], Any], left: Any, right: Any) -> Any:
        if op is operator.pow and isinstance(right, (int, float)) and abs(right) > MAX_EXPONENT:
            raise ExpressionError(f"Exponent larger than {MAX_EXPONENT}")
        if op is operator.mul:
            for sequence, count in ((left, right), (right, left)):
                if (
                    isinstance(sequence, (str, list, tuple))
                    and isinstance(count, int)
                    and len(sequence) * count > MAX_SEQUENCE_REPEAT
                ):
                    raise ExpressionError("Sequence repetition too large")
        try:
            return op(left, right)
        except (TypeError, ZeroDivisionError, ValueError) as e:
            raise ExpressionError(str(e)) from e

    def _eval_BinOp(self, node: ast.BinOp, scope: dict[str, Any]) -> Any:
        op = _BIN_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return self._binary(op, self.eval(node.left, scope), self.eval(node.right, scope))

    def _eval_UnaryOp(self, node: ast.UnaryOp, scope: dict[str, Any]) -> Any:
        op = _UNARY_OPS.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        try:
            return op(self.eval(node.operand, scope))
        except TypeError as e:
            raise ExpressionError(str(e)) from e

    def _eval_BoolOp(self, node: ast.BoolOp, scope: dict[str, Any]) -> Any:
        if isinstance(node.op, ast.And):
            value: Any = True
            for item in node.values:
                value = self.eval(item, scope)
                if not value:
                    return value
            return value
        value = False
        for item in node.values:
            value = self.eval(item, scope)
            if value:
                return value
        return value

    def _eval_Compare(self, node: ast.Compare, scope: dict[str, Any]) -> bool:
        left = self.eval(node.left, scope)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            op = _COMPARE_OPS.get(type(op_node))
            if op is None:
                raise ExpressionError(f"Unsupported comparison: {type(op_node).__name__}")
            right = self.eval(comparator, scope)
            try:
                if not op(left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(str(e)) from e
            left = right
        return True

    def _eval_IfExp(self, node: ast.IfExp, scope: dict[str, Any]) -> Any:
        if self.eval(node.test, scope):
            return self.eval(node.body, scope)
        return self.eval(node.orelse, scope)

    def _eval_Attribute(self, node: ast.Attribute, scope: dict[str, Any]) -> Any:
        _check_name(node.attr)
        value = self.eval(node.value, scope)
        if isinstance(value, Mapping):
            if node.attr in value:
                return value[node.attr]
            if isinstance(value, dict) and node.attr in SAFE_METHODS[dict]:
                return getattr(value, node.attr)
            return None
        for kind, methods in SAFE_METHODS.items():
            if isinstance(value, kind) and node.attr in methods:
                return getattr(value, node.attr)
        raise ExpressionError(
            f"Attribute '{node.attr}' is not available on {type(value).__name__}"
        )

    def _eval_Subscript(self, node: ast.Subscript, scope: dict[str, Any]) -> Any:
        value = self.eval(node.value, scope)
        key = self.eval(node.slice, scope)
        try:
            return value[key]
        except (KeyError, IndexError, TypeError) as e:
            raise ExpressionError(f"Cannot subscript {type(value).__name__} with {key!r}") from e

    def _eval_Slice(self, node: ast.Slice, scope: dict[str, Any]) -> slice:
        return slice(
            None if node.lower is None else self.eval(node.lower, scope),
            None if node.upper is None else self.eval(node.upper, scope),
            None if node.step is None else self.eval(node.step, scope),
        )

    def _eval_Lambda(self, node: ast.Lambda, scope: dict[str, Any]) -> Any:
        raise ExpressionError("lambda is only allowed as a function argument")

    def _argument(self, node: ast.expr, scope: dict[str, Any]) -> Any:
        if isinstance(node, ast.Lambda):
            if node.args.vararg or node.args.kwarg or node.args.kwonlyargs or node.args.defaults:
                raise ExpressionError("lambda arguments must be plain names")
            for arg in node.args.args:
                _check_name(arg.arg)
            return _Lambda(node, self, scope)
        if isinstance(node, ast.Starred):
            raise ExpressionError("Star arguments are not supported")
        return self.eval(node, scope)

    def _eval_Call(self, node: ast.Call, scope: dict[str, Any]) -> Any:
        func = self.eval(node.func, scope)
        if not _is_allowed_callable(func):
            raise ExpressionError(f"Calling {type(func).__name__} is not allowed")
        args = [self._argument(arg, scope) for arg in node.args]
        kwargs: dict[str, Any] = {}
        for keyword in node.keywords:
            if keyword.arg is None:
                raise ExpressionError("** arguments are not supported")
            kwargs[keyword.arg] = self._argument(keyword.value, scope)
        try:
            return func(*args, **kwargs)
        except ExpressionError:
            raise
        except (TypeError, ValueError, KeyError, IndexError, AttributeError, ZeroDivisionError) as e:
            raise ExpressionError(str(e)) from e

    def _comprehension(
        self, generators: list[ast.comprehension], scope: dict[str, Any]
    ) -> list[dict[str, Any]]:
        scopes = [dict(scope)]
        for generator in generators:
            if generator.is_async:
                raise ExpressionError("async comprehensions are not supported")
            next_scopes: list[dict[str, Any]] = []
            for current in scopes:
                for item in self.eval(generator.iter, current):
                    inner = dict(current)
                    self._assign(generator.target, item, inner)
                    if all(self.eval(cond, inner) for cond in generator.ifs):
                        next_scopes.append(inner)
                        if len(next_scopes) > MAX_RANGE * 10:
                            raise ExpressionError("Comprehension produces too many items")
            scopes = next_scopes
        return scopes

    def _eval_ListComp(self, node: ast.ListComp, scope: dict[str, Any]) -> list[Any]:
        return [self.eval(node.elt, inner) for inner in self._comprehension(node.generators, scope)]

    def _eval_GeneratorExp(self, node: ast.GeneratorExp, scope: dict[str, Any]) -> list[Any]:
        return [self.eval(node.elt, inner) for inner in self._comprehension(node.generators, scope)]

    def _eval_SetComp(self, node: ast.SetComp, scope: dict[str, Any]) -> set[Any]:
        return {self.eval(node.elt, inner) for inner in self._comprehension(node.generators, scope)}

    def _eval_DictComp(self, node: ast.DictComp, scope: dict[str, Any]) -> dict[Any, Any]:
        return {
            self.eval(node.key, inner): self.eval(node.value, inner)
            for inner in self._comprehension(node.generators, scope)
        }


_SAFE_FUNCTION_IDS = frozenset(id(func) for func in SAFE_FUNCTIONS.values())


def _is_allowed_callable(func: Any) -> bool:
    if isinstance(func, _Lambda):
        return True
    if id(func) in _SAFE_FUNCTION_IDS:
        return True
    owner = getattr(func, "__self__", None)
    name = getattr(func, "__name__", "")
    for kind, methods in SAFE_METHODS.items():
        if isinstance(owner, kind) and name in methods:
            return True
    return False


_INTERPRETER = _Interpreter()


# ============================================================================
# Public API
# ============================================================================


class CompiledFunction:
    """A parsed function body, callable as ``fn(output, context)``."""

    def __init__(self, source: str, params: list[str], body: list[ast.stmt]):
        self.source = source
        self.params = params
        self.body = body

    def __call__(self, *args: Any) -> Any:
        scope: dict[str, Any] = {}
        for index, name in enumerate(self.params):
            scope[name] = args[index] if index < len(args) else None
        # `input` is an alias of the first argument
        if args and "input" not in scope:
            scope["input"] = args[0]
        return _INTERPRETER.run(self.body, scope)


def _parse(source: str, mode: str) -> ast.AST:
    try:
        return ast.parse(source, mode=mode)
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression syntax: {e.msg}") from e


@functools.lru_cache(maxsize=256)
def compile_function(source: str) -> CompiledFunction:
    """Parse a function body.

    Raises:
        ExpressionError: On a syntax error or a body shape that is not accepted
    """
    text = source.strip()
    if not text:
        raise ExpressionError("Function body is empty")

    default_params = ["output", "context"]

    if text.startswith("lambda"):
        tree = _parse(text, "eval")
        if not isinstance(tree, ast.Expression) or not isinstance(tree.body, ast.Lambda):
            raise ExpressionError("Expected a lambda expression")
        lambda_node = tree.body
        if lambda_node.args.vararg or lambda_node.args.kwarg or lambda_node.args.kwonlyargs:
            raise ExpressionError("lambda arguments must be plain names")
        params = [arg.arg for arg in lambda_node.args.args]
        for name in params:
            _check_name(name)
        body: list[ast.stmt] = [ast.Return(value=lambda_node.body)]
        return CompiledFunction(text, params or default_params, body)

    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError:
        module = _parse(text, "exec")
        assert isinstance(module, ast.Module)
        statements = list(module.body)
        # A trailing bare expression is the result
        if statements and isinstance(statements[-1], ast.Expr):
            statements[-1] = ast.Return(value=statements[-1].value)
        return CompiledFunction(text, default_params, statements)

    assert isinstance(tree, ast.Expression)
    if isinstance(tree.body, ast.Lambda):
        raise ExpressionError("Expected a lambda expression")
    return CompiledFunction(text, default_params, [ast.Return(value=tree.body)])


def evaluate(expression: str, names: Mapping[str, Any]) -> Any:
    """Evaluate a single expression with ``names`` in scope.

    Raises:
        ExpressionError: When the expression is rejected or fails
    """
    tree = _parse(expression.strip(), "eval")
    assert isinstance(tree, ast.Expression)
    for name in names:
        _check_name(name)
    return _INTERPRETER.eval(tree.body, dict(names))


__all__ = [
    "SAFE_FUNCTIONS",
    "CompiledFunction",
    "ExpressionError",
    "compile_function",
    "evaluate",
]
