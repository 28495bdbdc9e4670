"""
Guard conditions.

A guard is one of three kinds, modelled as a tagged variant:

- ``MethodRef(name)``: an attribute of the target, called with no
  arguments when it is callable.
- ``Expr(source)``: a small Python expression evaluated against the target
  by a sandboxed evaluator. ``self`` names the target; any other bare name
  is looked up on the target first, then in a short list of safe builtins.
- ``Closure(fn)``: a callable invoked with the target (or with nothing if
  it takes no parameters).

Plain values are coerced with ``to_guard``: a bare identifier string becomes
a ``MethodRef``, any other string an ``Expr``, and a callable a ``Closure``.

A ``Condition`` is the conjunction of its positive (``if_``) guards and the
negation of each of its ``unless`` guards.
"""

import ast
import logging
import operator
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, List, Optional, Union

from workflow.binding import ParameterShape
from workflow.errors import WorkflowDefinitionError

logger = logging.getLogger(__name__)


# ── Sandboxed expression evaluator ────────────────────────────────────────────

SAFE_BUILTINS = {
    "len": len,
    "any": any,
    "all": all,
    "min": min,
    "max": max,
    "abs": abs,
    "bool": bool,
    "int": int,
    "float": float,
    "str": str,
    "sorted": sorted,
}

_BINARY_OPERATORS = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

# str.format can reach attributes through its field syntax
_BLOCKED_ATTRIBUTES = frozenset({"format", "format_map"})

_UNARY_OPERATORS = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_COMPARISON_OPERATORS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp, ast.And, ast.Or,
    ast.UnaryOp, ast.BinOp, ast.Compare, ast.IfExp,
    ast.Call, ast.keyword,
    ast.Attribute, ast.Subscript, ast.Slice,
    ast.Name, ast.Load, ast.Constant,
    ast.Tuple, ast.List, ast.Set, ast.Dict,
    *_BINARY_OPERATORS, *_UNARY_OPERATORS, *_COMPARISON_OPERATORS,
)


class SafeExpression:
    """
    A parsed, validated expression that can be evaluated against a target.

    Parsing and validation happen once, at construction, so a bad expression
    fails while the workflow is being defined rather than mid-transition.

    Raises:
        WorkflowDefinitionError: On a syntax error or a disallowed construct.
    """

    def __init__(self, source: str):
        self.source = source
        try:
            self._tree = ast.parse(source.strip(), mode="eval")
        except SyntaxError as e:
            raise WorkflowDefinitionError(
                f"Invalid expression {source!r}: {e.msg}", context={"expression": source}
            ) from e
        self._validate()

    def _validate(self) -> None:
        for node in ast.walk(self._tree):
            if not isinstance(node, _ALLOWED_NODES):
                raise WorkflowDefinitionError(
                    f"Unsupported syntax {type(node).__name__} in expression {self.source!r}",
                    context={"expression": self.source},
                )
            private = (
                (isinstance(node, ast.Attribute) and node.attr.startswith("_"))
                or (isinstance(node, ast.Name) and node.id.startswith("_"))
            )
            if private:
                raise WorkflowDefinitionError(
                    f"Private names are not allowed in expression {self.source!r}",
                    context={"expression": self.source},
                )
            if isinstance(node, ast.Attribute) and node.attr in _BLOCKED_ATTRIBUTES:
                raise WorkflowDefinitionError(
                    f"'{node.attr}' is not allowed in expression {self.source!r}",
                    context={"expression": self.source},
                )
            unpacking = (
                (isinstance(node, ast.keyword) and node.arg is None)
                or (isinstance(node, ast.Dict) and None in node.keys)
            )
            if unpacking:
                raise WorkflowDefinitionError(
                    f"Unpacking is not allowed in expression {self.source!r}",
                    context={"expression": self.source},
                )

    def evaluate(self, target: Any) -> Any:
        return self._eval(self._tree.body, target)

    def _eval(self, node: ast.AST, target: Any) -> Any:
        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id == "self":
                return target
            if hasattr(target, node.id):
                return getattr(target, node.id)
            if node.id in SAFE_BUILTINS:
                return SAFE_BUILTINS[node.id]
            raise NameError(f"name '{node.id}' is not defined on {type(target).__name__}")

        if isinstance(node, ast.Attribute):
            return getattr(self._eval(node.value, target), node.attr)

        if isinstance(node, ast.Subscript):
            return self._eval(node.value, target)[self._eval(node.slice, target)]

        if isinstance(node, ast.Slice):
            return slice(
                self._eval(node.lower, target) if node.lower else None,
                self._eval(node.upper, target) if node.upper else None,
                self._eval(node.step, target) if node.step else None,
            )

        if isinstance(node, ast.Call):
            func = self._eval(node.func, target)
            args = [self._eval(a, target) for a in node.args]
            kwargs = {kw.arg: self._eval(kw.value, target) for kw in node.keywords}
            return func(*args, **kwargs)

        if isinstance(node, ast.BoolOp):
            result = None
            for value_node in node.values:
                result = self._eval(value_node, target)
                if isinstance(node.op, ast.And) and not result:
                    return result
                if isinstance(node.op, ast.Or) and result:
                    return result
            return result

        if isinstance(node, ast.UnaryOp):
            return _UNARY_OPERATORS[type(node.op)](self._eval(node.operand, target))

        if isinstance(node, ast.BinOp):
            return _BINARY_OPERATORS[type(node.op)](
                self._eval(node.left, target), self._eval(node.right, target)
            )

        if isinstance(node, ast.Compare):
            left = self._eval(node.left, target)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, target)
                if not _COMPARISON_OPERATORS[type(op)](left, right):
                    return False
                left = right
            return True

        if isinstance(node, ast.IfExp):
            if self._eval(node.test, target):
                return self._eval(node.body, target)
            return self._eval(node.orelse, target)

        if isinstance(node, ast.Tuple):
            return tuple(self._eval(e, target) for e in node.elts)
        if isinstance(node, ast.List):
            return [self._eval(e, target) for e in node.elts]
        if isinstance(node, ast.Set):
            return {self._eval(e, target) for e in node.elts}
        if isinstance(node, ast.Dict):
            return {
                self._eval(k, target): self._eval(v, target)
                for k, v in zip(node.keys, node.values)
            }

        # Unreachable after _validate()
        raise WorkflowDefinitionError(f"Cannot evaluate {type(node).__name__}")

    def __repr__(self) -> str:
        return f"SafeExpression({self.source!r})"


# ── Guard variants ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class MethodRef:
    """Refers to an attribute of the target by name."""

    name: str

    def evaluate(self, target: Any) -> Any:
        value = getattr(target, self.name)
        return value() if callable(value) else value

    @property
    def label(self) -> str:
        return self.name


@dataclass(frozen=True)
class Expr:
    """An inline expression evaluated against the target."""

    source: str
    compiled: SafeExpression = field(init=False, compare=False, repr=False)

    def __post_init__(self):
        object.__setattr__(self, "compiled", SafeExpression(self.source))

    def evaluate(self, target: Any) -> Any:
        return self.compiled.evaluate(target)

    @property
    def label(self) -> str:
        return self.source


@dataclass(frozen=True)
class Closure:
    """A callable receiving the target."""

    fn: Callable

    def evaluate(self, target: Any) -> Any:
        if ParameterShape.for_callable(self.fn).accepts_positional:
            return self.fn(target)
        return self.fn()

    @property
    def label(self) -> str:
        return getattr(self.fn, "__qualname__", repr(self.fn))


GuardSpec = Union[MethodRef, Expr, Closure]


def to_guard(value: Any) -> GuardSpec:
    """
    Coerce a plain value into a GuardSpec.

    Raises:
        WorkflowDefinitionError: If the value is not a string, callable or GuardSpec.
    """
    if isinstance(value, (MethodRef, Expr, Closure)):
        return value
    if isinstance(value, str):
        if value.isidentifier():
            return MethodRef(value)
        return Expr(value)
    if callable(value):
        return Closure(value)
    raise WorkflowDefinitionError(
        f"Guard must be a method name, an expression string or a callable, got {value!r}"
    )


def as_list(value: Any) -> List[Any]:
    """Normalise None / a single item / an iterable of items to a list."""
    if value is None:
        return []
    if isinstance(value, (list, tuple, set, frozenset)):
        return list(value)
    return [value]


class Condition:
    """
    A conjunction of positive and negated guards.

    Args:
        if_: Guards that must all be truthy.
        unless: Guards that must all be falsy.
    """

    def __init__(self, if_: Optional[Iterable[Any]] = None, unless: Optional[Iterable[Any]] = None):
        self.if_guards: tuple = tuple(to_guard(g) for g in as_list(if_))
        self.unless_guards: tuple = tuple(to_guard(g) for g in as_list(unless))

    @property
    def is_empty(self) -> bool:
        return not self.if_guards and not self.unless_guards

    def apply(self, target: Any) -> bool:
        """Return True if every ``if_`` guard holds and no ``unless`` guard does."""
        for guard in self.if_guards:
            if not guard.evaluate(target):
                logger.debug(f"Guard if={guard.label!r} failed")
                return False
        for guard in self.unless_guards:
            if guard.evaluate(target):
                logger.debug(f"Guard unless={guard.label!r} failed")
                return False
        return True

    def __repr__(self) -> str:
        return (
            f"Condition(if_={[g.label for g in self.if_guards]}, "
            f"unless={[g.label for g in self.unless_guards]})"
        )
