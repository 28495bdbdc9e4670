"""
Argument binding for transition callbacks.

Each callback opts into the transition data it needs by naming it in its
signature. The shape of the signature is read once per function and cached;
binding then maps that shape onto the active TransitionContext:

    def before_accept(self, to, reviewer, *rest, note=None, **extra): ...

- positional slots named ``to``, ``from_`` or ``event`` receive the
  matching context field;
- any other positional slot takes the attribute of the same name if one was
  passed, else the next unclaimed positional argument;
- ``*rest`` takes the remaining positional arguments;
- keyword-only slots take attributes by name;
- ``**extra`` takes the attributes nobody claimed.
"""

import inspect
from collections import deque
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Callable, Dict, List, Sequence, Tuple

from workflow.types import TransitionContext

CONTEXT_SLOTS = ("to", "from_", "event")


@dataclass(frozen=True)
class Slot:
    """A single named parameter."""

    name: str
    has_default: bool = False
    default: Any = None


@dataclass(frozen=True)
class ParameterShape:
    """
    The declared parameter layout of a callable.

    Args:
        positional: Positional (or positional-or-keyword) slots, in order.
        rest: True if the callable takes ``*args``.
        keywords: Keyword-only slots.
        keyrest: True if the callable takes ``**kwargs``.
        skipped: Name of the bound receiver slot (``self``), if one was dropped.
    """

    positional: Tuple[Slot, ...] = ()
    rest: bool = False
    keywords: Tuple[Slot, ...] = ()
    keyrest: bool = False
    skipped: Tuple[str, ...] = ()

    @property
    def accepts_positional(self) -> bool:
        return bool(self.positional) or self.rest

    @property
    def is_empty(self) -> bool:
        return not (self.positional or self.rest or self.keywords or self.keyrest)

    @classmethod
    def from_signature(cls, signature: inspect.Signature, skip_first: bool = False) -> "ParameterShape":
        params = list(signature.parameters.values())
        skipped: Tuple[str, ...] = ()
        if skip_first and params and params[0].kind in (
            inspect.Parameter.POSITIONAL_ONLY,
            inspect.Parameter.POSITIONAL_OR_KEYWORD,
        ):
            skipped = (params[0].name,)
            params = params[1:]

        positional: List[Slot] = []
        keywords: List[Slot] = []
        rest = keyrest = False
        for p in params:
            has_default = p.default is not inspect.Parameter.empty
            slot = Slot(p.name, has_default, p.default if has_default else None)
            if p.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD):
                positional.append(slot)
            elif p.kind == inspect.Parameter.VAR_POSITIONAL:
                rest = True
            elif p.kind == inspect.Parameter.KEYWORD_ONLY:
                keywords.append(slot)
            elif p.kind == inspect.Parameter.VAR_KEYWORD:
                keyrest = True
        return cls(tuple(positional), rest, tuple(keywords), keyrest, skipped)

    @classmethod
    def for_callable(cls, fn: Callable) -> "ParameterShape":
        """
        Return the (cached) shape of ``fn``.

        Bound methods are cached by their underlying function so the cache
        never holds on to instances.
        """
        if inspect.ismethod(fn):
            return _shape_of(fn.__func__, True)
        return _shape_of(fn, False)


@lru_cache(maxsize=1024)
def _shape_of(fn: Callable, skip_first: bool) -> ParameterShape:
    try:
        signature = inspect.signature(fn)
    except (TypeError, ValueError):
        # Some builtins expose no signature; hand them everything positional.
        return ParameterShape(rest=True)
    return ParameterShape.from_signature(signature, skip_first=skip_first)


def bind_arguments(
    shape: ParameterShape,
    context: TransitionContext,
    leading: Sequence[Any] = (),
) -> Tuple[List[Any], Dict[str, Any]]:
    """
    Build ``(args, kwargs)`` for a callable of the given shape.

    Args:
        shape: The callable's parameter shape.
        context: The transition in flight. It is not modified; binding works on a snapshot.
        leading: Values for the first positional slots (the host object, a continuation).
                 Only as many are passed as the callable has slots for.

    Returns:
        Positional arguments and keyword arguments to call with.
    """
    if shape.rest:
        args: List[Any] = list(leading)
    else:
        args = list(leading[: len(shape.positional)])

    pending = deque(context.event_args)
    attributes = dict(context.attributes)
    context_values = {"to": context.to_state, "from_": context.from_state, "event": context.event}

    for slot in shape.positional[len(args):]:
        if slot.name in context_values:
            args.append(context_values[slot.name])
        elif slot.name in attributes:
            args.append(attributes.pop(slot.name))
        elif pending:
            args.append(pending.popleft())
        elif slot.has_default:
            args.append(slot.default)
        else:
            args.append(None)

    if shape.rest:
        args.extend(pending)

    kwargs: Dict[str, Any] = {}
    for slot in shape.keywords:
        if slot.name in attributes:
            kwargs[slot.name] = attributes.pop(slot.name)
        elif not slot.has_default:
            kwargs[slot.name] = None

    if shape.keyrest:
        # The bound receiver name is taken too.
        positional_names = {slot.name for slot in shape.positional} | set(shape.skipped)
        kwargs.update(
            (name, value) for name, value in attributes.items() if name not in positional_names
        )

    return args, kwargs


def invoke(fn: Callable, context: TransitionContext, leading: Sequence[Any] = ()) -> Any:
    """Call ``fn`` with arguments bound from ``context``."""
    shape = ParameterShape.for_callable(fn)
    if shape.is_empty:
        return fn()
    args, kwargs = bind_arguments(shape, context, leading)
    return fn(*args, **kwargs)
