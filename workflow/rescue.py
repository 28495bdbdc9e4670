"""
Rescue layer: handlers for errors escaping a transition, and handlers that
always run after one.

Handlers are declared on the specification:

    w.rescue_from(LookupError, handler="on_lookup_error")   # host method, gets the error
    w.rescue_from(KeyError, ValueError, handler=lambda host, error: ...)
    w.always("cleanup")                                # host method, no arguments
    w.always(lambda host: host.log.append("done"))

Rescue handlers are tried in registration order and the first whose error
kind matches handles the error, which is then suppressed. Always-handlers
run once per attempt, in registration order, whatever the outcome; errors
they raise are not suppressed.
"""

import logging
from dataclasses import dataclass
from typing import Any, Iterable, Tuple, Type

from workflow.binding import ParameterShape
from workflow.conditions import Closure, GuardSpec, MethodRef, as_list, to_guard
from workflow.errors import WorkflowDefinitionError

logger = logging.getLogger(__name__)


def call_target(target: GuardSpec, host: Any, *extra: Any) -> Any:
    """
    Invoke a handler target against ``host``.

    Method references are called on the host with ``extra``; closures with
    ``(host, *extra)``; expressions are evaluated against the host. Callables
    receive only as many leading values as they declare positional slots for.
    """
    if isinstance(target, MethodRef):
        fn = getattr(host, target.name)
        values: Tuple[Any, ...] = extra
    elif isinstance(target, Closure):
        fn = target.fn
        values = (host,) + extra
    else:
        return target.evaluate(host)

    shape = ParameterShape.for_callable(fn)
    if not shape.rest:
        values = values[: len(shape.positional)]
    return fn(*values)


@dataclass(frozen=True)
class RescueHandler:
    """Handles errors that are instances of ``error_kinds``."""

    error_kinds: Tuple[Type[BaseException], ...]
    target: GuardSpec

    @classmethod
    def build(cls, error_kinds: Any, handler: Any) -> "RescueHandler":
        kinds = tuple(as_list(error_kinds))
        if not kinds or not all(isinstance(k, type) and issubclass(k, BaseException) for k in kinds):
            raise WorkflowDefinitionError(
                f"rescue_from expects exception classes, got {error_kinds!r}"
            )
        return cls(kinds, to_guard(handler))

    def matches(self, error: BaseException) -> bool:
        return isinstance(error, self.error_kinds)


@dataclass(frozen=True)
class AlwaysHandler:
    """Runs after every transition attempt."""

    target: GuardSpec

    @classmethod
    def build(cls, handler: Any) -> "AlwaysHandler":
        return cls(to_guard(handler))


def rescue_with_handler(handlers: Iterable[RescueHandler], error: BaseException, host: Any) -> bool:
    """
    Offer ``error`` to ``handlers`` in order.

    Returns:
        True if a handler matched and ran, False if the error should be re-raised.
    """
    for handler in handlers:
        if handler.matches(error):
            logger.debug(
                f"{type(host).__name__}: {type(error).__name__} rescued by {handler.target.label!r}"
            )
            call_target(handler.target, host, error)
            return True
    return False


def run_always_handlers(handlers: Iterable[AlwaysHandler], host: Any) -> None:
    for handler in handlers:
        call_target(handler.target, host)
