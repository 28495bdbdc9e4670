"""
The transition callback pipeline.

Three phases nest around every transition, outermost first:

    transition  (keyed by the event name)
      exit      (keyed by the name of the state being left)
        enter   (keyed by the name of the state being entered)
          persist new state

Within a phase, ``before`` callbacks run in registration order, then the
``around`` callbacks wrap the rest of the chain (the first registered is the
outermost), then ``after`` callbacks run in registration order.

Any callback may halt the attempt through the host's ``halt()``. Each phase
reports back a ChainResult; once the context is halted nothing further runs
and every remaining ``after`` callback is skipped. An ``around`` callback
that returns without calling its continuation also halts the attempt. Once the
new state has been persisted a halt only skips the remaining ``after``
callbacks; the attempt still commits.

Callbacks are registered on the host class, either with the decorators in
this module:

    class Article(Workflow):
        @before_transition(only="accept")
        def check_reviewer(self, reviewer):
            ...

or with the host's class methods:

    Article.after_enter(lambda article: article.notify(), only="published")
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, FrozenSet, List, Optional, Tuple

from workflow.binding import invoke
from workflow.conditions import Closure, Condition, Expr, GuardSpec, MethodRef, as_list, to_guard
from workflow.errors import WorkflowDefinitionError
from workflow.rescue import call_target
from workflow.types import ChainResult, TransitionContext

logger = logging.getLogger(__name__)

CALLBACK_MARKS = "__workflow_callbacks__"


class Phase(Enum):
    """The three nested callback scopes."""

    TRANSITION = "transition"
    EXIT = "exit"
    ENTER = "enter"

    @property
    def context_key(self) -> str:
        """TransitionContext field that ``only`` / ``except_`` filters match against."""
        return {"transition": "event", "exit": "from_state", "enter": "to_state"}[self.value]


class Position(Enum):
    BEFORE = "before"
    AROUND = "around"
    AFTER = "after"


@dataclass(frozen=True)
class CallbackRegistration:
    """
    One registered callback.

    Args:
        phase: Which phase the callback belongs to.
        position: before / around / after.
        target: What to run: a host method, an expression or a closure.
        only: If non-empty, run only when the phase key is one of these.
        except_: Never run when the phase key is one of these.
        condition: Guards evaluated against the host on each attempt.
    """

    phase: Phase
    position: Position
    target: GuardSpec
    only: FrozenSet[str] = frozenset()
    except_: FrozenSet[str] = frozenset()
    condition: Condition = field(default_factory=Condition)

    @classmethod
    def build(
        cls,
        phase: Phase,
        position: Position,
        target: Any,
        only: Any = None,
        except_: Any = None,
        if_: Any = None,
        unless: Any = None,
    ) -> "CallbackRegistration":
        guard = to_guard(target)
        if position == Position.AROUND and isinstance(guard, Expr):
            raise WorkflowDefinitionError(
                f"around_{phase.value} needs a method or a callable, not an expression: {guard.source!r}"
            )
        return cls(
            phase,
            position,
            guard,
            only=frozenset(str(n) for n in as_list(only)),
            except_=frozenset(str(n) for n in as_list(except_)),
            condition=Condition(if_=if_, unless=unless),
        )

    @property
    def name(self) -> str:
        return f"{self.position.value}_{self.phase.value}"

    def applies(self, host: Any, context: TransitionContext) -> bool:
        key = getattr(context, self.phase.context_key)
        if self.only and key not in self.only:
            return False
        if key in self.except_:
            return False
        return self.condition.is_empty or self.condition.apply(host)

    def run(self, host: Any, context: TransitionContext, proceed: Optional[Callable] = None) -> Any:
        """Invoke the target with arguments bound from ``context``."""
        leading: Tuple[Any, ...] = (proceed,) if self.position == Position.AROUND else ()
        logger.debug(f"{type(host).__name__}: {self.name} {self.target.label!r}")
        if isinstance(self.target, MethodRef):
            return invoke(getattr(host, self.target.name), context, leading)
        if isinstance(self.target, Closure):
            return invoke(self.target.fn, context, (host,) + leading)
        return self.target.evaluate(host)


class CallbackRegistry:
    """The callbacks of one host class, per (phase, position), in run order."""

    def __init__(self):
        self._chains: Dict[Tuple[Phase, Position], List[CallbackRegistration]] = {
            (phase, position): [] for phase in Phase for position in Position
        }

    def copy(self) -> "CallbackRegistry":
        clone = CallbackRegistry()
        for key, chain in self._chains.items():
            clone._chains[key] = list(chain)
        return clone

    def get(self, phase: Phase, position: Position) -> Tuple[CallbackRegistration, ...]:
        return tuple(self._chains[(phase, position)])

    def add(self, registration: CallbackRegistration, prepend: bool = False) -> None:
        """
        Add ``registration`` to its chain.

        A method-name callback registered again (e.g. a subclass overriding
        and re-decorating it) replaces the earlier registration.
        """
        chain = self._chains[(registration.phase, registration.position)]
        if isinstance(registration.target, MethodRef):
            chain[:] = [r for r in chain if r.target != registration.target]
        if prepend:
            chain.insert(0, registration)
        else:
            chain.append(registration)

    def skip(self, phase: Phase, position: Position, name: str) -> int:
        """Remove method-name callbacks called ``name``. Returns how many were removed."""
        chain = self._chains[(phase, position)]
        kept = [
            r for r in chain
            if not (isinstance(r.target, MethodRef) and r.target.name == name)
        ]
        removed = len(chain) - len(kept)
        self._chains[(phase, position)] = kept
        return removed

    def __len__(self) -> int:
        return sum(len(chain) for chain in self._chains.values())


# ── Execution ─────────────────────────────────────────────────────────────────

def _halt(context: TransitionContext) -> ChainResult:
    return ChainResult.halt(context.halted_because)


def run_callbacks(
    registry: CallbackRegistry,
    host: Any,
    context: TransitionContext,
    work: Callable[[], Any],
) -> ChainResult:
    """
    Run the three nested phases around ``work``.

    Returns:
        ChainResult.proceed(value) with ``work``'s return value once ``work``
        has run, otherwise ChainResult.halt(reason). A halt after ``work``
        skips the remaining after callbacks but cannot undo the write.
        Errors raised by callbacks or by ``work`` propagate.
    """
    committed: List[ChainResult] = []

    def persist() -> ChainResult:
        committed.append(ChainResult.proceed(work()))
        return committed[0]

    def enter() -> ChainResult:
        return run_phase(registry, Phase.ENTER, host, context, persist)

    def exit_() -> ChainResult:
        return run_phase(registry, Phase.EXIT, host, context, enter)

    result = run_phase(registry, Phase.TRANSITION, host, context, exit_)
    if committed and result.halted:
        logger.warning(
            f"{type(host).__name__}: {context.event} already persisted {context.to_state}, "
            f"ignoring late halt" + (f" ({context.halted_because})" if context.halted_because else "")
        )
        return committed[0]
    return result


def run_phase(
    registry: CallbackRegistry,
    phase: Phase,
    host: Any,
    context: TransitionContext,
    inner: Callable[[], ChainResult],
) -> ChainResult:
    """Run one phase: befores, arounds wrapping ``inner``, then afters."""
    for registration in registry.get(phase, Position.BEFORE):
        if context.halted:
            break
        if registration.applies(host, context):
            registration.run(host, context)
    if context.halted:
        return _halt(context)

    result = _run_arounds(list(registry.get(phase, Position.AROUND)), host, context, inner)
    if result.halted:
        return result

    for registration in registry.get(phase, Position.AFTER):
        if registration.applies(host, context):
            registration.run(host, context)
        if context.halted:
            return _halt(context)
    return result


def _run_arounds(
    arounds: List[CallbackRegistration],
    host: Any,
    context: TransitionContext,
    inner: Callable[[], ChainResult],
) -> ChainResult:
    if context.halted:
        return _halt(context)
    if not arounds:
        return inner()

    head, rest = arounds[0], arounds[1:]
    if not head.applies(host, context):
        return _run_arounds(rest, host, context, inner)

    results: List[ChainResult] = []

    def proceed() -> ChainResult:
        # Calling the continuation twice does not run the inner chain twice.
        if not results:
            results.append(_run_arounds(rest, host, context, inner))
        return results[0]

    head.run(host, context, proceed)
    if context.halted:
        return _halt(context)
    if not results:
        logger.debug(f"{type(host).__name__}: {head.name} {head.target.label!r} did not continue")
        return ChainResult.halt()
    return results[0]


# ── Error-handling callbacks ──────────────────────────────────────────────────

def ensure_callback(targets: List[Any]) -> Callable:
    """Build an around closure running ``targets`` after the chain, even when it raised."""
    guards = [to_guard(t) for t in targets]

    def ensure_after(host, proceed):
        try:
            return proceed()
        finally:
            for guard in guards:
                call_target(guard, host)

    return ensure_after


def error_callback(
    error_class: type,
    handler: Any = None,
    rescue: Any = None,
    ensure: Any = None,
) -> Callable:
    """
    Build an around closure catching ``error_class`` raised further down the chain.

    On a matching error: ``handler`` receives the error, then each ``rescue``
    target runs. ``ensure`` targets run in every case.
    """
    handler_guard = to_guard(handler) if handler is not None else None
    rescue_guards = [to_guard(t) for t in as_list(rescue)]
    ensure_guards = [to_guard(t) for t in as_list(ensure)]

    def on_error(host, proceed):
        try:
            return proceed()
        except error_class as error:
            logger.debug(f"{type(host).__name__}: on_error caught {type(error).__name__}: {error}")
            if handler_guard is not None:
                call_target(handler_guard, host, error)
            for guard in rescue_guards:
                call_target(guard, host)
        finally:
            for guard in ensure_guards:
                call_target(guard, host)

    return on_error


# ── Class-body decorators ─────────────────────────────────────────────────────

def _callback_decorator(phase: Phase, position: Position) -> Callable:
    def decorator(fn: Optional[Callable] = None, *, only=None, except_=None, if_=None, unless=None, prepend=False):
        options = {"only": only, "except_": except_, "if_": if_, "unless": unless, "prepend": prepend}

        def mark(method: Callable) -> Callable:
            marks = list(getattr(method, CALLBACK_MARKS, []))
            marks.append((phase, position, options))
            setattr(method, CALLBACK_MARKS, marks)
            return method

        if fn is not None:
            return mark(fn)
        return mark

    decorator.__name__ = f"{position.value}_{phase.value}"
    decorator.__doc__ = (
        f"Mark a method as a {position.value}-{phase.value} callback. "
        "Use bare or with only / except_ / if_ / unless / prepend options."
    )
    return decorator


before_transition = _callback_decorator(Phase.TRANSITION, Position.BEFORE)
around_transition = _callback_decorator(Phase.TRANSITION, Position.AROUND)
after_transition = _callback_decorator(Phase.TRANSITION, Position.AFTER)
before_exit = _callback_decorator(Phase.EXIT, Position.BEFORE)
around_exit = _callback_decorator(Phase.EXIT, Position.AROUND)
after_exit = _callback_decorator(Phase.EXIT, Position.AFTER)
before_enter = _callback_decorator(Phase.ENTER, Position.BEFORE)
around_enter = _callback_decorator(Phase.ENTER, Position.AROUND)
after_enter = _callback_decorator(Phase.ENTER, Position.AFTER)


def collect_marked_callbacks(namespace: Dict[str, Any], registry: CallbackRegistry) -> None:
    """Register every decorated method of a class body, in definition order."""
    for attr_name, value in namespace.items():
        for phase, position, options in getattr(value, CALLBACK_MARKS, ()):
            options = dict(options)
            prepend = options.pop("prepend")
            registry.add(
                CallbackRegistration.build(phase, position, MethodRef(attr_name), **options),
                prepend=prepend,
            )
