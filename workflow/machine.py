"""
Workflow: an embeddable state machine for host objects.

Features:
- Declarative states, events and guarded transitions, compiled once per class
- First-declared, first-matched transition selection
- Nested transition / exit / enter callback phases with before, around and after positions
- Halting from any callback, with an optional reason
- Callbacks receive exactly the transition data their signatures ask for
- Rescue and always handlers around every transition attempt
- Pluggable persistence of the current state
- Bounded transition history (deque) for debugging and introspection

Usage:
    from workflow import Workflow, before_transition

    class Article(Workflow):
        @classmethod
        def define_workflow(cls, w):
            w.state("new").event("accept", to="accepted")
            with w.state("accepted") as accepted:
                accepted.event("archive", to="archived")
                accepted.event("publish").to("published", if_="body").to("accepted")
            w.state("published")
            w.state("archived")

        def __init__(self, body=None):
            super().__init__()
            self.body = body

        @before_transition(only="accept")
        def check_reviewer(self, reviewer=None):
            if reviewer is None:
                self.halt("accepting needs a reviewer")

    article = Article()
    article.transition("accept", "alice")      # -> "accepted"
    article.transition("archive")              # -> "archived"
"""

import logging
import time
from abc import ABC, abstractmethod
from collections import deque
from typing import Any, List, Optional, Union

from workflow.adapters import AttributeAdapter, PersistenceAdapter
from workflow.callbacks import (
    CallbackRegistration,
    CallbackRegistry,
    Phase,
    Position,
    collect_marked_callbacks,
    ensure_callback,
    error_callback,
    run_callbacks,
)
from workflow.errors import (
    NoSuchEventError,
    TransitionHaltedError,
    WorkflowError,
)
from workflow.graph import Specification, SpecificationBuilder, State
from workflow.rescue import rescue_with_handler, run_always_handlers
from workflow.types import (
    ChainResult,
    TransitionContext,
    TransitionHistoryEntry,
    TransitionOutcome,
)

logger = logging.getLogger(__name__)


class Workflow(ABC):
    """
    Base class for workflow hosts.

    Subclass this, implement ``define_workflow`` and fire events with
    ``transition()``. Subclasses of a host inherit its callbacks and may
    extend its graph by calling ``super().define_workflow(w)`` first.

    Attributes:
        HISTORY_SIZE: Number of transition attempts kept in the history (default: 100).
        RAISE_ON_HALT: If True, every halted attempt raises TransitionHaltedError.
        workflow_adapter: Where the current state name is stored
                          (default: the ``workflow_state`` attribute).
    """

    HISTORY_SIZE: int = 100
    RAISE_ON_HALT: bool = False
    workflow_adapter: PersistenceAdapter = AttributeAdapter()

    _callbacks: CallbackRegistry = CallbackRegistry()

    # Defaults for hosts that do not call Workflow.__init__
    _transition_context: Optional[TransitionContext] = None
    halted: bool = False
    halted_because: Optional[str] = None

    def __init__(self):
        self._transition_context = None
        self._history: deque = deque(maxlen=self.HISTORY_SIZE)
        self.halted = False
        self.halted_because = None

    def __init_subclass__(cls, **kwargs):
        super().__init_subclass__(**kwargs)
        cls._callbacks = cls._callbacks.copy()
        collect_marked_callbacks(cls.__dict__, cls._callbacks)

    # ------------------------------------------------------------------
    # Abstract interface: subclasses must implement this
    # ------------------------------------------------------------------

    @classmethod
    @abstractmethod
    def define_workflow(cls, workflow: SpecificationBuilder) -> None:
        """Declare the states and events of this host on ``workflow``."""

    # ------------------------------------------------------------------
    # Specification
    # ------------------------------------------------------------------

    @classmethod
    def workflow_spec(cls) -> Specification:
        """
        Return the compiled specification for this class.

        Compiled on first use and cached per class.

        Raises:
            WorkflowDefinitionError: If the declarations are malformed.
        """
        spec = cls.__dict__.get("_compiled_spec")
        if spec is None:
            builder = SpecificationBuilder()
            cls.define_workflow(builder)
            spec = builder.build()
            cls._compiled_spec = spec
            logger.debug(f"{cls.__name__}: specification cached")
        return spec

    # ------------------------------------------------------------------
    # Persistence hooks: override these or swap the adapter
    # ------------------------------------------------------------------

    def load_current_state(self) -> Optional[str]:
        """Return the stored state name, or None to use the initial state."""
        return self.workflow_adapter.load(self)

    def persist_new_state(self, name: str) -> Any:
        """Store the new state name. Called once per committed transition."""
        return self.workflow_adapter.persist(self, name)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    @property
    def current_state(self) -> State:
        spec = self.workflow_spec()
        name = self.load_current_state()
        if name is None:
            return spec.initial_state
        state = spec.find_state(name)
        if state is None:
            logger.warning(
                f"{type(self).__name__}: stored state '{name}' is not defined, "
                f"using initial state {spec.initial_state.name}"
            )
            return spec.initial_state
        return state

    @property
    def transition_context(self) -> Optional[TransitionContext]:
        """The context of the transition in flight, or None outside a transition."""
        return self._transition_context

    def is_in_state(self, name: Union[str, State]) -> bool:
        return self.current_state.name == str(name)

    def can_fire(self, event_name: str) -> bool:
        """True if the current state declares the event and one of its transitions matches."""
        event = self.current_state.find_event(event_name)
        return event is not None and event.evaluate(self) is not None

    def available_events(self) -> List[str]:
        """Names of the events that could fire from the current state right now."""
        return [e.name for e in self.current_state.events if e.evaluate(self) is not None]

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def transition(self, event_name: str, /, *args: Any, **attributes: Any) -> Any:
        """
        Fire ``event_name`` from the current state.

        Positional ``args`` and keyword ``attributes`` are carried on the
        TransitionContext and bound to callbacks by name.

        Returns:
            The new state name (or the persistence hook's own return value)
            on commit; None if the attempt was halted, no transition matched,
            or a rescue handler handled an error.

        Raises:
            NoSuchEventError: If the current state does not declare the event.
            Exception: Any error from a callback or the persistence hook that
                       no rescue handler handled.
        """
        return self._rescued(event_name, args, attributes, strict=False)

    def transition_strict(self, event_name: str, /, *args: Any, **attributes: Any) -> Any:
        """
        Like ``transition`` but a halt or a missing match is an error.

        Raises:
            NoMatchingTransitionError: If no transition condition matched.
            TransitionHaltedError: If a callback halted the attempt.
        """
        return self._rescued(event_name, args, attributes, strict=True)

    def halt(self, reason: Optional[str] = None) -> None:
        """
        Stop the transition in flight. Call from a before or around callback.

        Nothing further in the callback chain runs once the current callback
        returns, and the new state is not persisted.
        """
        context = self._require_context("halt")
        context.halt(reason)
        self.halted = True
        self.halted_because = reason

    def halt_strict(self, reason: Optional[str] = None) -> None:
        """Stop the transition in flight by raising TransitionHaltedError."""
        context = self._require_context("halt_strict")
        context.halt(reason)
        self.halted = True
        self.halted_because = reason
        raise TransitionHaltedError(reason, context={"event": context.event, "state": context.from_state})

    def reset(self) -> None:
        """Persist the initial state and clear halt bookkeeping."""
        initial = self.workflow_spec().initial_state
        self.persist_new_state(initial.name)
        self.halted = False
        self.halted_because = None
        logger.info(f"{type(self).__name__}: reset to {initial.name}")

    def _require_context(self, caller: str) -> TransitionContext:
        if self._transition_context is None:
            raise WorkflowError(f"{caller}() can only be called during a transition")
        return self._transition_context

    def _rescued(self, event_name: str, args: tuple, attributes: dict, strict: bool) -> Any:
        spec = self.workflow_spec()
        try:
            return self._attempt(event_name, args, attributes, strict)
        except Exception as error:
            if not rescue_with_handler(spec.rescue_handlers, error, self):
                logger.error(
                    f"{type(self).__name__}: transition '{event_name}' failed: {error}",
                    exc_info=True,
                )
                raise
            return None
        finally:
            run_always_handlers(spec.always_handlers, self)

    def _attempt(self, event_name: str, args: tuple, attributes: dict, strict: bool) -> Any:
        started = time.time()
        self.halted = False
        self.halted_because = None
        from_state = self.current_state
        to_name: Optional[str] = None

        try:
            event = from_state.find_event(event_name)
            if event is None:
                raise NoSuchEventError(from_state.name, event_name)

            target = event.evaluate_strict(self) if strict else event.evaluate(self)
            if target is None:
                result = ChainResult.halt(
                    f"No matching transition for event [{event_name}] from state [{from_state.name}]"
                )
            else:
                to_name = target.name
                result = self._run_chain(event.name, from_state, target, args, attributes)
        except Exception as error:
            self._record(event_name, from_state.name, to_name, TransitionOutcome.FAILED, started,
                         error_message=str(error))
            raise

        if result.halted:
            self.halted = True
            self.halted_because = result.reason
            self._record(event_name, from_state.name, to_name, TransitionOutcome.HALTED, started,
                         halted_because=result.reason)
            logger.warning(
                f"{type(self).__name__}: {event_name} halted in {from_state.name}"
                + (f": {result.reason}" if result.reason else "")
            )
            if strict or self.RAISE_ON_HALT:
                raise TransitionHaltedError(
                    result.reason, context={"event": event_name, "state": from_state.name}
                )
            return None

        # A late halt from an after callback does not undo the commit
        self.halted = False
        self.halted_because = None
        self._record(event_name, from_state.name, to_name, TransitionOutcome.COMMITTED, started)
        logger.info(f"{type(self).__name__}: {event_name}: {from_state.name} → {to_name}")
        return result.value if result.value is not None else to_name

    def _run_chain(self, event_name: str, from_state: State, target: State, args: tuple, attributes: dict) -> ChainResult:
        context = TransitionContext(
            from_state=from_state.name,
            to_state=target.name,
            event=event_name,
            event_args=tuple(args),
            attributes=dict(attributes),
            named_arguments=self.workflow_spec().named_arguments,
        )
        self._transition_context = context
        logger.debug(f"{type(self).__name__}: context created for {event_name}")
        try:
            return run_callbacks(
                type(self)._callbacks,
                self,
                context,
                lambda: self.persist_new_state(target.name),
            )
        finally:
            self._transition_context = None
            logger.debug(f"{type(self).__name__}: context discarded for {event_name}")

    # ------------------------------------------------------------------
    # Callback registration
    # ------------------------------------------------------------------

    @classmethod
    def register_callback(
        cls,
        phase: Union[Phase, str],
        position: Union[Position, str],
        *targets: Any,
        only: Any = None,
        except_: Any = None,
        if_: Any = None,
        unless: Any = None,
        prepend: bool = False,
    ) -> None:
        """
        Register callbacks on this class.

        Args:
            phase: ``transition``, ``exit`` or ``enter``.
            position: ``before``, ``around`` or ``after``.
            targets: Method names, expression strings or callables. Callables
                     receive the host first (and the continuation second for
                     ``around``), then whatever their signature asks for.
            only: Run only for these event names (``transition``) or state names (``exit``/``enter``).
            except_: Never run for these names.
            if_: Guard(s) that must hold for the callback to run.
            unless: Guard(s) that must fail for the callback to run.
            prepend: Insert ahead of the already registered callbacks.
        """
        phase, position = Phase(phase), Position(position)
        registrations = [
            CallbackRegistration.build(phase, position, t, only=only, except_=except_, if_=if_, unless=unless)
            for t in targets
        ]
        if prepend:
            registrations.reverse()
        for registration in registrations:
            cls._callbacks.add(registration, prepend=prepend)

    @classmethod
    def skip_callback(cls, phase: Union[Phase, str], position: Union[Position, str], name: str) -> None:
        """Remove an inherited method-name callback from this class."""
        removed = cls._callbacks.skip(Phase(phase), Position(position), name)
        if not removed:
            logger.warning(f"{cls.__name__}: no {position}_{phase} callback named '{name}' to skip")

    @classmethod
    def before_transition(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.TRANSITION, Position.BEFORE, *targets, **options)

    @classmethod
    def around_transition(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.TRANSITION, Position.AROUND, *targets, **options)

    @classmethod
    def after_transition(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.TRANSITION, Position.AFTER, *targets, **options)

    @classmethod
    def before_exit(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.EXIT, Position.BEFORE, *targets, **options)

    @classmethod
    def around_exit(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.EXIT, Position.AROUND, *targets, **options)

    @classmethod
    def after_exit(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.EXIT, Position.AFTER, *targets, **options)

    @classmethod
    def before_enter(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.ENTER, Position.BEFORE, *targets, **options)

    @classmethod
    def around_enter(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.ENTER, Position.AROUND, *targets, **options)

    @classmethod
    def after_enter(cls, *targets: Any, **options: Any) -> None:
        cls.register_callback(Phase.ENTER, Position.AFTER, *targets, **options)

    @classmethod
    def ensure_after_transitions(cls, *targets: Any, **options: Any) -> None:
        """Run ``targets`` after every transition chain, even when a callback raised."""
        cls.register_callback(
            Phase.TRANSITION, Position.AROUND, ensure_callback(list(targets)), prepend=True, **options
        )

    @classmethod
    def on_error(
        cls,
        error_class: type = Exception,
        handler: Any = None,
        rescue: Any = None,
        ensure: Any = None,
        **options: Any,
    ) -> None:
        """
        Catch ``error_class`` raised inside the callback chain.

        Args:
            error_class: Exception class (or tuple of classes) to catch.
            handler: Receives the caught error (method name or ``callable(host, error)``).
            rescue: Target(s) run after the handler when an error was caught.
            ensure: Target(s) run whether or not an error was raised.
            options: ``only`` / ``except_`` / ``if_`` / ``unless`` filters.
        """
        cls.register_callback(
            Phase.TRANSITION,
            Position.AROUND,
            error_callback(error_class, handler=handler, rescue=rescue, ensure=ensure),
            prepend=True,
            **options,
        )

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    def _record(
        self,
        event: str,
        from_state: str,
        to_state: Optional[str],
        outcome: TransitionOutcome,
        started: float,
        halted_because: Optional[str] = None,
        error_message: Optional[str] = None,
    ) -> None:
        if "_history" not in self.__dict__:
            self._history = deque(maxlen=self.HISTORY_SIZE)
        self._history.append(
            TransitionHistoryEntry(
                event=event,
                from_state=from_state,
                to_state=to_state,
                outcome=outcome,
                duration=time.time() - started,
                halted_because=halted_because,
                error_message=error_message,
            )
        )

    def get_history(self, last_n: Optional[int] = None) -> List[TransitionHistoryEntry]:
        """
        Return transition history.

        Args:
            last_n: If provided, return only the last N entries.
        """
        history = list(self.__dict__.get("_history", ()))
        return history[-last_n:] if last_n is not None else history
