"""
The state graph: states, events, transitions and the specification that owns them.

Graphs are declared through a ``SpecificationBuilder`` and compiled once by
``build()`` into an immutable ``Specification``. All shape checks happen at
build time; a graph that builds is safe to share between any number of
instances.

Usage:
    from workflow.graph import SpecificationBuilder

    w = SpecificationBuilder()
    with w.state("new") as new:
        new.event("submit").to("submitted", if_="body").to("trash")
    w.state("submitted").event("accept", to="accepted")
    w.state("accepted")
    w.state("trash")
    spec = w.build()
"""

import logging
from functools import total_ordering
from types import MappingProxyType
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from workflow.conditions import Condition, as_list
from workflow.errors import (
    DualEventDefinitionError,
    EventNameCollisionError,
    NoMatchingTransitionError,
    NoSuchStateError,
    NoTransitionsDefinedError,
    StateComparisonError,
    WorkflowDefinitionError,
)
from workflow.rescue import AlwaysHandler, RescueHandler

logger = logging.getLogger(__name__)

REVERT_PREFIX = "revert_"


def _normalise_tags(tags: Union[None, str, Iterable[str]], owner: str) -> Tuple[str, ...]:
    if tags is None:
        return ()
    if isinstance(tags, str):
        tags = [tags]
    result: List[str] = []
    for tag in tags:
        if not isinstance(tag, str):
            raise WorkflowDefinitionError(
                f"Tags can only be strings, got {tag!r} on [{owner}]", context={"owner": owner}
            )
        if tag not in result:
            result.append(tag)
    return tuple(result)


# ── Compiled graph ────────────────────────────────────────────────────────────

class Transition:
    """A candidate move to ``target_state``, taken when ``condition`` applies."""

    def __init__(self, target_state: "State", condition: Condition):
        self.target_state = target_state
        self.condition = condition

    def matches(self, target: Any) -> bool:
        return self.condition.apply(target)

    def __repr__(self) -> str:
        return f"<Transition to={self.target_state.name!r} {self.condition!r}>"


class Event:
    """
    A named trigger declared on one state, with ordered transition candidates.

    The first transition whose condition applies wins; later ones act as fallbacks.
    """

    def __init__(
        self,
        name: str,
        state_name: str,
        transitions: Tuple[Transition, ...],
        tags: Tuple[str, ...] = (),
        meta: Optional[Mapping[str, Any]] = None,
    ):
        self.name = name
        self.state_name = state_name
        self.transitions = transitions
        self.tags = tags
        self.meta: Mapping[str, Any] = MappingProxyType(dict(meta or {}))

    @property
    def title(self) -> str:
        """Human-readable name, e.g. ``"Send Back"`` for ``send_back``."""
        return self.name.replace("_", " ").title()

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def evaluate(self, target: Any) -> Optional["State"]:
        """Return the target state of the first matching transition, or None."""
        for transition in self.transitions:
            if transition.matches(target):
                return transition.target_state
        return None

    def evaluate_strict(self, target: Any) -> "State":
        """
        Like ``evaluate`` but never returns None.

        Raises:
            NoMatchingTransitionError: If no transition condition applies.
        """
        state = self.evaluate(target)
        if state is None:
            raise NoMatchingTransitionError(self.state_name, self.name)
        return state

    def __repr__(self) -> str:
        return f"<Event name={self.name!r} transitions({len(self.transitions)})={list(self.transitions)!r}>"


@total_ordering
class State:
    """
    A named state. States order by declaration sequence.

    A state may be compared with another state of its graph or with the name
    of one; anything else raises StateComparisonError.
    """

    def __init__(
        self,
        name: str,
        sequence: int,
        tags: Tuple[str, ...] = (),
        meta: Optional[Mapping[str, Any]] = None,
    ):
        self.name = name
        self.sequence = sequence
        self.tags = tags
        self.meta: Mapping[str, Any] = MappingProxyType(dict(meta or {}))
        self.events: Tuple[Event, ...] = ()
        self._specification: Optional["Specification"] = None

    @property
    def is_initial(self) -> bool:
        return self.sequence == 0

    @property
    def is_terminal(self) -> bool:
        return not self.events

    @property
    def event_names(self) -> List[str]:
        return [e.name for e in self.events]

    def has_tag(self, tag: str) -> bool:
        return tag in self.tags

    def find_event(self, name: str) -> Optional[Event]:
        for event in self.events:
            if event.name == name:
                return event
        return None

    def _coerce(self, other: Any) -> "State":
        if isinstance(other, State):
            return other
        if isinstance(other, str) and self._specification is not None:
            found = self._specification.find_state(other)
            if found is not None:
                return found
        raise StateComparisonError(self.name, other)

    def __lt__(self, other: Any) -> bool:
        return self.sequence < self._coerce(other).sequence

    def __eq__(self, other: Any) -> bool:
        if isinstance(other, State):
            return self.name == other.name and self.sequence == other.sequence
        if isinstance(other, str):
            return self.name == other
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self.name)

    def __str__(self) -> str:
        return self.name

    def __repr__(self) -> str:
        return f"<State name={self.name!r} events({len(self.events)})={self.event_names!r}>"


class Specification:
    """
    The compiled, immutable workflow graph.

    Attributes:
        states: States in declaration order.
        events: Every event of every state, flattened.
        initial_state: The first declared state.
        named_arguments: Names under which positional transition arguments
                         are exposed on the TransitionContext.
        meta: Optional metadata for the whole workflow.
        rescue_handlers: Handlers tried against errors escaping a transition.
        always_handlers: Handlers run after every transition attempt.
    """

    def __init__(
        self,
        states: Tuple[State, ...],
        named_arguments: Tuple[str, ...] = (),
        meta: Optional[Mapping[str, Any]] = None,
        rescue_handlers: Tuple[RescueHandler, ...] = (),
        always_handlers: Tuple[AlwaysHandler, ...] = (),
        revert_events: bool = False,
    ):
        self.states = states
        self.events: Tuple[Event, ...] = tuple(e for s in states for e in s.events)
        self.initial_state = states[0]
        self.named_arguments = named_arguments
        self.meta: Mapping[str, Any] = MappingProxyType(dict(meta or {}))
        self.rescue_handlers = rescue_handlers
        self.always_handlers = always_handlers
        self.revert_events = revert_events
        self._states_by_name: Dict[str, State] = {s.name: s for s in states}
        for state in states:
            state._specification = self

    def find_state(self, name: Union[str, State]) -> Optional[State]:
        if isinstance(name, State):
            name = name.name
        return self._states_by_name.get(str(name))

    def unique_event_names(self) -> List[str]:
        names: List[str] = []
        for event in self.events:
            if event.name not in names:
                names.append(event.name)
        return names

    def terminal_states(self) -> List[State]:
        return [s for s in self.states if s.is_terminal]

    def states_tagged_with(self, *tags: str) -> List[State]:
        return [s for s in self.states if set(s.tags) & set(tags)]

    def states_not_tagged_with(self, *tags: str) -> List[State]:
        return [s for s in self.states if not set(s.tags) & set(tags)]

    def events_tagged_with(self, *tags: str) -> List[Event]:
        return [e for e in self.events if set(e.tags) & set(tags)]

    def __repr__(self) -> str:
        return f"<Specification states={[s.name for s in self.states]!r}>"


# ── Builders ──────────────────────────────────────────────────────────────────

class EventBuilder:
    """Collects the transitions of one event. ``to()`` calls chain."""

    def __init__(self, name: str, state_name: str, tags=(), meta=None):
        self.name = name
        self.state_name = state_name
        self.tags = _normalise_tags(tags, name)
        self.meta = dict(meta or {})
        self.transitions: List[Tuple[str, Condition]] = []
        self._direct = False

    def to(self, target: str, if_: Any = None, unless: Any = None) -> "EventBuilder":
        """
        Append a transition candidate.

        Args:
            target: Name of the state to move to. May be declared later.
            if_: Guard(s) that must all hold.
            unless: Guard(s) that must all fail.
        """
        if self._direct:
            raise DualEventDefinitionError(self.name)
        self.transitions.append((str(target), Condition(if_=if_, unless=unless)))
        return self


class StateBuilder:
    """Collects the events of one state. Usable as a context manager."""

    def __init__(self, name: str, tags=(), meta=None):
        self.name = name
        self.tags = _normalise_tags(tags, name)
        self.meta = dict(meta or {})
        self.events: List[EventBuilder] = []

    def find_event(self, name: str) -> Optional[EventBuilder]:
        for event in self.events:
            if event.name == name:
                return event
        return None

    def event(
        self,
        name: str,
        to: Optional[str] = None,
        if_: Any = None,
        unless: Any = None,
        tags=(),
        meta: Optional[Mapping[str, Any]] = None,
    ) -> EventBuilder:
        """
        Declare an event on this state.

        Give ``to`` for a single transition, or chain ``.to()`` calls on the
        returned builder for guarded alternatives.

        Raises:
            EventNameCollisionError: If the state already declares the event.
        """
        name = str(name)
        if self.find_event(name):
            raise EventNameCollisionError(self.name, name)
        event = EventBuilder(name, self.name, tags=tags, meta=meta)
        if to is not None:
            event.to(to, if_=if_, unless=unless)
            event._direct = True
        elif if_ is not None or unless is not None:
            raise WorkflowDefinitionError(
                f"Event [{name}] on state [{self.name}] has guards but no 'to' target",
                context={"state": self.name, "event": name},
            )
        self.events.append(event)
        return event

    on = event

    def __enter__(self) -> "StateBuilder":
        return self

    def __exit__(self, exc_type, exc, tb) -> bool:
        return False


class SpecificationBuilder:
    """
    Declarative surface for authoring a workflow graph.

    Args:
        meta: Optional metadata stored on the compiled Specification.
    """

    def __init__(self, meta: Optional[Mapping[str, Any]] = None):
        self.meta = dict(meta or {})
        self._states: List[StateBuilder] = []
        self._named_arguments: Tuple[str, ...] = ()
        self._revert_events = False
        self._rescue_handlers: List[RescueHandler] = []
        self._always_handlers: List[AlwaysHandler] = []

    def state(self, name: str, tags=(), meta: Optional[Mapping[str, Any]] = None) -> StateBuilder:
        """
        Declare a state. The first declared state is the initial state.

        Raises:
            WorkflowDefinitionError: If the state was already declared.
        """
        name = str(name)
        if self.find_state(name):
            raise WorkflowDefinitionError(
                f"State [{name}] is already declared", context={"state": name}
            )
        state = StateBuilder(name, tags=tags, meta=meta)
        self._states.append(state)
        return state

    def find_state(self, name: str) -> Optional[StateBuilder]:
        """Return an already declared state, e.g. to add events to an inherited one."""
        for state in self._states:
            if state.name == name:
                return state
        return None

    def event_args(self, *names: str) -> None:
        """Expose positional transition arguments on the context under these names."""
        self._named_arguments = tuple(names)

    def define_revert_events(self) -> None:
        """Also generate a ``revert_<event>`` event moving each single-transition event backwards."""
        self._revert_events = True

    def rescue_from(self, *error_kinds: Any, handler: Any) -> None:
        """
        Register a handler for errors escaping a transition. First match wins.

        Usage:
            w.rescue_from(KeyError, ValueError, handler="on_bad_input")
        """
        kinds: List[Any] = []
        for kind in error_kinds:
            kinds.extend(as_list(kind))
        self._rescue_handlers.append(RescueHandler.build(tuple(kinds), handler))

    def always(self, handler: Any) -> None:
        """Register a handler run after every transition attempt, whatever the outcome."""
        self._always_handlers.append(AlwaysHandler.build(handler))

    # ------------------------------------------------------------------
    # Compilation
    # ------------------------------------------------------------------

    def build(self) -> Specification:
        """
        Compile the declarations into an immutable Specification.

        The builder itself is left untouched, so building twice yields
        equivalent graphs.

        Raises:
            WorkflowDefinitionError: On any malformed declaration.
        """
        if not self._states:
            raise WorkflowDefinitionError("A workflow needs at least one state")

        declared = {s.name: list(s.events) for s in self._states}
        if self._revert_events:
            self._add_revert_events(declared)

        # Pass 1: states
        states: Dict[str, State] = {}
        for sequence, decl in enumerate(self._states):
            states[decl.name] = State(decl.name, sequence, tags=decl.tags, meta=decl.meta)

        # Pass 2: resolve transition targets and attach events
        for decl in self._states:
            events = []
            for event_decl in declared[decl.name]:
                if not event_decl.transitions:
                    raise NoTransitionsDefinedError(decl.name, event_decl.name)
                transitions = []
                for target_name, condition in event_decl.transitions:
                    target = states.get(target_name)
                    if target is None:
                        raise NoSuchStateError(decl.name, event_decl.name, target_name)
                    transitions.append(Transition(target, condition))
                events.append(
                    Event(
                        event_decl.name,
                        decl.name,
                        tuple(transitions),
                        tags=event_decl.tags,
                        meta=event_decl.meta,
                    )
                )
            states[decl.name].events = tuple(events)

        spec = Specification(
            tuple(states.values()),
            named_arguments=self._named_arguments,
            meta=self.meta,
            rescue_handlers=tuple(self._rescue_handlers),
            always_handlers=tuple(self._always_handlers),
            revert_events=self._revert_events,
        )
        logger.info(
            f"Workflow compiled: {len(spec.states)} states, {len(spec.events)} events, "
            f"initial state {spec.initial_state.name}"
        )
        return spec

    def _add_revert_events(self, declared: Dict[str, List[EventBuilder]]) -> None:
        for decl in self._states:
            for event_decl in list(declared[decl.name]):
                if event_decl.name.startswith(REVERT_PREFIX):
                    continue
                if len(event_decl.transitions) != 1:
                    logger.warning(
                        f"Skipping revert event for [{event_decl.name}] on [{decl.name}]: "
                        f"{len(event_decl.transitions)} transitions"
                    )
                    continue
                target_name = event_decl.transitions[0][0]
                if target_name not in declared:
                    # Reported as NoSuchStateError during resolution
                    continue
                revert_name = f"{REVERT_PREFIX}{event_decl.name}"
                if any(e.name == revert_name for e in declared[target_name]):
                    raise EventNameCollisionError(target_name, revert_name)
                revert = EventBuilder(revert_name, target_name, tags=event_decl.tags, meta=event_decl.meta)
                revert.to(decl.name)
                declared[target_name].append(revert)


def build_specification(
    define: Callable[[SpecificationBuilder], None],
    meta: Optional[Mapping[str, Any]] = None,
) -> Specification:
    """Run ``define`` against a fresh builder and compile the result."""
    builder = SpecificationBuilder(meta=meta)
    define(builder)
    return builder.build()
