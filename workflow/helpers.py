"""
Helper utilities for building workflows.

Provides convenience functions and decorators that reduce boilerplate
when declaring graphs and writing callbacks.
"""

import logging
from functools import wraps
from typing import Any, Dict, Iterable, Mapping, Optional

from workflow.errors import WorkflowDefinitionError
from workflow.graph import Specification, SpecificationBuilder, StateBuilder

logger = logging.getLogger(__name__)

_STATE_KEYS = {"events", "tags", "meta"}
_TRANSITION_KEYS = {"to", "if", "unless"}


def _add_event(state: StateBuilder, event_name: str, config: Any) -> None:
    if isinstance(config, str):
        state.event(event_name, to=config)
        return

    if isinstance(config, Mapping):
        config = [config]
    event = state.event(event_name)
    for transition in config:
        unknown = set(transition) - _TRANSITION_KEYS
        if unknown or "to" not in transition:
            raise WorkflowDefinitionError(
                f"Event [{event_name}] on state [{state.name}] has an invalid transition "
                f"{dict(transition)!r}; expected keys {sorted(_TRANSITION_KEYS)} with 'to' required",
                context={"state": state.name, "event": event_name},
            )
        event.to(transition["to"], if_=transition.get("if"), unless=transition.get("unless"))


def specification_from_dict(
    configs: Mapping[str, Optional[Dict[str, Any]]],
    event_args: Iterable[str] = (),
    revert_events: bool = False,
    meta: Optional[Mapping[str, Any]] = None,
) -> Specification:
    """
    Build a Specification from a compact configuration.

    Reduces boilerplate when a graph is plain data, e.g. loaded from a file.
    States are declared in mapping order, so the first key is the initial state.

    Args:
        configs: Mapping of state name → config dict (or None for a state
            with no events). Supported keys:
            - ``events`` (dict, optional): event name → target state name, or a
              transition dict ``{"to": ..., "if": ..., "unless": ...}``, or a
              list of such dicts tried in order.
            - ``tags`` (list, optional): Tags for the state.
            - ``meta`` (dict, optional): Metadata for the state.
        event_args: Names for positional transition arguments.
        revert_events: Also generate ``revert_<event>`` events.
        meta: Metadata for the whole workflow.

    Returns:
        The compiled Specification.

    Raises:
        WorkflowDefinitionError: On unknown keys or any graph definition error.

    Example:
        spec = specification_from_dict({
            "new":      {"events": {"accept": "accepted"}},
            "accepted": {"events": {"archive": [{"to": "archived", "if": "is_done"},
                                                {"to": "accepted"}]},
                         "tags": ["open"]},
            "archived": None,
        })
    """
    builder = SpecificationBuilder(meta=meta)
    if event_args:
        builder.event_args(*event_args)
    if revert_events:
        builder.define_revert_events()

    for state_name, config in configs.items():
        config = config or {}
        unknown = set(config) - _STATE_KEYS
        if unknown:
            raise WorkflowDefinitionError(
                f"State [{state_name}] config has unknown keys {sorted(unknown)}",
                context={"state": state_name},
            )
        state = builder.state(state_name, tags=config.get("tags", ()), meta=config.get("meta"))
        for event_name, event_config in (config.get("events") or {}).items():
            _add_event(state, event_name, event_config)

    return builder.build()


def log_transition(func):
    """
    Decorator that adds automatic entry/exit logging to transition callbacks.

    Logs the event, the states involved and whether the callback halted the
    transition at DEBUG level. The wrapped callback keeps its signature, so
    argument binding is unaffected.

    Usage:
        @before_transition
        @log_transition
        def check_reviewer(self, reviewer):
            ...

    Note:
        Logs at DEBUG only.
    """

    @wraps(func)
    def wrapper(self, *args, **kwargs):
        context = self.transition_context
        label = (
            f"{context.event.upper()} {context.from_state} → {context.to_state}"
            if context is not None else "no transition"
        )
        logger.debug(f"{label}: {func.__name__} starting...")
        result = func(self, *args, **kwargs)
        if context is not None and context.halted:
            logger.debug(f"{label}: {func.__name__} halted ({context.halted_because})")
        else:
            logger.debug(f"{label}: {func.__name__} complete")
        return result

    return wrapper
