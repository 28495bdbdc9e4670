"""
Workflow error taxonomy.

Definition errors are raised while a specification is being built and are
never deferred to run time. Run-time errors are raised by the transition
executor. A halted transition is not an error unless the caller asks for
the strict behaviour, in which case ``TransitionHaltedError`` is raised.
"""

from typing import Any, Dict, Mapping, Optional


class WorkflowError(Exception):
    """Base class for all workflow errors."""

    def __init__(self, message: str = "", *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.context: Dict[str, Any] = dict(context) if context is not None else {}

    def to_dict(self) -> dict:
        """Serialise to a plain dictionary."""
        return {
            "message": str(self),
            "code": self.__class__.__name__,
            "context": self.context,
        }


# ── Definition errors ─────────────────────────────────────────────────────────

class WorkflowDefinitionError(WorkflowError, ValueError):
    """Raised when a workflow specification is malformed."""


class EventNameCollisionError(WorkflowDefinitionError):
    def __init__(self, state_name: str, event_name: str):
        super().__init__(
            f"Already defined an event [{event_name}] for state [{state_name}]",
            context={"state": state_name, "event": event_name},
        )


class NoTransitionsDefinedError(WorkflowDefinitionError):
    def __init__(self, state_name: str, event_name: str):
        super().__init__(
            f"No transitions defined for event [{event_name}] on state [{state_name}]",
            context={"state": state_name, "event": event_name},
        )


class NoSuchStateError(WorkflowDefinitionError):
    def __init__(self, state_name: str, event_name: str, target: str):
        super().__init__(
            f"Event [{event_name}] on state [{state_name}] transitions to "
            f"[{target}] but there is no such state",
            context={"state": state_name, "event": event_name, "target": target},
        )


class DualEventDefinitionError(WorkflowDefinitionError):
    def __init__(self, event_name: str):
        super().__init__(
            f"Event [{event_name}] received its target both as 'to=' and via .to(); "
            "use one or the other",
            context={"event": event_name},
        )


class StateComparisonError(WorkflowError, TypeError):
    """Raised when a state is compared against something that is not a state of its graph."""

    def __init__(self, state: Any, other: Any):
        super().__init__(
            f"Can't compare {state} with {other!r}: [{other}] is not a defined state",
            context={"state": str(state), "other": repr(other)},
        )


# ── Run-time errors ───────────────────────────────────────────────────────────

class NoSuchEventError(WorkflowError, LookupError):
    """Raised when firing an event that the current state does not declare."""

    def __init__(self, state_name: str, event_name: str):
        super().__init__(
            f"There is no event [{event_name}] defined for the [{state_name}] state",
            context={"state": state_name, "event": event_name},
        )


class NoMatchingTransitionError(WorkflowError, LookupError):
    """Raised when an event exists but none of its transition conditions matched."""

    def __init__(self, state_name: str, event_name: str):
        super().__init__(
            f"No matching transition found on event [{event_name}] from state "
            f"[{state_name}]. Consider adding a catch-all transition.",
            context={"state": state_name, "event": event_name},
        )


class TransitionHaltedError(WorkflowError):
    """Raised when a halted transition must be reported as an error."""

    def __init__(self, halted_because: Optional[str] = None, *, context: Optional[Mapping[str, Any]] = None):
        super().__init__(halted_because or "Transition halted", context=context)
        self.halted_because = halted_because
