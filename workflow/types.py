"""
Workflow data types and structures.

Defines the value objects shared by the executor and the callback pipeline:
- TransitionContext: Per-attempt data handed to callbacks
- ChainStatus / ChainResult: Outcome of running a callback phase
- TransitionOutcome: Terminal outcome of one transition attempt
- TransitionHistoryEntry: Tracks transition attempts for introspection
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Tuple


class ChainStatus(Enum):
    """Whether a callback phase ran to completion or was halted."""

    CONTINUE = "continue"
    HALT = "halt"


@dataclass(frozen=True)
class ChainResult:
    """
    Result threaded back out of each nested callback phase.

    Args:
        status: CONTINUE when the inner work ran, HALT when a callback stopped the chain.
        reason: Optional halt reason.
        value: Return value of the innermost work (the persistence hook).
    """

    status: ChainStatus
    reason: Optional[str] = None
    value: Any = None

    @classmethod
    def proceed(cls, value: Any = None) -> "ChainResult":
        return cls(ChainStatus.CONTINUE, value=value)

    @classmethod
    def halt(cls, reason: Optional[str] = None) -> "ChainResult":
        return cls(ChainStatus.HALT, reason=reason)

    @property
    def halted(self) -> bool:
        return self.status == ChainStatus.HALT


class TransitionOutcome(Enum):
    """Terminal outcome of a transition attempt."""

    COMMITTED = "committed"   # New state persisted
    HALTED = "halted"         # A callback (or a failed guard) stopped the attempt
    FAILED = "failed"         # An error escaped the callback chain


@dataclass
class TransitionContext:
    """
    Data describing the transition currently in flight.

    One instance exists per attempt. It is attached to the host while the
    callbacks run and discarded when the attempt ends.

    Args:
        from_state: Name of the state being exited.
        to_state: Name of the state being entered.
        event: Name of the event that was fired.
        event_args: Positional arguments passed to the transition call.
        attributes: Keyword arguments passed to the transition call.
        named_arguments: Names under which ``event_args`` are exposed as attributes.
    """

    from_state: str
    to_state: str
    event: str
    event_args: Tuple[Any, ...] = ()
    attributes: Dict[str, Any] = field(default_factory=dict)
    named_arguments: Tuple[str, ...] = ()
    halted: bool = False
    halted_because: Optional[str] = None

    def __getattr__(self, name: str) -> Any:
        # Only reached when normal lookup fails.
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self.named_arguments or name in self.attributes:
            return self.get(name)
        raise AttributeError(
            f"{type(self).__name__} has no attribute or named argument '{name}'"
        )

    def get(self, name: str, default: Any = None) -> Any:
        """
        Look up a value by name.

        Keyword attributes win over named positional arguments. Named
        arguments past the end of ``event_args`` resolve to ``default``.
        """
        if name in self.attributes:
            return self.attributes[name]
        if name in self.named_arguments:
            index = self.named_arguments.index(name)
            if index < len(self.event_args):
                return self.event_args[index]
        return default

    def values(self) -> Tuple[str, str, str, Tuple[Any, ...], Dict[str, Any]]:
        """Return ``(from_state, to_state, event, event_args, attributes)``."""
        return self.from_state, self.to_state, self.event, self.event_args, self.attributes

    def halt(self, reason: Optional[str] = None) -> None:
        """Mark the attempt as halted. The pipeline stops at its next check."""
        self.halted = True
        self.halted_because = reason


@dataclass
class TransitionHistoryEntry:
    """
    Records a single transition attempt.

    Tracks timing, outcome and halt/error information for debugging and analysis.
    """

    event: str
    from_state: str
    to_state: Optional[str]
    outcome: TransitionOutcome
    duration: float
    timestamp: float = field(default_factory=time.time)
    halted_because: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def committed(self) -> bool:
        """True if the new state was persisted."""
        return self.outcome == TransitionOutcome.COMMITTED

    @property
    def failed(self) -> bool:
        """True if an error escaped the callback chain."""
        return self.outcome == TransitionOutcome.FAILED

    def to_dict(self) -> dict:
        """Serialise to a plain dictionary."""
        return {
            "event": self.event,
            "from_state": self.from_state,
            "to_state": self.to_state,
            "outcome": self.outcome.value,
            "duration": self.duration,
            "timestamp": self.timestamp,
            "halted_because": self.halted_because,
            "error_message": self.error_message,
        }
