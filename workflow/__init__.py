"""
python-workflow
~~~~~~~~~~~~~~~

An embeddable state machine engine for Python objects: declared states and
events, guarded transitions and a nested callback pipeline around each move.

Quick start:
    from workflow import Workflow, before_transition, after_enter
    from workflow import SpecificationBuilder, TransitionContext
"""

from workflow.adapters import AttributeAdapter, MappingAdapter, PersistenceAdapter
from workflow.binding import ParameterShape, bind_arguments
from workflow.callbacks import (
    Phase,
    Position,
    after_enter,
    after_exit,
    after_transition,
    around_enter,
    around_exit,
    around_transition,
    before_enter,
    before_exit,
    before_transition,
)
from workflow.conditions import Closure, Condition, Expr, MethodRef
from workflow.errors import (
    DualEventDefinitionError,
    EventNameCollisionError,
    NoMatchingTransitionError,
    NoSuchEventError,
    NoSuchStateError,
    NoTransitionsDefinedError,
    StateComparisonError,
    TransitionHaltedError,
    WorkflowDefinitionError,
    WorkflowError,
)
from workflow.graph import (
    Event,
    Specification,
    SpecificationBuilder,
    State,
    Transition,
    build_specification,
)
from workflow.helpers import log_transition, specification_from_dict
from workflow.machine import Workflow
from workflow.types import (
    ChainResult,
    ChainStatus,
    TransitionContext,
    TransitionHistoryEntry,
    TransitionOutcome,
)

__all__ = [
    "Workflow",
    "Specification",
    "SpecificationBuilder",
    "State",
    "Event",
    "Transition",
    "Condition",
    "MethodRef",
    "Expr",
    "Closure",
    "TransitionContext",
    "TransitionHistoryEntry",
    "TransitionOutcome",
    "ChainResult",
    "ChainStatus",
    "ParameterShape",
    "bind_arguments",
    "Phase",
    "Position",
    "before_transition",
    "around_transition",
    "after_transition",
    "before_exit",
    "around_exit",
    "after_exit",
    "before_enter",
    "around_enter",
    "after_enter",
    "AttributeAdapter",
    "MappingAdapter",
    "PersistenceAdapter",
    "build_specification",
    "specification_from_dict",
    "log_transition",
    "WorkflowError",
    "WorkflowDefinitionError",
    "EventNameCollisionError",
    "NoTransitionsDefinedError",
    "NoSuchStateError",
    "DualEventDefinitionError",
    "StateComparisonError",
    "NoSuchEventError",
    "NoMatchingTransitionError",
    "TransitionHaltedError",
]
