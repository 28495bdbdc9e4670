"""
Persistence adapters.

The engine reads and writes the current state only through two hooks on the
host, ``load_current_state()`` and ``persist_new_state(name)``. By default
both delegate to the host class's ``workflow_adapter``. Adapters decide where
the state name lives; transactions, locking and rollback are theirs to
provide.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Optional, Protocol

logger = logging.getLogger(__name__)


class PersistenceAdapter(Protocol):
    def load(self, host: Any) -> Optional[str]:
        """Return the stored state name, or None when nothing is stored yet."""

    def persist(self, host: Any, state_name: str) -> Any:
        """Store ``state_name``. The return value becomes the commit result."""


class AttributeAdapter:
    """
    Keeps the state name in an instance attribute.

    Args:
        column: Attribute name (default: ``workflow_state``).
    """

    def __init__(self, column: str = "workflow_state"):
        self.column = column

    def load(self, host: Any) -> Optional[str]:
        return getattr(host, self.column, None)

    def persist(self, host: Any, state_name: str) -> str:
        setattr(host, self.column, state_name)
        return state_name

    def __repr__(self) -> str:
        return f"{type(self).__name__}(column={self.column!r})"


class MappingAdapter:
    """
    Keeps the state name in a dict-like record exposed by the host.

    Useful when the host wraps a row or document. The record is read from
    ``host.<record_attr>``.

    Args:
        column: Key under which the state name is stored.
        record_attr: Host attribute holding the record (default: ``record``).
        touch_column: If set, also stamp this key with the UTC time of each write.
    """

    def __init__(self, column: str = "workflow_state", record_attr: str = "record", touch_column: Optional[str] = None):
        self.column = column
        self.record_attr = record_attr
        self.touch_column = touch_column

    def _record(self, host: Any):
        record = getattr(host, self.record_attr, None)
        if record is None:
            raise AttributeError(
                f"{type(host).__name__} has no '{self.record_attr}' record for {type(self).__name__}"
            )
        return record

    def load(self, host: Any) -> Optional[str]:
        value = self._record(host).get(self.column)
        return str(value) if value is not None else None

    def persist(self, host: Any, state_name: str) -> str:
        record = self._record(host)
        record[self.column] = state_name
        if self.touch_column:
            record[self.touch_column] = datetime.now(timezone.utc)
        logger.debug(f"{type(host).__name__}: {self.column} = {state_name}")
        return state_name

    def __repr__(self) -> str:
        return f"{type(self).__name__}(column={self.column!r}, record_attr={self.record_attr!r})"
