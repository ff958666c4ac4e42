"""Execution context: the scoped variable store for a single run."""

from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterator, Optional

from core.constants import TRIGGER_KEY, TriggerType


@dataclass
class ExecutionContext:
    """Variables visible to the steps of one execution.

    Scopes form a stack. The root scope holds the trigger payload under
    ``trigger`` and the output of every top-level step under its node id.
    Loop iterations push a child scope for their item/index bindings and
    body outputs, which shadow outer names until the scope is popped.
    """

    execution_id: str
    workflow_id: Optional[str] = None
    trigger_payload: Any = None
    trigger_type: str = TriggerType.MANUAL.value
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: dict[str, Any] = field(default_factory=dict)
    _scopes: list[dict[str, Any]] = field(default_factory=list, repr=False)
    _iterations: list[Optional[int]] = field(default_factory=list, repr=False)

    def __post_init__(self):
        if self.trigger_payload is None:
            self.trigger_payload = {}
        if not self._scopes:
            self._scopes = [{TRIGGER_KEY: self.trigger_payload}]
            self._iterations = [None]

    # ─── Reads ────────────────────────────────────────────────

    def lookup(self, name: str) -> tuple[bool, Any]:
        """Find ``name`` searching innermost scope first.

        Returns a ``(found, value)`` pair so a stored ``None`` is
        distinguishable from a missing name.
        """
        for scope in reversed(self._scopes):
            if name in scope:
                return True, scope[name]
        return False, None

    def get(self, name: str, default: Any = None) -> Any:
        found, value = self.lookup(name)
        return value if found else default

    def __contains__(self, name: str) -> bool:
        return self.lookup(name)[0]

    def get_output(self, node_id: str) -> Any:
        """Output of a previously executed node, or None."""
        return self.get(node_id)

    # ─── Writes ───────────────────────────────────────────────

    def set(self, name: str, value: Any) -> None:
        """Bind ``name`` in the current (innermost) scope."""
        self._scopes[-1][name] = value

    def set_output(self, node_id: str, output: Any) -> None:
        self.set(node_id, output)

    def set_global(self, name: str, value: Any) -> None:
        """Bind ``name`` in the root scope."""
        self._scopes[0][name] = value

    # ─── Scopes ───────────────────────────────────────────────

    @property
    def depth(self) -> int:
        return len(self._scopes) - 1

    @property
    def iteration(self) -> Optional[tuple[int, ...]]:
        """Loop iteration path of the current scope, None at top level."""
        path = tuple(i for i in self._iterations if i is not None)
        return path or None

    def push_scope(
        self,
        bindings: Optional[dict[str, Any]] = None,
        iteration: Optional[int] = None,
    ) -> None:
        self._scopes.append(dict(bindings or {}))
        self._iterations.append(iteration)

    def pop_scope(self) -> dict[str, Any]:
        if len(self._scopes) == 1:
            raise RuntimeError("Cannot pop the root scope")
        self._iterations.pop()
        return self._scopes.pop()

    @contextmanager
    def scope(
        self,
        bindings: Optional[dict[str, Any]] = None,
        iteration: Optional[int] = None,
    ) -> Iterator["ExecutionContext"]:
        self.push_scope(bindings, iteration)
        try:
            yield self
        finally:
            self.pop_scope()

    def fork(
        self,
        bindings: Optional[dict[str, Any]] = None,
        iteration: Optional[int] = None,
    ) -> "ExecutionContext":
        """Child context for a concurrently running loop iteration.

        The child sees every outer scope of its parent, but writes land in
        its own fresh scope. Cancellation metadata is shared.
        """
        return ExecutionContext(
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            trigger_payload=self.trigger_payload,
            trigger_type=self.trigger_type,
            started_at=self.started_at,
            metadata=self.metadata,
            _scopes=[*self._scopes, dict(bindings or {})],
            _iterations=[*self._iterations, iteration],
        )

    def restricted(self, bindings: dict[str, Any]) -> "ExecutionContext":
        """Context exposing only ``bindings``, used for per-element filters."""
        return ExecutionContext(
            execution_id=self.execution_id,
            workflow_id=self.workflow_id,
            trigger_payload=self.trigger_payload,
            trigger_type=self.trigger_type,
            started_at=self.started_at,
            metadata=self.metadata,
            _scopes=[dict(bindings)],
            _iterations=[None],
        )

    def to_dict(self) -> dict[str, Any]:
        """Flattened view of every visible name, inner scopes winning."""
        merged: dict[str, Any] = {}
        for scope in self._scopes:
            merged.update(scope)
        return merged
