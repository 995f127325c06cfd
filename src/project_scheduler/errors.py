from __future__ import annotations

from dataclasses import dataclass


class SchedulerError(Exception):
    """Base class for every error raised by the scheduling engine."""


class ValidationError(SchedulerError):
    """Raised for malformed input (bad dates, negative effort, out-of-range values)."""


class NotFoundError(SchedulerError):
    """Raised when a referenced project, task or milestone does not exist."""

    def __init__(self, kind: str, entity_id: str) -> None:
        super().__init__(f"{kind} '{entity_id}' not found")
        self.kind = kind
        self.entity_id = entity_id


class DependencyViolationError(SchedulerError):
    """Raised when a transition or deletion is blocked by unmet dependencies."""

    def __init__(self, message: str, unmet: list[str] | None = None) -> None:
        detail = f"{message}: {'; '.join(unmet)}" if unmet else message
        super().__init__(detail)
        self.unmet = list(unmet or [])


@dataclass(frozen=True)
class Cycle:
    """Closed walk through the dependency graph; the first id repeats at the end."""

    path: tuple[str, ...]

    @property
    def members(self) -> frozenset[str]:
        return frozenset(self.path)

    def __str__(self) -> str:
        return " -> ".join(self.path)


class CyclicDependencyError(SchedulerError):
    """Raised when a task or milestone dependency graph contains a cycle."""

    def __init__(self, cycle: Cycle) -> None:
        super().__init__(f"Dependency cycle detected: {cycle}")
        self.cycle = cycle


class ConcurrentModificationError(SchedulerError):
    """Raised when a write-back races with another write to the same project."""
