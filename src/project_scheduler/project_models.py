from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Literal


RelationKind = Literal["finish_to_start", "start_to_start", "finish_to_finish", "start_to_finish"]
"""How a predecessor's start/finish constrains its successor."""

RELATION_KINDS: tuple[str, ...] = ("finish_to_start", "start_to_start", "finish_to_finish", "start_to_finish")

TaskStatus = Literal["backlog", "todo", "in_progress", "blocked", "review", "completed", "cancelled"]
TASK_STATUSES: tuple[str, ...] = ("backlog", "todo", "in_progress", "blocked", "review", "completed", "cancelled")

MilestoneStatus = Literal["planned", "at_risk", "achieved", "missed", "cancelled"]
MILESTONE_STATUSES: tuple[str, ...] = ("planned", "at_risk", "achieved", "missed", "cancelled")
TERMINAL_MILESTONE_STATUSES: frozenset[str] = frozenset({"achieved", "missed", "cancelled"})

ApprovalStatus = Literal["pending", "approved", "rejected", "conditional"]
APPROVAL_STATUSES: tuple[str, ...] = ("pending", "approved", "rejected", "conditional")

DeliverableStatus = Literal["not_started", "in_progress", "completed"]
DELIVERABLE_STATUSES: tuple[str, ...] = ("not_started", "in_progress", "completed")

NodeKind = Literal["bar", "lozenge"]
"""Allowed render node types: bar (task), lozenge (milestone)."""


@dataclass(frozen=True)
class DependencyEdge:
    """Typed predecessor link: the owning task depends on `target`."""

    target: str
    relation: RelationKind = "finish_to_start"
    lag: float = 0


@dataclass
class Task:
    """Schedulable unit of work; effort is measured in plain hours."""

    id: str
    project_id: str
    title: str
    task_number: str = ""
    wbs_code: str = ""
    level: int = 0
    parent_task_id: str | None = None
    dependencies: list[DependencyEdge] = field(default_factory=list)
    estimated_hours: float | None = None
    planned_start_date: date | None = None
    planned_end_date: date | None = None
    percent_complete: float | None = None
    status: TaskStatus = "todo"
    completed_at: datetime | None = None

    # Computed by the CPM pass.
    early_start: float | None = None
    early_finish: float | None = None
    late_start: float | None = None
    late_finish: float | None = None
    slack: float | None = None
    is_critical_path: bool = False

    @property
    def duration(self) -> float:
        """Effort used by the CPM pass; missing effort counts as zero."""
        return float(self.estimated_hours or 0)


@dataclass
class Deliverable:
    """Work product a milestone hands over."""

    name: str
    description: str = ""
    status: DeliverableStatus = "not_started"
    accepted_by: str | None = None
    accepted_at: datetime | None = None


@dataclass
class Milestone:
    """Dated checkpoint with optional gate approval and dependency gating."""

    id: str
    project_id: str
    name: str
    planned_date: date
    description: str = ""
    type: str = "deliverable"
    baseline_date: date | None = None
    actual_date: datetime | None = None
    status: MilestoneStatus = "planned"
    is_gate: bool = False
    gate_type: str | None = None
    approval_required: bool = False
    approvers: list[str] = field(default_factory=list)
    approval_status: ApprovalStatus = "pending"
    approved_by: str | None = None
    approved_at: datetime | None = None
    rejection_reason: str | None = None
    depends_on_milestones: list[str] = field(default_factory=list)
    depends_on_tasks: list[str] = field(default_factory=list)
    progress_weight: float = 0
    reminder_days: int = 7
    notify_users: list[str] = field(default_factory=list)
    deliverables: list[Deliverable] = field(default_factory=list)
    achieved_by: str | None = None


@dataclass
class Project:
    """Externally owned project aggregate; the engine writes `progress` only."""

    id: str
    name: str
    start_date: date
    end_date: date
    progress: int = 0
    version: int = 0
    task_counter: int = 0


@dataclass(frozen=True)
class TaskTiming:
    """CPM result for a single task on the relative hour timeline."""

    task_id: str
    early_start: float
    early_finish: float
    late_start: float
    late_finish: float
    slack: float
    is_critical: bool


@dataclass
class Schedule:
    """Project-wide CPM result."""

    timings: dict[str, TaskTiming] = field(default_factory=dict)
    project_duration: float = 0
    successors: dict[str, list[str]] = field(default_factory=dict)
    critical_path: list[str] = field(default_factory=list)

    @property
    def critical_task_ids(self) -> set[str]:
        return {task_id for task_id, timing in self.timings.items() if timing.is_critical}


@dataclass
class FlatRenderRow:
    """
    Flattened view of a schedule used by the renderer.

    Only the fields relevant to drawing are kept: positional order,
    indentation level, node kind and the relative time boundaries.
    """

    order: int
    indent: int
    node_type: NodeKind
    node_id: str
    label: str
    start: float | None = None
    finish: float | None = None
    slack: float = 0
    is_critical: bool = False
    depends_on: list[str] = field(default_factory=list)
