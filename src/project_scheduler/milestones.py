from __future__ import annotations

import logging
import uuid
from collections import Counter
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from typing import Any, Callable, ContextManager, Iterable, Mapping

from .config import DEFAULT_SETTINGS, SchedulerSettings
from .errors import DependencyViolationError, NotFoundError, ValidationError
from .progress import recompute_project_progress
from .project_models import (
    APPROVAL_STATUSES,
    DELIVERABLE_STATUSES,
    TERMINAL_MILESTONE_STATUSES,
    Deliverable,
    Milestone,
    Project,
    Task,
)
from .scheduling import assert_acyclic
from .store import ScheduleStore

logger = logging.getLogger(__name__)

# Fields update_milestone accepts; status and approval go through their own transitions.
UPDATABLE_FIELDS = frozenset(
    {
        "name",
        "description",
        "type",
        "planned_date",
        "baseline_date",
        "is_gate",
        "gate_type",
        "approval_required",
        "approvers",
        "depends_on_milestones",
        "depends_on_tasks",
        "progress_weight",
        "reminder_days",
        "notify_users",
        "deliverables",
    }
)


@dataclass
class SweepResult:
    """Milestone ids changed by one sweep pass."""

    missed: list[str] = field(default_factory=list)
    at_risk: list[str] = field(default_factory=list)


def achievement_blockers(
    milestone: Milestone,
    milestones_by_id: Mapping[str, Milestone],
    tasks_by_id: Mapping[str, Task],
) -> list[str]:
    """
    List every condition preventing `milestone` from being achieved.

    Lifecycle status and approval status are checked independently; an
    empty list means the achieve transition is allowed.
    """

    blockers: list[str] = []
    if milestone.status in TERMINAL_MILESTONE_STATUSES:
        blockers.append(f"milestone is already {milestone.status}")

    for dep_id in milestone.depends_on_milestones:
        dep = milestones_by_id.get(dep_id)
        if dep is None:
            blockers.append(f"dependency milestone '{dep_id}' does not exist")
        elif dep.status != "achieved":
            blockers.append(f"dependency milestone '{dep.name}' is {dep.status}")

    for task_id in milestone.depends_on_tasks:
        task = tasks_by_id.get(task_id)
        if task is None:
            blockers.append(f"dependency task '{task_id}' does not exist")
        elif task.status != "completed":
            blockers.append(f"dependency task '{task.task_number or task.id}' is {task.status}")

    if milestone.approval_required and milestone.approval_status != "approved":
        blockers.append(f"approval is {milestone.approval_status}")

    return blockers


def check_milestone_risk(milestone: Milestone, today: date) -> bool:
    """True when a still-planned milestone falls inside its reminder window."""

    if milestone.status != "planned":
        return False
    return (milestone.planned_date - today).days <= milestone.reminder_days


def create_milestone(
    store: ScheduleStore,
    org_id: str,
    project_id: str,
    *,
    name: str,
    planned_date: date,
    description: str = "",
    type: str = "deliverable",
    baseline_date: date | None = None,
    is_gate: bool = False,
    gate_type: str | None = None,
    approval_required: bool = False,
    approvers: Iterable[str] = (),
    depends_on_milestones: Iterable[str] = (),
    depends_on_tasks: Iterable[str] = (),
    progress_weight: float = 0,
    reminder_days: int | None = None,
    notify_users: Iterable[str] = (),
    deliverables: Iterable[Any] = (),
    milestone_id: str | None = None,
    settings: SchedulerSettings = DEFAULT_SETTINGS,
) -> Milestone:
    project = _require_project(store, org_id, project_id)
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("Milestone name must be a non-empty string")

    milestone = Milestone(
        id=milestone_id or uuid.uuid4().hex,
        project_id=project_id,
        name=name,
        planned_date=planned_date,
        description=description,
        type=type,
        baseline_date=baseline_date,
        is_gate=is_gate,
        gate_type=gate_type,
        approval_required=approval_required,
        approvers=list(approvers),
        depends_on_milestones=list(depends_on_milestones),
        depends_on_tasks=list(depends_on_tasks),
        progress_weight=clamp_weight(progress_weight),
        reminder_days=settings.default_reminder_days if reminder_days is None else reminder_days,
        notify_users=list(notify_users),
        deliverables=coerce_deliverables(deliverables),
    )
    validate_milestone(store, org_id, project, milestone)

    store.insert_milestone(org_id, milestone)
    logger.info("Created milestone %s (%s) in project %s", milestone.id, milestone.name, project_id)
    recompute_project_progress(store, org_id, project_id)
    return milestone


def update_milestone(store: ScheduleStore, org_id: str, milestone_id: str, **changes: Any) -> Milestone:
    """Apply field changes after re-validating dates, weight and dependencies."""

    existing = _require_milestone(store, org_id, milestone_id)
    unknown = sorted(set(changes) - UPDATABLE_FIELDS)
    if unknown:
        raise ValidationError(f"Milestone fields not updatable: {unknown}")

    if "progress_weight" in changes:
        changes["progress_weight"] = clamp_weight(changes["progress_weight"])
    for key in ("approvers", "depends_on_milestones", "depends_on_tasks", "notify_users"):
        if key in changes:
            changes[key] = list(changes[key])
    if "deliverables" in changes:
        changes["deliverables"] = coerce_deliverables(changes["deliverables"])

    updated = replace(existing, **changes)
    project = _require_project(store, org_id, existing.project_id)
    validate_milestone(store, org_id, project, updated)

    store.update_milestone(org_id, updated)
    logger.info("Updated milestone %s: %s", milestone_id, sorted(changes))
    recompute_project_progress(store, org_id, existing.project_id)
    return updated


def delete_milestone(store: ScheduleStore, org_id: str, milestone_id: str) -> None:
    """Delete a milestone no other milestone depends on."""

    milestone = _require_milestone(store, org_id, milestone_id)
    dependents = [
        other.name
        for other in store.list_milestones(org_id, milestone.project_id)
        if milestone_id in other.depends_on_milestones
    ]
    if dependents:
        raise DependencyViolationError(
            f"Cannot delete milestone '{milestone.name}'; other milestones depend on it",
            [f"'{name}' depends on it" for name in dependents],
        )

    store.delete_milestone(org_id, milestone_id)
    logger.info("Deleted milestone %s from project %s", milestone_id, milestone.project_id)
    recompute_project_progress(store, org_id, milestone.project_id)


def achieve_milestone(
    store: ScheduleStore,
    org_id: str,
    milestone_id: str,
    actor_id: str,
    now: datetime | None = None,
) -> Milestone:
    """Mark a milestone achieved once its dependencies and approval are satisfied."""

    milestone = _require_milestone(store, org_id, milestone_id)
    milestones_by_id = {m.id: m for m in store.list_milestones(org_id, milestone.project_id)}
    tasks_by_id = {t.id: t for t in store.list_tasks(org_id, milestone.project_id)}

    blockers = achievement_blockers(milestone, milestones_by_id, tasks_by_id)
    if blockers:
        logger.info("Milestone %s cannot be achieved: %s", milestone_id, blockers)
        raise DependencyViolationError(f"Cannot achieve milestone '{milestone.name}'", blockers)

    milestone.status = "achieved"
    milestone.actual_date = now or datetime.now()
    milestone.achieved_by = actor_id
    store.update_milestone(org_id, milestone)
    logger.info("Milestone %s achieved by %s", milestone_id, actor_id)
    recompute_project_progress(store, org_id, milestone.project_id)
    return milestone


def cancel_milestone(store: ScheduleStore, org_id: str, milestone_id: str) -> Milestone:
    milestone = _require_milestone(store, org_id, milestone_id)
    if milestone.status in TERMINAL_MILESTONE_STATUSES:
        raise ValidationError(f"Cannot cancel milestone '{milestone.name}' in status {milestone.status}")

    milestone.status = "cancelled"
    store.update_milestone(org_id, milestone)
    logger.info("Milestone %s cancelled", milestone_id)
    recompute_project_progress(store, org_id, milestone.project_id)
    return milestone


def set_milestone_status(
    store: ScheduleStore,
    org_id: str,
    milestone_id: str,
    status: str,
    actor_id: str,
    now: datetime | None = None,
) -> Milestone:
    """Explicit status change; only `achieved` and `cancelled` are user-driven."""

    if status == "achieved":
        return achieve_milestone(store, org_id, milestone_id, actor_id, now=now)
    if status == "cancelled":
        return cancel_milestone(store, org_id, milestone_id)
    raise ValidationError(f"Status '{status}' is set by the periodic sweep, not explicitly")


def set_approval_status(
    store: ScheduleStore,
    org_id: str,
    milestone_id: str,
    approval_status: str,
    actor_id: str,
    rejection_reason: str | None = None,
    now: datetime | None = None,
) -> Milestone:
    """Record an approver's decision. Caller is responsible for authorizing `actor_id`."""

    if approval_status not in APPROVAL_STATUSES:
        raise ValidationError(f"approval_status must be one of {list(APPROVAL_STATUSES)}")

    milestone = _require_milestone(store, org_id, milestone_id)
    if milestone.status in TERMINAL_MILESTONE_STATUSES:
        raise ValidationError(
            f"Cannot change approval of milestone '{milestone.name}' in status {milestone.status}"
        )
    milestone.approval_status = approval_status
    if approval_status == "approved":
        milestone.approved_by = actor_id
        milestone.approved_at = now or datetime.now()
        milestone.rejection_reason = None
    elif approval_status == "rejected" and rejection_reason:
        milestone.rejection_reason = rejection_reason

    store.update_milestone(org_id, milestone)
    logger.info("Milestone %s approval set to %s by %s", milestone_id, approval_status, actor_id)
    return milestone


def sweep_milestone_statuses(
    store: ScheduleStore,
    org_id: str,
    now: datetime | None = None,
    project_lock: Callable[[str, str], ContextManager[Any]] | None = None,
) -> SweepResult:
    """
    Periodic pass over every milestone in the tenant.

    Overdue planned or at-risk milestones become missed; planned ones inside
    their reminder window become at_risk. Projects are swept one at a time,
    each under `project_lock` when given, and their milestones are re-read
    inside it so a concurrent achieve or cancel is never overwritten.
    """

    today = (now or datetime.now()).date()
    result = SweepResult()
    project_ids = list(dict.fromkeys(m.project_id for m in store.list_milestones(org_id)))

    for project_id in project_ids:
        guard = project_lock(org_id, project_id) if project_lock else nullcontext()
        with guard:
            for milestone in store.list_milestones(org_id, project_id):
                if milestone.status in ("planned", "at_risk") and milestone.planned_date < today:
                    milestone.status = "missed"
                    store.update_milestone(org_id, milestone)
                    result.missed.append(milestone.id)
                elif check_milestone_risk(milestone, today):
                    milestone.status = "at_risk"
                    store.update_milestone(org_id, milestone)
                    result.at_risk.append(milestone.id)

    if result.missed or result.at_risk:
        logger.info(
            "Milestone sweep for org %s: %d missed, %d at risk",
            org_id,
            len(result.missed),
            len(result.at_risk),
        )
    return result


def milestone_stats(store: ScheduleStore, org_id: str, project_id: str) -> dict[str, int]:
    milestones = store.list_milestones(org_id, project_id)
    by_status = Counter(m.status for m in milestones)
    return {
        "total": len(milestones),
        "planned": by_status["planned"],
        "at_risk": by_status["at_risk"],
        "achieved": by_status["achieved"],
        "missed": by_status["missed"],
        "cancelled": by_status["cancelled"],
        "gates": sum(1 for m in milestones if m.is_gate),
        "requires_approval": sum(1 for m in milestones if m.approval_required),
        "pending_approval": sum(1 for m in milestones if m.approval_required and m.approval_status == "pending"),
    }


def get_deliverables(store: ScheduleStore, org_id: str, milestone_id: str) -> list[Deliverable]:
    return _require_milestone(store, org_id, milestone_id).deliverables


def coerce_deliverables(raw: Iterable[Any] | None) -> list[Deliverable]:
    """Accept Deliverable instances or mappings with name, description, status."""

    result: list[Deliverable] = []
    for idx, item in enumerate(raw or []):
        if isinstance(item, Deliverable):
            result.append(item)
            continue
        if not isinstance(item, Mapping):
            raise ValidationError(f"deliverables[{idx}]: expected mapping, got {type(item).__name__}")

        name = item.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ValidationError(f"deliverables[{idx}].name: expected non-empty string")
        status = item.get("status", "not_started")
        if status not in DELIVERABLE_STATUSES:
            raise ValidationError(f"deliverables[{idx}].status: must be one of {list(DELIVERABLE_STATUSES)}")

        result.append(
            Deliverable(
                name=name,
                description=str(item.get("description", "")),
                status=status,
                accepted_by=item.get("accepted_by"),
                accepted_at=item.get("accepted_at"),
            )
        )
    return result


def clamp_weight(value: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"progress_weight must be a number, got {value!r}")
    return max(0, min(100, value))


def validate_milestone(store: ScheduleStore, org_id: str, project: Project, milestone: Milestone) -> None:
    if not project.start_date <= milestone.planned_date <= project.end_date:
        raise ValidationError(
            f"Milestone date {milestone.planned_date} must be within project dates "
            f"{project.start_date}..{project.end_date}"
        )
    if milestone.reminder_days < 0:
        raise ValidationError("reminder_days must not be negative")

    siblings = {m.id: m for m in store.list_milestones(org_id, project.id)}
    siblings[milestone.id] = milestone
    for dep_id in milestone.depends_on_milestones:
        if dep_id not in siblings:
            raise NotFoundError("Milestone", dep_id)

    task_ids = {t.id for t in store.list_tasks(org_id, project.id)}
    for task_id in milestone.depends_on_tasks:
        if task_id not in task_ids:
            raise NotFoundError("Task", task_id)

    assert_acyclic(list(siblings), {m.id: list(m.depends_on_milestones) for m in siblings.values()})


def _require_project(store: ScheduleStore, org_id: str, project_id: str) -> Project:
    project = store.get_project(org_id, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)
    return project


def _require_milestone(store: ScheduleStore, org_id: str, milestone_id: str) -> Milestone:
    milestone = store.get_milestone(org_id, milestone_id)
    if milestone is None:
        raise NotFoundError("Milestone", milestone_id)
    return milestone
