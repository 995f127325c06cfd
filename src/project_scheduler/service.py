from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable, Iterator

from . import milestones as milestone_ops
from .config import DEFAULT_SETTINGS, SchedulerSettings
from .dependencies import normalize_dependencies
from .errors import CyclicDependencyError, Cycle, DependencyViolationError, NotFoundError, ValidationError
from .numbering import format_task_number, wbs_code_for, wbs_level
from .progress import recompute_project_progress
from .project_models import TASK_STATUSES, Deliverable, DependencyEdge, Milestone, Schedule, Task
from .scheduling import assert_acyclic, recompute_critical_path
from .store import ScheduleStore

logger = logging.getLogger(__name__)


@dataclass
class _ProjectLock:
    lock: threading.RLock = field(default_factory=threading.RLock)
    users: int = 0


class ProjectScheduler:
    """
    Mutation handlers for tasks and milestones.

    Every mutation for a project runs under that project's lock, so numbering
    and the CPM/progress recompute that follows are serialized per project.
    """

    def __init__(self, store: ScheduleStore, settings: SchedulerSettings = DEFAULT_SETTINGS) -> None:
        self.store = store
        self.settings = settings
        self._locks: dict[tuple[str, str], _ProjectLock] = {}
        self._locks_guard = threading.Lock()

    @contextmanager
    def project_lock(self, org_id: str, project_id: str) -> Iterator[None]:
        """Hold the project's lock; the entry is dropped once no caller holds or waits on it."""

        key = (org_id, project_id)
        with self._locks_guard:
            entry = self._locks.setdefault(key, _ProjectLock())
            entry.users += 1
        try:
            with entry.lock:
                yield
        finally:
            with self._locks_guard:
                entry.users -= 1
                if entry.users == 0:
                    del self._locks[key]

    # Recompute

    def recompute(self, org_id: str, project_id: str) -> Schedule:
        """Recompute CPM timings and progress for the whole project."""

        with self.project_lock(org_id, project_id):
            schedule = recompute_critical_path(self.store, org_id, project_id)
            recompute_project_progress(self.store, org_id, project_id)
            return schedule

    # Tasks

    def create_task(
        self,
        org_id: str,
        project_id: str,
        title: str,
        *,
        parent_task_id: str | None = None,
        dependencies: Iterable[Any] | None = None,
        estimated_hours: float | None = None,
        planned_start_date: date | None = None,
        planned_end_date: date | None = None,
        percent_complete: float | None = None,
        task_id: str | None = None,
    ) -> Task:
        if not isinstance(title, str) or not title.strip():
            raise ValidationError("Task title must be a non-empty string")
        _validate_effort(estimated_hours)
        _validate_percent(percent_complete)
        edges = normalize_dependencies(dependencies)

        with self.project_lock(org_id, project_id):
            self._require_project(org_id, project_id)
            existing = self.store.list_tasks(org_id, project_id)
            if parent_task_id is not None:
                self._require_task(org_id, parent_task_id, project_id)

            new_id = task_id or uuid.uuid4().hex
            self._check_edges(new_id, edges, existing)

            ordinal = self.store.reserve_task_ordinal(org_id, project_id)
            task = Task(
                id=new_id,
                project_id=project_id,
                title=title,
                task_number=format_task_number(ordinal, self.settings),
                wbs_code=wbs_code_for(existing, parent_task_id, self.settings),
                level=wbs_level(existing, parent_task_id),
                parent_task_id=parent_task_id,
                dependencies=edges,
                estimated_hours=estimated_hours,
                planned_start_date=planned_start_date,
                planned_end_date=planned_end_date,
            )
            if percent_complete is not None:
                _apply_percent(task, percent_complete)

            self.store.insert_task(org_id, task)
            logger.info("Created task %s %s (wbs %s) in project %s", task.task_number, task.id, task.wbs_code, project_id)
            self.recompute(org_id, project_id)
            return self._require_task(org_id, task.id)

    def update_task(
        self,
        org_id: str,
        task_id: str,
        *,
        title: str | None = None,
        status: str | None = None,
        percent_complete: float | None = None,
        estimated_hours: float | None = None,
        planned_start_date: date | None = None,
        planned_end_date: date | None = None,
        dependencies: Iterable[Any] | None = None,
        now: datetime | None = None,
    ) -> Task:
        """
        Update a task and recompute the project.

        Status `completed` forces 100 percent; a percentage derives the status.
        Passing both applies the status first, then the percentage.
        """

        task = self._require_task(org_id, task_id)
        with self.project_lock(org_id, task.project_id):
            task = self._require_task(org_id, task_id)
            if title is not None:
                if not title.strip():
                    raise ValidationError("Task title must be a non-empty string")
                task.title = title
            if estimated_hours is not None:
                _validate_effort(estimated_hours)
                task.estimated_hours = estimated_hours
            if planned_start_date is not None:
                task.planned_start_date = planned_start_date
            if planned_end_date is not None:
                task.planned_end_date = planned_end_date
            if dependencies is not None:
                edges = normalize_dependencies(dependencies)
                self._check_edges(task.id, edges, self.store.list_tasks(org_id, task.project_id))
                task.dependencies = edges
            if status is not None:
                _apply_status(task, status, now)
            if percent_complete is not None:
                _validate_percent(percent_complete)
                _apply_percent(task, percent_complete, now)

            self.store.update_task(org_id, task)
            logger.info("Updated task %s (status=%s, percent=%s)", task.id, task.status, task.percent_complete)
            self.recompute(org_id, task.project_id)
            return self._require_task(org_id, task_id)

    def set_task_dependencies(self, org_id: str, task_id: str, dependencies: Iterable[Any]) -> Task:
        return self.update_task(org_id, task_id, dependencies=list(dependencies))

    def add_task_dependency(
        self,
        org_id: str,
        task_id: str,
        target_id: str,
        relation: str = "finish_to_start",
        lag: float = 0,
    ) -> Task:
        task = self._require_task(org_id, task_id)
        edge = normalize_dependencies([{"target": target_id, "relation": relation, "lag": lag}])[0]
        edges = [existing for existing in task.dependencies if existing.target != target_id] + [edge]
        return self.update_task(org_id, task_id, dependencies=edges)

    def remove_task_dependency(self, org_id: str, task_id: str, target_id: str) -> Task:
        task = self._require_task(org_id, task_id)
        edges = [edge for edge in task.dependencies if edge.target != target_id]
        return self.update_task(org_id, task_id, dependencies=edges)

    def delete_task(self, org_id: str, task_id: str, *, cascade: bool = False) -> None:
        """
        Delete a task.

        Without `cascade`, deletion is refused while another task or milestone
        references the task. With `cascade`, those references are removed first.
        """

        task = self._require_task(org_id, task_id)
        project_id = task.project_id
        with self.project_lock(org_id, project_id):
            dependent_tasks = [
                other for other in self.store.list_tasks(org_id, project_id)
                if any(edge.target == task_id for edge in other.dependencies)
            ]
            dependent_milestones = [
                m for m in self.store.list_milestones(org_id, project_id) if task_id in m.depends_on_tasks
            ]

            if (dependent_tasks or dependent_milestones) and not cascade:
                unmet = [f"task '{other.task_number or other.id}' depends on it" for other in dependent_tasks]
                unmet += [f"milestone '{m.name}' depends on it" for m in dependent_milestones]
                raise DependencyViolationError(f"Cannot delete task '{task.task_number or task_id}'", unmet)

            for other in dependent_tasks:
                other.dependencies = [edge for edge in other.dependencies if edge.target != task_id]
                self.store.update_task(org_id, other)
            for m in dependent_milestones:
                m.depends_on_tasks = [dep for dep in m.depends_on_tasks if dep != task_id]
                self.store.update_milestone(org_id, m)

            self.store.delete_task(org_id, task_id)
            logger.info(
                "Deleted task %s from project %s (%d references removed)",
                task_id,
                project_id,
                len(dependent_tasks) + len(dependent_milestones),
            )
            self.recompute(org_id, project_id)

    # Milestones

    def create_milestone(self, org_id: str, project_id: str, **fields: Any) -> Milestone:
        with self.project_lock(org_id, project_id):
            return milestone_ops.create_milestone(self.store, org_id, project_id, settings=self.settings, **fields)

    def update_milestone(self, org_id: str, milestone_id: str, **changes: Any) -> Milestone:
        milestone = self._require_milestone(org_id, milestone_id)
        with self.project_lock(org_id, milestone.project_id):
            return milestone_ops.update_milestone(self.store, org_id, milestone_id, **changes)

    def delete_milestone(self, org_id: str, milestone_id: str) -> None:
        milestone = self._require_milestone(org_id, milestone_id)
        with self.project_lock(org_id, milestone.project_id):
            milestone_ops.delete_milestone(self.store, org_id, milestone_id)

    def achieve_milestone(
        self, org_id: str, milestone_id: str, actor_id: str, now: datetime | None = None
    ) -> Milestone:
        milestone = self._require_milestone(org_id, milestone_id)
        with self.project_lock(org_id, milestone.project_id):
            return milestone_ops.achieve_milestone(self.store, org_id, milestone_id, actor_id, now=now)

    def set_milestone_status(
        self, org_id: str, milestone_id: str, status: str, actor_id: str, now: datetime | None = None
    ) -> Milestone:
        milestone = self._require_milestone(org_id, milestone_id)
        with self.project_lock(org_id, milestone.project_id):
            return milestone_ops.set_milestone_status(self.store, org_id, milestone_id, status, actor_id, now=now)

    def set_approval_status(
        self,
        org_id: str,
        milestone_id: str,
        approval_status: str,
        actor_id: str,
        rejection_reason: str | None = None,
        now: datetime | None = None,
    ) -> Milestone:
        milestone = self._require_milestone(org_id, milestone_id)
        with self.project_lock(org_id, milestone.project_id):
            return milestone_ops.set_approval_status(
                self.store, org_id, milestone_id, approval_status, actor_id, rejection_reason, now=now
            )

    def sweep_milestone_statuses(self, org_id: str, now: datetime | None = None) -> milestone_ops.SweepResult:
        return milestone_ops.sweep_milestone_statuses(self.store, org_id, now=now, project_lock=self.project_lock)

    def get_deliverables(self, org_id: str, milestone_id: str) -> list[Deliverable]:
        return milestone_ops.get_deliverables(self.store, org_id, milestone_id)

    # Helpers

    def _check_edges(self, task_id: str, edges: list[DependencyEdge], tasks: list[Task]) -> None:
        known = {task.id for task in tasks}
        for edge in edges:
            if edge.target == task_id:
                raise CyclicDependencyError(Cycle((task_id, task_id)))
            if edge.target not in known:
                raise NotFoundError("Task", edge.target)

        graph = {task.id: [edge.target for edge in task.dependencies] for task in tasks}
        graph[task_id] = [edge.target for edge in edges]
        assert_acyclic(list(graph), graph)

    def _require_project(self, org_id: str, project_id: str) -> None:
        if self.store.get_project(org_id, project_id) is None:
            raise NotFoundError("Project", project_id)

    def _require_task(self, org_id: str, task_id: str, project_id: str | None = None) -> Task:
        task = self.store.get_task(org_id, task_id)
        if task is None or (project_id is not None and task.project_id != project_id):
            raise NotFoundError("Task", task_id)
        return task

    def _require_milestone(self, org_id: str, milestone_id: str) -> Milestone:
        milestone = self.store.get_milestone(org_id, milestone_id)
        if milestone is None:
            raise NotFoundError("Milestone", milestone_id)
        return milestone


def status_for_percent(percent: float) -> str:
    if percent <= 0:
        return "todo"
    if percent >= 100:
        return "completed"
    return "in_progress"


def _apply_status(task: Task, status: str, now: datetime | None = None) -> None:
    if status not in TASK_STATUSES:
        raise ValidationError(f"status must be one of {list(TASK_STATUSES)}")
    task.status = status
    if status == "completed":
        task.percent_complete = 100
        task.completed_at = task.completed_at or now or datetime.now()
    else:
        task.completed_at = None
        if task.percent_complete is not None and task.percent_complete >= 100:
            # A reopened task no longer reports full completion.
            task.percent_complete = None


def _apply_percent(task: Task, percent: float, now: datetime | None = None) -> None:
    task.percent_complete = percent
    _apply_status(task, status_for_percent(percent), now)
    task.percent_complete = percent


def _validate_effort(estimated_hours: float | None) -> None:
    if estimated_hours is None:
        return
    if isinstance(estimated_hours, bool) or not isinstance(estimated_hours, (int, float)):
        raise ValidationError("estimated_hours must be a number")
    if estimated_hours < 0:
        raise ValidationError(f"estimated_hours must not be negative, got {estimated_hours}")


def _validate_percent(percent: float | None) -> None:
    if percent is None:
        return
    if isinstance(percent, bool) or not isinstance(percent, (int, float)):
        raise ValidationError("percent_complete must be a number")
    if not 0 <= percent <= 100:
        raise ValidationError(f"percent_complete must be within 0..100, got {percent}")
