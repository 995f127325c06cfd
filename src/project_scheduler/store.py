from __future__ import annotations

import copy
import logging
import threading
from typing import Mapping, Protocol

from .errors import ConcurrentModificationError, NotFoundError, ValidationError
from .project_models import Milestone, Project, Task, TaskTiming

logger = logging.getLogger(__name__)


class ScheduleStore(Protocol):
    """Keyed document store the engine reads from and writes back to."""

    def get_project(self, org_id: str, project_id: str) -> Project | None: ...

    def update_project_progress(self, org_id: str, project_id: str, progress: int) -> None: ...

    def reserve_task_ordinal(self, org_id: str, project_id: str) -> int: ...

    def list_tasks(self, org_id: str, project_id: str) -> list[Task]: ...

    def get_task(self, org_id: str, task_id: str) -> Task | None: ...

    def insert_task(self, org_id: str, task: Task) -> None: ...

    def update_task(self, org_id: str, task: Task) -> None: ...

    def delete_task(self, org_id: str, task_id: str) -> None: ...

    def write_task_timings(
        self,
        org_id: str,
        project_id: str,
        timings: Mapping[str, TaskTiming],
        expected_version: int,
    ) -> int: ...

    def list_milestones(self, org_id: str, project_id: str | None = None) -> list[Milestone]: ...

    def get_milestone(self, org_id: str, milestone_id: str) -> Milestone | None: ...

    def insert_milestone(self, org_id: str, milestone: Milestone) -> None: ...

    def update_milestone(self, org_id: str, milestone: Milestone) -> None: ...

    def delete_milestone(self, org_id: str, milestone_id: str) -> None: ...


class InMemoryStore:
    """
    Thread-safe in-process store.

    Reads hand out copies so callers cannot mutate stored documents behind
    the store's back; every task write bumps the owning project's version.
    """

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._projects: dict[tuple[str, str], Project] = {}
        self._tasks: dict[tuple[str, str], Task] = {}
        self._milestones: dict[tuple[str, str], Milestone] = {}

    # Projects

    def insert_project(self, org_id: str, project: Project) -> None:
        if project.start_date > project.end_date:
            raise ValidationError(f"Project '{project.id}' starts after it ends")
        with self._lock:
            key = (org_id, project.id)
            if key in self._projects:
                raise ValidationError(f"Project '{project.id}' already exists")
            self._projects[key] = copy.deepcopy(project)

    def get_project(self, org_id: str, project_id: str) -> Project | None:
        with self._lock:
            project = self._projects.get((org_id, project_id))
            return copy.deepcopy(project) if project else None

    def update_project_progress(self, org_id: str, project_id: str, progress: int) -> None:
        with self._lock:
            self._require_project(org_id, project_id).progress = progress

    def reserve_task_ordinal(self, org_id: str, project_id: str) -> int:
        with self._lock:
            project = self._require_project(org_id, project_id)
            project.task_counter += 1
            return project.task_counter

    # Tasks

    def list_tasks(self, org_id: str, project_id: str) -> list[Task]:
        with self._lock:
            return [
                copy.deepcopy(task)
                for (task_org, _), task in self._tasks.items()
                if task_org == org_id and task.project_id == project_id
            ]

    def get_task(self, org_id: str, task_id: str) -> Task | None:
        with self._lock:
            task = self._tasks.get((org_id, task_id))
            return copy.deepcopy(task) if task else None

    def insert_task(self, org_id: str, task: Task) -> None:
        with self._lock:
            project = self._require_project(org_id, task.project_id)
            key = (org_id, task.id)
            if key in self._tasks:
                raise ValidationError(f"Task '{task.id}' already exists")
            self._tasks[key] = copy.deepcopy(task)
            project.version += 1

    def update_task(self, org_id: str, task: Task) -> None:
        with self._lock:
            key = (org_id, task.id)
            if key not in self._tasks:
                raise NotFoundError("Task", task.id)
            self._tasks[key] = copy.deepcopy(task)
            self._require_project(org_id, task.project_id).version += 1

    def delete_task(self, org_id: str, task_id: str) -> None:
        with self._lock:
            task = self._tasks.pop((org_id, task_id), None)
            if task is None:
                raise NotFoundError("Task", task_id)
            self._require_project(org_id, task.project_id).version += 1

    def write_task_timings(
        self,
        org_id: str,
        project_id: str,
        timings: Mapping[str, TaskTiming],
        expected_version: int,
    ) -> int:
        """Apply all timings atomically; fail if the project changed since `expected_version`."""

        with self._lock:
            project = self._require_project(org_id, project_id)
            if project.version != expected_version:
                raise ConcurrentModificationError(
                    f"Project '{project_id}' changed during recompute "
                    f"(expected version {expected_version}, found {project.version})"
                )
            for task_id, timing in timings.items():
                task = self._tasks.get((org_id, task_id))
                if task is None or task.project_id != project_id:
                    raise NotFoundError("Task", task_id)
                task.early_start = timing.early_start
                task.early_finish = timing.early_finish
                task.late_start = timing.late_start
                task.late_finish = timing.late_finish
                task.slack = timing.slack
                task.is_critical_path = timing.is_critical
            project.version += 1
            logger.debug("Wrote %d task timings for project %s (version %d)", len(timings), project_id, project.version)
            return project.version

    # Milestones

    def list_milestones(self, org_id: str, project_id: str | None = None) -> list[Milestone]:
        with self._lock:
            return [
                copy.deepcopy(milestone)
                for (milestone_org, _), milestone in self._milestones.items()
                if milestone_org == org_id and (project_id is None or milestone.project_id == project_id)
            ]

    def get_milestone(self, org_id: str, milestone_id: str) -> Milestone | None:
        with self._lock:
            milestone = self._milestones.get((org_id, milestone_id))
            return copy.deepcopy(milestone) if milestone else None

    def insert_milestone(self, org_id: str, milestone: Milestone) -> None:
        with self._lock:
            self._require_project(org_id, milestone.project_id)
            key = (org_id, milestone.id)
            if key in self._milestones:
                raise ValidationError(f"Milestone '{milestone.id}' already exists")
            self._milestones[key] = copy.deepcopy(milestone)

    def update_milestone(self, org_id: str, milestone: Milestone) -> None:
        with self._lock:
            key = (org_id, milestone.id)
            if key not in self._milestones:
                raise NotFoundError("Milestone", milestone.id)
            self._milestones[key] = copy.deepcopy(milestone)

    def delete_milestone(self, org_id: str, milestone_id: str) -> None:
        with self._lock:
            if self._milestones.pop((org_id, milestone_id), None) is None:
                raise NotFoundError("Milestone", milestone_id)

    def _require_project(self, org_id: str, project_id: str) -> Project:
        project = self._projects.get((org_id, project_id))
        if project is None:
            raise NotFoundError("Project", project_id)
        return project
