from __future__ import annotations

import logging

from .config import DEFAULT_SETTINGS, SchedulerSettings
from .errors import NotFoundError, ValidationError
from .project_models import Task
from .store import ScheduleStore

logger = logging.getLogger(__name__)


def format_task_number(ordinal: int, settings: SchedulerSettings = DEFAULT_SETTINGS) -> str:
    """Render a human-facing sequence label such as TSK-001."""
    return f"{settings.task_number_prefix}{ordinal:0{settings.task_number_width}d}"


def next_task_number(
    store: ScheduleStore,
    org_id: str,
    project_id: str,
    settings: SchedulerSettings = DEFAULT_SETTINGS,
) -> str:
    """
    Return the next display number for a task in the project.

    Reads the current task count without reserving anything, so callers
    creating tasks concurrently must serialize creation.
    """

    _require_project(store, org_id, project_id)
    count = len(store.list_tasks(org_id, project_id))
    return format_task_number(count + 1, settings)


def next_wbs_code(
    store: ScheduleStore,
    org_id: str,
    project_id: str,
    parent_task_id: str | None = None,
    settings: SchedulerSettings = DEFAULT_SETTINGS,
) -> str:
    """
    Return the WBS code for a new task.

    Root tasks get `count_of_roots + 1`; children get
    `parent.wbs_code + "." + (count_of_siblings + 1)`. If that code is
    already taken (a sibling was deleted) the suffix advances until free.
    A missing parent, or one without a code, falls back to
    `settings.default_child_wbs` (advanced past taken codes) unless
    `strict_wbs_parent` is set.
    """

    _require_project(store, org_id, project_id)
    tasks = store.list_tasks(org_id, project_id)
    return wbs_code_for(tasks, parent_task_id, settings)


def wbs_code_for(
    tasks: list[Task],
    parent_task_id: str | None,
    settings: SchedulerSettings = DEFAULT_SETTINGS,
) -> str:
    taken = {task.wbs_code for task in tasks if task.wbs_code}

    if parent_task_id is None:
        siblings = [task for task in tasks if task.parent_task_id is None]
        return _first_free(None, len(siblings) + 1, taken)

    parent = next((task for task in tasks if task.id == parent_task_id), None)
    if parent is None or not parent.wbs_code:
        if settings.strict_wbs_parent:
            if parent is None:
                raise NotFoundError("Task", parent_task_id)
            raise ValidationError(f"Parent task '{parent_task_id}' has no WBS code")
        prefix, _, suffix = settings.default_child_wbs.rpartition(".")
        code = _first_free(prefix or None, int(suffix) if suffix.isdigit() else 1, taken)
        logger.warning("Parent task %s missing or uncoded; using fallback WBS code %s", parent_task_id, code)
        return code

    siblings = [task for task in tasks if task.parent_task_id == parent_task_id]
    return _first_free(parent.wbs_code, len(siblings) + 1, taken)


def wbs_level(tasks: list[Task], parent_task_id: str | None) -> int:
    if parent_task_id is None:
        return 0
    parent = next((task for task in tasks if task.id == parent_task_id), None)
    return parent.level + 1 if parent else 1


def _first_free(prefix: str | None, start: int, taken: set[str]) -> str:
    index = start
    while True:
        code = f"{prefix}.{index}" if prefix else str(index)
        if code not in taken:
            return code
        index += 1


def _require_project(store: ScheduleStore, org_id: str, project_id: str) -> None:
    if store.get_project(org_id, project_id) is None:
        raise NotFoundError("Project", project_id)
