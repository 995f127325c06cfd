from __future__ import annotations

import logging
import math
from typing import Iterable

from .errors import NotFoundError
from .project_models import Milestone, Task
from .store import ScheduleStore

logger = logging.getLogger(__name__)


def recompute_project_progress(store: ScheduleStore, org_id: str, project_id: str) -> int:
    """Recompute the project's progress percentage and write it back."""

    if store.get_project(org_id, project_id) is None:
        raise NotFoundError("Project", project_id)

    milestones = store.list_milestones(org_id, project_id)
    tasks = store.list_tasks(org_id, project_id)
    progress = project_progress(tasks, milestones)
    store.update_project_progress(org_id, project_id, progress)
    logger.info(
        "Project %s progress=%d%% (%s rollup)",
        project_id,
        progress,
        "milestone" if milestones else "task",
    )
    return progress


def project_progress(tasks: Iterable[Task], milestones: Iterable[Milestone]) -> int:
    """Milestone rollup when the project has milestones, task rollup otherwise."""

    milestone_list = list(milestones)
    if milestone_list:
        return milestone_progress(milestone_list)
    return task_progress(tasks)


def milestone_progress(milestones: Iterable[Milestone]) -> int:
    """
    Weighted share of achieved milestones.

    Falls back to the achieved count ratio when every weight is zero.
    """

    milestone_list = list(milestones)
    if not milestone_list:
        return 0

    total_weight = sum(m.progress_weight for m in milestone_list)
    achieved = [m for m in milestone_list if m.status == "achieved"]
    if total_weight == 0:
        return _round_percent(100 * len(achieved) / len(milestone_list))
    return _round_percent(100 * sum(m.progress_weight for m in achieved) / total_weight)


def task_progress(tasks: Iterable[Task]) -> int:
    """
    Average percent complete when any task reports one, else the completed ratio.

    A task without a percentage counts as 100 when completed and 0 otherwise.
    """

    task_list = list(tasks)
    if not task_list:
        return 0

    if any(task.percent_complete is not None for task in task_list):
        total = sum(_effective_percent(task) for task in task_list)
        return _round_percent(total / len(task_list))

    completed = sum(1 for task in task_list if task.status == "completed")
    return _round_percent(100 * completed / len(task_list))


def _effective_percent(task: Task) -> float:
    if task.percent_complete is not None:
        return task.percent_complete
    return 100.0 if task.status == "completed" else 0.0


def _round_percent(value: float) -> int:
    # Half-up rounding keeps 12.5 -> 13 rather than banker's rounding.
    return max(0, min(100, int(math.floor(value + 0.5))))
