from __future__ import annotations

import logging
import math
from collections import deque
from typing import Iterable, Mapping

from .errors import Cycle, CyclicDependencyError, NotFoundError, ValidationError
from .project_models import DependencyEdge, Schedule, Task, TaskTiming
from .store import ScheduleStore

logger = logging.getLogger(__name__)

# Float noise tolerance when comparing hour values.
EPSILON = 1e-9


def recompute_critical_path(store: ScheduleStore, org_id: str, project_id: str) -> Schedule:
    """
    Recompute CPM timings for every task in the project and write them back.

    The write-back is a single bulk update guarded by the project version
    read before the task set; a concurrent task write in between surfaces as
    ConcurrentModificationError instead of a silent overwrite.
    """

    project = store.get_project(org_id, project_id)
    if project is None:
        raise NotFoundError("Project", project_id)

    tasks = store.list_tasks(org_id, project_id)
    schedule = compute_schedule(tasks)
    store.write_task_timings(org_id, project_id, schedule.timings, expected_version=project.version)
    logger.info(
        "Recomputed critical path for project %s: %d tasks, duration %s, critical %s",
        project_id,
        len(tasks),
        _fmt(schedule.project_duration),
        schedule.critical_path,
    )
    return schedule


def compute_schedule(tasks: list[Task]) -> Schedule:
    """
    Run the forward and backward CPM passes over `tasks`.

    - Validates effort and dependency targets, then rejects cycles.
    - Honors all four relation kinds with lag (negative lag is lead time).
    - Early starts are clamped at 0; late finishes never exceed the project duration.
    - Tasks without effort are zero-duration nodes.
    """

    lookup = {task.id: task for task in tasks}
    _validate_tasks(tasks, lookup)
    assert_acyclic([task.id for task in tasks], {task.id: [edge.target for edge in task.dependencies] for task in tasks})

    order = _toposort(tasks)
    successors = _successor_edges(order)

    early = _forward_pass(order)
    project_duration = max((finish for _, finish in early.values()), default=0.0)
    late = _backward_pass(order, successors, project_duration)

    timings: dict[str, TaskTiming] = {}
    for task in tasks:
        es, ef = early[task.id]
        ls, lf = late[task.id]
        slack = ls - es
        if abs(slack) < EPSILON:
            slack = 0.0
        timings[task.id] = TaskTiming(
            task_id=task.id,
            early_start=es,
            early_finish=ef,
            late_start=ls,
            late_finish=lf,
            slack=slack,
            is_critical=slack == 0,
        )

    schedule = Schedule(
        timings=timings,
        project_duration=project_duration,
        successors={task_id: [succ.id for succ, _ in edges] for task_id, edges in successors.items()},
    )
    schedule.critical_path = _critical_chain(order, lookup, timings, project_duration)
    logger.debug("CPM pass over %d tasks: duration=%s", len(tasks), _fmt(project_duration))
    return schedule


def apply_schedule(tasks: Iterable[Task], schedule: Schedule) -> None:
    """Copy computed timings onto in-memory task objects."""

    for task in tasks:
        timing = schedule.timings.get(task.id)
        if timing is None:
            continue
        task.early_start = timing.early_start
        task.early_finish = timing.early_finish
        task.late_start = timing.late_start
        task.late_finish = timing.late_finish
        task.slack = timing.slack
        task.is_critical_path = timing.is_critical


def assert_acyclic(order: list[str], dependencies: Mapping[str, list[str]]) -> None:
    """Raise CyclicDependencyError when `dependencies` (node -> prerequisites) has a cycle."""

    cycle = find_cycle(order, dependencies)
    if cycle:
        raise CyclicDependencyError(cycle)


def find_cycle(order: list[str], dependencies: Mapping[str, list[str]]) -> Cycle | None:
    """Return the first cycle reachable from `order`, walking prerequisites depth-first."""

    finished: set[str] = set()
    for root in order:
        if root in finished:
            continue
        trail: list[str] = [root]
        on_trail = {root}
        pending = [iter(dependencies.get(root, ()))]
        while pending:
            nxt = next(pending[-1], None)
            if nxt is None:
                pending.pop()
                done = trail.pop()
                on_trail.discard(done)
                finished.add(done)
            elif nxt in on_trail:
                return Cycle(tuple(trail[trail.index(nxt) :]) + (nxt,))
            elif nxt not in finished:
                trail.append(nxt)
                on_trail.add(nxt)
                pending.append(iter(dependencies.get(nxt, ())))
    return None


def _validate_tasks(tasks: list[Task], lookup: dict[str, Task]) -> None:
    if len(lookup) != len(tasks):
        raise ValidationError("Duplicate task ids in schedule input")
    for task in tasks:
        if task.estimated_hours is not None and task.estimated_hours < 0:
            raise ValidationError(f"Task '{task.id}' has negative estimated_hours={task.estimated_hours}")
        for edge in task.dependencies:
            if edge.target not in lookup:
                raise NotFoundError("Task", edge.target)


def _toposort(tasks: list[Task]) -> list[Task]:
    # Kahn's algorithm; ties keep input order.
    dependents: dict[str, list[str]] = {task.id: [] for task in tasks}
    indegree: dict[str, int] = {task.id: 0 for task in tasks}

    for task in tasks:
        for target in {edge.target for edge in task.dependencies}:
            dependents[target].append(task.id)
            indegree[task.id] += 1

    queue = deque([task.id for task in tasks if indegree[task.id] == 0])
    result_ids: list[str] = []

    while queue:
        current = queue.popleft()
        result_ids.append(current)
        for child in dependents[current]:
            indegree[child] -= 1
            if indegree[child] == 0:
                queue.append(child)

    if len(result_ids) != len(tasks):
        stuck = set(indegree) - set(result_ids)
        raise CyclicDependencyError(Cycle(tuple(task.id for task in tasks if task.id in stuck)))

    by_id = {task.id: task for task in tasks}
    return [by_id[task_id] for task_id in result_ids]


def _successor_edges(order: list[Task]) -> dict[str, list[tuple[Task, DependencyEdge]]]:
    successors: dict[str, list[tuple[Task, DependencyEdge]]] = {task.id: [] for task in order}
    for task in order:
        for edge in task.dependencies:
            successors[edge.target].append((task, edge))
    return successors


def _forward_pass(order: list[Task]) -> dict[str, tuple[float, float]]:
    early: dict[str, tuple[float, float]] = {}
    for task in order:
        duration = task.duration
        start_bounds = [0.0]
        for edge in task.dependencies:
            pred_es, pred_ef = early[edge.target]
            if edge.relation == "finish_to_start":
                start_bounds.append(pred_ef + edge.lag)
            elif edge.relation == "start_to_start":
                start_bounds.append(pred_es + edge.lag)
            elif edge.relation == "finish_to_finish":
                start_bounds.append(pred_ef + edge.lag - duration)
            else:  # start_to_finish
                start_bounds.append(pred_es + edge.lag - duration)
        es = max(start_bounds)
        early[task.id] = (es, es + duration)
    return early


def _backward_pass(
    order: list[Task],
    successors: dict[str, list[tuple[Task, DependencyEdge]]],
    project_duration: float,
) -> dict[str, tuple[float, float]]:
    late: dict[str, tuple[float, float]] = {}
    for task in reversed(order):
        duration = task.duration
        finish_bounds = [project_duration]
        for succ, edge in successors[task.id]:
            succ_ls, succ_lf = late[succ.id]
            if edge.relation == "finish_to_start":
                finish_bounds.append(succ_ls - edge.lag)
            elif edge.relation == "start_to_start":
                finish_bounds.append(succ_ls - edge.lag + duration)
            elif edge.relation == "finish_to_finish":
                finish_bounds.append(succ_lf - edge.lag)
            else:  # start_to_finish
                finish_bounds.append(succ_lf - edge.lag + duration)
        lf = min(finish_bounds)
        late[task.id] = (lf - duration, lf)
    return late


def _critical_chain(
    order: list[Task],
    lookup: dict[str, Task],
    timings: dict[str, TaskTiming],
    project_duration: float,
) -> list[str]:
    """Longest chain of driving, zero-slack edges ending at the project finish."""

    chains: dict[str, list[str]] = {}
    for task in order:
        timing = timings[task.id]
        if not timing.is_critical:
            continue
        best: list[str] = []
        for edge in task.dependencies:
            pred_chain = chains.get(edge.target)
            if pred_chain and _is_driving(timings[edge.target], edge, timing) and len(pred_chain) > len(best):
                best = pred_chain
        if best or math.isclose(timing.early_start, 0.0, abs_tol=EPSILON):
            chains[task.id] = best + [task.id]

    position = {task.id: idx for idx, task in enumerate(lookup.values())}
    finishers = [
        task_id
        for task_id in chains
        if math.isclose(timings[task_id].early_finish, project_duration, abs_tol=EPSILON)
    ]
    if not finishers:
        return []
    finishers.sort(key=lambda task_id: (-len(chains[task_id]), position[task_id]))
    return chains[finishers[0]]


def _is_driving(pred: TaskTiming, edge: DependencyEdge, succ: TaskTiming) -> bool:
    if edge.relation == "finish_to_start":
        bound, actual = pred.early_finish + edge.lag, succ.early_start
    elif edge.relation == "start_to_start":
        bound, actual = pred.early_start + edge.lag, succ.early_start
    elif edge.relation == "finish_to_finish":
        bound, actual = pred.early_finish + edge.lag, succ.early_finish
    else:  # start_to_finish
        bound, actual = pred.early_start + edge.lag, succ.early_finish
    return math.isclose(bound, actual, abs_tol=EPSILON)


def _fmt(value: float) -> str:
    return f"{value:g}"
