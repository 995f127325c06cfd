from __future__ import annotations

from typing import Iterable, List

from .project_models import FlatRenderRow, Milestone, Schedule, Task


def to_render_rows(tasks: Iterable[Task], milestones: Iterable[Milestone], schedule: Schedule) -> list[FlatRenderRow]:
    """
    Convert a computed schedule into a flat list of render rows.

    Tasks are emitted in WBS order with indentation equal to their level,
    followed by milestones in planned-date order. A milestone sits at the
    latest early finish among the tasks it depends on; one without task
    dependencies has no position and renders as a label only.
    """

    rows: List[FlatRenderRow] = []
    task_list = sorted(tasks, key=lambda task: _wbs_sort_key(task.wbs_code))
    finishes: dict[str, float] = {}

    for task in task_list:
        timing = schedule.timings.get(task.id)
        if timing is None:
            continue
        finishes[task.id] = timing.early_finish
        label = f"{task.wbs_code} {task.title}".strip()
        rows.append(
            FlatRenderRow(
                order=len(rows),
                indent=task.level,
                node_type="bar",
                node_id=task.id,
                label=label,
                start=timing.early_start,
                finish=timing.early_finish,
                slack=timing.slack,
                is_critical=timing.is_critical,
                depends_on=[edge.target for edge in task.dependencies],
            )
        )

    for milestone in sorted(milestones, key=lambda m: (m.planned_date, m.name)):
        anchors = [finishes[task_id] for task_id in milestone.depends_on_tasks if task_id in finishes]
        position = max(anchors) if anchors else None
        rows.append(
            FlatRenderRow(
                order=len(rows),
                indent=0,
                node_type="lozenge",
                node_id=milestone.id,
                label=f"{milestone.name} ({milestone.status})",
                start=position,
                finish=position,
                depends_on=list(milestone.depends_on_tasks),
            )
        )

    return rows


def _wbs_sort_key(code: str) -> tuple[int, ...]:
    parts: list[int] = []
    for part in code.split("."):
        parts.append(int(part) if part.isdigit() else 0)
    return tuple(parts)
