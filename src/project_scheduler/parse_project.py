from __future__ import annotations

import datetime as _dt
from dataclasses import dataclass
from typing import Any

import yaml

from .config import DEFAULT_SETTINGS, SchedulerSettings, settings_from_mapping
from .dependencies import normalize_dependencies
from .errors import SchedulerError, ValidationError
from .milestones import clamp_weight, coerce_deliverables, validate_milestone
from .numbering import format_task_number, wbs_code_for, wbs_level
from .project_models import (
    APPROVAL_STATUSES,
    MILESTONE_STATUSES,
    TASK_STATUSES,
    Milestone,
    Project,
    Task,
)
from .store import InMemoryStore

DEFAULT_ORG = "default"

PROJECT_KEYS = frozenset({"id", "name", "start_date", "end_date", "progress"})
TASK_KEYS = frozenset(
    {
        "id",
        "title",
        "parent",
        "dependencies",
        "estimated_hours",
        "planned_start_date",
        "planned_end_date",
        "percent_complete",
        "status",
    }
)
MILESTONE_KEYS = frozenset(
    {
        "id",
        "name",
        "description",
        "type",
        "planned_date",
        "baseline_date",
        "status",
        "is_gate",
        "gate_type",
        "approval_required",
        "approvers",
        "approval_status",
        "depends_on_milestones",
        "depends_on_tasks",
        "progress_weight",
        "reminder_days",
        "deliverables",
    }
)

_MISSING = object()


class _Where:
    """Location inside the YAML document, rendered like tasks[2].dependencies[0]."""

    def __init__(self, dotted: str = "") -> None:
        self.dotted = dotted

    def key(self, name: str) -> "_Where":
        return _Where(f"{self.dotted}.{name}" if self.dotted else name)

    def item(self, name: str, index: int) -> "_Where":
        return self.key(f"{name}[{index}]")

    def __str__(self) -> str:
        return self.dotted or "document"


@dataclass
class Workspace:
    """A loaded project document: store plus the keys needed to address it."""

    store: InMemoryStore
    org_id: str
    project_id: str
    settings: SchedulerSettings


def load_workspace(path: str, settings: SchedulerSettings = DEFAULT_SETTINGS) -> Workspace:
    """Load a project, its tasks and milestones from a YAML file (no scheduling)."""

    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    return parse_workspace(raw, settings)


def parse_workspace(data: Any, settings: SchedulerSettings = DEFAULT_SETTINGS) -> Workspace:
    root = _Where()
    _check_mapping(data, {"org_id", "settings", "project", "tasks", "milestones"}, root)

    settings = settings_from_mapping(data.get("settings"), settings)
    org_id = _take(data, "org_id", root, "text", default=DEFAULT_ORG)

    project = _parse_project(data.get("project", _MISSING), root.key("project"))
    store = InMemoryStore()
    store.insert_project(org_id, project)

    tasks: list[Task] = []
    for idx, task_raw in enumerate(_take(data, "tasks", root, "list", default=[])):
        tasks.append(_parse_task(task_raw, root.item("tasks", idx), project, tasks, settings))
    _check_task_targets(tasks, root)
    for task in tasks:
        store.insert_task(org_id, task)
        store.reserve_task_ordinal(org_id, project.id)

    milestones: list[Milestone] = []
    for idx, milestone_raw in enumerate(_take(data, "milestones", root, "list", default=[])):
        where = root.item("milestones", idx)
        milestone = _parse_milestone(milestone_raw, where, project, settings)
        if any(m.id == milestone.id for m in milestones):
            raise ValidationError(f"{where.key('id')}: duplicate milestone id '{milestone.id}'")
        milestones.append(milestone)
        store.insert_milestone(org_id, milestone)

    # Checked only once every milestone is in, since dependencies may point forward.
    for idx, milestone in enumerate(milestones):
        try:
            validate_milestone(store, org_id, project, milestone)
        except SchedulerError as exc:
            raise ValidationError(f"{root.item('milestones', idx)}: {exc}") from exc

    return Workspace(store=store, org_id=org_id, project_id=project.id, settings=settings)


def _parse_project(data: Any, where: _Where) -> Project:
    if data is _MISSING:
        raise ValidationError(f"{where}: missing required mapping 'project'")
    _check_mapping(data, PROJECT_KEYS, where)

    name = _take(data, "name", where, "text", required=True)
    project_id = _take(data, "id", where, "text", default=name)
    start_date = _take(data, "start_date", where, "date", required=True)
    end_date = _take(data, "end_date", where, "date", required=True)
    if start_date > end_date:
        raise ValidationError(f"{where}: start_date {start_date} is after end_date {end_date}")

    return Project(id=project_id, name=name, start_date=start_date, end_date=end_date)


def _parse_task(
    data: Any,
    where: _Where,
    project: Project,
    earlier: list[Task],
    settings: SchedulerSettings,
) -> Task:
    _check_mapping(data, TASK_KEYS, where)
    known = {task.id for task in earlier}

    task_id = _take(data, "id", where, "text", required=True)
    if task_id in known:
        raise ValidationError(f"{where.key('id')}: duplicate task id '{task_id}'")
    title = _take(data, "title", where, "text", required=True)

    parent_id = _take(data, "parent", where, "text")
    if parent_id is not None and parent_id not in known:
        raise ValidationError(f"{where.key('parent')}: parent '{parent_id}' must be declared before its children")

    estimated_hours = _take(data, "estimated_hours", where, "number")
    if estimated_hours is not None and estimated_hours < 0:
        raise ValidationError(f"{where.key('estimated_hours')}: must not be negative")

    percent = _take(data, "percent_complete", where, "number")
    if percent is not None and not 0 <= percent <= 100:
        raise ValidationError(f"{where.key('percent_complete')}: must be within 0..100")

    status = _take(data, "status", where, TASK_STATUSES, default="todo")
    try:
        dependencies = normalize_dependencies(_take(data, "dependencies", where, "list", default=[]))
    except ValidationError as exc:
        raise ValidationError(f"{where}.{exc}") from exc

    return Task(
        id=task_id,
        project_id=project.id,
        title=title,
        task_number=format_task_number(len(earlier) + 1, settings),
        wbs_code=wbs_code_for(earlier, parent_id, settings),
        level=wbs_level(earlier, parent_id),
        parent_task_id=parent_id,
        dependencies=dependencies,
        estimated_hours=estimated_hours,
        planned_start_date=_take(data, "planned_start_date", where, "date"),
        planned_end_date=_take(data, "planned_end_date", where, "date"),
        percent_complete=100 if status == "completed" and percent is None else percent,
        status=status,
    )


def _check_task_targets(tasks: list[Task], root: _Where) -> None:
    known = {task.id for task in tasks}
    for idx, task in enumerate(tasks):
        for dep_idx, edge in enumerate(task.dependencies):
            if edge.target not in known:
                where = root.item("tasks", idx).item("dependencies", dep_idx)
                raise ValidationError(f"{where}: unknown task '{edge.target}'")


def _parse_milestone(data: Any, where: _Where, project: Project, settings: SchedulerSettings) -> Milestone:
    _check_mapping(data, MILESTONE_KEYS, where)

    try:
        deliverables = coerce_deliverables(_take(data, "deliverables", where, "list", default=[]))
    except ValidationError as exc:
        raise ValidationError(f"{where}.{exc}") from exc

    return Milestone(
        id=_take(data, "id", where, "text", required=True),
        project_id=project.id,
        name=_take(data, "name", where, "text", required=True),
        planned_date=_take(data, "planned_date", where, "date", required=True),
        description=str(data.get("description") or ""),
        type=str(data.get("type", "deliverable")),
        baseline_date=_take(data, "baseline_date", where, "date"),
        status=_take(data, "status", where, MILESTONE_STATUSES, default="planned"),
        is_gate=bool(data.get("is_gate", False)),
        gate_type=data.get("gate_type"),
        approval_required=bool(data.get("approval_required", False)),
        approvers=_take(data, "approvers", where, "names", default=[]),
        approval_status=_take(data, "approval_status", where, APPROVAL_STATUSES, default="pending"),
        depends_on_milestones=_take(data, "depends_on_milestones", where, "names", default=[]),
        depends_on_tasks=_take(data, "depends_on_tasks", where, "names", default=[]),
        progress_weight=clamp_weight(_take(data, "progress_weight", where, "number", default=0)),
        reminder_days=_take(data, "reminder_days", where, "int", default=settings.default_reminder_days),
        deliverables=deliverables,
    )


def _check_mapping(data: Any, allowed: set[str] | frozenset[str], where: _Where) -> None:
    if not isinstance(data, dict):
        raise ValidationError(f"{where}: expected mapping")
    extras = sorted(set(data) - set(allowed))
    if extras:
        raise ValidationError(f"{where}: unexpected fields {extras}")


def _take(
    data: dict[str, Any],
    key: str,
    where: _Where,
    kind: str | tuple[str, ...],
    *,
    required: bool = False,
    default: Any = None,
) -> Any:
    """
    Fetch `data[key]` and check it against `kind`.

    `kind` is one of text, number, int, date, list, names (list of strings),
    or a tuple of allowed literal values. A missing or null value yields
    `default` unless `required` is set.
    """

    value = data.get(key)
    if value is None:
        if required:
            raise ValidationError(f"{where}: missing required field '{key}'")
        return default

    at = where.key(key)
    if isinstance(kind, tuple):
        if value not in kind:
            raise ValidationError(f"{at}: must be one of {list(kind)}")
        return value
    if kind == "text":
        if not isinstance(value, str) or not value.strip():
            raise ValidationError(f"{at}: expected non-empty string")
        return value
    if kind in ("number", "int"):
        numeric = (int,) if kind == "int" else (int, float)
        if isinstance(value, bool) or not isinstance(value, numeric):
            raise ValidationError(f"{at}: expected {'integer' if kind == 'int' else 'number'}")
        return value
    if kind == "date":
        return _as_date(value, at)
    if kind == "list":
        if not isinstance(value, list):
            raise ValidationError(f"{at}: expected list")
        return value
    if kind == "names":
        if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
            raise ValidationError(f"{at}: expected list of strings")
        return list(value)
    raise ValueError(f"unknown field kind {kind!r}")


def _as_date(value: Any, at: _Where) -> _dt.date:
    # PyYAML already turns unquoted ISO dates into date objects.
    if isinstance(value, _dt.datetime):
        return value.date()
    if isinstance(value, _dt.date):
        return value
    if isinstance(value, str):
        try:
            return _dt.date.fromisoformat(value)
        except ValueError:
            pass
    raise ValidationError(f"{at}: expected YYYY-MM-DD date")
