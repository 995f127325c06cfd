from __future__ import annotations

import argparse
import datetime as dt
import logging
import sys
from pathlib import Path

import yaml

from .errors import ConcurrentModificationError, CyclicDependencyError, NotFoundError, ValidationError
from .milestones import milestone_stats, sweep_milestone_statuses
from .parse_project import Workspace, load_workspace
from .progress import recompute_project_progress
from .project_models import Schedule
from .render_gantt import render_gantt
from .render_rows import to_render_rows
from .scheduling import recompute_critical_path


def _parse_date(value: str) -> dt.date:
    try:
        return dt.date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date '{value}', expected YYYY-MM-DD") from exc


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="project_scheduler",
        description="Critical path and progress report for a project file",
        formatter_class=argparse.ArgumentDefaultsHelpFormatter,
    )
    parser.add_argument("project", help="Path to project YAML")
    parser.add_argument("--out", default="output/schedule.svg", help="Output SVG path")
    parser.add_argument("--today", type=_parse_date, help="Reference date for the milestone sweep (YYYY-MM-DD)")
    parser.add_argument(
        "--log-level",
        default="WARNING",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
        help="Logging verbosity",
    )
    parser.add_argument(
        "--render",
        dest="render",
        action="store_true",
        default=True,
        help="Render the Gantt chart SVG",
    )
    parser.add_argument(
        "--no-render",
        dest="render",
        action="store_false",
        help="Only print the schedule summary",
    )
    return parser


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    logging.basicConfig(level=args.log_level, format="%(asctime)s %(name)s %(levelname)s %(message)s")
    project_path = Path(args.project)

    try:
        workspace = load_workspace(str(project_path))
    except (yaml.YAMLError, ValidationError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except FileNotFoundError:
        print(f"Error: project file not found: {project_path}", file=sys.stderr)
        return 1

    now = dt.datetime.combine(args.today, dt.time()) if args.today else None
    store, org_id, project_id = workspace.store, workspace.org_id, workspace.project_id

    try:
        schedule = recompute_critical_path(store, org_id, project_id)
        sweep_milestone_statuses(store, org_id, now=now)
        recompute_project_progress(store, org_id, project_id)
    except (ValidationError, NotFoundError, CyclicDependencyError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 2
    except ConcurrentModificationError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1

    print(format_summary(workspace, schedule))

    if args.render:
        tasks = store.list_tasks(org_id, project_id)
        milestones = store.list_milestones(org_id, project_id)
        rows = to_render_rows(tasks, milestones, schedule)
        if not rows:
            print("Nothing to render: project has no tasks or milestones", file=sys.stderr)
            return 0
        project = store.get_project(org_id, project_id)
        render_gantt(rows=rows, out_path=args.out, title=project.name if project else project_id)
        print(f"Wrote {args.out}")

    return 0


def format_summary(workspace: Workspace, schedule: Schedule) -> str:
    store, org_id, project_id = workspace.store, workspace.org_id, workspace.project_id
    project = store.get_project(org_id, project_id)
    tasks = store.list_tasks(org_id, project_id)

    lines = [
        f"Project: {project.name if project else project_id}",
        f"Duration: {schedule.project_duration:g} hours",
        f"Progress: {project.progress if project else 0}%",
        f"Critical path: {' -> '.join(_task_label(tasks, task_id) for task_id in schedule.critical_path) or '-'}",
        "",
        f"{'Number':<10}{'WBS':<10}{'ES':>8}{'EF':>8}{'LS':>8}{'LF':>8}{'Slack':>8}  Title",
    ]
    for task in tasks:
        timing = schedule.timings[task.id]
        marker = "*" if timing.is_critical else " "
        lines.append(
            f"{task.task_number:<10}{task.wbs_code:<10}"
            f"{timing.early_start:>8g}{timing.early_finish:>8g}"
            f"{timing.late_start:>8g}{timing.late_finish:>8g}"
            f"{timing.slack:>8g} {marker}{task.title}"
        )

    stats = milestone_stats(store, org_id, project_id)
    if stats["total"]:
        lines.append("")
        lines.append(
            "Milestones: "
            + ", ".join(f"{key}={value}" for key, value in stats.items() if key != "total")
            + f" (total {stats['total']})"
        )
    return "\n".join(lines)


def _task_label(tasks, task_id: str) -> str:
    for task in tasks:
        if task.id == task_id:
            return task.task_number or task.id
    return task_id


if __name__ == "__main__":  # pragma: no cover
    sys.exit(main())
