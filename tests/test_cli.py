import datetime as dt
import textwrap
from pathlib import Path

from project_scheduler.__main__ import main
from project_scheduler.project_models import Milestone, Task
from project_scheduler.render_gantt import render_gantt
from project_scheduler.render_rows import to_render_rows
from project_scheduler.scheduling import compute_schedule

PROJECT_YAML = textwrap.dedent(
    """
    project:
      id: web
      name: Website relaunch
      start_date: 2026-01-05
      end_date: 2026-04-30
    tasks:
      - id: A
        title: Design
        estimated_hours: 5
      - id: B
        title: Build
        estimated_hours: 3
        dependencies: [A]
      - id: C
        title: Content
        estimated_hours: 2
        dependencies:
          - {target: A, relation: finish_to_start, lag: 2}
    milestones:
      - id: launch
        name: Launch
        planned_date: 2026-04-01
        depends_on_tasks: [B, C]
    """
)


def _write(tmp_path, text):
    path = tmp_path / "project.yaml"
    path.write_text(text, encoding="utf-8")
    return path


def test_cli_prints_summary_and_writes_svg(tmp_path, capsys):
    out_file = tmp_path / "out" / "chart.svg"

    code = main([str(_write(tmp_path, PROJECT_YAML)), "--out", str(out_file), "--today", "2026-01-10"])

    assert code == 0
    assert out_file.exists()
    assert out_file.stat().st_size > 0
    output = capsys.readouterr().out
    assert "Duration: 9 hours" in output
    assert "Critical path: TSK-001 -> TSK-003" in output


def test_cli_sweep_uses_reference_date(tmp_path, capsys):
    code = main([str(_write(tmp_path, PROJECT_YAML)), "--no-render", "--today", "2026-04-02"])

    assert code == 0
    assert "missed=1" in capsys.readouterr().out


def test_cli_reports_cycles(tmp_path, capsys):
    text = PROJECT_YAML.replace("estimated_hours: 5", "estimated_hours: 5\n    dependencies: [B]")

    code = main([str(_write(tmp_path, text)), "--no-render"])

    assert code == 2
    assert "cycle" in capsys.readouterr().err


def test_cli_reports_invalid_yaml_fields(tmp_path, capsys):
    code = main([str(_write(tmp_path, PROJECT_YAML.replace("title: Build", "titel: Build"))), "--no-render"])

    assert code == 2
    assert "tasks[1]" in capsys.readouterr().err


def test_cli_missing_file(tmp_path, capsys):
    code = main([str(tmp_path / "missing.yaml"), "--no-render"])

    assert code == 1
    assert "not found" in capsys.readouterr().err


def test_render_rows_follow_wbs_order_and_anchor_milestones(tmp_path):
    tasks = [
        Task(id="b", project_id="p", title="Build", wbs_code="2", estimated_hours=3, dependencies=[]),
        Task(id="a", project_id="p", title="Design", wbs_code="1", estimated_hours=5),
        Task(id="a1", project_id="p", title="Mockups", wbs_code="1.1", level=1, estimated_hours=1),
    ]
    milestones = [
        Milestone(id="m", project_id="p", name="Review", planned_date=dt.date(2026, 2, 1),
                  depends_on_tasks=["a", "b"]),
    ]
    schedule = compute_schedule(tasks)

    rows = to_render_rows(tasks, milestones, schedule)

    assert [row.node_id for row in rows] == ["a", "a1", "b", "m"]
    assert rows[1].indent == 1
    assert rows[3].node_type == "lozenge"
    assert rows[3].start == 5
    assert rows[3].label == "Review (planned)"

    out_file = tmp_path / "chart.svg"
    render_gantt(rows, out_path=str(out_file), title="Review")
    assert out_file.read_text(encoding="utf-8").lstrip().startswith("<?xml")


def test_cli_runs_bundled_sample(capsys):
    sample = Path(__file__).resolve().parents[1] / "sample_projects" / "website.yaml"

    assert main([str(sample), "--no-render", "--today", "2026-01-10"]) == 0
    assert "Project: Website relaunch" in capsys.readouterr().out
