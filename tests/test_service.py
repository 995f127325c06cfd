import datetime as dt
from concurrent.futures import ThreadPoolExecutor

import pytest

from project_scheduler.config import SchedulerSettings
from project_scheduler.errors import CyclicDependencyError, DependencyViolationError, NotFoundError, ValidationError
from project_scheduler.project_models import DependencyEdge, Project, Task
from project_scheduler.service import ProjectScheduler, status_for_percent
from project_scheduler.store import InMemoryStore

ORG = "acme"
NOW = dt.datetime(2026, 2, 10, 12, 0)


@pytest.fixture
def scheduler():
    store = InMemoryStore()
    store.insert_project(ORG, Project(id="p1", name="Website", start_date=dt.date(2026, 1, 1), end_date=dt.date(2026, 6, 30)))
    return ProjectScheduler(store)


def test_created_tasks_get_numbers_and_wbs_codes(scheduler):
    design = scheduler.create_task(ORG, "p1", "Design", task_id="design")
    build = scheduler.create_task(ORG, "p1", "Build", task_id="build")
    mockups = scheduler.create_task(ORG, "p1", "Mockups", parent_task_id="design", task_id="mockups")

    assert [design.task_number, build.task_number, mockups.task_number] == ["TSK-001", "TSK-002", "TSK-003"]
    assert [design.wbs_code, build.wbs_code, mockups.wbs_code] == ["1", "2", "1.1"]
    assert mockups.level == 1


def test_task_numbers_are_never_reused_after_delete(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")
    scheduler.create_task(ORG, "p1", "B", task_id="b")
    scheduler.delete_task(ORG, "b")

    assert scheduler.create_task(ORG, "p1", "C", task_id="c").task_number == "TSK-003"


def test_custom_number_format(scheduler):
    custom = ProjectScheduler(scheduler.store, SchedulerSettings(task_number_prefix="WEB-", task_number_width=4))

    assert custom.create_task(ORG, "p1", "A").task_number == "WEB-0001"


def test_mutations_trigger_recompute(scheduler):
    scheduler.create_task(ORG, "p1", "A", estimated_hours=5, task_id="A")
    scheduler.create_task(ORG, "p1", "B", estimated_hours=3, dependencies=["A"], task_id="B")
    c = scheduler.create_task(ORG, "p1", "C", estimated_hours=2, dependencies=[{"target": "A", "lag": 2}], task_id="C")

    assert (c.early_start, c.early_finish, c.slack) == (7, 9, 0)
    assert scheduler.store.get_task(ORG, "B").slack == 1

    scheduler.update_task(ORG, "B", estimated_hours=10)

    assert scheduler.store.get_task(ORG, "B").is_critical_path is True
    assert scheduler.store.get_task(ORG, "C").slack == 6


def test_percent_drives_status(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")

    assert scheduler.update_task(ORG, "a", percent_complete=40).status == "in_progress"
    done = scheduler.update_task(ORG, "a", percent_complete=100, now=NOW)
    assert (done.status, done.completed_at) == ("completed", NOW)
    reopened = scheduler.update_task(ORG, "a", percent_complete=0)
    assert (reopened.status, reopened.completed_at) == ("todo", None)


def test_completed_status_forces_full_percent(scheduler):
    scheduler.create_task(ORG, "p1", "A", percent_complete=30, task_id="a")

    task = scheduler.update_task(ORG, "a", status="completed", now=NOW)

    assert task.percent_complete == 100
    assert task.completed_at == NOW


@pytest.mark.parametrize("percent, expected", [(0, "todo"), (1, "in_progress"), (99.5, "in_progress"), (100, "completed")])
def test_status_for_percent(percent, expected):
    assert status_for_percent(percent) == expected


def test_task_progress_rolls_up_to_project(scheduler):
    for task_id in "abcd":
        scheduler.create_task(ORG, "p1", task_id, task_id=task_id)
    scheduler.update_task(ORG, "a", status="completed")
    scheduler.update_task(ORG, "b", status="completed")

    # Completed tasks report 100 percent, so the rollup averages percentages.
    assert scheduler.store.get_project(ORG, "p1").progress == 50


@pytest.mark.parametrize("kwargs", [{"percent_complete": 120}, {"percent_complete": -1}, {"estimated_hours": -2}])
def test_out_of_range_values_are_rejected(scheduler, kwargs):
    with pytest.raises(ValidationError):
        scheduler.create_task(ORG, "p1", "A", **kwargs)


def test_unknown_status_is_rejected(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")

    with pytest.raises(ValidationError):
        scheduler.update_task(ORG, "a", status="done")


def test_blank_title_is_rejected(scheduler):
    with pytest.raises(ValidationError):
        scheduler.create_task(ORG, "p1", "   ")


def test_dependency_cycle_is_rejected_before_write(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")
    scheduler.create_task(ORG, "p1", "B", dependencies=["a"], task_id="b")

    with pytest.raises(CyclicDependencyError) as excinfo:
        scheduler.add_task_dependency(ORG, "a", "b")

    assert set(excinfo.value.cycle.path) == {"a", "b"}
    assert scheduler.store.get_task(ORG, "a").dependencies == []


def test_self_dependency_is_rejected(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")

    with pytest.raises(CyclicDependencyError):
        scheduler.add_task_dependency(ORG, "a", "a")


def test_unknown_dependency_is_rejected(scheduler):
    with pytest.raises(NotFoundError):
        scheduler.create_task(ORG, "p1", "A", dependencies=["ghost"])


def test_add_and_remove_dependency(scheduler):
    scheduler.create_task(ORG, "p1", "A", estimated_hours=4, task_id="a")
    scheduler.create_task(ORG, "p1", "B", estimated_hours=2, task_id="b")

    b = scheduler.add_task_dependency(ORG, "b", "a", relation="start_to_start", lag=1)
    assert b.dependencies == [DependencyEdge("a", "start_to_start", 1)]
    assert b.early_start == 1

    b = scheduler.remove_task_dependency(ORG, "b", "a")
    assert b.dependencies == []
    assert b.early_start == 0


def test_delete_is_blocked_by_dependents(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")
    scheduler.create_task(ORG, "p1", "B", dependencies=["a"], task_id="b")
    scheduler.create_milestone(ORG, "p1", name="M", planned_date=dt.date(2026, 3, 1), depends_on_tasks=["a"], milestone_id="m")

    with pytest.raises(DependencyViolationError) as excinfo:
        scheduler.delete_task(ORG, "a")

    assert len(excinfo.value.unmet) == 2
    assert scheduler.store.get_task(ORG, "a") is not None


def test_cascade_delete_removes_references(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")
    scheduler.create_task(ORG, "p1", "B", dependencies=["a"], task_id="b")
    scheduler.create_milestone(ORG, "p1", name="M", planned_date=dt.date(2026, 3, 1), depends_on_tasks=["a"], milestone_id="m")

    scheduler.delete_task(ORG, "a", cascade=True)

    assert scheduler.store.get_task(ORG, "a") is None
    assert scheduler.store.get_task(ORG, "b").dependencies == []
    assert scheduler.store.get_milestone(ORG, "m").depends_on_tasks == []


def test_tenants_are_isolated(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")

    with pytest.raises(NotFoundError):
        scheduler.update_task("other-org", "a", title="Hijack")
    with pytest.raises(NotFoundError):
        scheduler.create_task("other-org", "p1", "A")


def test_milestone_gate_through_service(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")
    scheduler.create_milestone(
        ORG, "p1", name="Launch", planned_date=dt.date(2026, 3, 1),
        depends_on_tasks=["a"], approval_required=True, milestone_id="m",
    )

    with pytest.raises(DependencyViolationError):
        scheduler.achieve_milestone(ORG, "m", "alice", now=NOW)

    scheduler.update_task(ORG, "a", status="completed")
    scheduler.set_approval_status(ORG, "m", "approved", "bob", now=NOW)
    milestone = scheduler.set_milestone_status(ORG, "m", "achieved", "alice", now=NOW)

    assert milestone.status == "achieved"
    assert scheduler.store.get_project(ORG, "p1").progress == 100


def test_concurrent_creates_get_unique_numbers(scheduler):
    with ThreadPoolExecutor(max_workers=8) as pool:
        tasks = list(pool.map(lambda i: scheduler.create_task(ORG, "p1", f"T{i}"), range(24)))

    numbers = {task.task_number for task in tasks}
    codes = {task.wbs_code for task in tasks}
    assert len(numbers) == 24
    assert len(codes) == 24


def test_unknown_parent_is_rejected(scheduler):
    scheduler.create_task(ORG, "p1", "Design", task_id="design")
    scheduler.create_task(ORG, "p1", "Mockups", parent_task_id="design", task_id="mockups")

    with pytest.raises(NotFoundError):
        scheduler.create_task(ORG, "p1", "Orphan", parent_task_id="ghost", task_id="orphan")

    assert scheduler.store.get_task(ORG, "orphan") is None
    assert [t.wbs_code for t in scheduler.store.list_tasks(ORG, "p1")] == ["1", "1.1"]


def test_uncoded_parent_fallback_skips_taken_codes(scheduler):
    scheduler.store.insert_task(ORG, Task(id="legacy", project_id="p1", title="Legacy", wbs_code=""))
    scheduler.store.insert_task(
        ORG, Task(id="x", project_id="p1", title="X", wbs_code="1.1", parent_task_id="legacy", level=1)
    )

    child = scheduler.create_task(ORG, "p1", "Y", parent_task_id="legacy", task_id="y")

    assert (child.wbs_code, child.level) == ("1.2", 1)
    codes = [t.wbs_code for t in scheduler.store.list_tasks(ORG, "p1") if t.wbs_code]
    assert len(codes) == len(set(codes))


def test_reopening_a_completed_task_drops_progress(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")
    scheduler.create_task(ORG, "p1", "B", task_id="b")
    scheduler.update_task(ORG, "a", status="completed", now=NOW)
    assert scheduler.store.get_project(ORG, "p1").progress == 50

    reopened = scheduler.update_task(ORG, "a", status="in_progress")

    assert (reopened.status, reopened.percent_complete, reopened.completed_at) == ("in_progress", None, None)
    assert scheduler.store.get_project(ORG, "p1").progress == 0


def test_reopening_keeps_a_partial_percent(scheduler):
    scheduler.create_task(ORG, "p1", "A", percent_complete=60, task_id="a")

    task = scheduler.update_task(ORG, "a", status="blocked")

    assert (task.status, task.percent_complete) == ("blocked", 60)


def test_sweep_runs_under_the_project_lock(scheduler):
    scheduler.create_milestone(ORG, "p1", name="Beta", planned_date=dt.date(2026, 2, 1), milestone_id="m")
    taken = []
    real_lock = scheduler.project_lock

    def recording_lock(org_id, project_id):
        taken.append((org_id, project_id))
        return real_lock(org_id, project_id)

    scheduler.project_lock = recording_lock
    result = scheduler.sweep_milestone_statuses(ORG, now=NOW)

    assert taken == [(ORG, "p1")]
    assert result.missed == ["m"]


def test_project_locks_are_released_after_use(scheduler):
    scheduler.create_task(ORG, "p1", "A", task_id="a")
    scheduler.update_task(ORG, "a", percent_complete=50)
    scheduler.sweep_milestone_statuses(ORG, now=NOW)

    assert scheduler._locks == {}


def test_deliverables_through_service(scheduler):
    scheduler.create_milestone(
        ORG, "p1", name="Launch", planned_date=dt.date(2026, 3, 1), milestone_id="m",
        deliverables=[{"name": "Release notes"}, {"name": "Runbook", "status": "in_progress"}],
    )

    deliverables = scheduler.get_deliverables(ORG, "m")

    assert [(d.name, d.status) for d in deliverables] == [("Release notes", "not_started"), ("Runbook", "in_progress")]
    with pytest.raises(NotFoundError):
        scheduler.get_deliverables(ORG, "ghost")
