import datetime as dt

import pytest

from project_scheduler.config import SchedulerSettings
from project_scheduler.errors import NotFoundError
from project_scheduler.numbering import format_task_number, next_task_number, next_wbs_code
from project_scheduler.project_models import Project, Task
from project_scheduler.store import InMemoryStore

ORG = "acme"


def _store(*tasks):
    store = InMemoryStore()
    store.insert_project(ORG, Project(id="p1", name="P", start_date=dt.date(2026, 1, 1), end_date=dt.date(2026, 6, 30)))
    for task in tasks:
        store.insert_task(ORG, task)
    return store


def _task(task_id, wbs, parent=None, level=0):
    return Task(id=task_id, project_id="p1", title=task_id, wbs_code=wbs, parent_task_id=parent, level=level)


def test_first_task_number_is_padded():
    assert next_task_number(_store(), ORG, "p1") == "TSK-001"


def test_task_number_counts_existing_tasks():
    store = _store(_task("a", "1"), _task("b", "2"))

    assert next_task_number(store, ORG, "p1") == "TSK-003"


def test_task_number_honours_settings():
    settings = SchedulerSettings(task_number_prefix="T", task_number_width=5)

    assert format_task_number(42, settings) == "T00042"


def test_root_wbs_code_counts_root_tasks():
    store = _store(_task("a", "1"), _task("b", "2"), _task("c", "1.1", parent="a", level=1))

    assert next_wbs_code(store, ORG, "p1") == "3"


def test_child_wbs_code_extends_parent_code():
    store = _store(_task("a", "1"), _task("b", "2"), _task("c", "2.1", parent="b", level=1))

    assert next_wbs_code(store, ORG, "p1", parent_task_id="b") == "2.2"
    assert next_wbs_code(store, ORG, "p1", parent_task_id="a") == "1.1"


def test_missing_parent_falls_back_to_default_child_code():
    store = _store(_task("a", "1"))

    assert next_wbs_code(store, ORG, "p1", parent_task_id="ghost") == "1.1"


def test_uncoded_parent_falls_back_to_default_child_code():
    store = _store(_task("a", ""))

    assert next_wbs_code(store, ORG, "p1", parent_task_id="a") == "1.1"


def test_fallback_code_skips_codes_already_taken():
    store = _store(_task("a", ""), _task("b", "1.1", parent="a", level=1))

    assert next_wbs_code(store, ORG, "p1", parent_task_id="a") == "1.2"
    assert next_wbs_code(store, ORG, "p1", parent_task_id="ghost") == "1.2"


def test_strict_mode_rejects_missing_parent():
    store = _store(_task("a", "1"))

    with pytest.raises(NotFoundError):
        next_wbs_code(store, ORG, "p1", parent_task_id="ghost", settings=SchedulerSettings(strict_wbs_parent=True))


def test_wbs_code_skips_codes_freed_by_deletion():
    store = _store(_task("a", "1"), _task("b", "2"), _task("c", "3"))
    store.delete_task(ORG, "b")

    assert next_wbs_code(store, ORG, "p1") == "4"


def test_unknown_project_raises():
    with pytest.raises(NotFoundError):
        next_task_number(InMemoryStore(), ORG, "missing")
