from __future__ import annotations

from dataclasses import dataclass, fields, replace
from typing import Any

import yaml

from .errors import ValidationError


@dataclass(frozen=True)
class SchedulerSettings:
    """Tunable knobs for numbering and milestone reminders."""

    task_number_prefix: str = "TSK-"
    task_number_width: int = 3
    default_reminder_days: int = 7
    default_child_wbs: str = "1.1"
    # When set, a missing parent or parent without a WBS code is an error instead of the fallback code.
    strict_wbs_parent: bool = False


DEFAULT_SETTINGS = SchedulerSettings()


def settings_from_mapping(data: Any, base: SchedulerSettings = DEFAULT_SETTINGS) -> SchedulerSettings:
    """Overlay a `settings:` mapping onto `base`; unknown keys are rejected."""

    if data is None:
        return base
    if not isinstance(data, dict):
        raise ValidationError("settings: expected mapping")

    known = {f.name: f for f in fields(SchedulerSettings)}
    extras = sorted(set(data) - set(known))
    if extras:
        raise ValidationError(f"settings: unexpected fields {extras}")

    overrides: dict[str, Any] = {}
    for key, value in data.items():
        expected = type(getattr(base, key))
        if expected is int and (isinstance(value, bool) or not isinstance(value, int)):
            raise ValidationError(f"settings.{key}: expected integer")
        if expected is bool and not isinstance(value, bool):
            raise ValidationError(f"settings.{key}: expected boolean")
        if expected is str and not isinstance(value, str):
            raise ValidationError(f"settings.{key}: expected string")
        overrides[key] = value

    settings = replace(base, **overrides)
    if settings.task_number_width < 1:
        raise ValidationError("settings.task_number_width: must be at least 1")
    if settings.default_reminder_days < 0:
        raise ValidationError("settings.default_reminder_days: must not be negative")
    return settings


def load_settings(path: str, base: SchedulerSettings = DEFAULT_SETTINGS) -> SchedulerSettings:
    """Load settings from a standalone YAML file (top-level mapping or a `settings:` block)."""

    with open(path, "r", encoding="utf-8") as fh:
        raw = yaml.safe_load(fh)

    if isinstance(raw, dict) and "settings" in raw:
        raw = raw["settings"]
    return settings_from_mapping(raw, base)
