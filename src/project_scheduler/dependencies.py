from __future__ import annotations

from typing import Any, Iterable, Mapping

from .errors import ValidationError
from .project_models import RELATION_KINDS, DependencyEdge


def normalize_dependencies(raw: Iterable[Any] | None) -> list[DependencyEdge]:
    """
    Convert a dependency list into typed edges.

    - Bare ids (the legacy form) become finish_to_start edges with zero lag.
    - DependencyEdge instances pass through.
    - Mappings with `target`/`taskId`, `relation`/`type`, `lag` are converted.

    Legacy and typed entries may be mixed in one list.
    """

    if raw is None:
        return []
    items = list(raw)
    if not items:
        return []

    return [_coerce_edge(item, idx) for idx, item in enumerate(items)]


def dependency_targets(edges: Iterable[DependencyEdge]) -> list[str]:
    return [edge.target for edge in edges]


def _is_bare_id(value: Any) -> bool:
    return isinstance(value, (str, int)) and not isinstance(value, bool)


def _coerce_edge(item: Any, idx: int) -> DependencyEdge:
    if isinstance(item, DependencyEdge):
        return item
    if _is_bare_id(item):
        return DependencyEdge(target=str(item))
    if not isinstance(item, Mapping):
        raise ValidationError(f"dependencies[{idx}]: expected edge mapping, got {type(item).__name__}")

    target = item.get("target", item.get("taskId"))
    if not isinstance(target, str) or not target.strip():
        raise ValidationError(f"dependencies[{idx}].target: expected non-empty string")

    relation = item.get("relation", item.get("type", "finish_to_start"))
    if relation not in RELATION_KINDS:
        raise ValidationError(f"dependencies[{idx}].relation: must be one of {list(RELATION_KINDS)}")

    lag = item.get("lag", 0)
    if isinstance(lag, bool) or not isinstance(lag, (int, float)):
        raise ValidationError(f"dependencies[{idx}].lag: expected number")

    return DependencyEdge(target=target, relation=relation, lag=lag)
