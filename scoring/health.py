"""
Component health rules.
Aggregate crash counts are always derived from error records, never incremented in place.
"""
from typing import Iterable

from normalize.models import (
    Component,
    ComponentErrorRecord,
    VersionStat,
    STATUS_ACTIVE,
    STATUS_DEPRECATED,
    STATUS_MAINTENANCE,
)


def aggregate_crash_count(errors: Iterable[ComponentErrorRecord]) -> int:
    """Sum event counts over non-archived error records."""
    return sum(max(0, int(e.event_count or 0)) for e in errors if not e.archived)


def automatic_status(crash_count: int, threshold: int) -> str:
    return STATUS_MAINTENANCE if crash_count >= threshold else STATUS_ACTIVE


def next_status(component: Component, crash_count: int) -> str:
    """Status after recomputation.

    Only active <-> maintenance is automatic; deprecated and operator-set statuses stay as they are.
    """
    if component.status == STATUS_DEPRECATED or component.is_manual:
        return component.status
    return automatic_status(crash_count, component.crash_threshold)


def crash_rate(stat: VersionStat) -> float:
    """Crashes per recorded action invocation (0.0 before any invocation is recorded)."""
    if not stat.action_count:
        return 0.0
    return stat.crash_count / float(stat.action_count)
