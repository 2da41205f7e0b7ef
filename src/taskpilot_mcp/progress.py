"""Heuristic completion estimate for in-flight tasks."""

from __future__ import annotations

from datetime import datetime, timezone

from .models import EffortBucket, RepoStats, Task

# Expected wall-clock minutes per effort bucket.
EXPECTED_MINUTES: dict[EffortBucket, float] = {
    EffortBucket.XS: 30,
    EffortBucket.S: 90,
    EffortBucket.M: 240,
    EffortBucket.L: 960,
    EffortBucket.XL: 2400,
    EffortBucket.XXL: 4800,
}
DEFAULT_EXPECTED_MINUTES = 240.0

TIME_WEIGHT = 0.30
COMMIT_WEIGHT = 0.40
FILES_WEIGHT = 0.30

TIME_COMPONENT_CAP = 90.0
COMMIT_SATURATION = 10
FILES_SATURATION = 20

# 100 is reserved for confirmed completion.
PROGRESS_CEILING = 95


def expected_minutes(task: Task) -> float:
    if task.estimated_effort is None:
        return DEFAULT_EXPECTED_MINUTES
    return EXPECTED_MINUTES.get(task.estimated_effort, DEFAULT_EXPECTED_MINUTES)


def time_component(task: Task, now: datetime | None = None) -> float:
    if task.started_at is None:
        return 0.0
    now = now or datetime.now(timezone.utc)
    started = task.started_at
    if started.tzinfo is None:
        started = started.replace(tzinfo=timezone.utc)
    elapsed_minutes = max(0.0, (now - started).total_seconds() / 60)
    return min(TIME_COMPONENT_CAP, elapsed_minutes / expected_minutes(task) * 100)


def _saturating(value: int, saturation: int) -> float:
    return min(1.0, max(0, value) / saturation) * 100


def estimate(task: Task, stats: RepoStats | None, *, now: datetime | None = None) -> int:
    """Blend elapsed time and repository activity into a percentage in [0, 95].

    ``stats`` is None when repository statistics could not be collected; the
    estimate then falls back to the time component alone.
    """

    by_time = time_component(task, now)
    if stats is None:
        score = by_time
    else:
        score = (
            TIME_WEIGHT * by_time
            + COMMIT_WEIGHT * _saturating(stats.commits, COMMIT_SATURATION)
            + FILES_WEIGHT * _saturating(stats.files_changed, FILES_SATURATION)
        )
    return int(max(0, min(PROGRESS_CEILING, round(score))))


__all__ = [
    "COMMIT_WEIGHT",
    "EXPECTED_MINUTES",
    "FILES_WEIGHT",
    "PROGRESS_CEILING",
    "TIME_WEIGHT",
    "estimate",
    "expected_minutes",
    "time_component",
]
