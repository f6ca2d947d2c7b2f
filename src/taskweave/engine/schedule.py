"""Cron recurrence metadata for task graphs.

Schedules are stored alongside graphs and evaluated on demand; nothing in
this package runs a daemon.
"""

from __future__ import annotations

from datetime import datetime
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from taskweave.engine.errors import ValidationError
from taskweave.engine.models import GraphView
from taskweave.engine.repository import ExecutionRepository
from taskweave.storage.common import to_utc_aware_datetime

DEFAULT_TIMEZONE = "UTC"
CRON_FIELDS = 5


def validate_cron(expression: str) -> str:
    """Return the normalized 5-field expression or raise ``ValidationError``."""

    normalized = " ".join((expression or "").split())
    if len(normalized.split(" ")) != CRON_FIELDS or not croniter.is_valid(normalized):
        raise ValidationError(
            f"Invalid cron expression: {expression!r} (expected 5 fields)",
            field="cron_schedule",
            value=expression,
        )
    return normalized


def validate_timezone(name: str | None) -> str:
    timezone = name or DEFAULT_TIMEZONE
    try:
        ZoneInfo(timezone)
    except (ZoneInfoNotFoundError, ValueError) as error:
        raise ValidationError(
            f"Unknown timezone: {timezone}",
            field="timezone",
            value=timezone,
        ) from error
    return timezone


def next_run_at(expression: str, after: datetime, timezone: str | None = None) -> datetime:
    """Next fire time strictly after ``after``, evaluated in ``timezone``, returned in UTC."""

    zone = ZoneInfo(validate_timezone(timezone))
    local_after = to_utc_aware_datetime(after).astimezone(zone)
    fire = croniter(validate_cron(expression), local_after).get_next(datetime)
    return to_utc_aware_datetime(fire)


def due_graphs(repository: ExecutionRepository, now: datetime) -> list[GraphView]:
    """Active scheduled graphs whose next run is at or before ``now``."""

    due = []
    for graph in repository.list_scheduled_graphs():
        if graph.cron_schedule is None:
            continue
        base = graph.last_run_at or graph.created_at
        if next_run_at(graph.cron_schedule, base, graph.timezone) <= now:
            due.append(graph)
    return due
