from __future__ import annotations

from datetime import UTC, datetime

import allure
import pytest

from taskweave.engine.errors import ValidationError
from taskweave.engine.models import ActionKind, GraphCreate, TemplateSpec
from taskweave.engine.schedule import due_graphs, next_run_at, validate_cron, validate_timezone

pytestmark = [
    allure.epic("Execution Engine"),
    allure.feature("Recurring Graphs"),
]


@pytest.mark.parametrize("expression", ["0 0 9 * * 1", "61 * * * *", "", "daily"])
def test_invalid_cron_expressions(expression: str) -> None:
    with pytest.raises(ValidationError, match="Invalid cron expression"):
        validate_cron(expression)


def test_cron_whitespace_is_normalized() -> None:
    assert validate_cron("  */15   9-17 * *  1-5 ") == "*/15 9-17 * * 1-5"


def test_timezone_defaults_to_utc() -> None:
    assert validate_timezone(None) == "UTC"
    assert validate_timezone("Europe/Berlin") == "Europe/Berlin"
    with pytest.raises(ValidationError, match="Unknown timezone"):
        validate_timezone("Nowhere/Special")


def test_next_run_is_evaluated_in_graph_timezone() -> None:
    after = datetime(2026, 1, 5, 7, 0, tzinfo=UTC)

    assert next_run_at("0 9 * * *", after) == datetime(2026, 1, 5, 9, 0, tzinfo=UTC)
    # 09:00 in Berlin is 08:00 UTC in winter.
    berlin = next_run_at("0 9 * * *", after, "Europe/Berlin")
    assert berlin == datetime(2026, 1, 5, 8, 0, tzinfo=UTC)
    # Strictly after: a fire time equal to `after` is skipped.
    following = next_run_at("0 9 * * *", datetime(2026, 1, 5, 9, 0, tzinfo=UTC))
    assert following == datetime(2026, 1, 6, 9, 0, tzinfo=UTC)


def test_due_graphs_use_last_run(repository, clock) -> None:
    graph = repository.create_graph(
        GraphCreate(
            title="Daily",
            goal="daily digest",
            templates=[
                TemplateSpec(
                    task_id="1",
                    description="Fetch",
                    action_kind=ActionKind.TOOL,
                    target_name="search",
                ),
            ],
        ),
    )
    repository.set_graph_schedule(
        graph.graph_id,
        cron_schedule="0 10 * * *",
        timezone="UTC",
        active=True,
    )

    assert due_graphs(repository, datetime(2026, 1, 5, 9, 30, tzinfo=UTC)) == []
    due = due_graphs(repository, datetime(2026, 1, 5, 10, 0, tzinfo=UTC))
    assert [item.graph_id for item in due] == [graph.graph_id]

    clock.set(datetime(2026, 1, 5, 10, 0, 30, tzinfo=UTC))
    repository.mark_graph_run(graph.graph_id)

    assert due_graphs(repository, datetime(2026, 1, 5, 12, 0, tzinfo=UTC)) == []
    assert len(due_graphs(repository, datetime(2026, 1, 6, 10, 0, tzinfo=UTC))) == 1
