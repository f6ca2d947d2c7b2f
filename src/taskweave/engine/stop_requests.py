"""Append-only store of cooperative stop requests."""

from __future__ import annotations

import logging

from sqlalchemy import update as sa_update
from sqlalchemy.engine import Engine
from sqlmodel import Session, col, select

from taskweave.engine.backend.base import CostClock, SystemClock
from taskweave.engine.ids import new_stop_id
from taskweave.engine.models import StopRequestView, StopStatus
from taskweave.storage.common import optional_utc, to_db_datetime, to_utc_aware_datetime
from taskweave.storage.sqlmodel_models import StopRequest

logger = logging.getLogger(__name__)


class StopRequestStore:
    """Stop requests scoped to a graph or an execution.

    Requests are never deleted. ``has_active_*`` is a membership test on
    ``status = requested``; ``mark_handled_*`` flips every active request of
    one scope in a single statement, so two concurrent callers never both
    claim the same request.
    """

    def __init__(self, engine: Engine, *, clock: CostClock | None = None) -> None:
        self.engine = engine
        self.clock: CostClock = clock or SystemClock()

    def request_for_graph(self, graph_id: str) -> StopRequestView:
        return self._insert(graph_id=graph_id, execution_id=None)

    def request_for_execution(self, execution_id: str) -> StopRequestView:
        return self._insert(graph_id=None, execution_id=execution_id)

    def has_active_for_graph(self, graph_id: str) -> bool:
        return self._has_active(col(StopRequest.graph_id) == graph_id)

    def has_active_for_execution(self, execution_id: str) -> bool:
        return self._has_active(col(StopRequest.execution_id) == execution_id)

    def mark_handled_for_graph(self, graph_id: str) -> int:
        return self._mark_handled(col(StopRequest.graph_id) == graph_id)

    def mark_handled_for_execution(self, execution_id: str) -> int:
        return self._mark_handled(col(StopRequest.execution_id) == execution_id)

    def list_for_graph(self, graph_id: str) -> list[StopRequestView]:
        return self._list(col(StopRequest.graph_id) == graph_id)

    def list_for_execution(self, execution_id: str) -> list[StopRequestView]:
        return self._list(col(StopRequest.execution_id) == execution_id)

    def _insert(self, *, graph_id: str | None, execution_id: str | None) -> StopRequestView:
        with Session(self.engine) as session:
            row = StopRequest(
                stop_id=new_stop_id(),
                graph_id=graph_id,
                execution_id=execution_id,
                status=StopStatus.REQUESTED.value,
                requested_at=to_db_datetime(self.clock.now()),
            )
            session.add(row)
            session.commit()
            session.refresh(row)
            logger.info(
                "Stop requested: stop_id=%s graph_id=%s execution_id=%s",
                row.stop_id,
                graph_id,
                execution_id,
            )
            return _to_view(row)

    def _has_active(self, scope) -> bool:  # noqa: ANN001
        with Session(self.engine) as session:
            row = session.exec(
                select(StopRequest.stop_id)
                .where(scope, col(StopRequest.status) == StopStatus.REQUESTED.value)
                .limit(1),
            ).first()
        return row is not None

    def _mark_handled(self, scope) -> int:  # noqa: ANN001
        with Session(self.engine) as session:
            result = session.exec(
                sa_update(StopRequest)
                .where(scope, col(StopRequest.status) == StopStatus.REQUESTED.value)
                .values(
                    status=StopStatus.HANDLED.value,
                    handled_at=to_db_datetime(self.clock.now()),
                ),
            )
            session.commit()
            return int(result.rowcount or 0)

    def _list(self, scope) -> list[StopRequestView]:  # noqa: ANN001
        with Session(self.engine) as session:
            rows = session.exec(
                select(StopRequest).where(scope).order_by(col(StopRequest.requested_at).asc()),
            ).all()
        return [_to_view(row) for row in rows]


def _to_view(row: StopRequest) -> StopRequestView:
    return StopRequestView(
        stop_id=row.stop_id,
        graph_id=row.graph_id,
        execution_id=row.execution_id,
        status=StopStatus(row.status),
        requested_at=to_utc_aware_datetime(row.requested_at),
        handled_at=optional_utc(row.handled_at),
    )
