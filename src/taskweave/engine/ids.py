"""Prefixed opaque identifiers."""

from __future__ import annotations

from uuid import uuid4

GRAPH_PREFIX = "graph"
EXECUTION_PREFIX = "exec"
STOP_PREFIX = "stop"
SUB_STEP_PREFIX = "substep"


def new_id(prefix: str) -> str:
    """Return ``<prefix>_<32 hex chars>``; the uuid4 suffix carries 122 random bits."""

    return f"{prefix}_{uuid4().hex}"


def new_graph_id() -> str:
    return new_id(GRAPH_PREFIX)


def new_execution_id() -> str:
    return new_id(EXECUTION_PREFIX)


def new_stop_id() -> str:
    return new_id(STOP_PREFIX)


def new_sub_step_id() -> str:
    return new_id(SUB_STEP_PREFIX)
