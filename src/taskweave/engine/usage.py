"""Usage normalization for heterogeneous collaborator telemetry."""

from __future__ import annotations

import re
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from taskweave.engine.models import Usage

USAGE_PARSER_VERSION = "v1"

# Key aliases used by common providers, checked in order.
_PROMPT_KEYS = ("prompt_tokens", "input_tokens", "promptTokens", "prompt_eval_count")
_COMPLETION_KEYS = ("completion_tokens", "output_tokens", "completionTokens", "eval_count")
_TOTAL_KEYS = ("total_tokens", "totalTokens")

_INPUT_TOKENS = re.compile(r"(?:input|prompt)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOTAL_TOKENS = re.compile(r"total[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_TOKENS_USED = re.compile(r"tokens used\s*[\r\n: ]+\s*([\d,]+)", re.IGNORECASE)


@dataclass(slots=True)
class UsageExtraction:
    """Best-effort token usage extraction result."""

    usage: Usage
    usage_status: str
    usage_source: str
    parser_version: str = USAGE_PARSER_VERSION


def normalize_usage(raw: Mapping[str, Any] | Usage | None) -> UsageExtraction:
    """Normalize a provider usage mapping (possibly nested under ``usage``)."""

    if isinstance(raw, Usage):
        return UsageExtraction(
            usage=raw,
            usage_status="unknown" if raw.is_empty else "reported",
            usage_source="collaborator",
        )
    if not raw:
        return UsageExtraction(usage=Usage(), usage_status="unknown", usage_source="none")

    payload: Mapping[str, Any] = raw
    nested = raw.get("usage")
    if isinstance(nested, Mapping):
        payload = nested

    prompt = _first_int(payload, _PROMPT_KEYS)
    completion = _first_int(payload, _COMPLETION_KEYS)
    total = _first_int(payload, _TOTAL_KEYS)
    if prompt is None and completion is None and total is None:
        return UsageExtraction(usage=Usage(), usage_status="unknown", usage_source="none")

    total_was_reported = total is not None
    if total is None:
        total = (prompt or 0) + (completion or 0)
    return UsageExtraction(
        usage=Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total),
        usage_status="reported" if total_was_reported else "estimated",
        usage_source="structured",
    )


def extract_usage_from_text(text: str) -> UsageExtraction:
    """Extract token usage markers from free-form collaborator output."""

    prompt = _extract_int(_INPUT_TOKENS, text)
    completion = _extract_int(_OUTPUT_TOKENS, text)
    total = _extract_int(_TOTAL_TOKENS, text)
    if total is None:
        total = _extract_int(_TOKENS_USED, text)

    if prompt is None and completion is None and total is None:
        return UsageExtraction(usage=Usage(), usage_status="unknown", usage_source="none")

    total_was_reported = total is not None
    if total is None:
        known = [value for value in (prompt, completion) if value is not None]
        total = sum(known) if known else None
    return UsageExtraction(
        usage=Usage(prompt_tokens=prompt, completion_tokens=completion, total_tokens=total),
        usage_status="reported" if total_was_reported else "estimated",
        usage_source="text",
    )


def _first_int(payload: Mapping[str, Any], keys: tuple[str, ...]) -> int | None:
    for key in keys:
        value = payload.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, int) and value >= 0:
            return value
        if isinstance(value, float) and value >= 0:
            return int(value)
        if isinstance(value, str) and value.strip().isdigit():
            return int(value.strip())
    return None


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)
