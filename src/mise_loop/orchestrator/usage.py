"""Token usage extraction from engine output streams."""

from __future__ import annotations

import json
import re

from mise_loop.orchestrator.models import TokenUsage

_JSON_INPUT_TOKENS = re.compile(r'"(?:input|prompt)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_OUTPUT_TOKENS = re.compile(r'"(?:output|completion)_tokens"\s*:\s*(\d+)', re.IGNORECASE)
_JSON_COST = re.compile(r'"(?:total_)?cost_usd"\s*:\s*([\d.]+)', re.IGNORECASE)

_INPUT_TOKENS = re.compile(r"(?:input|prompt)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_OUTPUT_TOKENS = re.compile(r"(?:output|completion)[_ ]tokens?\s*[:=]\s*([\d,]+)", re.IGNORECASE)
_COST = re.compile(r"cost(?:[_ ]usd)?\s*[:=]\s*\$?([\d.]+)", re.IGNORECASE)


def extract_stream_json_usage(stdout: str) -> tuple[TokenUsage, dict[str, object] | None]:
    """Read usage from the last ``{"type": "result"}`` line of a stream-json transcript."""

    result_event: dict[str, object] | None = None
    for line in stdout.splitlines():
        stripped = line.strip()
        if not stripped.startswith("{"):
            continue
        try:
            event = json.loads(stripped)
        except json.JSONDecodeError:
            continue
        if isinstance(event, dict) and event.get("type") == "result":
            result_event = event

    if result_event is None:
        return extract_usage(stdout=stdout, stderr=""), None

    usage = result_event.get("usage")
    usage_map = usage if isinstance(usage, dict) else {}
    cost = result_event.get("total_cost_usd", result_event.get("cost_usd"))
    return (
        TokenUsage(
            input_tokens=_as_int(usage_map.get("input_tokens")),
            output_tokens=_as_int(usage_map.get("output_tokens")),
            cost_usd=float(cost) if isinstance(cost, (int, float)) else None,
        ),
        result_event,
    )


def extract_usage(*, stdout: str, stderr: str) -> TokenUsage:
    """Best-effort usage extraction from structured or textual output."""

    for text in (stdout, stderr):
        input_tokens = _extract_int(_JSON_INPUT_TOKENS, text)
        output_tokens = _extract_int(_JSON_OUTPUT_TOKENS, text)
        if input_tokens is not None or output_tokens is not None:
            return TokenUsage(
                input_tokens=input_tokens,
                output_tokens=output_tokens,
                cost_usd=_extract_float(_JSON_COST, text),
            )

    input_tokens = None
    output_tokens = None
    cost_usd = None
    for text in (stderr, stdout):
        if input_tokens is None:
            input_tokens = _extract_int(_INPUT_TOKENS, text)
        if output_tokens is None:
            output_tokens = _extract_int(_OUTPUT_TOKENS, text)
        if cost_usd is None:
            cost_usd = _extract_float(_COST, text)
    return TokenUsage(input_tokens=input_tokens, output_tokens=output_tokens, cost_usd=cost_usd)


def _as_int(value: object) -> int | None:
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    return None


def _extract_int(pattern: re.Pattern[str], text: str) -> int | None:
    match = pattern.search(text)
    if match is None:
        return None
    raw = match.group(1).replace(",", "").strip()
    if not raw.isdigit():
        return None
    return int(raw)


def _extract_float(pattern: re.Pattern[str], text: str) -> float | None:
    match = pattern.search(text)
    if match is None:
        return None
    try:
        return float(match.group(1))
    except ValueError:
        return None
