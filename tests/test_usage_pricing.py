from __future__ import annotations

import json

import allure
import pytest

from mise_loop.orchestrator.pricing import TokenPricing, parse_pricing
from mise_loop.orchestrator.usage import extract_stream_json_usage, extract_usage

pytestmark = [
    allure.epic("Engines"),
    allure.feature("Usage Telemetry"),
]


def test_pricing_estimate_uses_input_and_output_tokens() -> None:
    pricing = TokenPricing(input_per_1m=1.0, output_per_1m=3.0)

    assert pricing.estimate(1_000_000, 500_000) == pytest.approx(2.5)
    assert pricing.estimate(None, 200_000) == pytest.approx(0.6)
    assert pricing.estimate(None, None) is None


@pytest.mark.parametrize(
    ("raw", "expected"),
    [
        (None, None),
        ("", None),
        ("3:15", TokenPricing(input_per_1m=3.0, output_per_1m=15.0)),
        ({"input_per_1m": 0.5, "output_per_1m": 2}, TokenPricing(input_per_1m=0.5, output_per_1m=2.0)),
    ],
)
def test_parse_pricing_accepts_string_and_mapping(raw: object, expected: TokenPricing | None) -> None:
    assert parse_pricing(raw) == expected


@pytest.mark.parametrize("raw", ["3", "a:b", "1:2:3", {"input_per_1m": 1}, "-1:2", 7])
def test_parse_pricing_rejects_malformed_values(raw: object) -> None:
    with pytest.raises(ValueError, match="Invalid engine pricing"):
        parse_pricing(raw)


def test_extract_stream_json_usage_reads_last_result_event() -> None:
    stdout = "\n".join(
        [
            json.dumps({"type": "system", "subtype": "init"}),
            "not json",
            json.dumps(
                {
                    "type": "result",
                    "total_cost_usd": 0.042,
                    "usage": {"input_tokens": 1500, "output_tokens": 300},
                },
            ),
        ],
    )

    usage, result_event = extract_stream_json_usage(stdout)

    assert usage.input_tokens == 1500
    assert usage.output_tokens == 300
    assert usage.cost_usd == pytest.approx(0.042)
    assert result_event is not None
    assert result_event["type"] == "result"


def test_extract_usage_falls_back_to_text_patterns() -> None:
    usage = extract_usage(stdout="done", stderr="input tokens: 1,200\noutput_tokens=80\ncost: $0.01")

    assert usage.input_tokens == 1200
    assert usage.output_tokens == 80
    assert usage.cost_usd == pytest.approx(0.01)


def test_extract_usage_prefers_json_payload() -> None:
    usage = extract_usage(stdout='{"input_tokens": 120, "output_tokens": 30}', stderr="")

    assert usage.input_tokens == 120
    assert usage.output_tokens == 30
    assert usage.cost_usd is None
