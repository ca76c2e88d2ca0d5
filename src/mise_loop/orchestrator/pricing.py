"""Cost estimate for engines that report tokens but not dollars."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass

PRICING_ENV_VAR = "MISE_ENGINE_PRICING"


@dataclass(frozen=True, slots=True)
class TokenPricing:
    """USD per one million input and output tokens for the station's model."""

    input_per_1m: float
    output_per_1m: float

    def estimate(self, input_tokens: int | None, output_tokens: int | None) -> float | None:
        if input_tokens is None and output_tokens is None:
            return None
        return ((input_tokens or 0) * self.input_per_1m + (output_tokens or 0) * self.output_per_1m) / 1_000_000


def parse_pricing(value: object) -> TokenPricing | None:
    """Read ``engine.pricing`` from station.yaml or ``MISE_ENGINE_PRICING``.

    Accepts ``{input_per_1m: 3, output_per_1m: 15}`` or the string ``"3:15"``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, Mapping):
        raw_input, raw_output = value.get("input_per_1m"), value.get("output_per_1m")
    elif isinstance(value, str) and value.count(":") == 1:
        raw_input, raw_output = value.split(":")
    else:
        raise ValueError(f"Invalid engine pricing {value!r}: use input:output USD per 1M tokens")
    try:
        pricing = TokenPricing(input_per_1m=float(raw_input), output_per_1m=float(raw_output))
    except (TypeError, ValueError) as error:
        raise ValueError(f"Invalid engine pricing {value!r}: rates must be numbers") from error
    if pricing.input_per_1m < 0 or pricing.output_per_1m < 0:
        raise ValueError(f"Invalid engine pricing {value!r}: rates must be >= 0")
    return pricing
