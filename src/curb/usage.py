"""Per-invocation token usage accumulation.

A single harness invocation can report usage several times (one finish
event per reasoning/tool step).  Counts are summed, never overwritten.
When a harness reports a dollar cost but no token counts, tokens are
estimated from the cost as a last resort.
"""

from __future__ import annotations

import logging
from typing import Any

from curb.runner_common import coerce_float, coerce_int
from curb.schemas import UsageRecord

logger = logging.getLogger(__name__)

#: Rough blended price: ~$6.50 per million tokens.
TOKENS_PER_USD = 150_000


def estimate_tokens_from_cost(cost_usd: float) -> tuple[int, int]:
    """Split ``cost * 150000`` tokens into (input, output) as 1/3 : 2/3."""
    total = int(cost_usd * TOKENS_PER_USD)
    if total <= 0:
        return 0, 0
    return total // 3, total * 2 // 3


class UsageAccumulator:
    """Sum usage objects from one invocation and produce a :class:`UsageRecord`."""

    def __init__(self) -> None:
        self.input_tokens = 0
        self.output_tokens = 0
        self.cache_read_tokens = 0
        self.cache_creation_tokens = 0
        self.reasoning_tokens = 0
        self.cost_usd: float | None = None
        self.steps = 0

    def add(
        self,
        *,
        input_tokens: Any = 0,
        output_tokens: Any = 0,
        cache_read_tokens: Any = 0,
        cache_creation_tokens: Any = 0,
        reasoning_tokens: Any = 0,
    ) -> None:
        self.input_tokens += max(0, coerce_int(input_tokens))
        self.output_tokens += max(0, coerce_int(output_tokens))
        self.cache_read_tokens += max(0, coerce_int(cache_read_tokens))
        self.cache_creation_tokens += max(0, coerce_int(cache_creation_tokens))
        self.reasoning_tokens += max(0, coerce_int(reasoning_tokens))
        self.steps += 1

    def add_cost(self, cost: Any) -> None:
        """Add a per-step cost."""
        value = coerce_float(cost)
        if value is None:
            return
        self.cost_usd = (self.cost_usd or 0.0) + value

    def set_cost(self, cost: Any) -> None:
        """Replace the cost with a final, already-cumulative figure."""
        value = coerce_float(cost)
        if value is not None:
            self.cost_usd = value

    def record(self) -> UsageRecord:
        """Return the accumulated usage, estimating tokens only when none were reported."""
        input_tokens = self.input_tokens
        # Reasoning tokens are billed as output.
        output_tokens = self.output_tokens + self.reasoning_tokens
        estimated = False
        if input_tokens == 0 and output_tokens == 0 and self.cost_usd:
            est_in, est_out = estimate_tokens_from_cost(self.cost_usd)
            if est_in or est_out:
                logger.debug(
                    "No token counts reported; estimating %d in / %d out from $%.4f",
                    est_in,
                    est_out,
                    self.cost_usd,
                )
                input_tokens, output_tokens = est_in, est_out
                estimated = True
        return UsageRecord(
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cache_read_tokens=self.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens,
            cost_usd=self.cost_usd,
            estimated=estimated,
        )
