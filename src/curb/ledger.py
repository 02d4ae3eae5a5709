"""Usage Ledger: cumulative token counter with a budget ceiling.

One ledger lives for one run.  The loop records each invocation's total
tokens, asks whether the run is over budget, and asks (once) whether the
warning threshold has been crossed.  Usage exactly at the limit is still
within budget.
"""

from __future__ import annotations

import logging
from typing import Any

from curb.schemas import UsageRecord, UsageTotals

logger = logging.getLogger(__name__)

DEFAULT_WARN_THRESHOLD = 80


def _require_int(value: Any, what: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise TypeError(f"{what} must be an integer, got {type(value).__name__}")
    if value < 0:
        raise ValueError(f"{what} must be non-negative, got {value}")
    return value


class UsageLedger:
    """Tracks tokens used against a limit for one run."""

    def __init__(self, limit: int = 0, warn_threshold: int = DEFAULT_WARN_THRESHOLD) -> None:
        self.warn_threshold = _require_int(warn_threshold, "warn_threshold")
        self.limit = 0
        self.used = 0
        self.warned = False
        self.totals = UsageTotals()
        self.reset(limit)

    def reset(self, limit: int) -> None:
        """Start a fresh run: set the limit, zero usage, re-arm the warning."""
        self.limit = _require_int(limit, "limit")
        self.used = 0
        self.warned = False
        self.totals = UsageTotals()

    def record(self, tokens: int) -> None:
        """Add *tokens* to the running total."""
        self.used += _require_int(tokens, "tokens")

    def record_usage(self, usage: UsageRecord) -> int:
        """Record one invocation's usage; returns the tokens charged."""
        charged = usage.total_tokens
        self.record(charged)
        self.totals.add(usage)
        if usage.estimated:
            logger.info("Charged %d estimated tokens (cost $%.4f)", charged, usage.cost_usd or 0)
        return charged

    def remaining(self) -> int:
        """Tokens left before the limit; negative once over budget."""
        return self.limit - self.used

    def check_over_budget(self) -> bool:
        return self.used > self.limit

    def percent_used(self) -> int:
        """Integer percentage of the limit consumed; 0 when there is no limit."""
        if self.limit == 0:
            return 0
        return self.used * 100 // self.limit

    def check_warning(self, threshold: int | None = None) -> bool:
        """Return True the first time usage reaches *threshold* percent of the limit.

        Later calls return False even as usage keeps climbing.  A zero limit
        never warns.
        """
        if self.warned or self.limit == 0:
            return False
        threshold = self.warn_threshold if threshold is None else threshold
        if self.percent_used() >= threshold:
            self.warned = True
            return True
        return False

    def snapshot(self) -> dict[str, Any]:
        """Return ledger state as a plain dict for logs and run state."""
        return {
            "limit": self.limit,
            "used": self.used,
            "remaining": self.remaining(),
            "percent_used": self.percent_used(),
            "warned": self.warned,
            "totals": self.totals.model_dump(mode="json"),
        }
