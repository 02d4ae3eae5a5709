"""curb - drive AI coding harnesses over a dependency-aware backlog within a token budget."""

from importlib.metadata import PackageNotFoundError, version

from curb.schemas import InvocationResult, RunState, StopReason, UsageRecord

__all__ = ["InvocationResult", "RunState", "StopReason", "UsageRecord"]

try:
    __version__ = version("curb")
except PackageNotFoundError:
    __version__ = "0.0.0"
