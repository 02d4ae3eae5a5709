"""Static capability table for supported harnesses.

The orchestrator consults this table, never the adapters themselves, to
decide how to drive a harness.  Unknown harness ids resolve to a descriptor
with every capability switched off.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from types import MappingProxyType


class Capability(str, Enum):
    """Optional behaviors a harness may support."""

    STREAMING = "streaming"
    TOKEN_REPORTING = "token_reporting"
    SYSTEM_PROMPT = "system_prompt"
    AUTO_MODE = "auto_mode"


@dataclass(frozen=True)
class CapabilityDescriptor:
    """What one harness can do."""

    harness_id: str
    streaming: bool = False
    token_reporting: bool = False
    system_prompt: bool = False
    auto_mode: bool = False

    def supports(self, capability: Capability | str) -> bool:
        try:
            key = Capability(_normalize_capability(capability))
        except ValueError:
            return False
        return bool(getattr(self, key.value))

    def to_dict(self) -> dict[str, object]:
        return asdict(self)


def _normalize_capability(capability: Capability | str) -> str:
    if isinstance(capability, Capability):
        return capability.value
    raw = str(capability or "").strip()
    if raw.isupper():
        raw = raw.lower()
    # Accept the camelCase spellings used in config files (``tokenReporting``).
    snake = "".join(f"_{ch.lower()}" if ch.isupper() else ch for ch in raw)
    return snake.lstrip("_").replace("-", "_").lower()


_MATRIX: MappingProxyType[str, CapabilityDescriptor] = MappingProxyType(
    {
        "claude": CapabilityDescriptor(
            "claude",
            streaming=True,
            token_reporting=True,
            system_prompt=True,
            auto_mode=True,
        ),
        "opencode": CapabilityDescriptor(
            "opencode",
            streaming=True,
            token_reporting=True,
            auto_mode=True,
        ),
        "codex": CapabilityDescriptor(
            "codex",
            streaming=True,
            token_reporting=True,
            auto_mode=True,
        ),
        "gemini": CapabilityDescriptor("gemini", auto_mode=True),
    }
)


class CapabilityMatrix:
    """Read-only lookup of :class:`CapabilityDescriptor` rows by harness id."""

    def __init__(self, rows: dict[str, CapabilityDescriptor] | None = None) -> None:
        self._rows = MappingProxyType(dict(rows)) if rows is not None else _MATRIX

    def capabilities_of(self, harness_id: str) -> CapabilityDescriptor:
        key = (harness_id or "").strip().lower()
        row = self._rows.get(key)
        if row is None:
            return CapabilityDescriptor(key)
        return row

    def supports(self, harness_id: str, capability: Capability | str) -> bool:
        return self.capabilities_of(harness_id).supports(capability)

    def harness_ids(self) -> list[str]:
        return list(self._rows)


DEFAULT_MATRIX = CapabilityMatrix()


def capabilities_of(harness_id: str) -> CapabilityDescriptor:
    """Look up *harness_id* in the default matrix."""
    return DEFAULT_MATRIX.capabilities_of(harness_id)


def supports(harness_id: str, capability: Capability | str) -> bool:
    """Return whether *harness_id* supports *capability* in the default matrix."""
    return DEFAULT_MATRIX.supports(harness_id, capability)
