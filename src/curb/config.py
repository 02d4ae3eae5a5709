"""Layered configuration.

Precedence, lowest first: built-in defaults, the user config in
``$XDG_CONFIG_HOME/curb/``, the project config next to the backlog
(``.curb.json`` / ``.curb.yaml``), ``CURB_*`` environment variables, and
finally command-line flags.  Every layer is a plain mapping deep-merged into
the previous one; the result is validated into :class:`CurbConfig`.
"""

from __future__ import annotations

import logging
import os
import shlex
from collections.abc import Mapping
from enum import Enum
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from curb.errors import CurbError

logger = logging.getLogger(__name__)

USER_CONFIG_NAMES = ("config.yaml", "config.yml", "config.json")
PROJECT_CONFIG_NAMES = (".curb.json", ".curb.yaml", ".curb.yml")

#: Legacy per-harness flag variables.
_FLAG_ENV_VARS = {"claude": "CLAUDE_FLAGS", "codex": "CODEX_FLAGS"}


# ── XDG locations ────────────────────────────────────────────────


def xdg_config_home(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    value = (env.get("XDG_CONFIG_HOME") or "").strip()
    return Path(value) if value else Path.home() / ".config"


def xdg_data_home(env: Mapping[str, str] | None = None) -> Path:
    env = os.environ if env is None else env
    value = (env.get("XDG_DATA_HOME") or "").strip()
    return Path(value) if value else Path.home() / ".local" / "share"


def curb_config_dir(env: Mapping[str, str] | None = None) -> Path:
    return xdg_config_home(env) / "curb"


def curb_logs_dir(env: Mapping[str, str] | None = None) -> Path:
    return xdg_data_home(env) / "curb" / "logs"


# ── Model ────────────────────────────────────────────────────────


class FailurePolicy(str, Enum):
    """What the loop does when a harness invocation exits non-zero."""

    STOP = "stop"
    MOVE_ON = "move_on"
    RETRY = "retry"


class _Section(BaseModel):
    model_config = ConfigDict(extra="ignore")


class HarnessConfig(_Section):
    name: str = "auto"
    model: str = ""
    timeout: int = Field(default=1800, ge=0)
    extra_args: dict[str, list[str] | str] = Field(default_factory=dict)
    binaries: dict[str, str] = Field(default_factory=dict)


class BudgetConfig(_Section):
    default: int = Field(default=1_000_000, ge=0)
    warn_at: int = Field(default=80, ge=0, le=100)


class LoopConfig(_Section):
    backlog: str = "prd.json"
    max_iterations: int = Field(default=100, ge=1)
    on_failure: FailurePolicy = FailurePolicy.STOP
    max_retries: int = Field(default=3, ge=0)
    once: bool = False
    epic: str | None = None
    label: str | None = None
    debug: bool = False


class CleanStateConfig(_Section):
    require_commit: bool = True
    require_tests: bool = False
    test_command: str = ""


class HooksConfig(_Section):
    enabled: bool = True
    fail_fast: bool = False
    timeout: int = Field(default=300, ge=1)


class CurbConfig(_Section):
    """Validated, merged configuration for one run."""

    harness: HarnessConfig = Field(default_factory=HarnessConfig)
    budget: BudgetConfig = Field(default_factory=BudgetConfig)
    loop: LoopConfig = Field(default_factory=LoopConfig)
    clean_state: CleanStateConfig = Field(default_factory=CleanStateConfig)
    hooks: HooksConfig = Field(default_factory=HooksConfig)

    def extra_args_for(
        self, harness_id: str, env: Mapping[str, str] | None = None
    ) -> list[str]:
        """Return the extra CLI flags for *harness_id* (config first, then env flags)."""
        env = os.environ if env is None else env
        args = _split_args(self.harness.extra_args.get(harness_id, []))
        env_var = _FLAG_ENV_VARS.get(harness_id)
        if env_var:
            args.extend(_split_args(env.get(env_var, "")))
        return args

    def test_command_args(self) -> list[str]:
        return _split_args(self.clean_state.test_command)


def _split_args(value: list[str] | str | None) -> list[str]:
    if not value:
        return []
    if isinstance(value, str):
        try:
            return shlex.split(value)
        except ValueError:
            logger.warning("Could not parse flags %r; falling back to whitespace split.", value)
            return value.split()
    return [str(part) for part in value if str(part).strip()]


# ── Loading ──────────────────────────────────────────────────────


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML (or JSON) file, returning an empty dict on failure."""
    try:
        import yaml  # type: ignore[import-untyped]

        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except Exception as exc:
        logger.warning("Failed to load %s: %s", path, exc)
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring %s: top level is not a mapping", path)
        return {}
    return data


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base* (override wins)."""
    merged = dict(base)
    for k, v in override.items():
        if k in merged and isinstance(merged[k], dict) and isinstance(v, dict):
            merged[k] = _deep_merge(merged[k], v)
        else:
            merged[k] = v
    return merged


def _first_existing(directory: Path, names: tuple[str, ...]) -> Path | None:
    for name in names:
        candidate = directory / name
        if candidate.is_file():
            return candidate
    return None


def _env_int(env: Mapping[str, str], name: str) -> int | None:
    raw = (env.get(name) or "").strip()
    if not raw:
        return None
    try:
        return int(raw)
    except ValueError:
        logger.warning("Ignoring %s=%r: not an integer", name, raw)
        return None


def env_overrides(env: Mapping[str, str] | None = None) -> dict[str, Any]:
    """Translate ``CURB_*`` environment variables into a config layer."""
    env = os.environ if env is None else env
    layer: dict[str, Any] = {}
    budget = _env_int(env, "CURB_BUDGET")
    if budget is not None:
        layer.setdefault("budget", {})["default"] = budget
    max_iterations = _env_int(env, "CURB_MAX_ITERATIONS")
    if max_iterations is not None:
        layer.setdefault("loop", {})["max_iterations"] = max_iterations
    harness = (env.get("CURB_HARNESS") or env.get("HARNESS") or "").strip()
    if harness:
        layer.setdefault("harness", {})["name"] = harness
    model = (env.get("CURB_MODEL") or "").strip()
    if model:
        layer.setdefault("harness", {})["model"] = model
    return layer


def load_config(
    repo_path: str | Path = ".",
    *,
    cli_overrides: Mapping[str, Any] | None = None,
    env: Mapping[str, str] | None = None,
    config_dir: str | Path | None = None,
) -> CurbConfig:
    """Merge every configuration layer for *repo_path* and validate the result."""
    env = os.environ if env is None else env
    repo = Path(repo_path).resolve()
    user_dir = Path(config_dir) if config_dir is not None else curb_config_dir(env)

    merged: dict[str, Any] = {}
    user_file = _first_existing(user_dir, USER_CONFIG_NAMES)
    if user_file is not None:
        logger.debug("Loading user config %s", user_file)
        merged = _deep_merge(merged, _load_yaml(user_file))
    project_file = _first_existing(repo, PROJECT_CONFIG_NAMES)
    if project_file is not None:
        logger.debug("Loading project config %s", project_file)
        merged = _deep_merge(merged, _load_yaml(project_file))
    merged = _deep_merge(merged, env_overrides(env))
    if cli_overrides:
        merged = _deep_merge(merged, _drop_none(dict(cli_overrides)))

    try:
        return CurbConfig.model_validate(merged)
    except ValidationError as exc:
        problems = "; ".join(
            f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()
        )
        raise CurbError(
            f"Invalid configuration: {problems}",
            hint=f"Check {project_file or user_file or 'your CURB_* environment variables'}.",
        ) from exc


def _drop_none(layer: dict[str, Any]) -> dict[str, Any]:
    """Remove unset CLI flags so they do not override lower layers."""
    out: dict[str, Any] = {}
    for key, value in layer.items():
        if isinstance(value, dict):
            nested = _drop_none(value)
            if nested:
                out[key] = nested
        elif value is not None:
            out[key] = value
    return out
