from __future__ import annotations

import os
from collections.abc import Mapping
from dataclasses import dataclass, replace
from pathlib import Path

import tomllib

from .errors import ConfigError
from .store import DEFAULT_COMPLETION_PROMISE, STATE_DIR, STATE_FILE

CONFIG_FILE = "ralph.toml"
DEFAULT_AGENT_COMMAND = ("opencode", "run")


@dataclass(frozen=True)
class LoopConfig:
    repo_root: Path
    prompt: str = ""
    max_iterations: int = 0
    completion_promise: str = DEFAULT_COMPLETION_PROMISE
    model: str | None = None
    commit: bool = True
    plugins: bool = True
    agent_command: tuple[str, ...] = DEFAULT_AGENT_COMMAND
    iteration_delay: float = 1.0
    error_delay: float = 2.0
    prompt_file: Path | None = None
    state_file: Path | None = None

    @property
    def state_path(self) -> Path:
        if self.state_file is not None:
            return self.state_file
        return self.repo_root / STATE_DIR / STATE_FILE


def _as_str(value: object, *, field: str) -> str | None:
    if value is None:
        return None
    if not isinstance(value, str):
        raise ConfigError(f"{field} must be a string")
    stripped = value.strip()
    return stripped or None


def _as_int(value: object, *, field: str, minimum: int = 0) -> int | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, int):
        raise ConfigError(f"{field} must be an integer")
    if value < minimum:
        raise ConfigError(f"{field} must be >= {minimum}")
    return value


def _as_float(value: object, *, field: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{field} must be a number")
    if value < 0:
        raise ConfigError(f"{field} must be >= 0")
    return float(value)


def _as_bool(value: object, *, field: str) -> bool | None:
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ConfigError(f"{field} must be true or false")
    return value


def _as_command(value: object, *, field: str) -> tuple[str, ...] | None:
    if value is None:
        return None
    if isinstance(value, str):
        parts = value.split()
    elif isinstance(value, list) and all(isinstance(v, str) for v in value):
        parts = [v for v in value if v.strip()]
    else:
        raise ConfigError(f"{field} must be a string or an array of strings")
    if not parts:
        raise ConfigError(f"{field} must not be empty")
    return tuple(parts)


def config_path(repo_root: Path) -> Path:
    return repo_root / STATE_DIR / CONFIG_FILE


def load_config(repo_root: Path, *, path: Path | None = None) -> LoopConfig:
    """Load ``.opencode/ralph.toml`` and apply environment overrides.

    A missing file yields the defaults. Unknown keys are ignored.
    """
    cfg = LoopConfig(repo_root=repo_root)
    path = path or config_path(repo_root)
    if path.exists():
        try:
            data = tomllib.loads(path.read_text(encoding="utf-8"))
        except (OSError, tomllib.TOMLDecodeError) as exc:
            raise ConfigError(f"invalid config {path}: {exc}") from exc
        loop = data.get("loop", {})
        if not isinstance(loop, dict):
            raise ConfigError("[loop] must be a table")
        cfg = _apply_table(cfg, loop)
    return apply_env(cfg, os.environ)


def _apply_table(cfg: LoopConfig, loop: dict) -> LoopConfig:
    changes: dict[str, object] = {}
    max_iterations = _as_int(loop.get("max_iterations"), field="[loop].max_iterations")
    if max_iterations is not None:
        changes["max_iterations"] = max_iterations
    promise = _as_str(loop.get("completion_promise"), field="[loop].completion_promise")
    if promise is not None:
        changes["completion_promise"] = promise
    model = _as_str(loop.get("model"), field="[loop].model")
    if model is not None:
        changes["model"] = model
    commit = _as_bool(loop.get("commit"), field="[loop].commit")
    if commit is not None:
        changes["commit"] = commit
    plugins = _as_bool(loop.get("plugins"), field="[loop].plugins")
    if plugins is not None:
        changes["plugins"] = plugins
    command = _as_command(loop.get("agent_command"), field="[loop].agent_command")
    if command is not None:
        changes["agent_command"] = command
    delay = _as_float(loop.get("iteration_delay"), field="[loop].iteration_delay")
    if delay is not None:
        changes["iteration_delay"] = delay
    error_delay = _as_float(loop.get("error_delay"), field="[loop].error_delay")
    if error_delay is not None:
        changes["error_delay"] = error_delay
    prompt_file = _as_str(loop.get("prompt_file"), field="[loop].prompt_file")
    if prompt_file is not None:
        p = Path(prompt_file)
        changes["prompt_file"] = p if p.is_absolute() else cfg.repo_root / p
    return replace(cfg, **changes)


def apply_env(cfg: LoopConfig, env: Mapping[str, str]) -> LoopConfig:
    changes: dict[str, object] = {}
    command = env.get("RALPH_AGENT_COMMAND", "").strip()
    if command:
        changes["agent_command"] = tuple(command.split())
    state_file = env.get("RALPH_STATE_FILE", "").strip()
    if state_file:
        changes["state_file"] = Path(state_file).expanduser()
    return replace(cfg, **changes) if changes else cfg


def apply_template_meta(cfg: LoopConfig, meta: dict) -> LoopConfig:
    """Apply prompt-file frontmatter defaults (model, max_iterations, completion_promise)."""
    changes: dict[str, object] = {}
    model = _as_str(meta.get("model"), field="frontmatter model")
    if model is not None:
        changes["model"] = model
    max_iterations = _as_int(meta.get("max_iterations"), field="frontmatter max_iterations")
    if max_iterations is not None:
        changes["max_iterations"] = max_iterations
    promise = _as_str(meta.get("completion_promise"), field="frontmatter completion_promise")
    if promise is not None:
        changes["completion_promise"] = promise
    return replace(cfg, **changes) if changes else cfg
