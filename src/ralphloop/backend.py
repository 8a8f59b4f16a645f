"""Agent runner for the OpenCode CLI."""

from __future__ import annotations

import json
import logging
import os
import signal
import subprocess
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Protocol, Sequence

from .config import DEFAULT_AGENT_COMMAND
from .store import STATE_DIR

LOGGER = logging.getLogger(__name__)

# Printed by the host when the loop plugin resolves to an uninstalled stub.
PLACEHOLDER_SENTINELS = (
    "ralph-wiggum plugin placeholder",
    "RALPH_PLUGIN_PLACEHOLDER",
)
KILL_GRACE_SECONDS = 5.0
POLL_INTERVAL_SECONDS = 0.2
FILTERED_CONFIG_FILE = "ralph-no-plugins.json"
PLUGIN_NAME = "ralph"


@dataclass(frozen=True)
class AgentResult:
    stdout: str
    stderr: str
    returncode: int

    def sentinel(self) -> str | None:
        for marker in PLACEHOLDER_SENTINELS:
            if marker in self.stdout or marker in self.stderr:
                return marker
        return None


class Agent(Protocol):
    def run(self, prompt: str, *, model: str | None = None) -> AgentResult: ...

    def terminate(self) -> None: ...


def _signal_group(proc: subprocess.Popen[str], sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except PermissionError:
        if proc.poll() is None:
            proc.send_signal(sig)


class OpenCodeAgent:
    """Spawn ``opencode run`` once per call and capture both streams.

    The child leads its own process group, and ``terminate`` signals the whole
    group so tools the agent spawned cannot keep the pipes open. ``terminate``
    may be called from a signal handler while ``run`` waits, so it only sends
    SIGTERM; ``run`` sends SIGKILL once ``kill_grace`` seconds have passed.
    """

    def __init__(
        self,
        cwd: Path,
        *,
        command: Sequence[str] = DEFAULT_AGENT_COMMAND,
        env: Mapping[str, str] | None = None,
        kill_grace: float = KILL_GRACE_SECONDS,
    ) -> None:
        self.cwd = cwd
        self.command = tuple(command)
        self.env = dict(env) if env is not None else None
        self.kill_grace = kill_grace
        self._proc: subprocess.Popen[str] | None = None
        self._kill_at: float | None = None

    def build_argv(self, prompt: str, model: str | None = None) -> list[str]:
        argv = list(self.command)
        if model:
            argv.extend(["-m", model])
        argv.append(prompt)
        return argv

    def run(self, prompt: str, *, model: str | None = None) -> AgentResult:
        argv = self.build_argv(prompt, model)
        LOGGER.debug("agent_spawn argv0=%s cwd=%s", argv[0], self.cwd)
        proc = subprocess.Popen(
            argv,
            cwd=self.cwd,
            env=self.env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            text=True,
            start_new_session=True,
        )
        self._kill_at = None
        self._proc = proc
        try:
            while True:
                try:
                    stdout, stderr = proc.communicate(timeout=POLL_INTERVAL_SECONDS)
                    break
                except subprocess.TimeoutExpired:
                    if self._kill_at is not None and time.monotonic() >= self._kill_at:
                        LOGGER.warning("agent ignored SIGTERM; killing process group %d", proc.pid)
                        _signal_group(proc, signal.SIGKILL)
                        self._kill_at = None
        except BaseException:
            _signal_group(proc, signal.SIGKILL)
            proc.wait()
            raise
        finally:
            self._proc = None
        return AgentResult(stdout=stdout or "", stderr=stderr or "", returncode=proc.returncode)

    def terminate(self) -> None:
        proc = self._proc
        if proc is None:
            return
        # The leader may already be gone while its children still hold the pipes.
        self._kill_at = time.monotonic() + self.kill_grace
        _signal_group(proc, signal.SIGTERM)


def user_config_path(env: Mapping[str, str] | None = None) -> Path:
    env = env if env is not None else os.environ
    base = env.get("XDG_CONFIG_HOME", "").strip()
    root = Path(base).expanduser() if base else Path.home() / ".config"
    return root / "opencode" / "opencode.json"


def _without_loop_plugin(plugins: object) -> list:
    if not isinstance(plugins, list):
        return []
    return [p for p in plugins if not (isinstance(p, str) and PLUGIN_NAME in p.lower())]


def filtered_plugin_env(
    repo_root: Path,
    *,
    base_env: Mapping[str, str] | None = None,
    source: Path | None = None,
) -> dict[str, str]:
    """Return an environment pointing OpenCode at a config without the loop plugin.

    The user's config is copied to ``.opencode/ralph-no-plugins.json`` with
    every plugin entry naming ``ralph`` removed, and ``OPENCODE_CONFIG`` is
    set to it.
    """
    env = dict(base_env if base_env is not None else os.environ)
    source = source or user_config_path(env)
    data: dict = {}
    if source.exists():
        try:
            loaded = json.loads(source.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            LOGGER.warning("ignoring unreadable opencode config %s: %s", source, exc)
        else:
            if isinstance(loaded, dict):
                data = loaded
    data["plugin"] = _without_loop_plugin(data.get("plugin"))

    target = repo_root / STATE_DIR / FILTERED_CONFIG_FILE
    target.parent.mkdir(parents=True, exist_ok=True)
    tmp = target.with_suffix(".tmp")
    tmp.write_text(json.dumps(data, indent=2) + "\n", encoding="utf-8")
    os.replace(tmp, target)
    env["OPENCODE_CONFIG"] = str(target)
    return env
