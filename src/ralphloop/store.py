"""JSON-backed loop state stored in .opencode/ralph-loop.state.json."""

from __future__ import annotations

import json
import os
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .errors import AlreadyActive, StatePersistenceError
from .util import utc_now_iso

STATE_DIR = ".opencode"
STATE_FILE = "ralph-loop.state.json"
DEFAULT_COMPLETION_PROMISE = "COMPLETE"


@dataclass(frozen=True)
class LoopState:
    prompt: str
    active: bool = True
    iteration: int = 1
    max_iterations: int = 0
    completion_promise: str = DEFAULT_COMPLETION_PROMISE
    started_at: str = ""
    model: str | None = None
    session_id: str | None = None
    last_output: str | None = None

    @classmethod
    def new(
        cls,
        prompt: str,
        *,
        max_iterations: int = 0,
        completion_promise: str = DEFAULT_COMPLETION_PROMISE,
        model: str | None = None,
        session_id: str | None = None,
    ) -> LoopState:
        return cls(
            prompt=prompt,
            max_iterations=max_iterations,
            completion_promise=completion_promise or DEFAULT_COMPLETION_PROMISE,
            started_at=utc_now_iso(),
            model=model or None,
            session_id=session_id or None,
        )

    @property
    def max_reached(self) -> bool:
        return self.max_iterations > 0 and self.iteration > self.max_iterations

    @property
    def iteration_label(self) -> str:
        if self.max_iterations > 0:
            return f"{self.iteration} / {self.max_iterations}"
        return f"{self.iteration} (unlimited)"

    def to_dict(self) -> dict[str, Any]:
        d: dict[str, Any] = {
            "active": self.active,
            "iteration": self.iteration,
            "maxIterations": self.max_iterations,
            "completionPromise": self.completion_promise,
            "prompt": self.prompt,
            "startedAt": self.started_at,
        }
        if self.model:
            d["model"] = self.model
        if self.session_id:
            d["sessionId"] = self.session_id
        if self.last_output is not None:
            d["lastOutput"] = self.last_output
        return d

    @classmethod
    def from_dict(cls, d: dict) -> LoopState:
        """Build a state from its on-disk form; raises ValueError if malformed."""
        if not isinstance(d, dict):
            raise ValueError("state record must be a JSON object")
        prompt = d.get("prompt")
        iteration = d.get("iteration")
        max_iterations = d.get("maxIterations", 0)
        if not isinstance(prompt, str):
            raise ValueError("prompt must be a string")
        if isinstance(iteration, bool) or not isinstance(iteration, int) or iteration < 1:
            raise ValueError("iteration must be an integer >= 1")
        if (
            isinstance(max_iterations, bool)
            or not isinstance(max_iterations, int)
            or max_iterations < 0
        ):
            raise ValueError("maxIterations must be an integer >= 0")

        def _opt(key: str) -> str | None:
            value = d.get(key)
            return value if isinstance(value, str) and value else None

        active = d.get("active", False)
        if not isinstance(active, bool):
            raise ValueError("active must be a boolean")

        last_output = d.get("lastOutput")
        return cls(
            prompt=prompt,
            active=active,
            iteration=iteration,
            max_iterations=max_iterations,
            completion_promise=str(d.get("completionPromise") or DEFAULT_COMPLETION_PROMISE),
            started_at=str(d.get("startedAt") or ""),
            model=_opt("model"),
            session_id=_opt("sessionId"),
            last_output=last_output if isinstance(last_output, str) else None,
        )


class LoopStateStore:
    """The single loop record for one working directory.

    At most one record exists at a time. Absence of the record is the same
    as an inactive loop.
    """

    def __init__(self, path: Path) -> None:
        self.path = path

    @classmethod
    def from_workdir(cls, root: Path | None = None) -> LoopStateStore:
        root = root or Path.cwd()
        return cls(root / STATE_DIR / STATE_FILE)

    # -- low-level helpers --------------------------------------------------

    def _tmp_path(self) -> Path:
        return self.path.with_name(f".{self.path.name}.{uuid.uuid4().hex[:8]}.tmp")

    def _write_tmp(self, state: LoopState) -> Path:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._tmp_path()
        try:
            with open(tmp, "w", encoding="utf-8") as f:
                json.dump(state.to_dict(), f, indent=2)
                f.write("\n")
        except BaseException:
            self._discard(tmp)
            raise
        return tmp

    def _discard(self, tmp: Path) -> None:
        try:
            tmp.unlink()
        except FileNotFoundError:
            pass

    # -- public API ---------------------------------------------------------

    def load(self) -> LoopState | None:
        try:
            raw = self.path.read_text(encoding="utf-8")
        except OSError:
            return None
        try:
            return LoopState.from_dict(json.loads(raw))
        except (ValueError, TypeError):
            return None

    def create(self, state: LoopState) -> LoopState:
        """Write a new record unless an active loop already owns the file.

        The record is linked into place, which fails if the file already
        exists, so two concurrent creators cannot both succeed.
        """
        try:
            tmp = self._write_tmp(state)
        except OSError as exc:
            raise StatePersistenceError(f"cannot write {self.path}: {exc}") from exc
        try:
            while True:
                try:
                    os.link(tmp, self.path)
                    return state
                except FileExistsError:
                    pass
                existing = self.load()
                if existing is not None and existing.active:
                    raise AlreadyActive(existing.iteration)
                # Stale or unreadable record: drop it and retry the exclusive link.
                self.clear()
        except OSError as exc:
            raise StatePersistenceError(f"cannot create {self.path}: {exc}") from exc
        finally:
            self._discard(tmp)

    def save(self, state: LoopState) -> None:
        try:
            tmp = self._write_tmp(state)
        except OSError as exc:
            raise StatePersistenceError(f"cannot write {self.path}: {exc}") from exc
        try:
            os.replace(tmp, self.path)
        except OSError as exc:
            self._discard(tmp)
            raise StatePersistenceError(f"cannot write {self.path}: {exc}") from exc

    def clear(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass

    def clear_if(self, iteration: int) -> bool:
        """Remove the record only if it still holds ``iteration``."""
        current = self.load()
        if current is None or current.iteration != iteration:
            return False
        self.clear()
        return True
