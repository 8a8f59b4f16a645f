"""Best-effort auto-commit between iterations."""

from __future__ import annotations

import logging
from pathlib import Path

from .util import CommandError, run_capture

LOGGER = logging.getLogger(__name__)


def commit_message(iteration: int) -> str:
    return f"Ralph iteration {iteration}: work in progress"


def auto_commit(repo_root: Path, iteration: int) -> bool:
    """Commit all working-tree changes; return True if a commit was made.

    Never raises: git being absent, the directory not being a repository, or
    a failing hook are all logged and reported as "no commit".
    """
    try:
        status = run_capture(["git", "status", "--porcelain"], cwd=repo_root)
        if not status.strip():
            return False
        run_capture(["git", "add", "-A"], cwd=repo_root)
        run_capture(["git", "commit", "-m", commit_message(iteration)], cwd=repo_root)
    except CommandError as exc:
        LOGGER.warning("auto-commit skipped: %s %s", exc, exc.stderr.strip())
        return False
    except OSError as exc:
        LOGGER.warning("auto-commit skipped: %s", exc)
        return False
    return True
