from __future__ import annotations

from typing import TYPE_CHECKING

__all__ = [
    "__version__",
    "LoopConfig",
    "LoopRunner",
    "LoopState",
    "LoopStateStore",
    "RalphPlugin",
    "matches",
    "run_loop",
]

__version__ = "1.0.0"

if TYPE_CHECKING:
    from .completion import matches
    from .config import LoopConfig
    from .plugin import RalphPlugin
    from .runner import LoopRunner, run_loop
    from .store import LoopState, LoopStateStore


def __getattr__(name: str):
    if name == "matches":
        from .completion import matches

        return matches
    if name == "LoopConfig":
        from .config import LoopConfig

        return LoopConfig
    if name == "RalphPlugin":
        from .plugin import RalphPlugin

        return RalphPlugin
    if name in {"LoopRunner", "run_loop"}:
        from .runner import LoopRunner, run_loop

        return {"LoopRunner": LoopRunner, "run_loop": run_loop}[name]
    if name in {"LoopState", "LoopStateStore"}:
        from .store import LoopState, LoopStateStore

        return {"LoopState": LoopState, "LoopStateStore": LoopStateStore}[name]
    raise AttributeError(f"module 'ralphloop' has no attribute {name!r}")
