"""Error kinds raised by the loop drivers and the state store."""

from __future__ import annotations


class RalphError(Exception):
    pass


class AlreadyActive(RalphError):
    """Another loop already owns the state file for this directory."""

    def __init__(self, iteration: int) -> None:
        super().__init__(
            f"Ralph loop already active at iteration {iteration}. "
            "Cancel it before starting a new one."
        )
        self.iteration = iteration


class InvalidArgument(RalphError, ValueError):
    pass


class ConfigError(InvalidArgument):
    pass


class AgentFailure(RalphError):
    def __init__(self, exit_code: int, reason: str) -> None:
        super().__init__(f"agent failed (exit {exit_code}): {reason}")
        self.exit_code = exit_code
        self.reason = reason


class TransientIterationError(RalphError):
    pass


class StatePersistenceError(RalphError):
    pass
