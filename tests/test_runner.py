from __future__ import annotations

import io
import signal
from dataclasses import replace
from pathlib import Path

import pytest
from rich.console import Console

from ralphloop.backend import AgentResult
from ralphloop.config import LoopConfig
from ralphloop.errors import AlreadyActive
from ralphloop.runner import LoopOutcome, LoopRunner, run_loop
from ralphloop.store import LoopState, LoopStateStore


class FakeAgent:
    """Replays scripted results, one per call; records prompts and state snapshots."""

    def __init__(self, store: LoopStateStore, results: list[AgentResult | Exception]) -> None:
        self.store = store
        self.results = list(results)
        self.prompts: list[str] = []
        self.models: list[str | None] = []
        self.seen_iterations: list[int] = []
        self.terminated = 0
        self.on_run = None

    def run(self, prompt: str, *, model: str | None = None) -> AgentResult:
        self.prompts.append(prompt)
        self.models.append(model)
        state = self.store.load()
        self.seen_iterations.append(state.iteration if state else -1)
        if self.on_run:
            self.on_run()
        item = self.results.pop(0) if self.results else AgentResult("working...\n", "", 0)
        if isinstance(item, Exception):
            raise item
        return item

    def terminate(self) -> None:
        self.terminated += 1


def _ok(text: str = "still working\n") -> AgentResult:
    return AgentResult(text, "", 0)


def _cfg(tmp_path: Path, **kwargs) -> LoopConfig:
    return LoopConfig(repo_root=tmp_path, prompt="Build a REST API for todos", **kwargs)


def _runner(
    tmp_path: Path,
    results: list[AgentResult | Exception],
    *,
    console: Console,
    err_console: Console,
    commits: list[int] | None = None,
    sleeps: list[float] | None = None,
    **cfg_kwargs,
) -> tuple[LoopRunner, FakeAgent]:
    cfg = _cfg(tmp_path, **cfg_kwargs)
    store = LoopStateStore(cfg.state_path)
    agent = FakeAgent(store, results)
    commit_log = commits if commits is not None else []
    sleep_log = sleeps if sleeps is not None else []

    def committer(n: int) -> bool:
        commit_log.append(n)
        return True

    runner = LoopRunner(
        cfg,
        store=store,
        agent=agent,
        console=console,
        err_console=err_console,
        committer=committer,
        sleep=sleep_log.append,
        handle_signals=False,
    )
    return runner, agent


def test_max_iterations_runs_exactly_that_many(
    tmp_path: Path, console: Console, err_console: Console, stdout: io.StringIO
) -> None:
    sleeps: list[float] = []
    runner, agent = _runner(
        tmp_path, [], console=console, err_console=err_console, sleeps=sleeps, max_iterations=3
    )

    result = runner.run()

    assert result.outcome is LoopOutcome.MAX_ITERATIONS_REACHED
    assert result.exit_code == 0
    assert result.iterations == 3
    assert agent.seen_iterations == [1, 2, 3]
    assert len(agent.prompts) == 3
    assert "Iteration 3" in agent.prompts[-1]
    assert sleeps == [1.0, 1.0, 1.0]
    assert not runner.store.path.exists()
    assert "Max iterations (3) reached" in stdout.getvalue()


def test_completion_on_second_iteration_stops(
    tmp_path: Path, console: Console, err_console: Console, stdout: io.StringIO
) -> None:
    commits: list[int] = []
    runner, agent = _runner(
        tmp_path,
        [_ok(), _ok("All done.\n<promise>COMPLETE</promise>\n")],
        console=console,
        err_console=err_console,
        commits=commits,
    )

    result = runner.run()

    assert result.outcome is LoopOutcome.COMPLETED
    assert result.exit_code == 0
    assert result.iterations == 2
    assert agent.seen_iterations == [1, 2]
    assert commits == [1]
    assert not runner.store.path.exists()
    out = stdout.getvalue()
    assert "All done." in out
    assert "Task completed in 2 iteration(s)" in out


def test_completion_is_only_checked_on_stdout(
    tmp_path: Path, console: Console, err_console: Console
) -> None:
    runner, agent = _runner(
        tmp_path,
        [AgentResult("", "<promise>COMPLETE</promise>", 0)],
        console=console,
        err_console=err_console,
        max_iterations=2,
    )

    result = runner.run()

    assert result.outcome is LoopOutcome.MAX_ITERATIONS_REACHED
    assert agent.seen_iterations == [1, 2]


def test_nonzero_exit_stops_immediately(
    tmp_path: Path, console: Console, err_console: Console, stderr: io.StringIO
) -> None:
    commits: list[int] = []
    sleeps: list[float] = []
    runner, agent = _runner(
        tmp_path,
        [AgentResult("partial", "boom\n", 1)],
        console=console,
        err_console=err_console,
        commits=commits,
        sleeps=sleeps,
    )
    saved: list[LoopState] = []
    original_save = runner.store.save
    runner.store.save = lambda s: (saved.append(s), original_save(s))  # type: ignore[method-assign]

    result = runner.run()

    assert result.outcome is LoopOutcome.AGENT_FAILED
    assert result.exit_code == 1
    assert result.iterations == 1
    assert agent.seen_iterations == [1]
    assert commits == []
    assert saved == []
    assert sleeps == []
    assert not runner.store.path.exists()
    assert "boom" in stderr.getvalue()


def test_exit_code_is_propagated(tmp_path: Path, console: Console, err_console: Console) -> None:
    runner, _ = _runner(
        tmp_path, [AgentResult("", "", 42)], console=console, err_console=err_console
    )
    assert runner.run().exit_code == 42


def test_signal_killed_agent_reports_failure(
    tmp_path: Path, console: Console, err_console: Console
) -> None:
    runner, _ = _runner(
        tmp_path, [AgentResult("", "", -9)], console=console, err_console=err_console
    )
    result = runner.run()
    assert result.outcome is LoopOutcome.AGENT_FAILED
    assert result.exit_code == 1


def test_placeholder_sentinel_is_fatal_even_with_zero_exit(
    tmp_path: Path, console: Console, err_console: Console, stderr: io.StringIO
) -> None:
    runner, agent = _runner(
        tmp_path,
        [AgentResult("<promise>COMPLETE</promise>", "RALPH_PLUGIN_PLACEHOLDER", 0)],
        console=console,
        err_console=err_console,
    )

    result = runner.run()

    assert result.outcome is LoopOutcome.AGENT_FAILED
    assert result.exit_code == 1
    assert "placeholder plugin" in result.error
    assert agent.seen_iterations == [1]
    assert not runner.store.path.exists()


def test_transient_error_is_absorbed(
    tmp_path: Path, console: Console, err_console: Console, stderr: io.StringIO
) -> None:
    sleeps: list[float] = []
    commits: list[int] = []
    runner, agent = _runner(
        tmp_path,
        [FileNotFoundError("opencode"), _ok("<promise>COMPLETE</promise>")],
        console=console,
        err_console=err_console,
        sleeps=sleeps,
        commits=commits,
    )

    result = runner.run()

    assert result.outcome is LoopOutcome.COMPLETED
    assert agent.seen_iterations == [1, 2]
    assert sleeps == [2.0]
    assert commits == []
    assert "Error in iteration 1" in stderr.getvalue()


def test_commit_failure_is_not_fatal(
    tmp_path: Path, console: Console, err_console: Console
) -> None:
    cfg = _cfg(tmp_path, max_iterations=2)
    store = LoopStateStore(cfg.state_path)
    agent = FakeAgent(store, [])

    def committer(n: int) -> bool:
        raise RuntimeError("hook rejected commit")

    runner = LoopRunner(
        cfg,
        store=store,
        agent=agent,
        console=console,
        err_console=err_console,
        committer=committer,
        sleep=lambda s: None,
        handle_signals=False,
    )

    result = runner.run()

    assert result.outcome is LoopOutcome.MAX_ITERATIONS_REACHED
    assert agent.seen_iterations == [1, 2]


def test_no_commit_skips_committer(
    tmp_path: Path, console: Console, err_console: Console
) -> None:
    commits: list[int] = []
    runner, _ = _runner(
        tmp_path, [], console=console, err_console=err_console, commits=commits,
        max_iterations=2, commit=False,
    )
    runner.run()
    assert commits == []


def test_model_is_forwarded(tmp_path: Path, console: Console, err_console: Console) -> None:
    runner, agent = _runner(
        tmp_path, [], console=console, err_console=err_console,
        max_iterations=1, model="openai/gpt-5.1",
    )
    runner.run()
    assert agent.models == ["openai/gpt-5.1"]


def test_already_active_is_surfaced_and_state_untouched(
    tmp_path: Path, console: Console, err_console: Console
) -> None:
    cfg = _cfg(tmp_path)
    store = LoopStateStore(cfg.state_path)
    existing = store.create(replace(LoopState.new("someone else's loop"), iteration=5))
    runner, agent = _runner(tmp_path, [], console=console, err_console=err_console)

    with pytest.raises(AlreadyActive):
        runner.run()

    assert agent.prompts == []
    assert store.load() == existing


def test_request_stop_cancels_and_clears_state(
    tmp_path: Path, console: Console, err_console: Console, stdout: io.StringIO
) -> None:
    runner, agent = _runner(tmp_path, [], console=console, err_console=err_console)
    agent.on_run = runner.request_stop

    result = runner.run()

    assert result.outcome is LoopOutcome.CANCELLED
    assert result.exit_code == 0
    assert agent.terminated == 1
    assert agent.seen_iterations == [1]
    assert not runner.store.path.exists()
    assert "Loop cancelled at iteration 1" in stdout.getvalue()


def test_first_sigint_stops_gracefully_and_restores_handler(
    tmp_path: Path, console: Console, err_console: Console, stderr: io.StringIO
) -> None:
    runner, agent = _runner(tmp_path, [], console=console, err_console=err_console)
    runner.handle_signals = True
    previous = signal.getsignal(signal.SIGINT)
    seen: dict = {}

    def interrupt() -> None:
        seen["handler"] = signal.getsignal(signal.SIGINT)
        runner._on_sigint(signal.SIGINT, None)

    agent.on_run = interrupt

    result = runner.run()

    assert seen["handler"] == runner._on_sigint
    assert signal.getsignal(signal.SIGINT) == previous
    assert result.outcome is LoopOutcome.CANCELLED
    assert result.exit_code == 0
    assert agent.terminated == 1
    assert agent.seen_iterations == [1]
    assert not runner.store.path.exists()
    assert "Gracefully stopping" in stderr.getvalue()


def test_second_sigint_forces_exit(
    tmp_path: Path, console: Console, err_console: Console, stderr: io.StringIO
) -> None:
    runner, agent = _runner(tmp_path, [], console=console, err_console=err_console)
    runner.handle_signals = True
    previous = signal.getsignal(signal.SIGINT)

    def interrupt_twice() -> None:
        runner._on_sigint(signal.SIGINT, None)
        runner._on_sigint(signal.SIGINT, None)

    agent.on_run = interrupt_twice

    with pytest.raises(SystemExit) as raised:
        runner.run()

    assert raised.value.code == 1
    assert agent.terminated == 1
    assert signal.getsignal(signal.SIGINT) == previous
    assert "Force stopping" in stderr.getvalue()


class _UndeletableStore(LoopStateStore):
    def clear(self) -> None:
        raise PermissionError("read-only state dir")


def test_failed_clear_does_not_resume_finished_loop(
    tmp_path: Path, console: Console, err_console: Console
) -> None:
    runner, agent = _runner(
        tmp_path, [_ok("<promise>COMPLETE</promise>")], console=console, err_console=err_console
    )
    runner.store = _UndeletableStore(runner.store.path)

    result = runner.run()

    assert result.outcome is LoopOutcome.COMPLETED
    assert result.exit_code == 0
    assert len(agent.prompts) == 1


def test_run_loop_helper(tmp_path: Path, console: Console, err_console: Console) -> None:
    cfg = _cfg(tmp_path, max_iterations=1, commit=False)
    store = LoopStateStore(cfg.state_path)
    result = run_loop(
        cfg,
        store=store,
        agent=FakeAgent(store, [_ok("<promise>complete</promise>")]),
        console=console,
        err_console=err_console,
        sleep=lambda s: None,
        handle_signals=False,
    )
    assert result.outcome is LoopOutcome.COMPLETED
