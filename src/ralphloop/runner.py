"""External loop driver: build prompt, spawn agent, inspect output, repeat."""

from __future__ import annotations

import logging
import signal
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, replace
from enum import Enum
from typing import Callable, Iterator

from rich.console import Console
from rich.panel import Panel
from rich.rule import Rule
from rich.text import Text

from .backend import Agent, AgentResult, OpenCodeAgent, filtered_plugin_env
from .completion import matches, promise_tag
from .config import LoopConfig
from .errors import AgentFailure, StatePersistenceError, TransientIterationError
from .git import auto_commit
from .prompt import PromptTemplate, build_prompt
from .store import LoopState, LoopStateStore
from .util import format_duration, truncate

LOGGER = logging.getLogger(__name__)

Committer = Callable[[int], bool]
Sleeper = Callable[[float], None]


class LoopOutcome(str, Enum):
    COMPLETED = "completed"
    MAX_ITERATIONS_REACHED = "max_iterations_reached"
    AGENT_FAILED = "agent_failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class LoopResult:
    outcome: LoopOutcome
    iterations: int
    exit_code: int
    error: str = ""


class StopRequested(Exception):
    pass


class LoopRunner:
    """Drive the agent until it emits the completion promise.

    The runner owns the state record from ``run()`` until it returns; every
    terminal outcome clears it.
    """

    def __init__(
        self,
        cfg: LoopConfig,
        *,
        store: LoopStateStore | None = None,
        agent: Agent | None = None,
        template: PromptTemplate | None = None,
        console: Console | None = None,
        err_console: Console | None = None,
        committer: Committer | None = None,
        sleep: Sleeper | None = None,
        handle_signals: bool = True,
    ) -> None:
        self.cfg = cfg
        self.store = store or LoopStateStore(cfg.state_path)
        self.agent = agent or self._default_agent()
        self.template = template
        self.console = console or Console()
        self.err_console = err_console or Console(stderr=True)
        self.committer = committer or (lambda n: auto_commit(cfg.repo_root, n))
        self._wake = threading.Event()
        self._sleep = sleep or self._wake.wait
        self.handle_signals = handle_signals
        self._stop_requested = False
        self._started = 0.0
        self.state: LoopState | None = None

    def _default_agent(self) -> Agent:
        env = None if self.cfg.plugins else filtered_plugin_env(self.cfg.repo_root)
        return OpenCodeAgent(self.cfg.repo_root, command=self.cfg.agent_command, env=env)

    # -- cancellation -------------------------------------------------------

    def request_stop(self) -> None:
        """Ask the loop to stop after killing the in-flight agent, if any."""
        self._stop_requested = True
        self._wake.set()
        self.agent.terminate()

    def _on_sigint(self, signum: int, frame: object) -> None:
        if self._stop_requested:
            self.err_console.print(Text("\nForce stopping...", style="red"))
            raise SystemExit(1)
        self.err_console.print(Text("\nGracefully stopping Ralph loop...", style="yellow"))
        self.request_stop()

    @contextmanager
    def _signals(self) -> Iterator[None]:
        if not self.handle_signals or threading.current_thread() is not threading.main_thread():
            yield
            return
        previous = signal.signal(signal.SIGINT, self._on_sigint)
        try:
            yield
        finally:
            signal.signal(signal.SIGINT, previous)

    def _check_stop(self) -> None:
        if self._stop_requested:
            raise StopRequested()

    # -- main loop ----------------------------------------------------------

    def start(self) -> LoopState:
        state = LoopState.new(
            self.cfg.prompt,
            max_iterations=self.cfg.max_iterations,
            completion_promise=self.cfg.completion_promise,
            model=self.cfg.model,
        )
        return self.store.create(state)

    def run(self) -> LoopResult:
        self.state = self.start()
        self._started = time.monotonic()
        self._print_header(self.state)
        with self._signals():
            try:
                return self._loop(self.state)
            except StopRequested:
                return self._finish(LoopOutcome.CANCELLED, self.state, 0)
            except Exception as exc:
                LOGGER.exception("ralph loop crashed")
                self.err_console.print(Text(f"Fatal error: {exc}", style="red"))
                self.store.clear()
                return LoopResult(
                    LoopOutcome.AGENT_FAILED, self.state.iteration, 1, error=str(exc)
                )

    def _loop(self, state: LoopState) -> LoopResult:
        while True:
            self._check_stop()
            if state.max_reached:
                return self._finish(LoopOutcome.MAX_ITERATIONS_REACHED, state, 0)

            self.console.print()
            self.console.print(Text(f"Iteration {state.iteration_label}", style="bold cyan"))
            self.console.print(Rule(style="dim"))

            try:
                result = self._iterate(state)
            except StopRequested:
                raise
            except Exception as exc:
                err = TransientIterationError(str(exc))
                LOGGER.warning("iteration %d failed: %s", state.iteration, err)
                self.err_console.print(
                    Text(f"Error in iteration {state.iteration}: {err}", style="red")
                )
                self.console.print(Text("Continuing to next iteration...", style="dim"))
                state = self._advance(state)
                self._sleep(self.cfg.error_delay)
                continue

            if result is not None:
                return result

            if self.cfg.commit:
                try:
                    if self.committer(state.iteration):
                        self.console.print(Text("Auto-committed changes", style="dim"))
                except Exception as exc:
                    LOGGER.warning("auto-commit failed: %s", exc)

            state = self._advance(state)
            self._sleep(self.cfg.iteration_delay)

    def _iterate(self, state: LoopState) -> LoopResult | None:
        """Run one agent invocation; return a result when the loop must end."""
        prompt = build_prompt(state, self.template)
        output = self.agent.run(prompt, model=state.model)
        self._check_stop()
        self._mirror(output)

        try:
            self._check_failure(output)
        except AgentFailure as exc:
            self.err_console.print(Text(str(exc), style="red"))
            return self._finish(LoopOutcome.AGENT_FAILED, state, exc.exit_code, error=exc.reason)

        if matches(output.stdout, state.completion_promise):
            return self._finish(LoopOutcome.COMPLETED, state, 0)
        return None

    def _check_failure(self, output: AgentResult) -> None:
        marker = output.sentinel()
        if marker is not None:
            raise AgentFailure(
                1, f"placeholder plugin detected ({marker!r}); check the agent plugin setup"
            )
        if output.returncode != 0:
            code = output.returncode if output.returncode > 0 else 1
            raise AgentFailure(code, f"agent exited with code {output.returncode}")

    def _advance(self, state: LoopState) -> LoopState:
        state = replace(state, iteration=state.iteration + 1)
        self.state = state
        try:
            self.store.save(state)
        except StatePersistenceError as exc:
            LOGGER.warning("could not persist iteration %d: %s", state.iteration, exc)
        return state

    def _mirror(self, output: AgentResult) -> None:
        if output.stderr:
            self.err_console.print(output.stderr, end="", markup=False, highlight=False)
        if output.stdout:
            self.console.print(output.stdout, end="", markup=False, highlight=False)
            if not output.stdout.endswith("\n"):
                self.console.print()

    # -- output -------------------------------------------------------------

    def _print_header(self, state: LoopState) -> None:
        max_label = str(state.max_iterations) if state.max_iterations > 0 else "unlimited"
        rows = [
            ("Task", truncate(state.prompt)),
            ("Completion promise", state.completion_promise),
            ("Max iterations", max_label),
        ]
        if state.model:
            rows.append(("Model", state.model))
        body = Text()
        for idx, (label, value) in enumerate(rows):
            if idx:
                body.append("\n")
            body.append(f"{label}: ", style="bold")
            body.append(value)
        self.console.print(Panel(
            body,
            title="Ralph Wiggum Loop",
            subtitle="Ctrl+C to stop",
            style="cyan",
            expand=False,
        ))

    def _finish(
        self,
        outcome: LoopOutcome,
        state: LoopState,
        exit_code: int,
        *,
        error: str = "",
    ) -> LoopResult:
        try:
            self.store.clear()
        except OSError as exc:
            LOGGER.error("could not clear loop state %s: %s", self.store.path, exc)
        elapsed = format_duration(int(time.monotonic() - self._started))
        if outcome is LoopOutcome.COMPLETED:
            self.console.print(Panel(
                Text(
                    f"Completion promise detected: {promise_tag(state.completion_promise)}\n"
                    f"Task completed in {state.iteration} iteration(s) ({elapsed})"
                ),
                style="green",
                expand=False,
            ))
        elif outcome is LoopOutcome.MAX_ITERATIONS_REACHED:
            self.console.print(Panel(
                f"Max iterations ({state.max_iterations}) reached. Loop stopped.",
                style="yellow",
                expand=False,
            ))
        elif outcome is LoopOutcome.CANCELLED:
            self.console.print(
                Text(f"Loop cancelled at iteration {state.iteration}.", style="yellow")
            )
        else:
            self.err_console.print(Text(
                f"Loop stopped after iteration {state.iteration}: agent failure.", style="red"
            ))
        iterations = state.iteration
        if outcome is LoopOutcome.MAX_ITERATIONS_REACHED:
            iterations -= 1
        return LoopResult(outcome, iterations, exit_code, error=error)


def run_loop(cfg: LoopConfig, **kwargs) -> LoopResult:
    return LoopRunner(cfg, **kwargs).run()
