"""In-host loop driver.

The host (an agent runtime with an event stream) is reached only through the
narrow ``Host`` and ``HostSession`` protocols, so the loop logic runs and is
tested without any particular host.
"""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import Any, Awaitable, Callable, Protocol

from .completion import extract_text, matches, promise_tag
from .errors import AlreadyActive, StatePersistenceError
from .prompt import PromptTemplate, build_prompt, loop_banner
from .store import DEFAULT_COMPLETION_PROMISE, LoopState, LoopStateStore
from .util import truncate

LOGGER = logging.getLogger(__name__)

IDLE_EVENT = "idle"
MESSAGE_UPDATED_EVENT = "message-updated"

EventHandler = Callable[[dict], Awaitable[None]]
MessageHook = Callable[[list[dict]], list[dict]]


class Host(Protocol):
    def subscribe(self, kind: str, handler: EventHandler) -> None: ...

    def register_operation(self, name: str, handler: Callable[..., Any]) -> None: ...

    def transform_outgoing_message(self, hook: MessageHook) -> None: ...


class HostSession(Protocol):
    async def prompt(self, session_id: str, text: str) -> None: ...


def _event_session_id(event: dict) -> str | None:
    for key in ("sessionId", "sessionID", "session_id"):
        value = event.get(key)
        if isinstance(value, str) and value:
            return value
    return None


def _assistant_content(event: dict) -> Any:
    message = event.get("message")
    source = message if isinstance(message, dict) else event
    if source.get("role") != "assistant":
        return None
    return source.get("content")


class RalphPlugin:
    """Continue an active loop each time the host session goes idle."""

    def __init__(
        self,
        store: LoopStateStore,
        session: HostSession | None = None,
        *,
        template: PromptTemplate | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.store = store
        self.session = session
        self.template = template
        self.log = logger or LOGGER
        self.processing = False

    def install(self, host: Host) -> None:
        host.subscribe(IDLE_EVENT, self.on_idle)
        host.subscribe(MESSAGE_UPDATED_EVENT, self.on_message_updated)
        host.register_operation("ralph_start", self.start)
        host.register_operation("ralph_status", self.status)
        host.register_operation("ralph_cancel", self.cancel)
        host.transform_outgoing_message(self.transform_messages)

    def _active_state(self) -> LoopState | None:
        state = self.store.load()
        if state is None or not state.active:
            return None
        return state

    # -- events -------------------------------------------------------------

    async def on_idle(self, event: dict) -> None:
        if self.processing:
            return
        self.processing = True
        try:
            state = self._active_state()
            if state is None:
                return

            if state.last_output and matches(state.last_output, state.completion_promise):
                self.log.info(
                    "Ralph loop complete: %s detected after %d iteration(s)",
                    promise_tag(state.completion_promise),
                    state.iteration,
                )
                self.store.clear_if(state.iteration)
                return

            if state.max_reached:
                self.log.info("Ralph loop: max iterations (%d) reached", state.max_iterations)
                self.store.clear_if(state.iteration)
                return

            session_id = _event_session_id(event) or state.session_id
            if not session_id or self.session is None:
                self.log.warning("Ralph loop: no session available to continue loop")
                return

            state = replace(state, iteration=state.iteration + 1, session_id=session_id)
            self.store.save(state)
            self.log.info("Ralph loop: starting iteration %s", state.iteration_label)

            try:
                await self.session.prompt(session_id, build_prompt(state, self.template))
            except Exception:
                # State stays in place so the user can decide what to do.
                self.log.exception("Ralph loop: failed to submit iteration %d", state.iteration)
        except StatePersistenceError as exc:
            self.log.error("Ralph loop: %s", exc)
        finally:
            self.processing = False

    async def on_message_updated(self, event: dict) -> None:
        content = _assistant_content(event)
        if content is None:
            return
        state = self._active_state()
        if state is None:
            return
        text = extract_text(content)
        if not text or not matches(text, state.completion_promise):
            return
        try:
            self.store.save(replace(state, last_output=text))
        except StatePersistenceError as exc:
            self.log.error("Ralph loop: %s", exc)

    # -- operations ---------------------------------------------------------

    def start_loop(
        self,
        prompt: str,
        max_iterations: int = 0,
        completion_promise: str | None = None,
        session_id: str | None = None,
    ) -> LoopState:
        state = LoopState.new(
            prompt,
            max_iterations=max(0, int(max_iterations or 0)),
            completion_promise=completion_promise or DEFAULT_COMPLETION_PROMISE,
            session_id=session_id,
        )
        return self.store.create(state)

    def start(
        self,
        prompt: str,
        max_iterations: int = 0,
        completion_promise: str | None = None,
        session_id: str | None = None,
    ) -> str:
        try:
            state = self.start_loop(prompt, max_iterations, completion_promise, session_id)
        except AlreadyActive as exc:
            return (
                f"Ralph loop already active at iteration {exc.iteration}. "
                "Use ralph_cancel to stop it first."
            )
        max_label = state.max_iterations if state.max_iterations > 0 else "unlimited"
        return (
            "Ralph loop started!\n"
            f"Iteration: {state.iteration}\n"
            f"Max iterations: {max_label}\n"
            f"Completion promise: {state.completion_promise}\n\n"
            "The loop will continue after each session idle until you output:\n"
            f"{promise_tag(state.completion_promise)}\n\n"
            f"Now working on: {truncate(prompt, 100)}"
        )

    def status(self) -> str:
        state = self._active_state()
        if state is None:
            return "No active Ralph loop"
        return (
            "Ralph loop active:\n"
            f"- Iteration: {state.iteration_label}\n"
            f"- Completion promise: {state.completion_promise}\n"
            f"- Started: {state.started_at}\n"
            f"- Prompt: {truncate(state.prompt, 100)}\n\n"
            f"To complete, output: {promise_tag(state.completion_promise)}\n"
            "To cancel: use ralph_cancel tool"
        )

    def cancel(self) -> str:
        state = self._active_state()
        if state is None:
            return "No active Ralph loop to cancel"
        self.store.clear()
        return f"Cancelled Ralph loop at iteration {state.iteration}"

    # -- message transform --------------------------------------------------

    def transform_messages(self, messages: list[dict]) -> list[dict]:
        state = self._active_state()
        if state is None or not isinstance(messages, list):
            return messages
        banner = loop_banner(state)
        out: list[dict] = []
        for msg in messages:
            if isinstance(msg, dict) and msg.get("role") == "user" and isinstance(msg.get("content"), str):
                msg = {**msg, "content": f"{banner}\n\n{msg['content']}"}
            out.append(msg)
        return out
