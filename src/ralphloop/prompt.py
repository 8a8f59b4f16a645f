"""Prompt rendering: iteration prompt, loop banner, markdown templates."""

from __future__ import annotations

from dataclasses import dataclass, field
import re
from pathlib import Path

import yaml

from .completion import promise_tag
from .errors import ConfigError
from .store import LoopState

_PLACEHOLDER_RE = re.compile(
    r"\{\{(PROMPT|ITERATION_LABEL|ITERATION|MAX_ITERATIONS|COMPLETION_PROMISE|PROMISE_TAG)\}\}"
)

DEFAULT_TEMPLATE = """\
# Ralph Wiggum Loop - Iteration {{ITERATION}}

You are in an iterative development loop. Work on the task below until you can genuinely complete it.

## Your Task

{{PROMPT}}

## Instructions

1. Read the current state of files to understand what's been done
2. Make progress on the task
3. Run tests/verification if applicable
4. When the task is GENUINELY COMPLETE, output:
   {{PROMISE_TAG}}

## Critical Rules

- ONLY output {{PROMISE_TAG}} when the task is truly done
- Do NOT lie or output false promises to exit the loop
- If stuck, try a different approach
- Check your work before claiming completion
- The loop will continue until you succeed

## Current Iteration: {{ITERATION_LABEL}}

Now, work on the task.
"""


@dataclass(frozen=True)
class PromptTemplate:
    body: str
    meta: dict = field(default_factory=dict)
    path: Path | None = None


def _split_frontmatter(text: str) -> tuple[dict, str]:
    """Split optional YAML frontmatter from markdown body."""
    if not text.startswith("---"):
        return {}, text
    parts = text.split("---", 2)
    if len(parts) < 3:
        return {}, text
    try:
        meta = yaml.safe_load(parts[1]) or {}
    except yaml.YAMLError:
        return {}, text
    if not isinstance(meta, dict):
        return {}, text
    return meta, parts[2].lstrip("\n")


def load_template(path: str | Path) -> PromptTemplate:
    p = Path(path)
    try:
        text = p.read_text(encoding="utf-8")
    except OSError as exc:
        raise ConfigError(f"cannot read prompt file {p}: {exc}") from exc
    meta, body = _split_frontmatter(text)
    return PromptTemplate(body=body, meta=meta, path=p)


def _max_label(state: LoopState) -> str:
    return str(state.max_iterations) if state.max_iterations > 0 else "unlimited"


def build_prompt(state: LoopState, template: PromptTemplate | str | None = None) -> str:
    """Render the instruction payload for the current iteration.

    Custom templates that drop the task text, the promise tag or the
    iteration number get a trailer so the agent always sees all of them.
    """
    if isinstance(template, PromptTemplate):
        body = template.body
    else:
        body = template or DEFAULT_TEMPLATE

    tag = promise_tag(state.completion_promise)
    values = {
        "PROMPT": state.prompt,
        "ITERATION_LABEL": state.iteration_label,
        "ITERATION": str(state.iteration),
        "MAX_ITERATIONS": _max_label(state),
        "COMPLETION_PROMISE": state.completion_promise,
        "PROMISE_TAG": tag,
    }
    has_prompt = "{{PROMPT}}" in body
    has_iteration = "{{ITERATION}}" in body or "{{ITERATION_LABEL}}" in body
    has_tag = "{{PROMISE_TAG}}" in body
    body = _PLACEHOLDER_RE.sub(lambda m: values[m.group(1)], body)

    sections: list[str] = []
    if not has_prompt:
        sections.append(f"## Your Task\n\n{state.prompt}")
    trailer: list[str] = []
    if not has_iteration:
        trailer.append(f"Current iteration: {state.iteration_label}")
    if not has_tag:
        trailer.append(f"When the task is genuinely complete, output: {tag}")
    if trailer:
        sections.append("\n".join(trailer))
    if sections:
        body = body.rstrip() + "\n\n" + "\n\n".join(sections)
    return body.strip()


def loop_banner(state: LoopState) -> str:
    counter = str(state.iteration)
    if state.max_iterations > 0:
        counter += f" / {state.max_iterations}"
    return (
        f"[Ralph Loop Active - Iteration {counter}]\n"
        f"[Complete by outputting: {promise_tag(state.completion_promise)}]"
    )
