"""CLI entry point for ralph."""

from __future__ import annotations

import argparse
import logging
import os
import sys
from dataclasses import replace
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.table import Table
from rich.text import Text

from . import __version__
from .completion import promise_tag
from .config import LoopConfig, apply_template_meta, load_config
from .errors import InvalidArgument, RalphError
from .prompt import PromptTemplate, load_template
from .runner import LoopRunner
from .store import LoopStateStore
from .util import truncate


class _Parser(argparse.ArgumentParser):
    def error(self, message: str) -> None:  # type: ignore[override]
        raise InvalidArgument(message)


def _non_negative_int(raw: str) -> int:
    try:
        value = int(raw)
    except ValueError:
        raise argparse.ArgumentTypeError("--max-iterations requires a number") from None
    if value < 0:
        raise argparse.ArgumentTypeError("--max-iterations must be >= 0")
    return value


def _run_parser() -> argparse.ArgumentParser:
    p = _Parser(prog="ralph", add_help=False, allow_abbrev=False)
    p.add_argument("prompt", nargs="*")
    p.add_argument("--max-iterations", type=_non_negative_int, default=None)
    p.add_argument("--completion-promise", default=None)
    p.add_argument("--model", default=None)
    p.add_argument("--prompt-file", default=None)
    p.add_argument("--no-commit", action="store_true")
    p.add_argument("--no-plugins", action="store_true")
    p.add_argument("--status", action="store_true")
    p.add_argument("--cancel", action="store_true")
    return p


def _print_help(console: Console) -> None:
    help_text = Text()
    help_text.append("ralph", style="bold")
    help_text.append(f" {__version__}", style="dim")
    help_text.append(" - iterative AI development loop for OpenCode")
    console.print(help_text)
    console.print()
    usage = Text("  ralph ")
    usage.append('"<prompt>" [options]', style="dim")
    console.print(usage)
    console.print()

    opts = Table(show_header=False, expand=False, show_edge=False, pad_edge=False, box=None)
    opts.add_column("Option", style="bold", no_wrap=True)
    opts.add_column("Description", style="dim")
    opts.add_row("--max-iterations N", "Maximum iterations before stopping (default: unlimited)")
    opts.add_row("--completion-promise TEXT", "Phrase that signals completion (default: COMPLETE)")
    opts.add_row("--model MODEL", "Model to use (e.g. anthropic/claude-sonnet)")
    opts.add_row("--prompt-file PATH", "Markdown prompt template")
    opts.add_row("--no-commit", "Don't auto-commit after each iteration")
    opts.add_row("--no-plugins", "Run the agent without the ralph plugin")
    opts.add_row("--status", "Show the active loop and exit")
    opts.add_row("--cancel", "Cancel the active loop and exit")
    opts.add_row("--version, -v", "Show version")
    opts.add_row("--help, -h", "Show this help")
    console.print(opts)
    console.print()
    console.print(
        "To stop manually: Ctrl+C, or run ralph --cancel.", style="dim", markup=False
    )


def _configure_logging(err: Console) -> None:
    level = os.environ.get("RALPH_LOG_LEVEL", "WARNING").strip().upper() or "WARNING"
    logging.basicConfig(
        level=getattr(logging, level, logging.WARNING),
        format="%(message)s",
        handlers=[RichHandler(console=err, show_path=False, show_time=False)],
    )


def _fail(err: Console, message: str) -> int:
    err.print(Text(f"Error: {message}", style="red"))
    return 1


def cmd_status(store: LoopStateStore, console: Console) -> int:
    state = store.load()
    if state is None or not state.active:
        console.print("No active Ralph loop")
        return 0
    body = Text()
    body.append("Ralph loop active\n", style="bold cyan")
    body.append(f"Iteration: {state.iteration_label}\n")
    body.append(f"Completion promise: {promise_tag(state.completion_promise)}\n")
    body.append(f"Started: {state.started_at}\n")
    if state.model:
        body.append(f"Model: {state.model}\n")
    body.append(f"Prompt: {truncate(state.prompt, 100)}")
    console.print(body)
    return 0


def cmd_cancel(store: LoopStateStore, console: Console) -> int:
    state = store.load()
    if state is None or not state.active:
        console.print("No active Ralph loop to cancel")
        return 0
    store.clear()
    console.print(Text(f"Cancelled Ralph loop at iteration {state.iteration}", style="yellow"))
    return 0


def _resolve(args: argparse.Namespace, root: Path) -> tuple[LoopConfig, PromptTemplate | None]:
    cfg = load_config(root)
    template: PromptTemplate | None = None
    prompt_file = Path(args.prompt_file) if args.prompt_file else cfg.prompt_file
    if prompt_file is not None:
        template = load_template(prompt_file)
        cfg = apply_template_meta(cfg, template.meta)

    changes: dict[str, object] = {"prompt": " ".join(args.prompt or []).strip()}
    if args.max_iterations is not None:
        changes["max_iterations"] = args.max_iterations
    if args.completion_promise is not None:
        if not args.completion_promise.strip():
            raise InvalidArgument("--completion-promise requires a value")
        changes["completion_promise"] = args.completion_promise
    if args.model is not None:
        if not args.model.strip():
            raise InvalidArgument("--model requires a value")
        changes["model"] = args.model
    if args.no_commit:
        changes["commit"] = False
    if args.no_plugins:
        changes["plugins"] = False
    return replace(cfg, **changes), template


def run(argv: list[str], console: Console, err: Console) -> int:
    if "--help" in argv or "-h" in argv:
        _print_help(console)
        return 0
    if "--version" in argv or "-v" in argv:
        console.print(f"ralph {__version__}", markup=False, highlight=False)
        return 0

    try:
        args = _run_parser().parse_intermixed_args(argv)
        root = Path.cwd()
        cfg, template = _resolve(args, root)
    except InvalidArgument as exc:
        _fail(err, str(exc))
        err.print("Run 'ralph --help' for available options", style="dim", markup=False)
        return 1

    store = LoopStateStore(cfg.state_path)
    if args.status:
        return cmd_status(store, console)
    if args.cancel:
        return cmd_cancel(store, console)

    if not cfg.prompt:
        _fail(err, "No prompt provided")
        err.print('Usage: ralph "Your task description" [options]', markup=False)
        err.print("Run 'ralph --help' for more information", style="dim", markup=False)
        return 1

    _configure_logging(err)
    try:
        runner = LoopRunner(
            cfg, store=store, template=template, console=console, err_console=err
        )
        result = runner.run()
    except (RalphError, OSError) as exc:
        return _fail(err, str(exc))
    return result.exit_code


def main(argv: list[str] | None = None) -> None:
    raw = argv if argv is not None else sys.argv[1:]
    sys.exit(run(raw, Console(), Console(stderr=True)))


if __name__ == "__main__":
    main()
