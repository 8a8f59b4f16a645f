from __future__ import annotations

import io

import pytest
from rich.console import Console


@pytest.fixture
def stdout() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def stderr() -> io.StringIO:
    return io.StringIO()


@pytest.fixture
def console(stdout: io.StringIO) -> Console:
    return Console(file=stdout, width=200, no_color=True, highlight=False)


@pytest.fixture
def err_console(stderr: io.StringIO) -> Console:
    return Console(file=stderr, width=200, no_color=True, highlight=False)
