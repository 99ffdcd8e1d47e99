"""Operator-facing output for a running build."""

from __future__ import annotations

from typing import Protocol

from rich.console import Console
from rich.markup import escape


class Ui(Protocol):
    """Where steps report progress to the operator."""

    def say(self, message: str) -> None: ...
    def message(self, message: str) -> None: ...
    def error(self, message: str) -> None: ...


class ConsoleUi:
    """Rich console output, prefixed with the build name."""

    __slots__ = ("_console", "_prefix")

    def __init__(self, build_name: str = "cvmforge", console: Console | None = None) -> None:
        self._console = console or Console(stderr=True, highlight=False)
        self._prefix = escape(build_name)

    def say(self, message: str) -> None:
        self._console.print(f"[bold green]==> {self._prefix}:[/] [bold]{escape(message)}[/]")

    def message(self, message: str) -> None:
        self._console.print(f"    [green]{self._prefix}:[/] {escape(message)}")

    def error(self, message: str) -> None:
        self._console.print(f"[bold red]==> {self._prefix}: {escape(message)}[/]")


class RecordingUi:
    """Keeps every line in memory; used when output is captured."""

    def __init__(self) -> None:
        self.lines: list[tuple[str, str]] = []

    def say(self, message: str) -> None:
        self.lines.append(("say", message))

    def message(self, message: str) -> None:
        self.lines.append(("message", message))

    def error(self, message: str) -> None:
        self.lines.append(("error", message))

    @property
    def errors(self) -> list[str]:
        return [m for kind, m in self.lines if kind == "error"]
