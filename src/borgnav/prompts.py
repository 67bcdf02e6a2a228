"""Operator prompts used by the interactive console.

The navigator and the wizards only talk to a :class:`Prompter`. The console
implementation renders with Rich and reads answers through Typer; the queue
implementation replays scripted answers and is what the tests drive.

Selections return ``None`` when the operator backs out (``b``, ``back`` or
``esc`` at the console), which the navigator treats as "one level up".
"""
from __future__ import annotations

from collections import deque
from collections.abc import Iterable, Sequence
from typing import Protocol, runtime_checkable

import typer
from rich.console import Console
from rich.table import Table
from rich.text import Text

BACK_WORDS = frozenset({"b", "back", "esc", "q"})


class SelectionAbandoned(RuntimeError):
    """Raised when the operator backs out of a choice that was required."""


@runtime_checkable
class Prompter(Protocol):
    """Minimal set of interactions the console needs."""

    def select(self, prompt: str, options: Sequence[str], *, default: int = 0) -> int | None:
        """Return the chosen option index, or ``None`` to go back."""
        ...

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        """Return the operator's yes/no answer."""
        ...

    def text(self, prompt: str, *, default: str | None = None) -> str | None:
        """Return free text, or ``None`` when the operator cancels."""
        ...

    def secret(self, prompt: str) -> str:
        """Return masked input."""
        ...

    def screen(self, title: str, lines: Sequence[str] = ()) -> None:
        """Start a new screen with *title* and informational *lines*."""
        ...

    def message(self, text: str, *, style: str | None = None) -> None:
        """Show a one-line message."""
        ...

    def pause(self, text: str = "Press Enter to continue") -> None:
        """Wait until the operator acknowledges."""
        ...


class ConsolePrompter:
    """Rich/Typer implementation of :class:`Prompter`."""

    def __init__(self, console: Console | None = None) -> None:
        """Render on *console* (a fresh stdout console by default)."""
        self.console = console or Console()

    def select(self, prompt: str, options: Sequence[str], *, default: int = 0) -> int | None:
        table = Table(show_header=False, box=None, pad_edge=False)
        table.add_column(style="bold cyan", justify="right")
        table.add_column()
        for index, label in enumerate(options, start=1):
            table.add_row(f"{index})", Text(label))
        self.console.print(f"[bold]{prompt}[/bold]")
        self.console.print(table)
        while True:
            raw = typer.prompt(
                f"Choice [1-{len(options)}, b=back]",
                default=str(default + 1),
                show_default=True,
            )
            answer = str(raw).strip().lower()
            if answer in BACK_WORDS:
                return None
            if answer.isdigit() and 1 <= int(answer) <= len(options):
                return int(answer) - 1
            self.console.print(f"[red]Invalid choice {raw!r}.[/red]")

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        return bool(typer.confirm(prompt, default=default))

    def text(self, prompt: str, *, default: str | None = None) -> str | None:
        if default is None:
            raw = typer.prompt(prompt, default="", show_default=False)
        else:
            raw = typer.prompt(prompt, default=default)
        return str(raw).strip()

    def secret(self, prompt: str) -> str:
        return str(typer.prompt(prompt, default="", show_default=False, hide_input=True))

    def screen(self, title: str, lines: Sequence[str] = ()) -> None:
        self.console.print()
        self.console.rule(f"[bold]{title}[/bold]", align="left")
        for line in lines:
            self.console.print(line, markup=False, highlight=False)
        if lines:
            self.console.print()

    def message(self, text: str, *, style: str | None = None) -> None:
        self.console.print(text, style=style, markup=False, highlight=False)

    def pause(self, text: str = "Press Enter to continue") -> None:
        typer.prompt(text, default="", show_default=False)


class QueuePrompter:
    """Replay scripted answers; records everything shown to the operator.

    Selections may be scripted as an index, an exact option label, a label
    prefix, or ``None`` for "back". When the queue runs dry, selections go
    back, confirmations answer no and text prompts cancel.
    """

    def __init__(self, answers: Iterable[object] = ()) -> None:
        """Queue *answers* in the order they will be consumed."""
        self._answers: deque[object] = deque(answers)
        self.prompts: list[str] = []
        self.screens: list[str] = []
        self.messages: list[str] = []

    @property
    def remaining(self) -> int:
        """Return the number of unused answers."""
        return len(self._answers)

    def _next(self, prompt: str) -> tuple[bool, object]:
        self.prompts.append(prompt)
        if not self._answers:
            return False, None
        return True, self._answers.popleft()

    def select(self, prompt: str, options: Sequence[str], *, default: int = 0) -> int | None:
        present, answer = self._next(prompt)
        if not present or answer is None:
            return None
        if isinstance(answer, bool):
            raise TypeError(f"Scripted selection for {prompt!r} must not be a boolean.")
        if isinstance(answer, int):
            if not 0 <= answer < len(options):
                raise IndexError(f"Scripted selection {answer} out of range for {prompt!r}.")
            return answer
        label = str(answer)
        if label in options:
            return list(options).index(label)
        for index, option in enumerate(options):
            if option.startswith(label):
                return index
        raise LookupError(f"Scripted selection {label!r} not offered for {prompt!r}: {options}")

    def confirm(self, prompt: str, *, default: bool = False) -> bool:
        present, answer = self._next(prompt)
        return bool(answer) if present else False

    def text(self, prompt: str, *, default: str | None = None) -> str | None:
        present, answer = self._next(prompt)
        if not present or answer is None:
            return None
        value = str(answer)
        if value == "" and default is not None:
            return default
        return value

    def secret(self, prompt: str) -> str:
        present, answer = self._next(prompt)
        return str(answer) if present and answer is not None else ""

    def screen(self, title: str, lines: Sequence[str] = ()) -> None:
        self.screens.append(title)

    def message(self, text: str, *, style: str | None = None) -> None:
        self.messages.append(text)

    def pause(self, text: str = "Press Enter to continue") -> None:
        return None


__all__ = [
    "BACK_WORDS",
    "ConsolePrompter",
    "Prompter",
    "QueuePrompter",
    "SelectionAbandoned",
]
