"""Operator prompts used during authentication.

The authenticator never reads from the terminal itself; it asks a
``Prompter``.  ``ConsolePrompter`` is the real one (rich for display,
``getpass`` for hidden input).  Everything goes to stderr so that the
stdout of a remote command run through vssh stays clean.
"""

from __future__ import annotations

import getpass
from typing import Protocol

from rich.console import Console


class PromptError(Exception):
    """Raised when operator input cannot be read (e.g. stdin closed)."""


class Prompter(Protocol):
    def prompt_visible(self, label: str) -> str: ...

    def prompt_hidden(self, label: str) -> str: ...

    def show(self, message: str) -> None: ...


class ConsolePrompter:
    """Interactive prompts on the controlling terminal."""

    def __init__(self, console: Console | None = None) -> None:
        self._console = console or Console(stderr=True)

    def prompt_visible(self, label: str) -> str:
        try:
            return self._console.input(f"{label}: ")
        except EOFError as exc:
            raise PromptError(f"No input received for {label}") from exc

    def prompt_hidden(self, label: str) -> str:
        try:
            return getpass.getpass(f"{label}: ")
        except EOFError as exc:
            raise PromptError(f"No input received for {label}") from exc

    def show(self, message: str) -> None:
        # soft_wrap keeps long URLs on one line for copy/paste.
        self._console.print(message, soft_wrap=True)
