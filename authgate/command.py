"""Console command registry and the built-in ``help`` command."""

from __future__ import annotations

from collections.abc import Callable, Sequence
from typing import Any

Handler = Callable[[list[str]], Any]


class CommandError(Exception):
    """Raised when a command line cannot be dispatched."""


class CommandRegistry:
    """Maps case-insensitive command names to handlers."""

    def __init__(self) -> None:
        self._handlers: dict[str, Handler] = {}

    def register(self, command: str, handler: Handler) -> None:
        """Register ``handler`` under ``command`` (case-insensitive)."""
        self._handlers[command.lower()] = handler

    def execute(self, line: str) -> Any:
        """Split ``line`` on whitespace and run the named command with the rest as arguments."""
        parts = line.split()
        if not parts:
            raise CommandError("no command provided")
        name, *args = parts
        name = name.lower()
        try:
            handler = self._handlers[name]
        except KeyError:
            raise CommandError(f"unknown command: {name}") from None
        return handler(args)

    def commands(self) -> list[str]:
        """Return the registered command names in sorted order."""
        return sorted(self._handlers)


_registry = CommandRegistry()


def register_handler(command: str, handler: Handler) -> None:
    """Register a handler in the default registry."""
    _registry.register(command, handler)


def parse_and_execute(line: str) -> Any:
    """Run a command line against the default registry."""
    return _registry.execute(line)


def list_commands() -> list[str]:
    """Return the commands known to the default registry."""
    return _registry.commands()


def help_command(args: Sequence[str]) -> None:
    """Print the available commands."""
    print("Available commands:")
    for name in list_commands():
        print(" -", name)


register_handler("help", help_command)