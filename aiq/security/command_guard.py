"""Command policy: programs that are never run and programs that need a terminal.

Checks look at the first program token after any leading ``KEY=value``
assignments, so ``FOO=1 rm -rf x`` is refused like ``rm -rf x``.
"""
from __future__ import annotations

import os


class CommandBlockedError(Exception):
    pass


BLOCKED_COMMANDS = frozenset({
    "rm",
    "sudo",
    "dd",
    "mkfs",
    "fdisk",
    "shutdown",
    "reboot",
    "halt",
    "poweroff",
    "init",
    "killall",
    "kill",
})

INTERACTIVE_COMMANDS = frozenset({
    "mysql_secure_installation",
    "passwd",
    "ssh",
    "ftp",
    "telnet",
    "less",
    "more",
    "vi",
    "vim",
    "nano",
    "emacs",
})


def split_env_prefix(command: str) -> tuple[dict[str, str], list[str]]:
    """Split leading ``KEY=value`` tokens off a command line.

    Returns the parsed assignments and the remaining whitespace tokens.
    """
    tokens = command.split()
    env: dict[str, str] = {}
    index = 0
    for token in tokens:
        if "=" not in token or token.startswith("-"):
            break
        key, _, value = token.partition("=")
        if not key:
            break
        env[key] = value
        index += 1
    return env, tokens[index:]


def program_name(command: str) -> str:
    """First program token after env assignments, with any path prefix removed."""
    _, rest = split_env_prefix(command)
    if not rest:
        return ""
    return os.path.basename(rest[0])


def ensure_command_allowed(
    command: str,
    *,
    blocked: frozenset[str] = BLOCKED_COMMANDS,
    interactive: frozenset[str] = INTERACTIVE_COMMANDS,
) -> None:
    stripped = command.strip()
    if not stripped:
        raise CommandBlockedError("command is required")

    if "sudo" in stripped.split():
        raise CommandBlockedError(
            "command requires sudo privileges and cannot be executed automatically. "
            f"Please run this command manually in your terminal: {stripped}"
        )

    name = program_name(stripped)
    if name in blocked:
        raise CommandBlockedError(
            f"command '{name}' is blocked for security reasons. Blocked commands: {sorted(blocked)}"
        )
    if name in interactive:
        raise CommandBlockedError(
            f"command '{name}' requires interactive input and cannot be executed non-interactively. "
            "Please run this command manually in your terminal, or use a non-interactive alternative if available"
        )
