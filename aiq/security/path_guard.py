from __future__ import annotations

from pathlib import Path


class PathGuardError(Exception):
    pass


def resolve_in_root(root: str | Path, candidate: str) -> Path:
    """Resolve ``candidate`` against ``root`` and refuse anything that lands outside it."""
    base = Path(root).expanduser().resolve()
    raw = Path(candidate).expanduser()
    target = raw.resolve() if raw.is_absolute() else (base / raw).resolve()

    if target != base and base not in target.parents:
        raise PathGuardError(f"path '{candidate}' is outside the allowed directory '{base}'")
    return target
