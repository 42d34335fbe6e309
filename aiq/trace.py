from __future__ import annotations

import uuid
from contextvars import ContextVar

_turn_id_var: ContextVar[str | None] = ContextVar("turn_id", default=None)


def generate_turn_id() -> str:
    if hasattr(uuid, "uuid7"):
        return str(uuid.uuid7())  # type: ignore[attr-defined]
    return str(uuid.uuid4())


def set_current_turn_id(turn_id: str) -> None:
    _turn_id_var.set(turn_id)


def get_current_turn_id() -> str | None:
    return _turn_id_var.get()


def new_turn() -> str:
    turn_id = generate_turn_id()
    _turn_id_var.set(turn_id)
    return turn_id
