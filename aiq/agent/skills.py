"""Skills: named units of domain guidance loaded into the system prompt on demand."""
from __future__ import annotations

from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Protocol

DEFAULT_EVICTION_QUERIES = 5


class Priority(IntEnum):
    INACTIVE = 0
    RELEVANT = 1
    ACTIVE = 2


@dataclass(slots=True)
class SkillMetadata:
    name: str
    description: str = ""


@dataclass(slots=True)
class Skill:
    name: str
    description: str
    content: str
    priority: Priority = Priority.INACTIVE

    def with_content(self, content: str) -> Skill:
        return replace(self, content=content)


class SkillsProvider(Protocol):
    def get_metadata(self) -> list[SkillMetadata]: ...

    def match(self, query: str, metadata: list[SkillMetadata]) -> list[SkillMetadata]: ...

    def load_skills(self, names: list[str]) -> list[Skill]: ...

    def evict_unused_skills(self, window: int) -> list[str]: ...

    def track_usage(self, name: str, query: str) -> None: ...

    def set_priority(self, name: str, priority: Priority) -> None: ...


def evict_below(skills: list[Skill], min_priority: Priority) -> list[Skill]:
    return [skill for skill in skills if skill.priority >= min_priority]
