"""System prompt builder for free mode and database mode.

Built-in prompts can be overridden per file under ``<AIQ_HOME>/prompts``:
``free-mode-base.md``, ``database-base.md``, ``common.md`` and optional
per-engine patches such as ``sqlite.md`` appended in database mode. Files may
start with a ``---`` frontmatter block; full-line HTML comments are dropped.
"""
from __future__ import annotations

import logging
from pathlib import Path
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from aiq.agent.skills import Skill

logger = logging.getLogger(__name__)

FREE_MODE_FILE = "free-mode-base.md"
DATABASE_MODE_FILE = "database-base.md"
COMMON_FILE = "common.md"

FREE_MODE_BASE_PROMPT = """\
<MODE>
FREE MODE - No database connection available. SQL execution is not available.
</MODE>

<ROLE>
You are a helpful AI assistant. You can have natural conversations and help with system operations using available tools.
</ROLE>

<TOOLS>
- execute_command: System operations (install, setup, configuration). Not for database queries.
- http_request: Make HTTP requests.
- file_operations: Read/write files.
- render_table / render_chart: Show tabular data as a table or a terminal chart.
</TOOLS>

<POLICY>
- If the user asks for database operations, explain that no database is connected and ask whether they want to configure one.
- Do not guess database commands or run database shells in free mode.
- If the request is ambiguous for the current mode, ask a clarifying question before acting.
</POLICY>
"""

DATABASE_MODE_BASE_PROMPT = """\
<MODE>
DATABASE MODE - Connected to a database.
</MODE>

<ROLE>
You are a helpful AI assistant for database queries and related tasks.
</ROLE>

<CONTEXT>
- Database engine type: {{DATABASE_TYPE}}
- Database connection and schema information:
{{SCHEMA_CONTEXT}}
</CONTEXT>

<POLICY>
- Use execute_sql for database queries. Do not use execute_command to run database shells.
- Respect engine-specific syntax. If unsure, ask a clarifying question or rely on schema context.
- If a request is not a database query, use the appropriate non-SQL tools.
- Before generating new SQL, check the conversation for recent query results. If the user asks for a chart or table of data you already have, call render_chart or render_table with that data.
- When the user requests database operations you MUST call execute_sql. Do not describe what you will do in text and do not claim success without a tool result.
</POLICY>

<TOOLS>
- execute_sql: Execute SQL against the database.
- render_table: Format query results as a table.
- render_chart: Display query results as a chart.
- execute_command: System operations (install, setup, configuration). Not for database queries.
- http_request: Make HTTP requests.
- file_operations: Read/write files.
</TOOLS>
"""

COMMON_PROMPT = """\
<EXECUTION>
- For system operations, use execute_command with explicit commands.
- If a command requires elevated privileges or interactive input, ask the user to run it manually and explain why.
- Do not fabricate command outputs. Use tool results to decide the next step.
</EXECUTION>
"""


def parse_prompt_file(content: str) -> str:
    """Strip an optional frontmatter block and full-line HTML comments."""
    content = content.strip()
    if content.startswith("---"):
        lines = content.split("\n")
        for index in range(1, len(lines)):
            if lines[index].strip() == "---":
                content = "\n".join(lines[index + 1:])
                break
        else:
            raise ValueError("missing closing frontmatter delimiter")
    kept = [
        line
        for line in content.split("\n")
        if not (line.strip().startswith("<!--") and line.strip().endswith("-->"))
    ]
    return "\n".join(kept).strip()


class PromptLoader:
    def __init__(self, prompts_dir: Path | None = None) -> None:
        self.prompts: dict[str, str] = {
            FREE_MODE_FILE: FREE_MODE_BASE_PROMPT.strip(),
            DATABASE_MODE_FILE: DATABASE_MODE_BASE_PROMPT.strip(),
            COMMON_FILE: COMMON_PROMPT.strip(),
        }
        if prompts_dir is not None and prompts_dir.is_dir():
            self._load_overrides(prompts_dir)

    def _load_overrides(self, prompts_dir: Path) -> None:
        for path in sorted(prompts_dir.glob("*.md")):
            try:
                self.prompts[path.name] = parse_prompt_file(path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError, ValueError) as exc:
                logger.warning("ignoring prompt file %s: %s", path, exc)

    def free_mode_prompt(self) -> str:
        return self.prompts[FREE_MODE_FILE]

    def database_mode_prompt(self, database_type: str, schema_context: str) -> str:
        prompt = (
            self.prompts[DATABASE_MODE_FILE]
            .replace("{{DATABASE_TYPE}}", database_type)
            .replace("{{SCHEMA_CONTEXT}}", schema_context)
        )
        patch = self.prompts.get(f"{database_type.lower()}.md")
        if patch:
            prompt = f"{prompt}\n\n{patch}"
        return prompt

    def common_prompt(self) -> str:
        return self.prompts[COMMON_FILE]


def build_base_prompt(
    *,
    schema_context: str = "",
    database_type: str = "",
    loader: PromptLoader | None = None,
) -> str:
    """Free mode when there is no schema context, database mode otherwise."""
    loader = loader or PromptLoader()
    if schema_context:
        base = loader.database_mode_prompt(database_type, schema_context)
    else:
        base = loader.free_mode_prompt()
    return f"{base}\n\n{loader.common_prompt()}"


def build_system_prompt(base_prompt: str, skills: list[Skill] | None = None) -> str:
    if not skills:
        return base_prompt
    parts = [base_prompt, "", "<SKILLS>"]
    for skill in skills:
        parts.append(f"## {skill.name}")
        if skill.description:
            parts.append(skill.description)
        parts.append("")
        parts.append(skill.content.strip())
        parts.append("")
    parts.append("</SKILLS>")
    return "\n".join(parts)
