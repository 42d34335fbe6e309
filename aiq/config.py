from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path

DEFAULT_MODELS = {
    "openai": "gpt-4o-mini",
    "anthropic": "claude-3-5-sonnet-latest",
}


@dataclass(slots=True)
class Settings:
    home: Path
    provider: str
    model: str
    api_key: str
    base_url: str | None
    context_window: int
    max_iterations: int
    command_idle_timeout: float
    database_path: Path | None
    workspace_root: Path
    log_level: str
    audit_enabled: bool

    @property
    def audit_log_path(self) -> Path:
        return self.home / "logs" / "risk_assessment.log"


def _parse_bool(value: str | None, default: bool = False) -> bool:
    if value is None:
        return default
    normalized = value.strip().lower()
    if normalized in {"1", "true", "yes", "on"}:
        return True
    if normalized in {"0", "false", "no", "off"}:
        return False
    return default


def _parse_int(value: str | None, default: int) -> int:
    if value is None or not value.strip():
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def resolve_api_key(provider: str) -> str:
    explicit = os.getenv("AIQ_API_KEY", "").strip()
    if explicit:
        return explicit
    if provider == "anthropic":
        return os.getenv("ANTHROPIC_API_KEY", "").strip()
    return os.getenv("OPENAI_API_KEY", "").strip()


def load_settings() -> Settings:
    home = Path(os.getenv("AIQ_HOME", str(Path.home() / ".aiq"))).expanduser()
    provider = os.getenv("AIQ_PROVIDER", "openai").strip().lower()
    model = os.getenv("AIQ_MODEL", "").strip() or DEFAULT_MODELS.get(provider, DEFAULT_MODELS["openai"])
    database = os.getenv("AIQ_DATABASE", "").strip()
    base_url = os.getenv("AIQ_BASE_URL", "").strip() or None

    try:
        idle_timeout = float(os.getenv("AIQ_COMMAND_IDLE_TIMEOUT", "60"))
    except ValueError:
        idle_timeout = 60.0

    return Settings(
        home=home,
        provider=provider,
        model=model,
        api_key=resolve_api_key(provider),
        base_url=base_url,
        context_window=_parse_int(os.getenv("AIQ_CONTEXT_WINDOW"), 100_000),
        max_iterations=_parse_int(os.getenv("AIQ_MAX_ITERATIONS"), 10),
        command_idle_timeout=idle_timeout if idle_timeout > 0 else 60.0,
        database_path=Path(database).expanduser() if database else None,
        workspace_root=Path(os.getenv("AIQ_WORKSPACE_ROOT", str(Path.cwd()))).resolve(),
        log_level=os.getenv("AIQ_LOG_LEVEL", "WARNING").strip().upper() or "WARNING",
        audit_enabled=_parse_bool(os.getenv("AIQ_AUDIT_ENABLED"), True),
    )
