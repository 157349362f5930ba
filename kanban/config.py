from __future__ import annotations

import os
from dataclasses import dataclass, field


def _env_int(name: str, default: int) -> int:
    return int(os.getenv(name, str(default)))


@dataclass
class Settings:
    """Process configuration, read from the environment."""

    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./kanban.db"))
    session_secret: str = field(default_factory=lambda: os.getenv("SESSION_SECRET", "dev-session-secret"))
    session_ttl_seconds: int = field(default_factory=lambda: _env_int("SESSION_TTL_SECONDS", 86400))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO"))
    host: str = field(default_factory=lambda: os.getenv("HOST", "0.0.0.0"))
    port: int = field(default_factory=lambda: _env_int("PORT", 8000))
