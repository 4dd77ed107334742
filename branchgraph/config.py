"""Environment-driven configuration."""

import os
from dataclasses import dataclass
from pathlib import Path

from .core.constants import (
    AI_MODEL,
    DEFAULT_MESSAGE_HISTORY_LIMIT,
    NODE_SPACING,
    SAVE_INTERVAL_SECONDS,
)


@dataclass(frozen=True)
class GraphConfig:
    """Conversation graph server configuration."""
    data_path: Path = Path.home() / ".branchgraph/graph.json"
    save_interval: int = SAVE_INTERVAL_SECONDS
    history_limit: int = DEFAULT_MESSAGE_HISTORY_LIMIT
    node_spacing: int = NODE_SPACING
    ai_provider: str = "echo"
    ai_api_key: str | None = None
    ai_model: str = AI_MODEL
    ai_timeout: float = 30.0
    host: str = "127.0.0.1"
    port: int = 8787
    log_level: str = "INFO"

    @classmethod
    def from_env(cls) -> "GraphConfig":
        """Create configuration from environment variables."""
        api_key = os.getenv("GEMINI_API_KEY") or None
        return cls(
            data_path=Path(os.getenv("BG_DATA_PATH", str(cls.data_path))).expanduser(),
            save_interval=int(os.getenv("BG_SAVE_INTERVAL", str(SAVE_INTERVAL_SECONDS))),
            history_limit=int(os.getenv("BG_HISTORY_LIMIT", str(DEFAULT_MESSAGE_HISTORY_LIMIT))),
            node_spacing=int(os.getenv("BG_NODE_SPACING", str(NODE_SPACING))),
            ai_provider=os.getenv("BG_AI_PROVIDER", "gemini" if api_key else "echo").lower(),
            ai_api_key=api_key,
            ai_model=os.getenv("BG_AI_MODEL", AI_MODEL),
            ai_timeout=float(os.getenv("BG_AI_TIMEOUT", "30")),
            host=os.getenv("BG_HTTP_HOST", "127.0.0.1"),
            port=int(os.getenv("BG_HTTP_PORT", "8787")),
            log_level=os.getenv("BG_LOG_LEVEL", "INFO").upper(),
        )
