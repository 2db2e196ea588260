"""Bridge configuration.

Built once at startup by :func:`load_config` and handed to
:func:`ollama_bridge.app.create_app`; nothing reads the environment after that.
"""

import os
from dataclasses import dataclass, field

from . import __version__

DEFAULT_OPENAI_BASE_URL = "https://api.openai.com"


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from None


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        raise ValueError(f"{name} must be an integer, got {raw!r}") from None


def parse_allowed_models(raw: str) -> tuple[str, ...]:
    """Split a comma separated allow-list, dropping blanks."""
    return tuple(item.strip() for item in raw.split(",") if item.strip())


@dataclass(frozen=True)
class BridgeConfig:
    """Configuration shared by every request handler."""

    # Server
    host: str = "0.0.0.0"
    port: int = 8080
    log_level: str = "INFO"
    version: str = __version__

    # Backend
    openai_base_url: str = DEFAULT_OPENAI_BASE_URL
    allowed_models: tuple[str, ...] = field(default_factory=tuple)

    # Timeouts, in seconds
    connect_timeout: float = 10.0
    request_timeout: float = 120.0
    stream_idle_timeout: float = 60.0
    models_timeout: float = 10.0

    @property
    def chat_completions_url(self) -> str:
        return f"{self.openai_base_url}/v1/chat/completions"

    @property
    def models_url(self) -> str:
        return f"{self.openai_base_url}/v1/models"


def load_config() -> BridgeConfig:
    """Read :class:`BridgeConfig` from environment variables."""
    base_url = os.getenv("OPENAI_API_BASE_URL", "").strip() or DEFAULT_OPENAI_BASE_URL
    return BridgeConfig(
        host=os.getenv("PROXY_HOST", "0.0.0.0"),
        port=_env_int("PROXY_PORT", 8080),
        log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        version=os.getenv("OLLAMA_BRIDGE_VERSION", "").strip() or __version__,
        openai_base_url=base_url.rstrip("/"),
        allowed_models=parse_allowed_models(os.getenv("OPENAI_ALLOWED_MODELS", "")),
        connect_timeout=_env_float("BACKEND_CONNECT_TIMEOUT", 10.0),
        request_timeout=_env_float("BACKEND_TIMEOUT", 120.0),
        stream_idle_timeout=_env_float("BACKEND_STREAM_IDLE_TIMEOUT", 60.0),
        models_timeout=_env_float("BACKEND_MODELS_TIMEOUT", 10.0),
    )
