"""Server configuration loaded from config/server.local.json and the environment."""

from __future__ import annotations

import os
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import orjson

from ..core.schemas import DEFAULT_MAX_PARTICIPANTS

DEFAULT_CONFIG_PATH = Path("config/server.local.json")
ENV_PREFIX = "TABLETOP_"
PERSISTENCE_BACKENDS = ("memory", "json")


class ConfigError(ValueError):
    """Raised when a configuration value cannot be used."""


@dataclass(slots=True)
class ServerConfig:
    """Settings for the HTTP/WebSocket server and the state store."""

    host: str = "127.0.0.1"
    port: int = 8000
    persistence: str = "memory"
    data_dir: Path = Path("data")
    request_timeout: float = 5.0
    commit_retries: int = 3
    subscriber_queue_size: int = 256
    default_max_participants: int = DEFAULT_MAX_PARTICIPANTS
    cors_origins: List[str] = field(default_factory=lambda: ["*"])
    log_level: str = "INFO"

    def __post_init__(self) -> None:
        if self.persistence not in PERSISTENCE_BACKENDS:
            raise ConfigError(
                f"Unknown persistence backend {self.persistence!r}; expected one of {', '.join(PERSISTENCE_BACKENDS)}"
            )
        if self.request_timeout <= 0:
            raise ConfigError("request_timeout must be positive")
        if self.commit_retries < 1:
            raise ConfigError("commit_retries must be at least 1")
        if self.subscriber_queue_size < 1:
            raise ConfigError("subscriber_queue_size must be at least 1")


def _coerce(name: str, raw: Any) -> Any:
    if name in {"port", "commit_retries", "subscriber_queue_size", "default_max_participants"}:
        return int(raw)
    if name == "request_timeout":
        return float(raw)
    if name == "data_dir":
        return Path(raw)
    if name == "cors_origins":
        if isinstance(raw, str):
            return [origin.strip() for origin in raw.split(",") if origin.strip()]
        return [str(origin) for origin in raw]
    if name == "log_level":
        return str(raw).upper()
    return str(raw)


def load_server_config(
    path: Path = DEFAULT_CONFIG_PATH,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> ServerConfig:
    """Load server configuration from disk, then apply ``TABLETOP_*`` overrides.

    A missing file yields the defaults. Unknown keys in the file are ignored.
    """

    values: Dict[str, Any] = {}
    if path.exists():
        try:
            data = orjson.loads(path.read_bytes())
        except (OSError, orjson.JSONDecodeError) as exc:
            raise ConfigError(f"Cannot read {path}: {exc}") from exc
        if not isinstance(data, dict):
            raise ConfigError(f"{path} must contain a JSON object")
        values.update(data)

    env = os.environ if environ is None else environ
    known = {f.name for f in fields(ServerConfig)}
    for name in known:
        raw = env.get(f"{ENV_PREFIX}{name.upper()}")
        if raw is not None:
            values[name] = raw

    try:
        kwargs = {name: _coerce(name, value) for name, value in values.items() if name in known}
    except (TypeError, ValueError) as exc:
        raise ConfigError(f"Invalid server configuration: {exc}") from exc
    return ServerConfig(**kwargs)
