from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

from .identity_store import DEFAULT_IDENTITY_PATH

DEFAULT_BASE_URL = "http://127.0.0.1:8080"


@dataclass
class ClientConfig:
    base_url: str = DEFAULT_BASE_URL
    identity_path: Path = field(default_factory=lambda: DEFAULT_IDENTITY_PATH)
    log_level: str = "WARNING"
    request_timeout_s: float = 10.0

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "ClientConfig":
        env = os.environ if environ is None else environ
        config = cls()
        config.base_url = env.get("CHATLINK_URL", config.base_url)
        if env.get("CHATLINK_IDENTITY"):
            config.identity_path = Path(env["CHATLINK_IDENTITY"]).expanduser()
        config.log_level = env.get("CHATLINK_LOG_LEVEL", config.log_level)
        if env.get("CHATLINK_TIMEOUT"):
            config.request_timeout_s = float(env["CHATLINK_TIMEOUT"])
        return config
