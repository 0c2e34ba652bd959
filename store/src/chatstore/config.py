from __future__ import annotations

import os
from dataclasses import dataclass


@dataclass
class StoreConfig:
    host: str = "127.0.0.1"
    port: int = 8080
    db_path: str | None = None
    ping_interval_s: int = 30
    max_msg_size: int = 1_048_576
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: dict[str, str] | None = None) -> "StoreConfig":
        env = os.environ if environ is None else environ
        config = cls()
        config.host = env.get("CHATSTORE_HOST", config.host)
        config.port = int(env.get("CHATSTORE_PORT", config.port))
        config.db_path = env.get("CHATSTORE_DB") or config.db_path
        config.log_level = env.get("CHATSTORE_LOG_LEVEL", config.log_level)
        return config
