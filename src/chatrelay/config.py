"""
Relay configuration.

Defaults can be overridden with CHATRELAY_* environment variables
(see RelayConfig.from_env) and then by command-line flags in
examples/run_server.py.
"""

import os
from dataclasses import dataclass
from typing import Mapping, Optional

ENV_PREFIX = "CHATRELAY_"


@dataclass
class RelayConfig:
    """Settings for one relay process."""

    host: str = "127.0.0.1"
    # WebSocket endpoint (/ws)
    ws_port: int = 8001
    # HTTP boundary (/send, /online, /messages)
    http_port: int = 8000
    # postgresql://... ; None keeps state in memory
    database_url: Optional[str] = None
    # seconds given to in-flight work on shutdown
    shutdown_grace: float = 10.0
    # 0 = unbounded inbound queue
    queue_maxsize: int = 0
    ping_interval: float = 20.0
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "RelayConfig":
        """Build a config from CHATRELAY_* variables, falling back to defaults."""
        env = os.environ if environ is None else environ
        defaults = cls()

        def get(name: str, default):
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                return default
            if isinstance(default, int):
                return int(raw)
            if isinstance(default, float):
                return float(raw)
            return raw

        return cls(
            host=get("host", defaults.host),
            ws_port=get("ws_port", defaults.ws_port),
            http_port=get("http_port", defaults.http_port),
            database_url=env.get(ENV_PREFIX + "DATABASE_URL") or None,
            shutdown_grace=get("shutdown_grace", defaults.shutdown_grace),
            queue_maxsize=get("queue_maxsize", defaults.queue_maxsize),
            ping_interval=get("ping_interval", defaults.ping_interval),
            log_level=get("log_level", defaults.log_level).upper(),
        )
