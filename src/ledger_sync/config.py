"""
Runtime configuration.

Values come from constructor arguments or from LEDGER_SYNC_* environment
variables via SyncConfig.from_env().
"""

import os
from dataclasses import dataclass
from typing import Optional

ENV_PREFIX = "LEDGER_SYNC_"


def _env(name: str) -> Optional[str]:
    value = os.getenv(ENV_PREFIX + name)
    if value is None or value.strip() == "":
        return None
    return value.strip()


@dataclass
class SyncConfig:
    """Settings shared by the server and client halves."""

    server_url: Optional[str] = None
    clock_tolerance_ms: int = 500
    clock_max_attempts: int = 10
    transaction_timeout: float = 30.0
    http_timeout: float = 10.0
    max_pending_syncs: int = 16
    sync_wait_timeout: Optional[float] = None
    default_user: Optional[str] = None

    @classmethod
    def from_env(cls) -> "SyncConfig":
        """Build a config from the environment, falling back to defaults."""
        config = cls()
        if _env("SERVER_URL"):
            config.server_url = _env("SERVER_URL")
        if _env("CLOCK_TOLERANCE_MS"):
            config.clock_tolerance_ms = int(_env("CLOCK_TOLERANCE_MS"))
        if _env("CLOCK_MAX_ATTEMPTS"):
            config.clock_max_attempts = int(_env("CLOCK_MAX_ATTEMPTS"))
        if _env("TRANSACTION_TIMEOUT"):
            config.transaction_timeout = float(_env("TRANSACTION_TIMEOUT"))
        if _env("HTTP_TIMEOUT"):
            config.http_timeout = float(_env("HTTP_TIMEOUT"))
        if _env("MAX_PENDING"):
            config.max_pending_syncs = int(_env("MAX_PENDING"))
        if _env("WAIT_TIMEOUT"):
            config.sync_wait_timeout = float(_env("WAIT_TIMEOUT"))
        if _env("USER"):
            config.default_user = _env("USER")
        return config
