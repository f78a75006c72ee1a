"""
troupesync.config — YAML Configuration Loader
==============================================

Reads ``config.yaml`` for infrastructure settings (timeouts, worker counts,
background task intervals).  Secrets such as ``DATABASE_URL`` and
``GOOGLE_API_TOKEN`` come from the environment (``.env``), never from YAML.

Usage::

    from troupesync.config import load_config

    cfg = load_config()              # reads ./config.yaml by default
    print(cfg.max_sync_minutes)      # 15
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path

import yaml


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class TroupeSyncConfig:
    """Immutable configuration loaded from ``config.yaml``."""

    # Identity
    service_name: str

    # Sync
    max_sync_minutes: int = 15
    ingest_workers: int = 4

    # Outbound HTTP
    http_timeout_seconds: float = 10.0
    http_max_retries: int = 3
    http_backoff_seconds: float = 0.5

    # Background tasks
    stale_lock_sweep_minutes: int = 5
    limits_refresh_hours: int = 24
    scheduled_sync_hours: int = 24


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path = "config.yaml") -> TroupeSyncConfig:
    """Read *path* and return a :class:`TroupeSyncConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.
        Defaults to ``config.yaml`` in the current working directory.

    Raises
    ------
    FileNotFoundError
        If the YAML file doesn't exist.
    KeyError
        If a required key is missing from the YAML file.
    """
    config_path = Path(path)
    if not config_path.exists():
        raise FileNotFoundError(
            f"Configuration file not found: {config_path.resolve()}\n"
            "Hint: copy config.yaml.example → config.yaml and edit it."
        )

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    defaults = TroupeSyncConfig(service_name="")
    return TroupeSyncConfig(
        service_name=raw["service_name"],
        max_sync_minutes=int(raw.get("max_sync_minutes", defaults.max_sync_minutes)),
        ingest_workers=int(raw.get("ingest_workers", defaults.ingest_workers)),
        http_timeout_seconds=float(
            raw.get("http_timeout_seconds", defaults.http_timeout_seconds)
        ),
        http_max_retries=int(raw.get("http_max_retries", defaults.http_max_retries)),
        http_backoff_seconds=float(
            raw.get("http_backoff_seconds", defaults.http_backoff_seconds)
        ),
        stale_lock_sweep_minutes=int(
            raw.get("stale_lock_sweep_minutes", defaults.stale_lock_sweep_minutes)
        ),
        limits_refresh_hours=int(
            raw.get("limits_refresh_hours", defaults.limits_refresh_hours)
        ),
        scheduled_sync_hours=int(
            raw.get("scheduled_sync_hours", defaults.scheduled_sync_hours)
        ),
    )
