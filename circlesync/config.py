"""
circlesync.config — YAML Configuration Loader
==============================================

**Why this file exists:**
Timing knobs (heartbeat cadence, presence grace, tick rate, reconnect
backoff) differ between a phone on a flaky network and a kiosk on a LAN.
They live in ``circlesync.yaml`` so a UI shell can tune them without code
changes.  Every key has a default, so the file itself is optional.

Usage::

    from circlesync.config import configure_logging, load_config

    configure_logging()
    cfg = load_config()                  # ./circlesync.yaml or $CIRCLESYNC_CONFIG
    print(cfg.heartbeat_interval_seconds)  # 20.0
    print(cfg.presence_grace_seconds)      # 60.0
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import yaml
from dotenv import load_dotenv

DEFAULT_CONFIG_PATH = "circlesync.yaml"
CONFIG_ENV_VAR = "CIRCLESYNC_CONFIG"

LOG_FORMAT = "%(asctime)s │ %(levelname)-8s │ %(name)s │ %(message)s"
LOG_DATEFMT = "%H:%M:%S"


# ---------------------------------------------------------------------------
# Typed settings object
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Immutable configuration for one process.

    All sessions created in the process share it; nothing in here is
    per-session state.
    """

    # Presence
    heartbeat_interval_seconds: float = 20.0
    presence_grace_intervals: int = 3  # Missed heartbeats before implicit leave

    # Countdown
    tick_interval_seconds: float = 1.0

    # Relay reconnect (exponential backoff + jitter)
    reconnect_base_backoff_seconds: float = 1.0
    reconnect_max_backoff_seconds: float = 60.0
    reconnect_alert_after: int = 10  # Attempts before a critical log

    # Relay topics
    topic_prefix: str = "meditation_session_"
    broadcast_echo: bool = False  # Loopback relay: deliver broadcasts to sender too

    @property
    def presence_grace_seconds(self) -> float:
        """Silence after which a participant is treated as gone."""
        return self.heartbeat_interval_seconds * self.presence_grace_intervals

    def topic_for(self, session_id: str) -> str:
        return f"{self.topic_prefix}{session_id}"


_FLOAT_KEYS = (
    "heartbeat_interval_seconds",
    "tick_interval_seconds",
    "reconnect_base_backoff_seconds",
    "reconnect_max_backoff_seconds",
)
_INT_KEYS = ("presence_grace_intervals", "reconnect_alert_after")


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------
def load_config(path: str | Path | None = None) -> SyncConfig:
    """Read *path* and return a :class:`SyncConfig` instance.

    Parameters
    ----------
    path:
        Filesystem path to the YAML configuration file.  When omitted,
        ``$CIRCLESYNC_CONFIG`` (after loading ``.env``) or
        ``circlesync.yaml`` in the working directory is used, and a
        missing file simply yields the defaults.

    Raises
    ------
    FileNotFoundError
        If an explicitly requested file doesn't exist.
    ValueError
        If a timing value is not strictly positive.
    """
    load_dotenv()

    explicit = path is not None
    config_path = Path(path if explicit else os.getenv(CONFIG_ENV_VAR, DEFAULT_CONFIG_PATH))
    if not config_path.exists():
        if explicit:
            raise FileNotFoundError(
                f"Configuration file not found: {config_path.resolve()}\n"
                "Hint: copy circlesync.yaml.example → circlesync.yaml and edit it."
            )
        return SyncConfig()

    with open(config_path, encoding="utf-8") as fh:
        raw: dict = yaml.safe_load(fh) or {}

    values: dict = {}
    for key in _FLOAT_KEYS:
        if key in raw:
            values[key] = float(raw[key])
    for key in _INT_KEYS:
        if key in raw:
            values[key] = int(raw[key])
    if "topic_prefix" in raw:
        values["topic_prefix"] = str(raw["topic_prefix"])
    if "broadcast_echo" in raw:
        values["broadcast_echo"] = bool(raw["broadcast_echo"])

    for key, value in values.items():
        if key in _FLOAT_KEYS + _INT_KEYS and value <= 0:
            raise ValueError(f"{key} must be positive, got {value!r}")

    return SyncConfig(**values)


def configure_logging(level: int = logging.INFO) -> None:
    """Install the project-wide log format on the root logger."""
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt=LOG_DATEFMT)
