"""
Playback configuration.

Defaults suit a desktop host that exposes a remote-debugging port for its
embedded web view; every value can be overridden from the environment.
"""

import os
from dataclasses import dataclass, field
from typing import List, Optional

# Ports the desktop host has been seen listening on, in probe order
DEFAULT_FALLBACK_PORTS = [9335, 9222, 9344, 9363] + list(range(9340, 9351))

# URL fragments that identify the host's own UI pages
DEFAULT_CHROME_UI_MARKERS = ["tabbar.html", "sidebar.html", "/ui/"]


def _env_int(name: str, default: Optional[int]) -> Optional[int]:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def _env_list(name: str) -> Optional[List[str]]:
    raw = os.getenv(name)
    if not raw:
        return None
    return [item.strip() for item in raw.split(",") if item.strip()]


@dataclass
class PlaybackConfig:
    """Configuration for the replay engine"""
    # Session discovery
    cdp_port: Optional[int] = None
    cdp_host: str = "127.0.0.1"
    fallback_ports: List[int] = field(default_factory=lambda: list(DEFAULT_FALLBACK_PORTS))
    probe_timeout: float = 1.0
    chrome_ui_markers: List[str] = field(default_factory=lambda: list(DEFAULT_CHROME_UI_MARKERS))

    # Scripted execution
    selector_timeout_ms: int = 3000
    step_timeout_ms: int = 10000
    navigation_timeout_ms: int = 30000
    click_settle_ms: int = 500
    default_wait_ms: int = 2000

    # Recovery
    max_attempts: int = 5
    settle_delay_ms: int = 1500
    retry_delay_ms: int = 1000
    enable_heuristic_fallback: bool = False

    @classmethod
    def from_env(cls) -> "PlaybackConfig":
        config = cls()
        config.cdp_port = _env_int("CDP_PORT", None)
        config.cdp_host = os.getenv("PLAYBACK_CDP_HOST", config.cdp_host)

        ports = _env_list("PLAYBACK_FALLBACK_PORTS")
        if ports:
            config.fallback_ports = [int(p) for p in ports if p.isdigit()]

        config.probe_timeout = _env_float("PLAYBACK_PROBE_TIMEOUT", config.probe_timeout)
        config.selector_timeout_ms = _env_int("PLAYBACK_SELECTOR_TIMEOUT_MS", config.selector_timeout_ms)
        config.step_timeout_ms = _env_int("PLAYBACK_STEP_TIMEOUT_MS", config.step_timeout_ms)
        config.navigation_timeout_ms = _env_int(
            "PLAYBACK_NAVIGATION_TIMEOUT_MS", config.navigation_timeout_ms
        )
        config.max_attempts = _env_int("PLAYBACK_MAX_ATTEMPTS", config.max_attempts)
        config.settle_delay_ms = _env_int("PLAYBACK_SETTLE_DELAY_MS", config.settle_delay_ms)
        config.enable_heuristic_fallback = _env_bool(
            "PLAYBACK_HEURISTIC_FALLBACK", config.enable_heuristic_fallback
        )

        markers = _env_list("PLAYBACK_CHROME_UI_MARKERS")
        if markers:
            config.chrome_ui_markers = markers

        return config
