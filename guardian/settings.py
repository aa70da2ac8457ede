from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path


def _env_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return bool(default)
    s = str(raw).strip().lower()
    if s in {"1", "true", "yes", "y", "on"}:
        return True
    if s in {"0", "false", "no", "n", "off"}:
        return False
    return bool(default)


def _env_str(name: str, default: str) -> str:
    raw = os.getenv(name)
    if raw is None:
        return str(default)
    s = str(raw).strip()
    return s if s else str(default)


def find_chromium_executable() -> str | None:
    env_path = os.getenv("CHROMIUM_PATH")
    if env_path and Path(env_path).exists():
        return env_path

    candidates = [
        "/usr/bin/chromium",
        "/usr/bin/chromium-browser",
        "/usr/bin/google-chrome",
        "/usr/bin/google-chrome-stable",
        "/Applications/Google Chrome.app/Contents/MacOS/Google Chrome",
    ]
    for path in candidates:
        if Path(path).exists():
            return path
    return None


@dataclass(frozen=True)
class ProcessSettings:
    config_path: str = field(default_factory=lambda: _env_str("GUARDIAN_CONFIG", "config/guardian.yaml"))
    log_level: str = field(default_factory=lambda: _env_str("LOG_LEVEL", "INFO"))

    # Notification hand-off to the external dispatcher (email/SMS/voice live there).
    webhook_url: str = field(default_factory=lambda: os.getenv("GUARDIAN_WEBHOOK_URL", "").strip())
    webhook_token: str = field(default_factory=lambda: os.getenv("GUARDIAN_WEBHOOK_TOKEN", "").strip())
    notifications_enabled: bool = field(default_factory=lambda: _env_bool("GUARDIAN_NOTIFICATIONS_ENABLED", True))

    # Browser probes (form/navigation).
    browser_enabled: bool = field(default_factory=lambda: _env_bool("GUARDIAN_BROWSER_ENABLED", True))


@dataclass(frozen=True)
class Capabilities:
    """
    What this process can do, resolved once at startup and injected.
    Components never look at the environment themselves.
    """

    webhook_enabled: bool = False
    webhook_url: str = ""
    webhook_token: str = ""
    browser_enabled: bool = False
    chromium_path: str | None = None


def resolve_capabilities(settings: ProcessSettings) -> Capabilities:
    webhook_enabled = bool(settings.notifications_enabled and settings.webhook_url)
    chromium_path = find_chromium_executable() if settings.browser_enabled else None
    return Capabilities(
        webhook_enabled=webhook_enabled,
        webhook_url=settings.webhook_url if webhook_enabled else "",
        webhook_token=settings.webhook_token if webhook_enabled else "",
        browser_enabled=bool(chromium_path),
        chromium_path=chromium_path,
    )
