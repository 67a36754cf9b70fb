#!/usr/bin/env python3
"""
Yellowstone hotel price monitor.

Polls the Xanterra availability API for a range of dates, alerts when a
hotel's lowest nightly price falls under the configured threshold (or a
per-date override) and when it drops below the last price seen, and posts
alerts to a Discord webhook.

Configuration is read from a JSON file (CONFIG_FILE, default config.json).
A .env file and the process environment supply DISCORD_WEBHOOK_URL and
RUN_ONCE, which take precedence over the file.  An unreadable or invalid
config file falls back to the built-in defaults.
No third-party dependencies; stdlib only.
"""

from __future__ import annotations

import dataclasses
import json
import logging
import os
import signal
import sys
import threading
from datetime import date, datetime, timedelta
from pathlib import Path
from typing import Any, Callable

from monitor import (
    DEFAULT_API_URL,
    DEFAULT_USER_AGENT,
    Config,
    PriceHistory,
    ThresholdOverride,
    WebhookNotifier,
    build_startup_message,
    format_api_date,
    pause,
    run_cycle,
)

# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
    handlers=[logging.StreamHandler(sys.stdout)],
)
log = logging.getLogger(__name__)


class ConfigError(ValueError):
    """The configuration file is present but unusable."""


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
DEFAULT_CONFIG: dict[str, dict[str, Any]] = {
    "monitoring": {
        "startDate": "06/28/2025",
        "endDate": "07/01/2025",
        "priceThreshold": 225,
        "checkIntervalMinutes": 30,
        "thresholdOverrides": [
            {"hotelCode": "YLRL", "date": "06/29/2025", "threshold": 200},
        ],
    },
    "exclusions": {
        "hotelCodes": ["YLMH", "YLRL"],
        "suffixes": [":RV"],
    },
    "api": {
        "baseUrl": DEFAULT_API_URL,
        "timeout": 5000,
        "userAgent": DEFAULT_USER_AGENT,
        "maxAttempts": 5,
        "backoffBaseMs": 1000,
        "limit": None,
    },
    "notifications": {
        "discordWebhook": "",
        "console": True,
        "startup": True,
        "errors": True,
        "rateLimitCooldownMs": 5000,
        "minIntervalMs": 2000,
    },
}


# ---------------------------------------------------------------------------
# Environment / config loading
# ---------------------------------------------------------------------------
def _load_env_file(path: str = ".env") -> None:
    p = Path(path)
    if not p.exists():
        return
    for raw_line in p.read_text(encoding="utf-8").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        os.environ.setdefault(key.strip(), value.strip().strip('"').strip("'"))


def _parse_date(value: Any) -> date:
    """Accept "MM/DD/YYYY" (the API's format) or "YYYY-MM-DD"."""
    text = str(value).strip()
    for fmt in ("%m/%d/%Y", "%Y-%m-%d"):
        try:
            return datetime.strptime(text, fmt).date()
        except ValueError:
            continue
    raise ConfigError(f"Unrecognised date: {value!r}")


def _number(section: dict[str, Any], key: str) -> float:
    value = section.get(key)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{key} must be a number, got {value!r}")
    return float(value)


def _string_set(section: dict[str, Any], key: str) -> frozenset[str]:
    values = section.get(key) or []
    if not isinstance(values, list):
        raise ConfigError(f"{key} must be a list")
    return frozenset(str(v).strip() for v in values if str(v).strip())


def _parse_overrides(raw: Any) -> tuple[ThresholdOverride, ...]:
    if raw is None:
        return ()
    if not isinstance(raw, list):
        raise ConfigError("thresholdOverrides must be a list")
    overrides: list[ThresholdOverride] = []
    for item in raw:
        if not isinstance(item, dict) or not item.get("hotelCode"):
            raise ConfigError(f"Invalid threshold override: {item!r}")
        overrides.append(
            ThresholdOverride(
                hotel_code=str(item["hotelCode"]).strip(),
                date=_parse_date(item.get("date")),
                threshold=_number(item, "threshold"),
            )
        )
    return tuple(overrides)


def _section(raw: dict[str, Any], name: str) -> dict[str, Any]:
    """Merge one section of *raw* over the matching default section.

    List-valued defaults (overrides, exclusions) apply only when the whole
    section is absent; a section given in the file starts those lists empty.
    """
    defaults = DEFAULT_CONFIG[name]
    value = raw.get(name)
    if value is None:
        return dict(defaults)
    if not isinstance(value, dict):
        raise ConfigError(f"Section {name!r} must be an object")
    base = {k: [] if isinstance(v, list) else v for k, v in defaults.items()}
    return {**base, **value}


def build_config(raw: Any) -> Config:
    if not isinstance(raw, dict):
        raise ConfigError("Configuration root must be an object")

    monitoring = _section(raw, "monitoring")
    exclusions = _section(raw, "exclusions")
    api = _section(raw, "api")
    notifications = _section(raw, "notifications")

    start = _parse_date(monitoring.get("startDate"))
    end = _parse_date(monitoring.get("endDate"))
    if end < start:
        raise ConfigError("endDate is before startDate")

    interval = int(_number(monitoring, "checkIntervalMinutes"))
    if interval <= 0:
        raise ConfigError("checkIntervalMinutes must be positive")

    max_attempts = int(_number(api, "maxAttempts"))
    if max_attempts < 1:
        raise ConfigError("maxAttempts must be at least 1")

    limit = api.get("limit")
    if limit is not None:
        limit = int(_number(api, "limit"))

    return Config(
        start_date=start,
        end_date=end,
        price_threshold=_number(monitoring, "priceThreshold"),
        check_interval_minutes=interval,
        excluded_codes=_string_set(exclusions, "hotelCodes"),
        excluded_suffixes=_string_set(exclusions, "suffixes"),
        threshold_overrides=_parse_overrides(monitoring.get("thresholdOverrides")),
        api_base_url=str(api.get("baseUrl") or DEFAULT_API_URL),
        api_timeout_seconds=_number(api, "timeout") / 1000,
        user_agent=str(api.get("userAgent") or DEFAULT_USER_AGENT),
        max_attempts=max_attempts,
        backoff_base_seconds=_number(api, "backoffBaseMs") / 1000,
        api_limit=limit,
        webhook_url=str(notifications.get("discordWebhook") or "").strip(),
        console_alerts=bool(notifications.get("console")),
        notify_on_startup=bool(notifications.get("startup")),
        notify_on_error=bool(notifications.get("errors")),
        rate_limit_cooldown_seconds=_number(notifications, "rateLimitCooldownMs") / 1000,
        notify_min_interval_seconds=_number(notifications, "minIntervalMs") / 1000,
    )


def _apply_env_overrides(cfg: Config) -> Config:
    changes: dict[str, Any] = {}
    webhook = os.getenv("DISCORD_WEBHOOK_URL", "").strip()
    if webhook:
        changes["webhook_url"] = webhook
    if os.getenv("RUN_ONCE", "").strip():
        changes["run_once"] = os.getenv("RUN_ONCE", "").lower() == "true"
    return dataclasses.replace(cfg, **changes) if changes else cfg


def load_config(path: str | Path | None = None) -> Config:
    _load_env_file()
    config_path = Path(path or os.getenv("CONFIG_FILE", "config.json"))
    try:
        raw = json.loads(config_path.read_text(encoding="utf-8"))
        cfg = build_config(raw)
    except (OSError, ValueError) as exc:
        log.error("Error loading %s: %s", config_path, exc)
        log.info("Using default configuration.")
        cfg = build_config(DEFAULT_CONFIG)
    return _apply_env_overrides(cfg)


# ---------------------------------------------------------------------------
# Scheduler
# ---------------------------------------------------------------------------
class Scheduler:
    """Run *job* now, then again *interval_seconds* after each run finishes.

    A trigger that arrives while a cycle is still running is skipped.
    ``stop`` only sets a flag, so it is safe to call from a signal handler;
    the wait between cycles polls that flag.
    """

    def __init__(self, job: Callable[[], Any], interval_seconds: float) -> None:
        self.job = job
        self.interval_seconds = interval_seconds
        self.next_check_at: datetime | None = None
        self._cycle_lock = threading.Lock()
        self._stop_requested = False

    @property
    def stopped(self) -> bool:
        return self._stop_requested

    def trigger(self) -> bool:
        """Run one cycle unless one is already in progress."""
        if not self._cycle_lock.acquire(blocking=False):
            log.warning("Previous check cycle still running; skipping trigger.")
            return False
        try:
            self.job()
        except Exception:
            log.exception("Check cycle failed.")
        finally:
            self.next_check_at = datetime.now() + timedelta(seconds=self.interval_seconds)
            self._cycle_lock.release()
        return True

    def run(self, run_once: bool = False) -> None:
        while not self._stop_requested:
            self.trigger()
            if run_once:
                log.info("RUN_ONCE=true; exiting after one cycle.")
                break
            wait = max(0.0, (self.next_check_at - datetime.now()).total_seconds())
            log.info(
                "Next check at %s (in %d minutes).",
                self.next_check_at.strftime("%H:%M:%S"),
                round(wait / 60),
            )
            pause(wait, lambda: self._stop_requested)

    def stop(self) -> None:
        self._stop_requested = True


def _install_signal_handlers(scheduler: Scheduler) -> None:
    def _handle(signum: int, frame: Any) -> None:
        log.info("Received %s; stopping monitor.", signal.Signals(signum).name)
        scheduler.stop()

    signal.signal(signal.SIGINT, _handle)
    signal.signal(signal.SIGTERM, _handle)


def _log_startup(cfg: Config) -> None:
    log.info("Yellowstone Hotel Price Monitor initialized.")
    log.info(
        "Monitoring dates: %s",
        ", ".join(format_api_date(d) for d in cfg.dates),
    )
    log.info("Alert threshold: $%.2f", cfg.price_threshold)
    for override in cfg.threshold_overrides:
        log.info(
            "Override: %s on %s below $%.2f",
            override.hotel_code,
            format_api_date(override.date),
            override.threshold,
        )
    log.info(
        "Excluded hotels: %s; suffixes: %s",
        ", ".join(sorted(cfg.excluded_codes)) or "none",
        ", ".join(sorted(cfg.excluded_suffixes)) or "none",
    )
    log.info("Checking every %d minutes.", cfg.check_interval_minutes)


def main() -> int:
    cfg = load_config()
    _log_startup(cfg)

    history = PriceHistory()
    notifier = WebhookNotifier(
        cfg.webhook_url,
        cooldown_seconds=cfg.rate_limit_cooldown_seconds,
        min_interval_seconds=cfg.notify_min_interval_seconds,
        user_agent=cfg.user_agent,
    )
    notifier.start()
    if cfg.notify_on_startup:
        notifier.notify(build_startup_message(cfg), "info")

    scheduler = Scheduler(
        lambda: run_cycle(cfg, history, notifier, lambda: scheduler.stopped),
        cfg.check_interval_minutes * 60,
    )
    _install_signal_handlers(scheduler)
    scheduler.run(run_once=cfg.run_once)

    if scheduler.stopped:
        notifier.stop(timeout=1.0)
    else:
        notifier.stop(drain=True)
    log.info("Monitor stopped.")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
