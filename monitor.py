"""
Hotel price monitor core: fetch, evaluate, notify.

One GET to the availability endpoint returns prices for the whole configured
date range.  Each (hotel, date) pair is checked against the exclusion rules,
the global threshold (or a per-date override) and the last price seen for
that pair.  Alerts go out through a Discord-compatible webhook on a
background worker so evaluation never waits on delivery.
"""

from __future__ import annotations

import http.client
import json
import logging
import math
import threading
import time
import urllib.error
import urllib.parse
import urllib.request
from collections import deque
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterator

log = logging.getLogger(__name__)

# The availability API keys its payload by US-style dates.
API_DATE_FORMAT = "%m/%d/%Y"

DEFAULT_API_URL = (
    "https://webapi.xanterra.net/v1/api/availability/hotels/"
    "yellowstonenationalparklodges"
)
DEFAULT_USER_AGENT = "Yellowstone-Hotel-Monitor/1.0.0"

EMBED_TITLE = "Yellowstone Hotel Monitor"
EMBED_FOOTER = "Yellowstone Hotel Price Monitor"
# Longest single sleep while waiting on a stop request.
STOP_POLL_SECONDS = 0.5

LEVEL_COLORS: dict[str, int] = {
    "info": 0x3498DB,
    "alert": 0xE74C3C,
    "error": 0xE67E22,
}


class FetchError(Exception):
    """The availability endpoint could not be read this cycle."""


class RateLimitedError(Exception):
    """The webhook answered HTTP 429."""


# ---------------------------------------------------------------------------
# Data model
# ---------------------------------------------------------------------------
@dataclass(frozen=True)
class ThresholdOverride:
    """A lower (or higher) threshold for one hotel on one date.

    An override also lifts the exclusion rules for that pair, so a hotel that
    is normally ignored can still be watched on a single night.
    """

    hotel_code: str
    date: date
    threshold: float


@dataclass(frozen=True)
class Config:
    start_date: date
    end_date: date
    price_threshold: float
    check_interval_minutes: int = 30
    excluded_codes: frozenset[str] = frozenset()
    excluded_suffixes: frozenset[str] = frozenset()
    threshold_overrides: tuple[ThresholdOverride, ...] = ()
    api_base_url: str = DEFAULT_API_URL
    api_timeout_seconds: float = 5.0
    user_agent: str = DEFAULT_USER_AGENT
    max_attempts: int = 5
    backoff_base_seconds: float = 1.0
    api_limit: int | None = None  # None → number of days in the range
    webhook_url: str = ""
    console_alerts: bool = True
    notify_on_startup: bool = True
    notify_on_error: bool = True
    rate_limit_cooldown_seconds: float = 5.0
    notify_min_interval_seconds: float = 2.0
    run_once: bool = False

    @property
    def dates(self) -> list[date]:
        return date_range(self.start_date, self.end_date)

    def override_for(self, hotel_code: str, day: date) -> float | None:
        for override in self.threshold_overrides:
            if override.hotel_code == hotel_code and override.date == day:
                return override.threshold
        return None


@dataclass(frozen=True)
class PriceObservation:
    hotel_code: str
    date: date
    min_price: Any
    max_price: Any
    status: str


@dataclass(frozen=True)
class Alert:
    """One notification-worthy finding.

    kind     : "threshold" | "special" | "drop"
               "special" is a threshold alert raised against an override.
    threshold: the threshold that was crossed (threshold/special only)
    previous_price, savings: set for drop alerts only
    """

    kind: str
    observation: PriceObservation
    threshold: float | None = None
    previous_price: float | None = None
    savings: float | None = None


class PriceHistory:
    """Last-seen minimum price per (hotel code, date).

    Lives in memory for the process lifetime.  Entries are overwritten, never
    removed.
    """

    def __init__(self) -> None:
        self._prices: dict[tuple[str, date], float] = {}

    def get(self, hotel_code: str, day: date) -> float | None:
        return self._prices.get((hotel_code, day))

    def record(self, hotel_code: str, day: date, price: float) -> None:
        self._prices[(hotel_code, day)] = price

    def __contains__(self, key: object) -> bool:
        return key in self._prices

    def __len__(self) -> int:
        return len(self._prices)


# ---------------------------------------------------------------------------
# Date helpers
# ---------------------------------------------------------------------------
def date_range(start: date, end: date) -> list[date]:
    """Every day from *start* to *end*, inclusive.  Empty when end < start."""
    days = (end - start).days
    return [start + timedelta(days=i) for i in range(days + 1)]


def format_api_date(day: date) -> str:
    return day.strftime(API_DATE_FORMAT)


# ---------------------------------------------------------------------------
# HTTP helpers
# ---------------------------------------------------------------------------
class RequestPacer:
    """Enforces a minimum interval between outbound requests."""

    def __init__(self, min_interval: float) -> None:
        self.min_interval = max(0.0, min_interval)
        self._last_ts: float | None = None

    def pace(self) -> None:
        if self._last_ts is not None:
            wait = self.min_interval - (time.monotonic() - self._last_ts)
            if wait > 0:
                time.sleep(wait)
        self._last_ts = time.monotonic()


def _get_json(
    url: str, params: dict[str, str], headers: dict[str, str], timeout: float
) -> Any:
    full_url = f"{url}?{urllib.parse.urlencode(params)}"
    log.debug("GET %s", full_url)
    req = urllib.request.Request(full_url, headers=headers, method="GET")
    with urllib.request.urlopen(req, timeout=timeout) as resp:  # nosec B310
        return json.loads(resp.read().decode("utf-8"))


def _http_post(
    url: str, payload: dict[str, Any], extra_headers: dict[str, str] | None = None
) -> None:
    headers = {"Content-Type": "application/json", **(extra_headers or {})}
    req = urllib.request.Request(
        url,
        data=json.dumps(payload, separators=(",", ":")).encode("utf-8"),
        headers=headers,
        method="POST",
    )
    with urllib.request.urlopen(req, timeout=30):  # nosec B310
        pass


def pause(seconds: float, should_stop: Callable[[], bool] | None = None) -> bool:
    """Sleep for *seconds*.  Returns True if *should_stop* fired first."""
    if should_stop is None:
        time.sleep(seconds)
        return False
    deadline = time.monotonic() + seconds
    while not should_stop():
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            return False
        time.sleep(min(STOP_POLL_SECONDS, remaining))
    return True


def _is_timeout(exc: BaseException) -> bool:
    if isinstance(exc, TimeoutError):
        return True
    return isinstance(exc, urllib.error.URLError) and isinstance(
        exc.reason, TimeoutError
    )


# ---------------------------------------------------------------------------
# Fetcher
# ---------------------------------------------------------------------------
def build_query(cfg: Config, start_date: date) -> dict[str, str]:
    limit = cfg.api_limit if cfg.api_limit else len(cfg.dates)
    return {
        "date": format_api_date(start_date),
        "limit": str(limit),
        "is_group": "false",
    }


def fetch_availability(
    cfg: Config,
    start_date: date,
    should_stop: Callable[[], bool] | None = None,
) -> Any:
    """Fetch availability for the whole configured range in one request.

    Timeouts are retried with exponential backoff
    (``backoff_base_seconds * 2**attempt``); any other failure ends the
    retries at once.  Raises FetchError when no payload could be read, or
    as soon as *should_stop* returns True between attempts.
    """
    params = build_query(cfg, start_date)
    headers = {"User-Agent": cfg.user_agent, "Accept": "application/json"}

    for attempt in range(1, cfg.max_attempts + 1):
        if should_stop is not None and should_stop():
            raise FetchError("stopped")
        log.info("Fetching availability (attempt %d/%d)...", attempt, cfg.max_attempts)
        try:
            data = _get_json(cfg.api_base_url, params, headers, cfg.api_timeout_seconds)
        except (OSError, ValueError, http.client.HTTPException) as exc:
            if not _is_timeout(exc):
                raise FetchError(f"{type(exc).__name__}: {exc}") from exc
            if attempt == cfg.max_attempts:
                raise FetchError(
                    f"Timed out on all {cfg.max_attempts} attempts"
                ) from exc
            wait = cfg.backoff_base_seconds * 2**attempt
            log.warning(
                "Timeout on attempt %d/%d, retrying in %.1fs.",
                attempt,
                cfg.max_attempts,
                wait,
            )
            if pause(wait, should_stop):
                raise FetchError("stopped")
            continue

        log.info("Availability fetched on attempt %d.", attempt)
        return data

    raise FetchError("max_attempts must be at least 1")


def has_availability(payload: Any) -> bool:
    return isinstance(payload, dict) and isinstance(payload.get("availability"), dict)


# ---------------------------------------------------------------------------
# Evaluator
# ---------------------------------------------------------------------------
def should_exclude(hotel_code: str, cfg: Config) -> bool:
    return hotel_code in cfg.excluded_codes or any(
        hotel_code.endswith(suffix) for suffix in cfg.excluded_suffixes
    )


def _is_price(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value) and value > 0


def iter_observations(payload: Any, day: date) -> Iterator[PriceObservation]:
    """Yield one observation per hotel entry listed for *day*.

    A missing or malformed day is logged and yields nothing.
    """
    availability = payload.get("availability") if isinstance(payload, dict) else None
    hotels = (
        availability.get(format_api_date(day))
        if isinstance(availability, dict)
        else None
    )
    if not isinstance(hotels, dict):
        log.warning("No availability data found for %s.", format_api_date(day))
        return

    for code, entry in hotels.items():
        if not isinstance(entry, dict):
            log.warning("Skipping malformed entry for %s on %s.", code, format_api_date(day))
            continue
        yield PriceObservation(
            hotel_code=str(code),
            date=day,
            min_price=entry.get("min"),
            max_price=entry.get("max"),
            status=str(entry.get("status") or ""),
        )


def evaluate(
    payload: Any, dates: list[date], cfg: Config, history: PriceHistory
) -> list[Alert]:
    """Compare every open, priced observation against thresholds and history.

    History for a pair is written only after both comparisons ran, so a drop
    is always measured against the previous cycle's price.
    """
    alerts: list[Alert] = []

    for day in dates:
        threshold_hits = 0
        for obs in iter_observations(payload, day):
            if obs.status.upper() != "OPEN":
                continue

            override = cfg.override_for(obs.hotel_code, day)
            if override is None and should_exclude(obs.hotel_code, cfg):
                continue

            if not _is_price(obs.min_price):
                continue

            price = float(obs.min_price)
            threshold = cfg.price_threshold if override is None else override
            if price < threshold:
                kind = "threshold" if override is None else "special"
                log.info(
                    "%s alert: %s on %s at $%.2f (below $%.2f).",
                    kind.upper(),
                    obs.hotel_code,
                    format_api_date(day),
                    price,
                    threshold,
                )
                alerts.append(Alert(kind=kind, observation=obs, threshold=threshold))
                threshold_hits += 1

            previous = history.get(obs.hotel_code, day)
            if previous is not None and price < previous:
                savings = round(previous - price, 2)
                log.info(
                    "Price drop: %s on %s $%.2f -> $%.2f (saved $%.2f).",
                    obs.hotel_code,
                    format_api_date(day),
                    previous,
                    price,
                    savings,
                )
                alerts.append(
                    Alert(
                        kind="drop",
                        observation=obs,
                        previous_price=previous,
                        savings=savings,
                    )
                )

            history.record(obs.hotel_code, day, price)
            log.info(
                "%s on %s: $%s - $%s",
                obs.hotel_code,
                format_api_date(day),
                obs.min_price,
                obs.max_price,
            )

        if not threshold_hits:
            log.info(
                "No price alerts for %s; all monitored hotels at or above $%.2f.",
                format_api_date(day),
                cfg.price_threshold,
            )

    return alerts


# ---------------------------------------------------------------------------
# Messages
# ---------------------------------------------------------------------------
def _money(value: Any) -> str:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return f"${value:,.2f}"
    return "n/a"


def _now_local() -> str:
    return datetime.now().strftime("%Y-%m-%d %H:%M:%S")


def build_alert_message(alert: Alert) -> str:
    obs = alert.observation
    if alert.kind == "drop":
        lines = [
            "**Price Drop Alert!**",
            f"Hotel: {obs.hotel_code}",
            f"Date: {format_api_date(obs.date)}",
            f"Old Price: {_money(alert.previous_price)}",
            f"New Price: {_money(obs.min_price)}",
            f"Savings: {_money(alert.savings)}",
        ]
    elif alert.kind == "special":
        lines = [
            "**SPECIAL PRICE ALERT!**",
            f"Hotel: {obs.hotel_code}",
            f"Date: {format_api_date(obs.date)}",
            f"Price: {_money(obs.min_price)}",
            f"Status: Below {_money(alert.threshold)} threshold!",
        ]
    else:
        lines = [
            "**Price Alert!**",
            f"Hotel: {obs.hotel_code}",
            f"Date: {format_api_date(obs.date)}",
            f"Price Range: {_money(obs.min_price)} - {_money(obs.max_price)}",
            f"Status: Below {_money(alert.threshold)} threshold!",
        ]
    lines.append(f"Time: {_now_local()}")
    return "\n".join(lines)


def build_error_message(error: Exception) -> str:
    return (
        "**Price check failed**\n"
        f"{type(error).__name__}: {error}\n"
        f"Time: {_now_local()}"
    )


def build_startup_message(cfg: Config) -> str:
    return "\n".join(
        [
            "**Yellowstone Hotel Price Monitor Started**",
            "The monitor is now running and will check prices every "
            f"{cfg.check_interval_minutes} minutes.",
            "",
            f"Monitoring Dates: {format_api_date(cfg.start_date)} to "
            f"{format_api_date(cfg.end_date)}",
            f"Price Threshold: {_money(cfg.price_threshold)}",
            f"Local Time: {_now_local()}",
        ]
    )


def build_embed_payload(message: str, level: str) -> dict[str, Any]:
    return {
        "embeds": [
            {
                "title": EMBED_TITLE,
                "description": message,
                "color": LEVEL_COLORS.get(level, LEVEL_COLORS["info"]),
                "timestamp": datetime.now(timezone.utc).isoformat(),
                "footer": {"text": EMBED_FOOTER},
            }
        ]
    }


# ---------------------------------------------------------------------------
# Notifier
# ---------------------------------------------------------------------------
@dataclass
class PendingMessage:
    message: str
    level: str


class WebhookNotifier:
    """Queue-backed webhook sender.

    ``notify`` only enqueues.  A daemon worker (``start``) or an explicit
    ``drain`` delivers messages in order, at most one per
    ``min_interval_seconds``.  A 429 puts the message back at the head of
    the queue after ``cooldown_seconds``.  Nothing is persisted: whatever is
    still queued when the process exits is lost.
    """

    def __init__(
        self,
        webhook_url: str,
        cooldown_seconds: float = 5.0,
        min_interval_seconds: float = 2.0,
        user_agent: str = DEFAULT_USER_AGENT,
    ) -> None:
        self.webhook_url = webhook_url
        self.cooldown_seconds = cooldown_seconds
        self.user_agent = user_agent
        self._pacer = RequestPacer(min_interval_seconds)
        self._queue: deque[PendingMessage] = deque()
        self._cond = threading.Condition()
        self._stopping = False
        self._worker: threading.Thread | None = None

    @property
    def pending(self) -> int:
        with self._cond:
            return len(self._queue)

    def notify(self, message: str, level: str = "info") -> None:
        if not self.webhook_url:
            log.warning("Webhook URL not configured; %s notification not sent.", level)
            return
        with self._cond:
            self._queue.append(PendingMessage(message, level))
            self._cond.notify()

    def send(self, message: str, level: str = "info") -> bool:
        """Post one message now.  Raises RateLimitedError on HTTP 429."""
        self._pacer.pace()
        try:
            _http_post(
                self.webhook_url,
                build_embed_payload(message, level),
                {"User-Agent": self.user_agent},
            )
        except urllib.error.HTTPError as exc:
            if exc.code == 429:
                raise RateLimitedError("HTTP 429 from webhook") from exc
            log.error("Webhook notification failed: HTTP %s", exc.code)
            return False
        except (OSError, ValueError, http.client.HTTPException) as exc:
            log.error("Webhook notification failed: %s", exc)
            return False
        log.info("Webhook %s notification sent.", level)
        return True

    def _dispatch(self, item: PendingMessage) -> None:
        try:
            self.send(item.message, item.level)
        except RateLimitedError:
            log.warning(
                "Webhook rate limited; requeueing message after %.1fs.",
                self.cooldown_seconds,
            )
            time.sleep(self.cooldown_seconds)
            with self._cond:
                self._queue.appendleft(item)
                self._cond.notify()

    def drain(self) -> None:
        """Deliver everything queued, on the calling thread."""
        while True:
            with self._cond:
                if not self._queue:
                    return
                item = self._queue.popleft()
            self._dispatch(item)

    def _run(self) -> None:
        while True:
            with self._cond:
                while not self._queue and not self._stopping:
                    self._cond.wait()
                if not self._queue:
                    return
                item = self._queue.popleft()
            self._dispatch(item)

    def start(self) -> None:
        if self._worker is not None and self._worker.is_alive():
            return
        self._stopping = False
        self._worker = threading.Thread(
            target=self._run, name="webhook-notifier", daemon=True
        )
        self._worker.start()

    def stop(self, drain: bool = False, timeout: float | None = None) -> None:
        """Stop the worker.  Without *drain*, queued messages are discarded."""
        with self._cond:
            self._stopping = True
            if not drain and self._queue:
                log.warning("Discarding %d queued notification(s).", len(self._queue))
                self._queue.clear()
            self._cond.notify_all()
        if self._worker is not None:
            self._worker.join(timeout)


# ---------------------------------------------------------------------------
# Check cycle
# ---------------------------------------------------------------------------
def run_cycle(
    cfg: Config,
    history: PriceHistory,
    notifier: WebhookNotifier,
    should_stop: Callable[[], bool] | None = None,
) -> list[Alert]:
    """One fetch → evaluate → notify pass.  Never raises on missing data.

    *should_stop* abandons pending fetch retries (process shutdown).
    """
    log.info("=== Cycle start %s ===", datetime.now(timezone.utc).isoformat())

    try:
        payload = fetch_availability(cfg, cfg.start_date, should_stop)
    except FetchError as exc:
        if should_stop is not None and should_stop():
            log.info("Availability fetch abandoned; monitor stopping.")
            return []
        log.error("Availability fetch failed: %s", exc)
        if cfg.notify_on_error:
            notifier.notify(build_error_message(exc), "error")
        return []

    if not has_availability(payload):
        log.error("No availability data received.")
        return []

    alerts = evaluate(payload, cfg.dates, cfg, history)
    for alert in alerts:
        message = build_alert_message(alert)
        if cfg.console_alerts:
            log.info("\n%s", message)
        notifier.notify(message, "alert")

    log.info("=== Cycle complete: %d alert(s) ===", len(alerts))
    return alerts
