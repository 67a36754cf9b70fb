# tests/test_notifier.py
import json
import urllib.error
from unittest.mock import call, patch

from monitor import LEVEL_COLORS, WebhookNotifier

from conftest import http_response

WEBHOOK = "https://discord.example/api/webhooks/1/abc"


def _notifier(**kwargs) -> WebhookNotifier:
    kwargs.setdefault("min_interval_seconds", 0)
    return WebhookNotifier(WEBHOOK, **kwargs)


def _body(mock_open, index=0) -> dict:
    return json.loads(mock_open.call_args_list[index][0][0].data.decode("utf-8"))


def _rate_limited() -> urllib.error.HTTPError:
    return urllib.error.HTTPError(WEBHOOK, 429, "Too Many Requests", None, None)


def test_notify_only_enqueues():
    """Should return without posting anything"""
    notifier = _notifier()

    with patch("monitor.urllib.request.urlopen") as mock_open:
        notifier.notify("hello", "alert")

        mock_open.assert_not_called()
        assert notifier.pending == 1


def test_notify_without_webhook_is_noop():
    """Should skip when no webhook URL is configured"""
    notifier = WebhookNotifier("")

    notifier.notify("hello", "alert")

    assert notifier.pending == 0


def test_drain_posts_embed():
    """Should POST a titled, colored, timestamped embed"""
    notifier = _notifier()
    notifier.notify("**Price Alert!**", "alert")

    with patch("monitor.urllib.request.urlopen") as mock_open:
        mock_open.return_value = http_response(b"")
        notifier.drain()

        request = mock_open.call_args[0][0]
        assert request.full_url == WEBHOOK
        assert request.get_method() == "POST"
        embed = _body(mock_open)["embeds"][0]
        assert embed["description"] == "**Price Alert!**"
        assert embed["color"] == LEVEL_COLORS["alert"]
        assert embed["title"]
        assert embed["timestamp"]
        assert embed["footer"]["text"]
        assert notifier.pending == 0


def test_level_colors():
    notifier = _notifier()
    for level in ("info", "error", "bogus"):
        notifier.notify(level, level)

    with patch("monitor.urllib.request.urlopen") as mock_open:
        mock_open.return_value = http_response(b"")
        notifier.drain()

        colors = [_body(mock_open, i)["embeds"][0]["color"] for i in range(3)]
        assert colors == [0x3498DB, 0xE67E22, 0x3498DB]


def test_rate_limit_waits_and_requeues():
    """Should wait the cooldown and retry the same message first"""
    notifier = _notifier(cooldown_seconds=5.0)
    notifier.notify("first", "alert")
    notifier.notify("second", "alert")

    with patch("monitor.urllib.request.urlopen") as mock_open, patch(
        "monitor.time.sleep"
    ) as mock_sleep:
        mock_open.side_effect = [_rate_limited(), http_response(b""), http_response(b"")]
        notifier.drain()

        descriptions = [
            _body(mock_open, i)["embeds"][0]["description"] for i in range(3)
        ]
        assert descriptions == ["first", "first", "second"]
        assert call(5.0) in mock_sleep.call_args_list
        assert notifier.pending == 0


def test_other_failures_drop_the_message():
    """Should log and drop on non-429 errors"""
    notifier = _notifier()
    notifier.notify("lost", "alert")

    with patch("monitor.urllib.request.urlopen") as mock_open:
        mock_open.side_effect = urllib.error.HTTPError(WEBHOOK, 400, "Bad", None, None)
        notifier.drain()

        mock_open.assert_called_once()
        assert notifier.pending == 0


def test_send_reports_failure():
    notifier = _notifier()

    with patch("monitor.urllib.request.urlopen") as mock_open:
        mock_open.side_effect = urllib.error.URLError("unreachable")
        assert notifier.send("x", "info") is False


def test_worker_delivers_queued_messages():
    """Should deliver from the background worker and drain on stop"""
    notifier = _notifier()

    with patch("monitor.urllib.request.urlopen") as mock_open:
        mock_open.return_value = http_response(b"")
        notifier.start()
        notifier.notify("one", "info")
        notifier.notify("two", "alert")
        notifier.stop(drain=True, timeout=5)

        assert mock_open.call_count == 2
        assert notifier.pending == 0


def test_stop_without_drain_discards_queue():
    """Should abandon queued messages on shutdown"""
    notifier = _notifier()
    notifier.notify("one", "info")
    notifier.notify("two", "info")

    with patch("monitor.urllib.request.urlopen") as mock_open:
        notifier.stop()

        mock_open.assert_not_called()
        assert notifier.pending == 0
