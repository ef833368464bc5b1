import requests

from db_to_db_sync import alerts
from db_to_db_sync.alerts import DISCORD_LIMIT, send_discord_alert


class _Response:
    def __init__(self, status_code, text=""):
        self.status_code = status_code
        self.text = text


def test_no_webhook_skips():
    assert send_discord_alert("hello", None) is False
    assert send_discord_alert("hello", "") is False


def test_posts_truncated_payload(monkeypatch):
    sent = {}

    def fake_post(url, json, timeout):
        sent.update(url=url, json=json, timeout=timeout)
        return _Response(204)

    monkeypatch.setattr(alerts.requests, "post", fake_post)
    assert send_discord_alert("x" * 5000, "https://discord.test/hook", avatar_url="https://img.test/a.png")
    assert len(sent["json"]["content"]) <= DISCORD_LIMIT
    assert sent["json"]["content"].endswith("(truncated)")
    assert sent["json"]["username"] == "Database Sync Alert"
    assert sent["json"]["avatar_url"] == "https://img.test/a.png"
    assert sent["timeout"] == 10


def test_failures_are_reported_not_raised(monkeypatch):
    monkeypatch.setattr(alerts.requests, "post", lambda *a, **kw: _Response(500, "oops"))
    assert send_discord_alert("hi", "https://discord.test/hook") is False

    def boom(*a, **kw):
        raise requests.ConnectionError("down")

    monkeypatch.setattr(alerts.requests, "post", boom)
    assert send_discord_alert("hi", "https://discord.test/hook") is False
