from http.client import BadStatusLine
from urllib.error import HTTPError, URLError

from newsmap import notifier as notifier_module
from newsmap.notifier import PING_RECORD_KEY, Notifier, get_ping_record
from newsmap.storage import init_db, set_setting
from newsmap.utils import utc_now_iso_offset

SITEMAP_URL = "https://news.example.com/news-sitemap.xml"


class _FakeResponse:
    def __init__(self, status: int = 200) -> None:
        self.status = status

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def getcode(self) -> int:
        return self.status


def _patch_urlopen(monkeypatch, handler=None):
    calls = []

    def fake_urlopen(request, timeout=None):
        calls.append((request.full_url, timeout, request.get_header("User-agent")))
        if handler is not None:
            return handler(request)
        return _FakeResponse(200)

    monkeypatch.setattr(notifier_module, "urlopen", fake_urlopen)
    return calls


def _notifier(tmp_path, **kwargs) -> Notifier:
    conn = init_db(str(tmp_path / "state.sqlite3"))
    return Notifier(conn, SITEMAP_URL, **kwargs)


def test_ping_hits_each_endpoint_with_encoded_sitemap_url(tmp_path, monkeypatch):
    calls = _patch_urlopen(monkeypatch)
    notifier = _notifier(tmp_path)

    result = notifier.notify()

    assert result["status"] == "ok"
    assert sorted(call[0] for call in calls) == [
        "https://www.bing.com/ping?sitemap=https%3A%2F%2Fnews.example.com%2Fnews-sitemap.xml",
        "https://www.google.com/ping?sitemap=https%3A%2F%2Fnews.example.com%2Fnews-sitemap.xml",
    ]
    assert all(call[1] == 10 for call in calls)
    assert all(call[2] == "newsmap/0.1" for call in calls)
    assert result["results"]["google"] == {"ok": True, "status": 200, "error": None}
    record = get_ping_record(notifier.conn)
    assert record.pinged_at == result["pinged_at"]
    assert set(record.results) == {"google", "bing"}


def test_second_ping_within_cooldown_is_throttled(tmp_path, monkeypatch):
    calls = _patch_urlopen(monkeypatch)
    notifier = _notifier(tmp_path)

    first = notifier.notify()
    stamp = get_ping_record(notifier.conn).pinged_at
    second = notifier.notify()

    assert first["status"] == "ok"
    assert second["status"] == "throttled"
    assert second["results"] == {}
    assert len(calls) == 2
    assert get_ping_record(notifier.conn).pinged_at == stamp


def test_forced_ping_bypasses_cooldown(tmp_path, monkeypatch):
    calls = _patch_urlopen(monkeypatch)
    notifier = _notifier(tmp_path)

    notifier.notify()
    forced = notifier.notify(force=True)

    assert forced["status"] == "ok"
    assert len(calls) == 4


def test_ping_allowed_again_after_cooldown(tmp_path, monkeypatch):
    calls = _patch_urlopen(monkeypatch)
    notifier = _notifier(tmp_path)
    set_setting(
        notifier.conn,
        PING_RECORD_KEY,
        {"pinged_at": utc_now_iso_offset(seconds=-301), "results": {}},
    )

    result = notifier.notify()

    assert result["status"] == "ok"
    assert len(calls) == 2


def test_endpoint_failures_are_recorded_not_raised(tmp_path, monkeypatch):
    def handler(request):
        if "google" in request.full_url:
            raise HTTPError(request.full_url, 503, "unavailable", hdrs=None, fp=None)
        raise URLError("connection refused")

    _patch_urlopen(monkeypatch, handler)
    notifier = _notifier(tmp_path)

    result = notifier.notify()

    assert result["status"] == "ok"
    assert result["results"]["google"] == {"ok": False, "status": 503, "error": "HTTP 503"}
    assert result["results"]["bing"]["ok"] is False
    assert result["results"]["bing"]["status"] is None
    assert "connection refused" in result["results"]["bing"]["error"]
    stored = get_ping_record(notifier.conn)
    assert stored.results["google"]["status"] == 503


def test_explicit_endpoint_set(tmp_path, monkeypatch):
    calls = _patch_urlopen(monkeypatch)
    notifier = _notifier(tmp_path)

    result = notifier.notify({"internal": "https://ping.example.org/?u="})

    assert list(result["results"]) == ["internal"]
    assert calls[0][0].startswith("https://ping.example.org/?u=https%3A%2F%2F")


def test_malformed_response_is_recorded_not_raised(tmp_path, monkeypatch):
    def handler(request):
        raise BadStatusLine("GARBAGE")

    _patch_urlopen(monkeypatch, handler)
    notifier = _notifier(tmp_path)

    result = notifier.notify(force=True)

    assert result["status"] == "ok"
    assert result["results"]["google"] == {"ok": False, "status": None, "error": "GARBAGE"}
    assert get_ping_record(notifier.conn).results["bing"]["ok"] is False


def test_unusable_endpoint_url_is_recorded(tmp_path, monkeypatch):
    calls = _patch_urlopen(monkeypatch)
    notifier = _notifier(tmp_path)

    result = notifier.notify({"broken": "not-a-url?sitemap="})

    assert calls == []
    assert result["results"]["broken"]["ok"] is False
    assert result["results"]["broken"]["status"] is None
    assert get_ping_record(notifier.conn) is not None
