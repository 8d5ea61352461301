from __future__ import annotations

import logging
from http.client import HTTPException
from typing import Any, Mapping
from urllib.error import HTTPError, URLError
from urllib.parse import quote
from urllib.request import Request, urlopen

from .models import PingRecord
from .storage import get_setting, set_setting
from .utils import log_event, parse_datetime, utc_now, utc_now_iso

PING_ENDPOINTS = {
    "google": "https://www.google.com/ping?sitemap=",
    "bing": "https://www.bing.com/ping?sitemap=",
}
PING_RECORD_KEY = "sitemap.last_ping"
PING_COOLDOWN_SECONDS = 300
PING_TIMEOUT_SECONDS = 10


class Notifier:
    """Best-effort search engine ping for a freshly built sitemap.

    One attempt per endpoint, no retries. Calls inside the cool-down window
    are skipped unless forced, and leave the stored ping record untouched.
    """

    def __init__(
        self,
        conn: Any,
        sitemap_url: str,
        *,
        endpoints: Mapping[str, str] | None = None,
        timeout_seconds: int = PING_TIMEOUT_SECONDS,
        cooldown_seconds: int = PING_COOLDOWN_SECONDS,
        user_agent: str = "newsmap/0.1",
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.sitemap_url = sitemap_url
        self.endpoints = dict(endpoints if endpoints is not None else PING_ENDPOINTS)
        self.timeout_seconds = timeout_seconds
        self.cooldown_seconds = cooldown_seconds
        self.user_agent = user_agent
        self.logger = logger or logging.getLogger("newsmap.notifier")

    def notify(
        self,
        endpoints: Mapping[str, str] | None = None,
        force: bool = False,
    ) -> dict[str, Any]:
        previous = get_ping_record(self.conn)
        if not force and self._in_cooldown(previous):
            log_event(
                self.logger,
                logging.INFO,
                "sitemap_ping_throttled",
                last_pinged_at=previous.pinged_at if previous else None,
            )
            return {
                "status": "throttled",
                "pinged_at": previous.pinged_at if previous else None,
                "results": {},
            }

        targets = dict(endpoints) if endpoints is not None else self.endpoints
        results = {name: self._ping(name, base) for name, base in targets.items()}
        record = PingRecord(pinged_at=utc_now_iso(), results=results)
        set_setting(self.conn, PING_RECORD_KEY, {"pinged_at": record.pinged_at, "results": results})
        return {"status": "ok", "pinged_at": record.pinged_at, "results": results}

    def _in_cooldown(self, previous: PingRecord | None) -> bool:
        if previous is None or not previous.pinged_at:
            return False
        last = parse_datetime(previous.pinged_at)
        if last is None:
            return False
        return (utc_now() - last).total_seconds() < self.cooldown_seconds

    def _ping(self, name: str, base: str) -> dict[str, object]:
        url = base + quote(self.sitemap_url, safe="")
        try:
            request = Request(url, headers={"User-Agent": self.user_agent})
            with urlopen(request, timeout=self.timeout_seconds) as response:
                code = getattr(response, "status", None) or response.getcode()
        except HTTPError as exc:
            result: dict[str, object] = {"ok": False, "status": exc.code, "error": f"HTTP {exc.code}"}
        except (URLError, OSError, HTTPException, ValueError) as exc:
            reason = getattr(exc, "reason", exc)
            result = {"ok": False, "status": None, "error": str(reason)}
        else:
            result = {"ok": 200 <= int(code) < 300, "status": int(code), "error": None}
        log_event(
            self.logger,
            logging.INFO if result["ok"] else logging.WARNING,
            "sitemap_ping",
            endpoint=name,
            status=result["status"],
            error=result["error"],
        )
        return result


def get_ping_record(conn: Any) -> PingRecord | None:
    value = get_setting(conn, PING_RECORD_KEY, None)
    if not isinstance(value, dict):
        return None
    results = value.get("results")
    return PingRecord(
        pinged_at=value.get("pinged_at"),
        results=results if isinstance(results, dict) else {},
    )
