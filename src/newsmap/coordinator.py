from __future__ import annotations

import logging
import os
import time
import uuid
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeoutError
from dataclasses import asdict
from datetime import timedelta
from typing import Any, Callable, TypeVar

from .content import ContentSource
from .hooks import NO_HOOKS, SitemapHooks
from .models import Article, BuildMeta, CacheEntry, RenderState, SitemapConfig
from .sitemap import empty_sitemap, render_sitemap
from .storage import (
    delete_cache_entry,
    delete_setting,
    get_cache_entry,
    get_setting,
    held_lease,
    set_cache_entry,
    set_setting,
)
from .utils import content_hash, log_event, utc_now, utc_now_iso

CACHE_KEY = "news_sitemap"
BUILD_META_KEY = "sitemap.last_build"
BUILD_FAILURE_KEY = "sitemap.last_failure"
DEFAULT_LOCK_TTL_SECONDS = 120
DEFAULT_BUILD_TIMEOUT_SECONDS = 10

T = TypeVar("T")


class BuildTimeoutError(TimeoutError):
    pass


class BuildCoordinator:
    """Sole writer of the sitemap cache entry and its build metadata.

    Readers go through :meth:`get_or_build`; schedulers and operators go
    through :meth:`force_rebuild`. Both hold the build lease while writing,
    so at most one build per cache key stores its output at a time.
    """

    def __init__(
        self,
        conn: Any,
        config: SitemapConfig,
        source: ContentSource,
        *,
        hooks: SitemapHooks = NO_HOOKS,
        key: str = CACHE_KEY,
        holder: str | None = None,
        lock_ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS,
        build_timeout_seconds: float = DEFAULT_BUILD_TIMEOUT_SECONDS,
        logger: logging.Logger | None = None,
    ) -> None:
        self.conn = conn
        self.config = config
        self.source = source
        self.hooks = hooks
        self.key = key
        self.holder = holder or f"{os.getpid()}-{uuid.uuid4().hex[:8]}"
        self.lock_ttl_seconds = lock_ttl_seconds
        self.build_timeout_seconds = build_timeout_seconds
        self.logger = logger or logging.getLogger("newsmap.coordinator")

    @property
    def lock_name(self) -> str:
        return f"sitemap_build:{self.key}"

    def get_or_build(self, state: RenderState | None = None) -> CacheEntry:
        state = state if state is not None else RenderState()
        if state.rendered and state.entry is not None:
            return state.entry

        entry = self._read_cache(state)
        if entry is None:
            state.cache_status = "miss"
            with held_lease(self.conn, self.lock_name, self.holder, self.lock_ttl_seconds) as acquired:
                if acquired:
                    entry, _ = self._build_and_store(trigger="read")
                else:
                    log_event(self.logger, logging.INFO, "sitemap_build_busy", key=self.key)
                    state.cache_status = "busy"
                    entry = self._render_unstored()
            state.built = True

        state.rendered = True
        state.entry = entry
        return entry

    def force_rebuild(self, trigger: str = "manual") -> BuildMeta:
        if not self.config.enabled:
            log_event(self.logger, logging.INFO, "sitemap_rebuild_disabled", key=self.key)
            return BuildMeta(status="disabled", generated_at=None, count=0, took_ms=0)
        with held_lease(self.conn, self.lock_name, self.holder, self.lock_ttl_seconds) as acquired:
            if not acquired:
                log_event(
                    self.logger,
                    logging.INFO,
                    "sitemap_rebuild_skipped",
                    key=self.key,
                    trigger=trigger,
                    reason="build_in_progress",
                )
                return BuildMeta(status="skipped", generated_at=None, count=0, took_ms=0)
            _, meta = self._build_and_store(trigger=trigger)
        return meta

    def build_document(self) -> tuple[str, int]:
        return self._run_with_timeout(self._collect_and_render)

    def purge(self) -> bool:
        removed = delete_cache_entry(self.conn, self.key)
        log_event(self.logger, logging.INFO, "sitemap_cache_purged", key=self.key, removed=removed)
        return removed

    def collect_articles(self) -> list[Article]:
        after = utc_now() - timedelta(hours=self.config.window_hours)
        try:
            article_ids = self.source.query_recent(
                self.config.post_types,
                after,
                self.config.max_urls,
                self.config.excluded_terms,
            )
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "content_query_failed", error=str(exc))
            return []
        articles: list[Article] = []
        for article_id in article_ids:
            try:
                article = self.source.fetch(article_id)
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.WARNING,
                    "content_fetch_failed",
                    article_id=article_id,
                    error=str(exc),
                )
                continue
            if article is not None:
                articles.append(article)
        return articles

    def _collect_and_render(self) -> tuple[str, int]:
        with self.source.session():
            articles = self.collect_articles()
        if not articles:
            return empty_sitemap(self.config), 0
        return render_sitemap(articles, self.config, self.source.get_site_host(), self.hooks)

    def _read_cache(self, state: RenderState) -> CacheEntry | None:
        entry = get_cache_entry(self.conn, self.key)
        if entry is None:
            return None
        if not _is_valid_payload(entry.payload):
            log_event(self.logger, logging.WARNING, "sitemap_cache_corrupt", key=self.key)
            delete_cache_entry(self.conn, self.key)
            state.cache_status = "corrupt"
            return self._entry(empty_sitemap(self.config), 0, 0)
        state.cache_status = "hit"
        return entry

    def _build_and_store(self, trigger: str) -> tuple[CacheEntry, BuildMeta]:
        start = time.monotonic()
        try:
            xml, count = self._run_with_timeout(self._collect_and_render)
        except BuildTimeoutError:
            took_ms = _elapsed_ms(start)
            entry = self._store(self._timeout_fallback(took_ms))
            meta = self._record_failure("timeout", "build timed out", took_ms, trigger)
            return entry, meta
        except Exception as exc:  # noqa: BLE001
            took_ms = _elapsed_ms(start)
            entry = self._store(self._entry(empty_sitemap(self.config), 0, took_ms))
            meta = self._record_failure("failed", str(exc), took_ms, trigger)
            return entry, meta

        took_ms = _elapsed_ms(start)
        entry = self._store(self._entry(xml, count, took_ms))
        meta = BuildMeta(
            status="ok",
            generated_at=entry.generated_at,
            count=entry.article_count,
            took_ms=entry.took_ms,
            etag=entry.etag,
        )
        set_setting(self.conn, BUILD_META_KEY, asdict(meta))
        log_event(
            self.logger,
            logging.INFO,
            "sitemap_built",
            key=self.key,
            trigger=trigger,
            count=count,
            took_ms=took_ms,
            etag=entry.etag[:12],
        )
        return entry, meta

    def _render_unstored(self) -> CacheEntry:
        start = time.monotonic()
        try:
            xml, count = self._run_with_timeout(self._collect_and_render)
        except Exception as exc:  # noqa: BLE001
            log_event(self.logger, logging.WARNING, "sitemap_render_failed", error=str(exc))
            xml, count = empty_sitemap(self.config), 0
        return self._entry(xml, count, _elapsed_ms(start))

    def _timeout_fallback(self, took_ms: int) -> CacheEntry:
        previous = get_cache_entry(self.conn, self.key, include_expired=True)
        if previous is not None and _is_valid_payload(previous.payload):
            log_event(self.logger, logging.WARNING, "sitemap_timeout_fallback", source="last_good")
            return previous
        log_event(self.logger, logging.WARNING, "sitemap_timeout_fallback", source="empty")
        return self._entry(empty_sitemap(self.config), 0, took_ms)

    def _record_failure(self, status: str, error: str, took_ms: int, trigger: str) -> BuildMeta:
        meta = BuildMeta(
            status=status,
            generated_at=utc_now_iso(),
            count=0,
            took_ms=took_ms,
            error=error,
        )
        set_setting(self.conn, BUILD_FAILURE_KEY, asdict(meta))
        log_event(
            self.logger,
            logging.ERROR,
            "sitemap_build_failed",
            key=self.key,
            trigger=trigger,
            status=status,
            error=error,
        )
        return meta

    def _store(self, entry: CacheEntry) -> CacheEntry:
        return set_cache_entry(self.conn, entry, self.config.cache_ttl)

    def _entry(self, xml: str, count: int, took_ms: int) -> CacheEntry:
        return CacheEntry(
            key=self.key,
            payload=xml,
            etag=content_hash(xml),
            generated_at=utc_now_iso(),
            article_count=count,
            took_ms=took_ms,
        )

    def _run_with_timeout(self, func: Callable[[], T]) -> T:
        if not self.build_timeout_seconds or self.build_timeout_seconds <= 0:
            return func()
        executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="sitemap-build")
        future = executor.submit(func)
        try:
            return future.result(timeout=self.build_timeout_seconds)
        except FutureTimeoutError:
            future.cancel()
            raise BuildTimeoutError(
                f"sitemap build exceeded {self.build_timeout_seconds}s"
            ) from None
        finally:
            executor.shutdown(wait=False)


def get_build_meta(conn: Any) -> BuildMeta | None:
    return _meta_from_setting(get_setting(conn, BUILD_META_KEY, None))


def get_last_failure(conn: Any) -> BuildMeta | None:
    return _meta_from_setting(get_setting(conn, BUILD_FAILURE_KEY, None))


def clear_build_meta(conn: Any) -> None:
    delete_setting(conn, BUILD_META_KEY)
    delete_setting(conn, BUILD_FAILURE_KEY)


def _meta_from_setting(value: object) -> BuildMeta | None:
    if not isinstance(value, dict):
        return None
    try:
        return BuildMeta(
            status=str(value.get("status") or "ok"),
            generated_at=value.get("generated_at"),
            count=int(value.get("count") or 0),
            took_ms=int(value.get("took_ms") or 0),
            etag=value.get("etag"),
            error=value.get("error"),
        )
    except (TypeError, ValueError):
        return None


def _is_valid_payload(payload: object) -> bool:
    return isinstance(payload, str) and payload.lstrip().startswith("<?xml")


def _elapsed_ms(start: float) -> int:
    return int(round((time.monotonic() - start) * 1000))
