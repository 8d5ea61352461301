from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any

from ..config import (
    Config,
    get_runtime_config,
    get_state_db_path,
    load_runtime_config,
    sanitize_sitemap_settings,
    set_runtime_config,
    sitemap_config,
    sitemap_url,
)
from ..content import ContentSource, SqliteContentSource
from ..coordinator import BuildCoordinator, get_build_meta, get_last_failure
from ..hooks import NO_HOOKS, SitemapHooks
from ..models import SitemapConfig
from ..notifier import Notifier, get_ping_record
from ..scheduler import SITEMAP_JOB_TYPES, on_settings_updated
from ..sitemap import index_entry, validate_sitemap
from ..storage import get_cache_entry, get_lease_holder, list_article_post_types, list_jobs
from ..utils import utc_now


@dataclass(frozen=True)
class SitemapRuntime:
    conn: Any
    config: Config
    sitemap: SitemapConfig
    source: ContentSource
    coordinator: BuildCoordinator
    notifier: Notifier


def build_runtime(
    conn: Any,
    source: ContentSource | None = None,
    db_path: str | None = None,
    hooks: SitemapHooks = NO_HOOKS,
    logger: logging.Logger | None = None,
) -> SitemapRuntime:
    config = load_runtime_config(conn)
    settings = sitemap_config(config)
    if source is None:
        source = SqliteContentSource(db_path or get_state_db_path(), config.site.url, logger=logger)
    coordinator = BuildCoordinator(
        conn,
        settings,
        source,
        hooks=hooks,
        lock_ttl_seconds=config.build.lock_ttl_seconds,
        build_timeout_seconds=config.build.timeout_seconds,
        logger=logger,
    )
    notifier = Notifier(
        conn,
        sitemap_url(config),
        timeout_seconds=config.ping.timeout_seconds,
        user_agent=config.ping.user_agent,
        logger=logger,
    )
    return SitemapRuntime(
        conn=conn,
        config=config,
        sitemap=settings,
        source=source,
        coordinator=coordinator,
        notifier=notifier,
    )


def rebuild_and_notify(
    runtime: SitemapRuntime,
    trigger: str = "manual",
    force_ping: bool = False,
) -> dict[str, Any]:
    meta = runtime.coordinator.force_rebuild(trigger=trigger)
    result: dict[str, Any] = {"status": meta.status, "build": asdict(meta)}
    if meta.status == "ok" and runtime.sitemap.ping_enabled:
        result["ping"] = runtime.notifier.notify(force=force_ping)
    return result


def purge_and_rebuild(runtime: SitemapRuntime) -> dict[str, Any]:
    removed = runtime.coordinator.purge()
    result = rebuild_and_notify(runtime, trigger="purge")
    result["purged"] = removed
    return result


def sitemap_status(runtime: SitemapRuntime) -> dict[str, Any]:
    conn = runtime.conn
    meta = get_build_meta(conn)
    failure = get_last_failure(conn)
    ping = get_ping_record(conn)
    entry = get_cache_entry(conn, runtime.coordinator.key, include_expired=True)
    jobs = [
        {"id": job.id, "job_type": job.job_type, "run_after": job.run_after}
        for job_type in SITEMAP_JOB_TYPES
        for job in list_jobs(conn, limit=5, job_type=job_type)
        if job.status == "queued"
    ]
    return {
        "enabled": runtime.sitemap.enabled,
        "sitemap_url": sitemap_url(runtime.config),
        "last_build": asdict(meta) if meta else None,
        "last_failure": asdict(failure) if failure else None,
        "last_ping": asdict(ping) if ping else None,
        "cache": {
            "present": entry is not None,
            "generated_at": entry.generated_at if entry else None,
            "expires_at": entry.expires_at if entry else None,
            "article_count": entry.article_count if entry else 0,
            "etag": entry.etag if entry else None,
        },
        "build_lock_holder": get_lease_holder(conn, runtime.coordinator.lock_name),
        "scheduled_jobs": jobs,
    }


def validate_current(runtime: SitemapRuntime) -> dict[str, Any]:
    xml, count = runtime.coordinator.build_document()
    result = validate_sitemap(xml)
    result["article_count"] = count
    return result


def current_index_entry(runtime: SitemapRuntime) -> dict[str, str]:
    lastmod = runtime.source.latest_modified_at(runtime.sitemap.post_types) or utc_now()
    return index_entry(sitemap_url(runtime.config), lastmod)


def available_post_types(runtime: SitemapRuntime) -> list[str]:
    types = list(runtime.config.site.post_types)
    for post_type in list_article_post_types(runtime.conn):
        if post_type not in types:
            types.append(post_type)
    return types


def apply_sitemap_settings(
    runtime: SitemapRuntime,
    form: dict[str, Any],
    logger: logging.Logger | None = None,
) -> dict[str, Any]:
    cfg = get_runtime_config(runtime.conn)
    cfg["sitemap"] = sanitize_sitemap_settings(form, available_post_types(runtime))
    set_runtime_config(runtime.conn, cfg)
    updated = build_runtime(runtime.conn, source=runtime.source, hooks=runtime.coordinator.hooks, logger=logger)
    result = on_settings_updated(runtime.conn, updated.coordinator)
    result["sitemap"] = cfg["sitemap"]
    return result
