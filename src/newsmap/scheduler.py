from __future__ import annotations

import logging
from typing import Any

from .coordinator import BuildCoordinator, clear_build_meta
from .models import SitemapConfig
from .storage import cancel_jobs_by_type, enqueue_job
from .utils import log_event, utc_now_iso_offset

PREWARM_JOB_TYPE = "sitemap_prewarm"
REFRESH_JOB_TYPE = "sitemap_refresh"
SITEMAP_JOB_TYPES = [PREWARM_JOB_TYPE, REFRESH_JOB_TYPE]

PREWARM_DELAY_SECONDS = 15
INITIAL_DELAY_SECONDS = 60
MIN_REFRESH_INTERVAL_SECONDS = 60

CONTENT_EVENTS = ("saved", "deleted", "trashed", "status_changed")


def refresh_interval_seconds(config: SitemapConfig) -> int:
    return max(MIN_REFRESH_INTERVAL_SECONDS, int(config.cache_ttl))


def on_post_saved(coordinator: BuildCoordinator, article_id: int) -> bool:
    return _purge(coordinator, "saved", article_id)


def on_post_deleted(coordinator: BuildCoordinator, article_id: int) -> bool:
    return _purge(coordinator, "deleted", article_id)


def on_post_trashed(coordinator: BuildCoordinator, article_id: int) -> bool:
    return _purge(coordinator, "trashed", article_id)


def on_status_transition(
    conn: Any,
    coordinator: BuildCoordinator,
    article_id: int,
    old_status: str | None,
    new_status: str,
    post_type: str,
    delay_seconds: int = PREWARM_DELAY_SECONDS,
) -> str | None:
    _purge(coordinator, "status_changed", article_id, old_status=old_status, new_status=new_status)
    config = coordinator.config
    if not config.enabled:
        return None
    if new_status != "publish" or post_type not in config.post_types:
        return None
    return schedule_prewarm(conn, delay_seconds=delay_seconds, reason=f"publish:{article_id}", logger=coordinator.logger)


def handle_content_event(
    conn: Any,
    coordinator: BuildCoordinator,
    event: str,
    article_id: int,
    old_status: str | None = None,
    new_status: str | None = None,
    post_type: str = "post",
    delay_seconds: int = PREWARM_DELAY_SECONDS,
) -> dict[str, object]:
    if event not in CONTENT_EVENTS:
        raise ValueError(f"unsupported content event {event}")
    if event == "status_changed":
        if not new_status:
            raise ValueError("new_status is required for status_changed")
        job_id = on_status_transition(
            conn,
            coordinator,
            article_id,
            old_status,
            new_status,
            post_type,
            delay_seconds=delay_seconds,
        )
        return {"purged": True, "prewarm_job_id": job_id}
    handlers = {
        "saved": on_post_saved,
        "deleted": on_post_deleted,
        "trashed": on_post_trashed,
    }
    handlers[event](coordinator, article_id)
    return {"purged": True, "prewarm_job_id": None}


def schedule_prewarm(
    conn: Any,
    delay_seconds: int = PREWARM_DELAY_SECONDS,
    reason: str = "content",
    logger: logging.Logger | None = None,
) -> str:
    # Debounced: a queued prewarm absorbs later requests until it runs.
    job_id = enqueue_job(
        conn,
        PREWARM_JOB_TYPE,
        {"reason": reason},
        run_after=utc_now_iso_offset(seconds=delay_seconds),
        debounce=True,
    )
    log_event(
        logger,
        logging.INFO,
        "sitemap_prewarm_scheduled",
        job_id=job_id,
        delay_seconds=delay_seconds,
        reason=reason,
    )
    return job_id


def maybe_schedule_refresh(
    conn: Any,
    config: SitemapConfig,
    delay_seconds: int = INITIAL_DELAY_SECONDS,
    logger: logging.Logger | None = None,
) -> str | None:
    if not config.enabled:
        return None
    interval = refresh_interval_seconds(config)
    job_id = enqueue_job(
        conn,
        REFRESH_JOB_TYPE,
        {"interval_seconds": interval},
        run_after=utc_now_iso_offset(seconds=delay_seconds),
        debounce=True,
    )
    log_event(
        logger,
        logging.INFO,
        "sitemap_refresh_scheduled",
        job_id=job_id,
        delay_seconds=delay_seconds,
        interval_seconds=interval,
    )
    return job_id


def schedule_next_refresh(
    conn: Any,
    config: SitemapConfig,
    logger: logging.Logger | None = None,
) -> str | None:
    return maybe_schedule_refresh(
        conn,
        config,
        delay_seconds=refresh_interval_seconds(config),
        logger=logger,
    )


def reschedule_refresh(
    conn: Any,
    config: SitemapConfig,
    delay_seconds: int = INITIAL_DELAY_SECONDS,
    logger: logging.Logger | None = None,
) -> str | None:
    unschedule(conn, [REFRESH_JOB_TYPE], logger=logger)
    return maybe_schedule_refresh(conn, config, delay_seconds=delay_seconds, logger=logger)


def unschedule(
    conn: Any,
    job_types: list[str] | None = None,
    logger: logging.Logger | None = None,
) -> int:
    canceled = 0
    for job_type in job_types or SITEMAP_JOB_TYPES:
        canceled += cancel_jobs_by_type(conn, job_type, reason="unscheduled")
    log_event(logger, logging.INFO, "sitemap_jobs_unscheduled", canceled=canceled)
    return canceled


def on_settings_updated(conn: Any, coordinator: BuildCoordinator) -> dict[str, object]:
    config = coordinator.config
    logger = coordinator.logger
    if not config.enabled:
        canceled = unschedule(conn, logger=logger)
        coordinator.purge()
        return {"status": "disabled", "canceled": canceled}
    refresh_job_id = reschedule_refresh(conn, config, logger=logger)
    coordinator.purge()
    meta = coordinator.force_rebuild(trigger="settings")
    return {"status": meta.status, "refresh_job_id": refresh_job_id}


def activate(conn: Any, config: SitemapConfig, logger: logging.Logger | None = None) -> str | None:
    job_id = maybe_schedule_refresh(conn, config, logger=logger)
    log_event(logger, logging.INFO, "sitemap_activated", refresh_job_id=job_id)
    return job_id


def deactivate(conn: Any, coordinator: BuildCoordinator) -> int:
    canceled = unschedule(conn, logger=coordinator.logger)
    coordinator.purge()
    clear_build_meta(conn)
    log_event(coordinator.logger, logging.INFO, "sitemap_deactivated", canceled=canceled)
    return canceled


def _purge(coordinator: BuildCoordinator, event: str, article_id: int, **fields: object) -> bool:
    removed = coordinator.purge()
    log_event(
        coordinator.logger,
        logging.INFO,
        "content_event",
        kind=event,
        article_id=article_id,
        **fields,
    )
    return removed
