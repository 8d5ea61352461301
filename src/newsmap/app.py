from __future__ import annotations

import logging
import os
import sqlite3
from datetime import datetime, timezone

from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.responses import Response
from pydantic import BaseModel

from .config import (
    SITEMAP_FORM_KEYS,
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    get_state_db_path,
    set_runtime_config,
)
from .fsinit import build_default_paths, ensure_runtime_dirs, set_umask_from_env
from .models import CacheEntry, RenderState
from .scheduler import handle_content_event
from .services.sitemap_service import (
    SitemapRuntime,
    apply_sitemap_settings,
    build_runtime,
    current_index_entry,
    rebuild_and_notify,
    sitemap_status,
    validate_current,
)
from .sitemap import empty_sitemap, inject_into_sitemap_index, merge_index_links
from .storage import init_db
from .utils import configure_logging, http_date, log_event, parse_datetime

SITEMAP_MEDIA_TYPE = "application/xml; charset=UTF-8"
NO_STORE = "no-cache, no-store, must-revalidate, max-age=0"

app = FastAPI(title="newsmap")


def _require_admin_token(request: Request) -> None:
    token = os.environ.get("NM_ADMIN_TOKEN")
    if not token:
        return
    if request.headers.get("X-Admin-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


class RuntimeConfigRequest(BaseModel):
    config: dict


class SitemapSettingsRequest(BaseModel):
    settings: dict


class IndexRequest(BaseModel):
    xml: str | None = None
    links: list[dict] | None = None


class ContentEventRequest(BaseModel):
    event: str
    article_id: int
    old_status: str | None = None
    new_status: str | None = None
    post_type: str = "post"


@app.on_event("startup")
def _startup() -> None:
    db_path = get_state_db_path()
    set_umask_from_env()
    ensure_runtime_dirs(build_default_paths(db_path))
    try:
        bootstrap_runtime_config(init_db(db_path))
    except ConfigError:
        return


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "ok": True,
        "version": _get_version(),
        "time": datetime.now(tz=timezone.utc).isoformat(),
    }


@app.get("/news-sitemap.xml")
def news_sitemap(request: Request) -> Response:
    logger = configure_logging("newsmap.http")
    try:
        runtime = build_runtime(_get_conn(), logger=logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return Response(
            content=empty_sitemap(),
            media_type=SITEMAP_MEDIA_TYPE,
            headers={"Cache-Control": NO_STORE, "X-Sitemap-Cache": "error"},
        )
    if not runtime.sitemap.enabled:
        raise HTTPException(status_code=404, detail="not found")
    state = RenderState()
    try:
        entry = runtime.coordinator.get_or_build(state)
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.ERROR, "sitemap_read_failed", error=str(exc))
        return Response(
            content=empty_sitemap(runtime.sitemap),
            media_type=SITEMAP_MEDIA_TYPE,
            headers={"Cache-Control": NO_STORE, "X-Sitemap-Cache": "error"},
        )
    headers = {"X-Sitemap-Cache": state.cache_status or "miss"}
    if state.cache_status != "hit":
        headers["Cache-Control"] = NO_STORE
        return Response(content=entry.payload, media_type=SITEMAP_MEDIA_TYPE, headers=headers)

    headers["ETag"] = f'"{entry.etag}"'
    generated = parse_datetime(entry.generated_at)
    if generated is not None:
        headers["Last-Modified"] = http_date(generated)
    headers["Cache-Control"] = "no-cache"
    if _not_modified(request, entry):
        return Response(status_code=304, headers=headers)
    return Response(content=entry.payload, media_type=SITEMAP_MEDIA_TYPE, headers=headers)


@app.get("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_get() -> dict[str, object]:
    conn = _get_conn()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"config": cfg}


@app.put("/admin/config/runtime", dependencies=[Depends(_require_admin_token)])
def runtime_config_set(payload: RuntimeConfigRequest) -> dict[str, object]:
    conn = _get_conn()
    try:
        set_runtime_config(conn, payload.config)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {"status": "ok"}


@app.put("/admin/sitemap/settings", dependencies=[Depends(_require_admin_token)])
def sitemap_settings_set(payload: SitemapSettingsRequest) -> dict[str, object]:
    logger = logging.getLogger("newsmap.admin")
    runtime = _get_runtime()
    form = {key: payload.settings[key] for key in SITEMAP_FORM_KEYS if key in payload.settings}
    try:
        result = apply_sitemap_settings(runtime, form, logger=logger)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    log_event(logger, logging.INFO, "sitemap_settings_updated", status=result.get("status"))
    return result


@app.post("/admin/sitemap/rebuild", dependencies=[Depends(_require_admin_token)])
def sitemap_rebuild() -> dict[str, object]:
    return rebuild_and_notify(_get_runtime(), trigger="admin")


@app.post("/admin/sitemap/purge", dependencies=[Depends(_require_admin_token)])
def sitemap_purge() -> dict[str, object]:
    removed = _get_runtime().coordinator.purge()
    return {"status": "ok", "purged": removed}


@app.post("/admin/sitemap/ping", dependencies=[Depends(_require_admin_token)])
def sitemap_ping(force: bool = True) -> dict[str, object]:
    return _get_runtime().notifier.notify(force=force)


@app.get("/admin/sitemap/status", dependencies=[Depends(_require_admin_token)])
def sitemap_status_get() -> dict[str, object]:
    return sitemap_status(_get_runtime())


@app.get("/admin/sitemap/validate", dependencies=[Depends(_require_admin_token)])
def sitemap_validate() -> dict[str, object]:
    return validate_current(_get_runtime())


@app.get("/admin/sitemap/index-entry", dependencies=[Depends(_require_admin_token)])
def sitemap_index_entry() -> dict[str, str]:
    return current_index_entry(_get_runtime())


@app.post("/admin/sitemap/index", dependencies=[Depends(_require_admin_token)])
def sitemap_index_merge(payload: IndexRequest) -> dict[str, object]:
    if payload.xml is None and payload.links is None:
        raise HTTPException(status_code=400, detail="xml or links is required")
    runtime = _get_runtime()
    if not runtime.sitemap.enabled:
        return {"xml": payload.xml, "links": payload.links}
    entry = current_index_entry(runtime)
    return {
        "xml": inject_into_sitemap_index(payload.xml, entry) if payload.xml is not None else None,
        "links": merge_index_links(payload.links, entry) if payload.links is not None else None,
    }


@app.post("/admin/content/events", dependencies=[Depends(_require_admin_token)])
def content_event(payload: ContentEventRequest) -> dict[str, object]:
    conn = _get_conn()
    runtime = _get_runtime(conn)
    try:
        return handle_content_event(
            conn,
            runtime.coordinator,
            payload.event,
            payload.article_id,
            old_status=payload.old_status,
            new_status=payload.new_status,
            post_type=payload.post_type,
            delay_seconds=runtime.config.jobs.prewarm_delay_seconds,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def _not_modified(request: Request, entry: CacheEntry) -> bool:
    if_none_match = request.headers.get("if-none-match")
    if if_none_match:
        for candidate in if_none_match.split(","):
            tag = candidate.strip()
            if tag == "*":
                return True
            if tag.startswith("W/"):
                tag = tag[2:]
            if tag.strip('"') == entry.etag:
                return True
        return False
    if_modified_since = request.headers.get("if-modified-since")
    if not if_modified_since:
        return False
    since = parse_datetime(if_modified_since)
    generated = parse_datetime(entry.generated_at)
    if since is None or generated is None:
        return False
    return since >= generated.replace(microsecond=0)


def _get_version() -> str:
    try:
        from importlib.metadata import version

        return version("newsmap")
    except Exception:  # noqa: BLE001
        return "unknown"


def _get_conn() -> sqlite3.Connection:
    conn = init_db(get_state_db_path())
    bootstrap_runtime_config(conn)
    return conn


def _get_runtime(conn: sqlite3.Connection | None = None) -> SitemapRuntime:
    conn = conn or _get_conn()
    logger = configure_logging("newsmap.admin")
    try:
        return build_runtime(conn, logger=logger)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
