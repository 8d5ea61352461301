from __future__ import annotations

import argparse
import logging
import os
import time

from .config import ConfigError, get_state_db_path
from .fsinit import build_default_paths, ensure_runtime_dirs, set_umask_from_env
from .models import Job
from .scheduler import PREWARM_JOB_TYPE, REFRESH_JOB_TYPE, SITEMAP_JOB_TYPES, schedule_next_refresh
from .services.sitemap_service import SitemapRuntime, build_runtime, rebuild_and_notify
from .storage import claim_next_job, complete_job, fail_job, init_db
from .utils import configure_logging, log_event

WORKER_JOB_TYPES = list(SITEMAP_JOB_TYPES)


def _setup_logging() -> logging.Logger:
    return configure_logging("newsmap.worker")


def run_once(worker_id: str, db_path: str | None = None) -> int:
    logger = _setup_logging()
    db_path = db_path or get_state_db_path()
    set_umask_from_env()
    ensure_runtime_dirs(build_default_paths(db_path))
    conn = init_db(db_path)
    try:
        try:
            runtime = build_runtime(conn, db_path=db_path, logger=logger)
        except ConfigError as exc:
            log_event(logger, logging.ERROR, "config_error", error=str(exc))
            return 1
        job = claim_next_job(
            conn,
            worker_id,
            allowed_types=WORKER_JOB_TYPES,
            lock_timeout_seconds=runtime.config.jobs.lock_timeout_seconds,
        )
        if not job:
            return 0
        return _process_claimed_job(runtime, job, logger)
    finally:
        conn.close()


def run_loop(worker_id: str, sleep_seconds: int, db_path: str | None = None) -> int:
    while True:
        run_once(worker_id, db_path)
        time.sleep(sleep_seconds)


def _process_claimed_job(runtime: SitemapRuntime, job: Job, logger: logging.Logger) -> int:
    conn = runtime.conn
    try:
        result = run_claimed_job(runtime, job, logger)
    except Exception as exc:  # noqa: BLE001
        fail_job(conn, job.id, str(exc))
        log_event(
            logger,
            logging.ERROR,
            "job_failed",
            job_id=job.id,
            job_type=job.job_type,
            error=str(exc),
        )
        return 1
    if complete_job(conn, job.id, result=result):
        log_event(logger, logging.INFO, "job_succeeded", job_id=job.id, job_type=job.job_type)
    else:
        log_event(logger, logging.ERROR, "job_complete_failed", job_id=job.id)
    return 0


def run_claimed_job(runtime: SitemapRuntime, job: Job, logger: logging.Logger) -> dict[str, object]:
    log_event(logger, logging.INFO, "job_claimed", job_id=job.id, job_type=job.job_type)
    if job.job_type == PREWARM_JOB_TYPE:
        return _handle_prewarm(runtime, job)
    if job.job_type == REFRESH_JOB_TYPE:
        return _handle_refresh(runtime, logger)
    raise ValueError(f"unsupported job type {job.job_type}")


def _handle_prewarm(runtime: SitemapRuntime, job: Job) -> dict[str, object]:
    if not runtime.sitemap.enabled:
        return {"status": "disabled"}
    return rebuild_and_notify(runtime, trigger=str(job.payload.get("reason") or "prewarm"))


def _handle_refresh(runtime: SitemapRuntime, logger: logging.Logger) -> dict[str, object]:
    if not runtime.sitemap.enabled:
        return {"status": "disabled"}
    try:
        result = rebuild_and_notify(runtime, trigger="refresh")
    finally:
        schedule_next_refresh(runtime.conn, runtime.sitemap, logger=logger)
    return result


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsmap-worker")
    parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    parser.add_argument("--sleep", type=int, default=5, help="Sleep seconds between polls")
    parser.add_argument("--worker-id", default=os.environ.get("HOSTNAME", "worker"))
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.once:
        return run_once(args.worker_id)
    return run_loop(args.worker_id, args.sleep)
