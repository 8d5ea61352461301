from __future__ import annotations

import argparse
import json
import logging
import os

import yaml

from .config import (
    ConfigError,
    get_runtime_config,
    get_state_db_path,
    load_config_file,
    set_runtime_config,
)
from .content import (
    ArticleImportError,
    StaticContentSource,
    articles_from_documents,
    import_articles,
    load_articles_file,
)
from .coordinator import BuildCoordinator
from .scheduler import activate, deactivate, on_post_deleted
from .services.sitemap_service import (
    build_runtime,
    purge_and_rebuild,
    rebuild_and_notify,
    sitemap_status,
    validate_current,
)
from .storage import delete_article, init_db, list_jobs
from .utils import configure_logging, log_event
from .worker import run_loop, run_once


def _setup_logging() -> logging.Logger:
    return configure_logging("newsmap")


def _db_path(args: argparse.Namespace) -> str:
    return args.db or get_state_db_path()


def _runtime(args: argparse.Namespace, logger: logging.Logger):
    conn = init_db(_db_path(args))
    return build_runtime(conn, db_path=_db_path(args), logger=logger)


def _emit(payload: object) -> None:
    print(json.dumps(payload, indent=2, sort_keys=True, default=str))


def _cmd_rebuild(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    result = rebuild_and_notify(runtime, trigger="cli")
    _emit(result)
    return 0 if result["status"] == "ok" else 1


def _cmd_purge(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    result = purge_and_rebuild(runtime)
    _emit(result)
    return 0 if result["status"] in ("ok", "disabled") else 1


def _cmd_ping(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    result = runtime.notifier.notify(force=args.force)
    _emit(result)
    return 0


def _cmd_print(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    coordinator = runtime.coordinator
    if args.articles:
        try:
            articles = articles_from_documents(load_articles_file(args.articles))
        except ArticleImportError as exc:
            log_event(logger, logging.ERROR, "articles_error", error=str(exc))
            return 1
        coordinator = BuildCoordinator(
            runtime.conn,
            runtime.sitemap,
            StaticContentSource(articles, runtime.config.site.url),
            build_timeout_seconds=runtime.config.build.timeout_seconds,
            logger=logger,
        )
    xml, _ = coordinator.build_document()
    print(xml, end="")
    return 0


def _cmd_status(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    _emit(sitemap_status(runtime))
    return 0


def _cmd_validate(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    result = validate_current(runtime)
    _emit(result)
    return 0 if result["ok"] else 1


def _cmd_worker(args: argparse.Namespace, logger: logging.Logger) -> int:
    worker_id = args.worker_id or os.environ.get("HOSTNAME", "worker")
    if args.once:
        return run_once(worker_id, _db_path(args))
    return run_loop(worker_id, args.sleep, _db_path(args))


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    import uvicorn

    if args.db:
        os.environ["NM_DATA_DIR"] = os.path.dirname(os.path.abspath(args.db))
    log_event(logger, logging.INFO, "serve_start", host=args.host, port=args.port)
    uvicorn.run("newsmap.app:app", host=args.host, port=args.port)
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    print(yaml.safe_dump(cfg, sort_keys=False), end="")
    return 0


def _cmd_config_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    try:
        cfg = load_config_file(args.path)
        set_runtime_config(conn, cfg)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "config_imported", path=args.path)
    return 0


def _cmd_articles_import(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    try:
        imported = import_articles(conn, load_articles_file(args.path))
    except ArticleImportError as exc:
        log_event(logger, logging.ERROR, "articles_import_error", error=str(exc))
        return 1
    log_event(logger, logging.INFO, "articles_imported", path=args.path, count=len(imported))
    return 0


def _cmd_articles_delete(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    deleted = delete_article(runtime.conn, args.article_id)
    purged = on_post_deleted(runtime.coordinator, args.article_id)
    _emit({"article_id": args.article_id, "deleted": deleted, "purged": purged})
    return 0 if deleted else 1


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db(_db_path(args))
    for job in list_jobs(conn, limit=args.limit):
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            run_after=job.run_after,
            finished_at=job.finished_at,
            error=job.error,
        )
    return 0


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    init_db(_db_path(args))
    log_event(logger, logging.INFO, "db_migrated", path=_db_path(args))
    return 0


def _cmd_activate(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    activate(runtime.conn, runtime.sitemap, logger=logger)
    return 0


def _cmd_deactivate(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        runtime = _runtime(args, logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    deactivate(runtime.conn, runtime.coordinator)
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsmap", description="Google News sitemap service")
    parser.add_argument(
        "--db",
        dest="db",
        default=None,
        help="Path to the state database (defaults to $NM_DATA_DIR/state.sqlite3)",
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    rebuild_parser = subparsers.add_parser("rebuild", help="Rebuild the cached sitemap now")
    rebuild_parser.set_defaults(func=_cmd_rebuild)

    purge_parser = subparsers.add_parser("purge", help="Purge the cached sitemap and rebuild it")
    purge_parser.set_defaults(func=_cmd_purge)

    ping_parser = subparsers.add_parser("ping", help="Ping search engines with the sitemap URL")
    ping_parser.add_argument("--force", action="store_true", help="Ignore the ping cool-down")
    ping_parser.set_defaults(func=_cmd_ping)

    print_parser = subparsers.add_parser("print", help="Build and print the sitemap XML")
    print_parser.add_argument("--articles", default=None, help="Render articles from a YAML file")
    print_parser.set_defaults(func=_cmd_print)

    status_parser = subparsers.add_parser("status", help="Show build, cache and ping state")
    status_parser.set_defaults(func=_cmd_status)

    validate_parser = subparsers.add_parser("validate", help="Build and parse-check the sitemap")
    validate_parser.set_defaults(func=_cmd_validate)

    worker_parser = subparsers.add_parser("worker", help="Run the background job worker")
    worker_parser.add_argument("--once", action="store_true", help="Run a single job and exit")
    worker_parser.add_argument("--sleep", type=int, default=5, help="Sleep seconds between polls")
    worker_parser.add_argument("--worker-id", default=None)
    worker_parser.set_defaults(func=_cmd_worker)

    serve_parser = subparsers.add_parser("serve", help="Serve the sitemap and admin API")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    config_parser = subparsers.add_parser("config", help="Manage runtime configuration")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_show = config_subparsers.add_parser("show", help="Print runtime configuration")
    config_show.set_defaults(func=_cmd_config_show)
    config_import = config_subparsers.add_parser("import", help="Import configuration from YAML")
    config_import.add_argument("path", help="Path to config YAML file")
    config_import.set_defaults(func=_cmd_config_import)

    articles_parser = subparsers.add_parser("articles", help="Manage stored articles")
    articles_subparsers = articles_parser.add_subparsers(dest="articles_command", required=True)
    articles_import = articles_subparsers.add_parser("import", help="Import articles from YAML")
    articles_import.add_argument("path", help="Path to articles YAML file")
    articles_import.set_defaults(func=_cmd_articles_import)
    articles_delete = articles_subparsers.add_parser(
        "delete", help="Delete a stored article and purge the cached sitemap"
    )
    articles_delete.add_argument("article_id", type=int)
    articles_delete.set_defaults(func=_cmd_articles_delete)

    jobs_parser = subparsers.add_parser("jobs", help="Inspect the job queue")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)
    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--limit", type=int, default=20)
    jobs_list.set_defaults(func=_cmd_jobs_list)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply pending migrations")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    activate_parser = subparsers.add_parser("activate", help="Schedule the periodic refresh")
    activate_parser.set_defaults(func=_cmd_activate)

    deactivate_parser = subparsers.add_parser(
        "deactivate", help="Unschedule jobs, purge the cache and clear build metadata"
    )
    deactivate_parser.set_defaults(func=_cmd_deactivate)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
