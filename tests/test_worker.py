import copy
from datetime import timedelta

from newsmap import worker as worker_module
from newsmap.config import DEFAULT_CONFIG, set_runtime_config
from newsmap.content import import_articles
from newsmap.coordinator import CACHE_KEY
from newsmap.scheduler import PREWARM_JOB_TYPE, REFRESH_JOB_TYPE
from newsmap.storage import enqueue_job, get_cache_entry, get_job, init_db, list_jobs
from newsmap.utils import isoformat_utc, parse_datetime, utc_now
from newsmap.worker import run_once

SITE_URL = "https://news.example.com"


def _seed(tmp_path, enabled=True):
    db_path = str(tmp_path / "state.sqlite3")
    conn = init_db(db_path)
    config = copy.deepcopy(DEFAULT_CONFIG)
    config["site"]["url"] = SITE_URL
    config["sitemap"]["enabled"] = enabled
    config["sitemap"]["ping_enabled"] = False
    set_runtime_config(conn, config)
    import_articles(
        conn,
        [
            {
                "id": 1,
                "url": f"{SITE_URL}/story-1/",
                "title": "Story 1",
                "published_at": isoformat_utc(utc_now() - timedelta(hours=1)),
            }
        ],
    )
    return db_path, conn


def test_run_once_with_empty_queue(tmp_path):
    db_path, _ = _seed(tmp_path)

    assert run_once("worker-1", db_path) == 0


def test_prewarm_job_builds_cache(tmp_path):
    db_path, conn = _seed(tmp_path)
    job_id = enqueue_job(conn, PREWARM_JOB_TYPE, {"reason": "status_changed"})

    assert run_once("worker-1", db_path) == 0

    job = get_job(conn, job_id)
    assert job.status == "succeeded"
    assert job.result["status"] == "ok"
    assert job.result["build"]["count"] == 1
    entry = get_cache_entry(conn, CACHE_KEY)
    assert entry is not None
    assert entry.article_count == 1


def test_refresh_job_reschedules_itself(tmp_path):
    db_path, conn = _seed(tmp_path)
    job_id = enqueue_job(conn, REFRESH_JOB_TYPE, {"interval_seconds": 600})

    assert run_once("worker-1", db_path) == 0

    jobs = list_jobs(conn, job_type=REFRESH_JOB_TYPE)
    statuses = {job.id: job.status for job in jobs}
    assert statuses.pop(job_id) == "succeeded"
    assert list(statuses.values()) == ["queued"]
    next_job = next(job for job in jobs if job.id != job_id)
    assert next_job.payload == {"interval_seconds": 600}
    assert parse_datetime(next_job.run_after) > utc_now() + timedelta(seconds=500)


def test_refresh_failure_still_reschedules(tmp_path, monkeypatch):
    db_path, conn = _seed(tmp_path)
    job_id = enqueue_job(conn, REFRESH_JOB_TYPE, None)

    def explode(runtime, trigger="manual", force_ping=False):
        raise RuntimeError("disk full")

    monkeypatch.setattr(worker_module, "rebuild_and_notify", explode)

    assert run_once("worker-1", db_path) == 1

    failed = get_job(conn, job_id)
    assert failed.status == "failed"
    assert failed.error == "disk full"
    queued = [job for job in list_jobs(conn, job_type=REFRESH_JOB_TYPE) if job.status == "queued"]
    assert len(queued) == 1


def test_disabled_sitemap_jobs_are_noops(tmp_path):
    db_path, conn = _seed(tmp_path, enabled=False)
    job_id = enqueue_job(conn, REFRESH_JOB_TYPE, None)

    assert run_once("worker-1", db_path) == 0

    assert get_job(conn, job_id).result == {"status": "disabled"}
    assert get_cache_entry(conn, CACHE_KEY) is None
    assert [job.id for job in list_jobs(conn, job_type=REFRESH_JOB_TYPE)] == [job_id]
