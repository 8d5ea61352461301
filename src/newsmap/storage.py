from __future__ import annotations

import json
import os
import uuid
from contextlib import contextmanager
from typing import Any, Iterator

from .db import connect_db
from .models import CacheEntry, Job
from .utils import json_dumps, utc_now_iso, utc_now_iso_offset


def init_db(path: str | None = None):
    if path is None:
        data_dir = os.environ.get("NM_DATA_DIR", "/data")
        path = os.path.join(data_dir, "state.sqlite3")
    return connect_db(path)


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def delete_setting(conn: Any, key: str) -> None:
    conn.execute("DELETE FROM settings WHERE key = ?", (key,))
    conn.commit()


def get_cache_entry(conn: Any, key: str, include_expired: bool = False) -> CacheEntry | None:
    cursor = conn.execute(
        """
        SELECT key, payload, etag, generated_at, article_count, took_ms, expires_at
        FROM cache_entries
        WHERE key = ?
        """,
        (key,),
    )
    row = cursor.fetchone()
    if not row:
        return None
    entry = CacheEntry(
        key=row[0],
        payload=row[1],
        etag=row[2],
        generated_at=row[3],
        article_count=int(row[4] or 0),
        took_ms=int(row[5] or 0),
        expires_at=row[6],
    )
    if not include_expired and entry.expires_at <= utc_now_iso():
        return None
    return entry


def set_cache_entry(conn: Any, entry: CacheEntry, ttl_seconds: int) -> CacheEntry:
    expires_at = utc_now_iso_offset(seconds=ttl_seconds)
    conn.execute(
        """
        INSERT INTO cache_entries
            (key, payload, etag, generated_at, article_count, took_ms, expires_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET
            payload = excluded.payload,
            etag = excluded.etag,
            generated_at = excluded.generated_at,
            article_count = excluded.article_count,
            took_ms = excluded.took_ms,
            expires_at = excluded.expires_at
        """,
        (
            entry.key,
            entry.payload,
            entry.etag,
            entry.generated_at,
            entry.article_count,
            entry.took_ms,
            expires_at,
        ),
    )
    conn.commit()
    return CacheEntry(
        key=entry.key,
        payload=entry.payload,
        etag=entry.etag,
        generated_at=entry.generated_at,
        article_count=entry.article_count,
        took_ms=entry.took_ms,
        expires_at=expires_at,
    )


def delete_cache_entry(conn: Any, key: str) -> bool:
    cursor = conn.execute("DELETE FROM cache_entries WHERE key = ?", (key,))
    conn.commit()
    return cursor.rowcount == 1


def try_acquire_lease(
    conn: Any,
    lease_name: str,
    holder: str,
    ttl_seconds: int,
) -> bool:
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO locks (name, holder, acquired_at, expires_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(name) DO UPDATE SET
            holder = excluded.holder,
            acquired_at = excluded.acquired_at,
            expires_at = excluded.expires_at
        WHERE locks.expires_at <= excluded.acquired_at
        """,
        (lease_name, holder, now, utc_now_iso_offset(seconds=ttl_seconds)),
    )
    conn.commit()
    return cursor.rowcount == 1


def release_lease(conn: Any, lease_name: str, holder: str) -> bool:
    cursor = conn.execute(
        "DELETE FROM locks WHERE name = ? AND holder = ?",
        (lease_name, holder),
    )
    conn.commit()
    return cursor.rowcount == 1


def get_lease_holder(conn: Any, lease_name: str) -> str | None:
    row = conn.execute(
        "SELECT holder FROM locks WHERE name = ? AND expires_at > ?",
        (lease_name, utc_now_iso()),
    ).fetchone()
    return row[0] if row else None


@contextmanager
def held_lease(conn: Any, lease_name: str, holder: str, ttl_seconds: int) -> Iterator[bool]:
    acquired = try_acquire_lease(conn, lease_name, holder, ttl_seconds)
    try:
        yield acquired
    finally:
        if acquired:
            release_lease(conn, lease_name, holder)


def enqueue_job(
    conn: Any,
    job_type: str,
    payload: dict[str, object] | None,
    run_after: str | None = None,
    debounce: bool = False,
) -> str:
    if debounce:
        pending = _get_queued_job_id(conn, job_type)
        if pending:
            return pending
    job_id = _new_job_id()
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO jobs
            (id, job_type, status, payload_json, result_json, run_after, requested_at,
             started_at, finished_at, locked_by, locked_at, error)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (
            job_id,
            job_type,
            "queued",
            json_dumps(payload) if payload else None,
            None,
            run_after or now,
            now,
            None,
            None,
            None,
            None,
            None,
        ),
    )
    conn.commit()
    return job_id


def list_jobs(conn: Any, limit: int = 50, job_type: str | None = None) -> list[Job]:
    if job_type:
        cursor = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs WHERE job_type = ? ORDER BY requested_at DESC LIMIT ?",
            (job_type, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_JOB_COLUMNS} FROM jobs ORDER BY requested_at DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_job(row) for row in cursor.fetchall()]


def get_job(conn: Any, job_id: str) -> Job | None:
    row = conn.execute(f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)).fetchone()
    return _row_to_job(row) if row else None


def has_pending_job(conn: Any, job_type: str) -> bool:
    cursor = conn.execute(
        """
        SELECT 1 FROM jobs
        WHERE job_type = ? AND status IN ('queued', 'running')
        LIMIT 1
        """,
        (job_type,),
    )
    return cursor.fetchone() is not None


def claim_next_job(
    conn: Any,
    worker_id: str,
    allowed_types: list[str] | None = None,
    lock_timeout_seconds: int | None = None,
) -> Job | None:
    now = utc_now_iso()
    if lock_timeout_seconds is not None:
        conn.execute(
            """
            UPDATE jobs
            SET status = 'queued',
                locked_by = NULL,
                locked_at = NULL,
                started_at = NULL,
                error = 'stale_lock_requeued'
            WHERE status = 'running' AND locked_at IS NOT NULL AND locked_at < ?
            """,
            (utc_now_iso_offset(seconds=-lock_timeout_seconds),),
        )
        conn.commit()
    params: list[object] = [now]
    type_clause = ""
    if allowed_types:
        placeholders = ",".join(["?"] * len(allowed_types))
        type_clause = f" AND job_type IN ({placeholders})"
        params.extend(allowed_types)
    for _ in range(5):
        row = conn.execute(
            f"""
            SELECT id FROM jobs
            WHERE status = 'queued' AND locked_by IS NULL AND run_after <= ? {type_clause}
            ORDER BY run_after ASC, requested_at ASC
            LIMIT 1
            """,
            tuple(params),
        ).fetchone()
        if not row:
            return None
        cursor = conn.execute(
            """
            UPDATE jobs
            SET status = 'running', started_at = ?, locked_by = ?, locked_at = ?
            WHERE id = ? AND status = 'queued' AND locked_by IS NULL
            """,
            (now, worker_id, now, row[0]),
        )
        conn.commit()
        if cursor.rowcount == 1:
            return get_job(conn, row[0])
    return None


def complete_job(conn: Any, job_id: str, result: dict[str, object] | None = None) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'succeeded', finished_at = ?, error = NULL, result_json = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), json_dumps(result) if result else None, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def fail_job(conn: Any, job_id: str, error: str) -> bool:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'failed', finished_at = ?, error = ?
        WHERE id = ? AND status = 'running'
        """,
        (utc_now_iso(), error, job_id),
    )
    conn.commit()
    return cursor.rowcount == 1


def cancel_jobs_by_type(
    conn: Any,
    job_type: str,
    reason: str = "unscheduled",
) -> int:
    cursor = conn.execute(
        """
        UPDATE jobs
        SET status = 'canceled',
            finished_at = ?,
            error = ?,
            locked_by = NULL,
            locked_at = NULL
        WHERE job_type = ? AND status = 'queued'
        """,
        (utc_now_iso(), reason, job_type),
    )
    conn.commit()
    return int(cursor.rowcount or 0)


def upsert_article(conn: Any, record: dict[str, Any]) -> None:
    conn.execute(
        """
        INSERT INTO articles
            (id, url, title, status, post_type, published_at, modified_at, genres_json,
             stock_tickers_json, images_json, seo_canonical_url, meta_json, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(id) DO UPDATE SET
            url = excluded.url,
            title = excluded.title,
            status = excluded.status,
            post_type = excluded.post_type,
            published_at = excluded.published_at,
            modified_at = excluded.modified_at,
            genres_json = excluded.genres_json,
            stock_tickers_json = excluded.stock_tickers_json,
            images_json = excluded.images_json,
            seo_canonical_url = excluded.seo_canonical_url,
            meta_json = excluded.meta_json,
            updated_at = excluded.updated_at
        """,
        (
            record["id"],
            record["url"],
            record["title"],
            record.get("status") or "publish",
            record.get("post_type") or "post",
            record["published_at"],
            record.get("modified_at") or record["published_at"],
            json_dumps(record.get("genres") or []),
            json_dumps(record.get("stock_tickers") or []),
            json_dumps(record.get("images") or []),
            record.get("seo_canonical_url"),
            json_dumps(record.get("meta") or {}),
            utc_now_iso(),
        ),
    )
    conn.execute("DELETE FROM article_terms WHERE article_id = ?", (record["id"],))
    for term in record.get("terms") or []:
        conn.execute(
            """
            INSERT OR IGNORE INTO article_terms (article_id, taxonomy, term_id, name)
            VALUES (?, ?, ?, ?)
            """,
            (record["id"], term["taxonomy"], int(term["term_id"]), term["name"]),
        )
    conn.commit()


def delete_article(conn: Any, article_id: int) -> bool:
    conn.execute("DELETE FROM article_terms WHERE article_id = ?", (article_id,))
    cursor = conn.execute("DELETE FROM articles WHERE id = ?", (article_id,))
    conn.commit()
    return cursor.rowcount == 1


def query_recent_article_ids(
    conn: Any,
    post_types: list[str],
    after_iso: str,
    max_count: int,
    excluded_terms: dict[str, list[int]] | None = None,
) -> list[int]:
    if not post_types:
        return []
    placeholders = ",".join(["?"] * len(post_types))
    params: list[object] = list(post_types)
    params.append(after_iso)
    exclude_clause = ""
    for taxonomy, term_ids in (excluded_terms or {}).items():
        if not term_ids:
            continue
        term_placeholders = ",".join(["?"] * len(term_ids))
        exclude_clause += f"""
            AND NOT EXISTS (
                SELECT 1 FROM article_terms t
                WHERE t.article_id = a.id AND t.taxonomy = ? AND t.term_id IN ({term_placeholders})
            )
        """
        params.append(taxonomy)
        params.extend(int(term_id) for term_id in term_ids)
    params.append(max(1, int(max_count)))
    cursor = conn.execute(
        f"""
        SELECT a.id FROM articles a
        WHERE a.status = 'publish' AND a.post_type IN ({placeholders})
          AND a.published_at >= ? {exclude_clause}
        ORDER BY a.published_at DESC, a.id DESC
        LIMIT ?
        """,
        tuple(params),
    )
    return [int(row[0]) for row in cursor.fetchall()]


def get_article_row(conn: Any, article_id: int) -> dict[str, Any] | None:
    row = conn.execute(
        """
        SELECT id, url, title, status, post_type, published_at, modified_at, genres_json,
               stock_tickers_json, images_json, seo_canonical_url, meta_json
        FROM articles
        WHERE id = ?
        """,
        (article_id,),
    ).fetchone()
    if not row:
        return None
    record = {
        "id": int(row[0]),
        "url": row[1],
        "title": row[2],
        "status": row[3],
        "post_type": row[4],
        "published_at": row[5],
        "modified_at": row[6],
        "genres": _load_json(row[7], []),
        "stock_tickers": _load_json(row[8], []),
        "images": _load_json(row[9], []),
        "seo_canonical_url": row[10],
        "meta": _load_json(row[11], {}),
    }
    record["terms"] = [
        {"taxonomy": term[0], "term_id": int(term[1]), "name": term[2]}
        for term in conn.execute(
            """
            SELECT taxonomy, term_id, name FROM article_terms
            WHERE article_id = ?
            ORDER BY taxonomy, term_id
            """,
            (article_id,),
        ).fetchall()
    ]
    return record


def latest_modified_at(conn: Any, post_types: list[str]) -> str | None:
    if not post_types:
        return None
    placeholders = ",".join(["?"] * len(post_types))
    row = conn.execute(
        f"""
        SELECT MAX(modified_at) FROM articles
        WHERE status = 'publish' AND post_type IN ({placeholders})
        """,
        tuple(post_types),
    ).fetchone()
    return row[0] if row and row[0] else None


def list_article_post_types(conn: Any) -> list[str]:
    cursor = conn.execute("SELECT DISTINCT post_type FROM articles ORDER BY post_type")
    return [row[0] for row in cursor.fetchall()]


_JOB_COLUMNS = (
    "id, job_type, status, payload_json, result_json, run_after, requested_at, "
    "started_at, finished_at, locked_by, locked_at, error"
)


def _row_to_job(row: tuple) -> Job:
    (
        job_id,
        job_type,
        status,
        payload_json,
        result_json,
        run_after,
        requested_at,
        started_at,
        finished_at,
        locked_by,
        locked_at,
        error,
    ) = row
    return Job(
        id=job_id,
        job_type=job_type,
        status=status,
        payload=_load_json(payload_json, {}),
        result=_load_json(result_json, None),
        run_after=run_after,
        requested_at=requested_at,
        started_at=started_at,
        finished_at=finished_at,
        locked_by=locked_by,
        locked_at=locked_at,
        error=error,
    )


def _get_queued_job_id(conn: Any, job_type: str) -> str | None:
    row = conn.execute(
        """
        SELECT id FROM jobs
        WHERE job_type = ? AND status = 'queued'
        ORDER BY run_after ASC
        LIMIT 1
        """,
        (job_type,),
    ).fetchone()
    return row[0] if row else None


def _load_json(value: str | None, default: Any) -> Any:
    if not value:
        return default
    try:
        return json.loads(value)
    except json.JSONDecodeError:
        return default


def _new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"
