from __future__ import annotations

import os
import sqlite3

from .migrations import apply_migrations

_MIGRATED_PATHS: set[str] = set()


def connect_db(path: str) -> sqlite3.Connection:
    directory = os.path.dirname(os.path.abspath(path))
    os.makedirs(directory, exist_ok=True)
    conn = sqlite3.connect(path, timeout=5, check_same_thread=False)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA synchronous=NORMAL")
    conn.execute("PRAGMA busy_timeout=5000")
    key = os.path.abspath(path)
    if key not in _MIGRATED_PATHS:
        apply_migrations(conn)
        _MIGRATED_PATHS.add(key)
    return conn
