"""Schema versioning for the content pool database.

Migrations run synchronously through :mod:`sqlite3` before the async
manager opens its connection. Each step is recorded in ``schema_version``
and committed on its own, so a failed step leaves earlier ones in place.
"""

from __future__ import annotations

import logging
import os
import sqlite3
from contextlib import closing
from pathlib import Path
from typing import List, NamedTuple

logger = logging.getLogger(__name__)

SCHEMA_SQL_PATH = Path(__file__).parent / "schema.sql"

_SIDECAR_SUFFIXES = ("-wal", "-shm", "-journal")


class Migration(NamedTuple):
    version: int
    description: str
    statements: List[str]


def load_migrations() -> List[Migration]:
    """All known migrations, oldest first."""
    return [
        Migration(
            1,
            "Pool schema: fingerprints, shared objects, references, quotas, distribution, jobs",
            [SCHEMA_SQL_PATH.read_text(encoding="utf-8")],
        ),
        Migration(
            2,
            "Seed the aggregate storage_stats row",
            ["INSERT OR IGNORE INTO storage_stats (id) VALUES (1);"],
        ),
    ]


def get_current_version(conn: sqlite3.Connection) -> int:
    """Highest applied version, 0 for an empty database."""
    try:
        (version,) = conn.execute("SELECT MAX(version) FROM schema_version").fetchone()
    except sqlite3.OperationalError:
        return 0
    return version or 0


def _apply_step(conn: sqlite3.Connection, step: Migration) -> None:
    logger.info("Applying migration v%d: %s", step.version, step.description)
    try:
        for sql in step.statements:
            conn.executescript(sql)
        conn.execute(
            "INSERT INTO schema_version (version, description) VALUES (?, ?)",
            (step.version, step.description),
        )
        conn.commit()
    except sqlite3.Error:
        conn.rollback()
        logger.exception("Migration v%d failed", step.version)
        raise


def apply_migrations(db_path: str) -> int:
    """Bring ``db_path`` up to the latest schema. Returns the resulting version."""
    with closing(sqlite3.connect(db_path)) as conn:
        conn.execute("PRAGMA journal_mode=WAL")
        conn.execute("PRAGMA foreign_keys=ON")

        start = get_current_version(conn)
        pending = [m for m in load_migrations() if m.version > start]
        for step in pending:
            _apply_step(conn, step)
        final = get_current_version(conn)

    if pending:
        logger.info("Schema migrated v%d -> v%d (%d step(s))", start, final, len(pending))
    else:
        logger.debug("Schema up to date at v%d", final)
    return final


def reset_database(db_path: str) -> int:
    """Delete the database file and its WAL sidecars, then rebuild the schema.

    Every row is lost. Close open connections to ``db_path`` first.
    """
    removed = 0
    for path in [db_path] + [db_path + suffix for suffix in _SIDECAR_SUFFIXES]:
        try:
            os.remove(path)
        except FileNotFoundError:
            continue
        removed += 1
    logger.warning("Reset database %s (%d file(s) removed)", db_path, removed)
    return apply_migrations(db_path)
