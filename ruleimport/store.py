"""SQLite rule store with per-row staging markers.

The import engine never relies on one transaction spanning a whole run.
Each row carries a staging marker instead, and only the final flip from
staged to committed happens inside a single store transaction.
"""
from __future__ import annotations

import sqlite3
from collections.abc import Iterable, Iterator, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Protocol

from ruleimport.errors import StoreWriteError
from ruleimport.models import RecordType, Rule, Source, StagingMarker


_COMMITTED = int(StagingMarker.COMMITTED)
_PENDING_DELETE = int(StagingMarker.PENDING_DELETE)
_STAGED_NEW = int(StagingMarker.STAGED_NEW)

_SCHEMA = """
CREATE TABLE IF NOT EXISTS sources (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    name TEXT NOT NULL,
    origin TEXT NOT NULL,
    enabled INTEGER NOT NULL DEFAULT 1,
    whitelist INTEGER NOT NULL DEFAULT 0,
    revision_tag TEXT,
    rule_count INTEGER
);

CREATE TABLE IF NOT EXISTS rules (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    host TEXT NOT NULL,
    record_type TEXT NOT NULL CHECK (record_type IN ('A', 'AAAA', 'ANY')),
    target TEXT NOT NULL,
    target_v6 TEXT,
    source_id INTEGER REFERENCES sources(id) ON DELETE CASCADE,
    is_wildcard INTEGER NOT NULL DEFAULT 0,
    staging INTEGER NOT NULL DEFAULT 0 CHECK (staging IN (0, 1, 2))
);

CREATE UNIQUE INDEX IF NOT EXISTS idx_rules_natural_key
    ON rules(host, record_type, source_id, staging);
CREATE INDEX IF NOT EXISTS idx_rules_staging ON rules(staging);
"""

_LOOKUP_INDEX = "CREATE INDEX IF NOT EXISTS idx_rules_lookup ON rules(host, record_type)"


class RuleStore(Protocol):
    """Operations the import engine needs from the persistent store."""

    def list_enabled_sources(self) -> list[Source]: ...

    def record_import_state(self, source_id: int, revision_tag: str | None, rule_count: int) -> None: ...

    def mark_for_deletion(self, source_ids: Sequence[int]) -> None: ...

    def purge_pending_delete(self) -> None: ...

    def delete_all_non_user_rules(self) -> None: ...

    def insert_ignore_conflict(self, rules: Iterable[Rule]) -> int: ...

    def commit_staged(self) -> None: ...

    def rollback_staged(self) -> None: ...

    def unstage(self, source_id: int) -> None: ...

    def purge_staged_for(self, source_id: int) -> None: ...

    def has_staged_rows(self) -> bool: ...

    def count_rules_for(self, source_id: int) -> int: ...

    def rebuild_indices(self) -> None: ...

    def clear_revision_tags_of_disabled(self) -> None: ...


def _row_to_source(row: sqlite3.Row) -> Source:
    return Source(
        id=row["id"],
        name=row["name"],
        origin=row["origin"],
        enabled=bool(row["enabled"]),
        whitelist=bool(row["whitelist"]),
        revision_tag=row["revision_tag"],
        rule_count=row["rule_count"],
    )


def _row_to_rule(row: sqlite3.Row) -> Rule:
    return Rule(
        host=row["host"],
        record_type=RecordType(row["record_type"]),
        target=row["target"],
        target_v6=row["target_v6"],
        source_id=row["source_id"],
        is_wildcard=bool(row["is_wildcard"]),
        staging=StagingMarker(row["staging"]),
    )


class SQLiteRuleStore:
    """SQLite-backed implementation of RuleStore.

    One connection is kept open for the lifetime of the store. Every write
    runs in its own transaction, and sqlite3 failures surface as
    StoreWriteError.
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        if str(db_path) != ":memory:":
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys=ON;")
        self.conn.execute("PRAGMA journal_mode=WAL;")
        self.conn.execute("PRAGMA busy_timeout=5000;")
        self._init_schema()

    def _init_schema(self) -> None:
        with self._write():
            self.conn.executescript(_SCHEMA)
            self.conn.execute(_LOOKUP_INDEX)

    @contextmanager
    def _write(self) -> Iterator[sqlite3.Connection]:
        """Run the enclosed statements as one transaction."""
        try:
            with self.conn:
                yield self.conn
        except sqlite3.Error as e:
            raise StoreWriteError(str(e)) from e

    def close(self) -> None:
        self.conn.close()

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------

    def add_source(
        self,
        name: str,
        origin: str,
        whitelist: bool = False,
        enabled: bool = True,
    ) -> Source:
        with self._write() as conn:
            cursor = conn.execute(
                "INSERT INTO sources (name, origin, enabled, whitelist) VALUES (?, ?, ?, ?)",
                (name, origin, int(enabled), int(whitelist)),
            )
        return Source(cursor.lastrowid, name, origin, enabled=enabled, whitelist=whitelist)

    def get_source(self, source_id: int) -> Source | None:
        row = self.conn.execute("SELECT * FROM sources WHERE id = ?", (source_id,)).fetchone()
        return _row_to_source(row) if row else None

    def list_sources(self) -> list[Source]:
        rows = self.conn.execute("SELECT * FROM sources ORDER BY id").fetchall()
        return [_row_to_source(row) for row in rows]

    def list_enabled_sources(self) -> list[Source]:
        rows = self.conn.execute("SELECT * FROM sources WHERE enabled = 1 ORDER BY id").fetchall()
        return [_row_to_source(row) for row in rows]

    def update_source(self, source: Source) -> None:
        with self._write() as conn:
            conn.execute(
                "UPDATE sources SET name = ?, origin = ?, enabled = ?, whitelist = ?, "
                "revision_tag = ?, rule_count = ? WHERE id = ?",
                (
                    source.name,
                    source.origin,
                    int(source.enabled),
                    int(source.whitelist),
                    source.revision_tag,
                    source.rule_count,
                    source.id,
                ),
            )

    def record_import_state(self, source_id: int, revision_tag: str | None, rule_count: int) -> None:
        """Save the revision tag and rule count of an imported source, nothing else."""
        with self._write() as conn:
            conn.execute(
                "UPDATE sources SET revision_tag = ?, rule_count = ? WHERE id = ?",
                (revision_tag, rule_count, source_id),
            )

    def clear_revision_tags_of_disabled(self) -> None:
        with self._write() as conn:
            conn.execute("UPDATE sources SET revision_tag = NULL WHERE enabled = 0")

    # ------------------------------------------------------------------
    # Rules
    # ------------------------------------------------------------------

    def add_user_rule(
        self,
        host: str,
        record_type: RecordType,
        target: str,
        target_v6: str | None = None,
    ) -> None:
        """Insert a committed rule that belongs to no source."""
        with self._write() as conn:
            conn.execute(
                "INSERT INTO rules (host, record_type, target, target_v6, source_id, staging) "
                "VALUES (?, ?, ?, ?, NULL, ?)",
                (host, record_type.value, target, target_v6, _COMMITTED),
            )

    def list_rules(
        self,
        source_id: int | None = None,
        staging: StagingMarker | None = None,
    ) -> list[Rule]:
        query = "SELECT * FROM rules WHERE 1 = 1"
        params: list[object] = []
        if source_id is not None:
            query += " AND source_id = ?"
            params.append(source_id)
        if staging is not None:
            query += " AND staging = ?"
            params.append(int(staging))
        rows = self.conn.execute(query + " ORDER BY id", params).fetchall()
        return [_row_to_rule(row) for row in rows]

    def insert_ignore_conflict(self, rules: Iterable[Rule]) -> int:
        """Insert rules, silently skipping natural-key duplicates."""
        with self._write() as conn:
            before = conn.total_changes
            conn.executemany(
                "INSERT OR IGNORE INTO rules "
                "(host, record_type, target, target_v6, source_id, is_wildcard, staging) "
                "VALUES (?, ?, ?, ?, ?, ?, ?)",
                (
                    (
                        rule.host,
                        rule.record_type.value,
                        rule.target,
                        rule.target_v6,
                        rule.source_id,
                        int(rule.is_wildcard),
                        int(rule.staging),
                    )
                    for rule in rules
                ),
            )
            return conn.total_changes - before

    def count_rules_for(self, source_id: int) -> int:
        row = self.conn.execute(
            "SELECT COUNT(*) FROM rules WHERE source_id = ? AND staging = ?",
            (source_id, _COMMITTED),
        ).fetchone()
        return row[0]

    def has_staged_rows(self) -> bool:
        row = self.conn.execute(
            "SELECT EXISTS (SELECT 1 FROM rules WHERE staging != ?)", (_COMMITTED,)
        ).fetchone()
        return bool(row[0])

    # ------------------------------------------------------------------
    # Staging transitions
    # ------------------------------------------------------------------

    def mark_for_deletion(self, source_ids: Sequence[int]) -> None:
        placeholders = ",".join("?" for _ in source_ids)
        with self._write() as conn:
            conn.execute(
                f"UPDATE rules SET staging = ? WHERE staging = ? "
                f"AND source_id IS NOT NULL AND source_id IN ({placeholders})",
                (_PENDING_DELETE, _COMMITTED, *source_ids),
            )

    def purge_pending_delete(self) -> None:
        with self._write() as conn:
            conn.execute("DELETE FROM rules WHERE staging = ?", (_PENDING_DELETE,))

    def delete_all_non_user_rules(self) -> None:
        with self._write() as conn:
            conn.execute("DELETE FROM rules WHERE source_id IS NOT NULL")

    def unstage(self, source_id: int) -> None:
        """Cancel the pending deletion of one source's rules."""
        with self._write() as conn:
            conn.execute(
                "UPDATE OR IGNORE rules SET staging = ? WHERE source_id = ? AND staging = ?",
                (_COMMITTED, source_id, _PENDING_DELETE),
            )

    def purge_staged_for(self, source_id: int) -> None:
        with self._write() as conn:
            conn.execute(
                "DELETE FROM rules WHERE source_id = ? AND staging = ?",
                (source_id, _STAGED_NEW),
            )

    def commit_staged(self) -> None:
        """Purge pending deletions and make staged rows live, as one transaction."""
        with self._write() as conn:
            conn.execute("DELETE FROM rules WHERE staging = ?", (_PENDING_DELETE,))
            conn.execute(
                "UPDATE OR IGNORE rules SET staging = ? WHERE staging = ?",
                (_COMMITTED, _STAGED_NEW),
            )
            conn.execute("DELETE FROM rules WHERE staging = ?", (_STAGED_NEW,))

    def rollback_staged(self) -> None:
        """Drop staged rows and restore pending deletions, as one transaction."""
        with self._write() as conn:
            conn.execute("DELETE FROM rules WHERE staging = ?", (_STAGED_NEW,))
            conn.execute(
                "UPDATE OR IGNORE rules SET staging = ? WHERE staging = ?",
                (_COMMITTED, _PENDING_DELETE),
            )

    def rebuild_indices(self) -> None:
        with self._write() as conn:
            conn.execute("DROP INDEX IF EXISTS idx_rules_lookup")
            conn.execute(_LOOKUP_INDEX)
            conn.execute("ANALYZE rules")
