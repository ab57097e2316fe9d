"""Metadata store: durable records of every target and branch.

Records live in a SQLite database (``.targetflow/meta.db`` by default). The
store also caches file hashes by mtime and size, so checking a tracked file
does not re-read it unless it was touched.

Usage:
    store = MetadataStore(Path(".targetflow/meta.db"))

    record = store.get("clean")
    stale, reason = store.is_stale("clean", command_hash, settings, deps)
    store.put(Record(name="clean", kind="stem", fingerprint=fp, ...))
"""

import json
import sqlite3
import threading
import time
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from threading import local
from typing import Any

from targetflow.exceptions import StaleFile
from targetflow.log import logger
from targetflow.run.hash import compute_fingerprint, compute_md5

logger = logger.getChild(__name__)

SUCCEEDED = "succeeded"
FAILED = "failed"


@dataclass
class Record:
    """Last build outcome of a target or branch."""

    name: str
    kind: str  # stem, pattern, branch
    fingerprint: str
    status: str = SUCCEEDED
    parent: str | None = None
    index: int | None = None  # creation index, branches only
    group_index: int | None = None  # group consumed, group iteration only
    data: str | None = None  # hash of the stored value
    format: str = "pickle"
    location: str | None = None
    error_kind: str | None = None
    error_message: str | None = None
    seconds: float = 0.0
    seed: int | None = None
    branches: list[str] = field(default_factory=list)
    files: dict[str, str] = field(default_factory=dict)
    updated_at: float = 0.0

    @property
    def succeeded(self) -> bool:
        return self.status == SUCCEEDED


_COLUMNS = (
    "name", "kind", "fingerprint", "status", "parent", "idx", "group_idx", "data", "format",
    "location", "error_kind", "error_message", "seconds", "seed", "branches",
    "files", "updated_at",
)


def _to_row(record: Record) -> tuple:
    return (
        record.name,
        record.kind,
        record.fingerprint,
        record.status,
        record.parent,
        record.index,
        record.group_index,
        record.data,
        record.format,
        record.location,
        record.error_kind,
        record.error_message,
        record.seconds,
        record.seed,
        json.dumps(record.branches),
        json.dumps(record.files, sort_keys=True),
        record.updated_at or time.time(),
    )


def _from_row(row: tuple) -> Record:
    values = dict(zip(_COLUMNS, row))
    return Record(
        name=values["name"],
        kind=values["kind"],
        fingerprint=values["fingerprint"],
        status=values["status"],
        parent=values["parent"],
        index=values["idx"],
        group_index=values["group_idx"],
        data=values["data"],
        format=values["format"],
        location=values["location"],
        error_kind=values["error_kind"],
        error_message=values["error_message"],
        seconds=values["seconds"],
        seed=values["seed"],
        branches=json.loads(values["branches"] or "[]"),
        files=json.loads(values["files"] or "{}"),
        updated_at=values["updated_at"],
    )


class MetadataStore:
    """SQLite-backed record store.

    Thread-safe via per-thread connections. Writes are serialized by a
    process-wide lock and an immediate transaction, so concurrent worker
    completions never interleave.
    """

    def __init__(self, db_path: Path | None = None):
        """Initialize the metadata store.

        Args:
            db_path: Path to SQLite database. Defaults to .targetflow/meta.db
                     in the current directory.
        """
        if db_path is None:
            db_path = Path.cwd() / ".targetflow" / "meta.db"
        self.db_path = Path(db_path)
        self._local = local()
        self._write_lock = threading.Lock()
        self._connections: list[sqlite3.Connection] = []
        self._ensure_schema()

    def _get_connection(self) -> sqlite3.Connection:
        """Get thread-local database connection."""
        if not hasattr(self._local, "conn") or self._local.conn is None:
            self.db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = sqlite3.connect(
                str(self.db_path),
                timeout=30.0,
                isolation_level=None,  # Autocommit; writes use explicit transactions
                check_same_thread=False,
            )
            conn.execute("PRAGMA journal_mode=WAL")
            self._local.conn = conn
            with self._write_lock:
                self._connections.append(conn)
        return self._local.conn

    def _ensure_schema(self):
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS records (
                name TEXT PRIMARY KEY,
                kind TEXT NOT NULL,
                fingerprint TEXT NOT NULL,
                status TEXT NOT NULL,
                parent TEXT,
                idx INTEGER,
                group_idx INTEGER,
                data TEXT,
                format TEXT NOT NULL,
                location TEXT,
                error_kind TEXT,
                error_message TEXT,
                seconds REAL NOT NULL,
                seed INTEGER,
                branches TEXT NOT NULL,
                files TEXT NOT NULL,
                updated_at REAL NOT NULL
            )
        """)
        conn.execute("""
            CREATE INDEX IF NOT EXISTS idx_records_parent
            ON records(parent)
        """)
        conn.execute("""
            CREATE TABLE IF NOT EXISTS file_status (
                path TEXT PRIMARY KEY,
                mtime REAL NOT NULL,
                size INTEGER NOT NULL,
                hash TEXT NOT NULL
            )
        """)

    def _write(self, sql: str, params: Iterable[tuple]) -> int:
        """Run ``sql`` once per params tuple inside one serialized transaction."""
        conn = self._get_connection()
        with self._write_lock:
            conn.execute("BEGIN IMMEDIATE")
            try:
                count = 0
                for p in params:
                    count += conn.execute(sql, p).rowcount
                conn.execute("COMMIT")
            except BaseException:
                conn.execute("ROLLBACK")
                raise
        return count

    # -- records --------------------------------------------------------------

    def get(self, name: str) -> Record | None:
        """Get the record for a target or branch, or None if never built."""
        conn = self._get_connection()
        row = conn.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM records WHERE name = ?",
            (name,),
        ).fetchone()
        return _from_row(row) if row is not None else None

    def put(self, record: Record) -> None:
        """Insert or replace a whole record atomically."""
        self.put_many([record])

    def put_many(self, records: Iterable[Record]) -> None:
        """Insert or replace several records in one transaction."""
        rows = [_to_row(r) for r in records]
        placeholders = ", ".join("?" for _ in _COLUMNS)
        self._write(
            f"INSERT OR REPLACE INTO records ({', '.join(_COLUMNS)}) VALUES ({placeholders})",
            rows,
        )

    def delete(self, name: str) -> bool:
        """Delete a record. Returns True if one existed."""
        return self._write("DELETE FROM records WHERE name = ?", [(name,)]) > 0

    def names(self) -> list[str]:
        conn = self._get_connection()
        return [row[0] for row in conn.execute("SELECT name FROM records ORDER BY name")]

    def records(self, kind: str | None = None) -> list[Record]:
        conn = self._get_connection()
        sql = f"SELECT {', '.join(_COLUMNS)} FROM records"
        params: tuple = ()
        if kind is not None:
            sql += " WHERE kind = ?"
            params = (kind,)
        return [_from_row(row) for row in conn.execute(sql + " ORDER BY name", params)]

    def failures(self) -> list[Record]:
        """Records whose last build failed."""
        conn = self._get_connection()
        rows = conn.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM records WHERE status = ? ORDER BY name",
            (FAILED,),
        )
        return [_from_row(row) for row in rows]

    def branches_of(self, pattern: str) -> list[Record]:
        """Stored branch records of ``pattern``, in creation order."""
        conn = self._get_connection()
        rows = conn.execute(
            f"SELECT {', '.join(_COLUMNS)} FROM records WHERE parent = ? ORDER BY idx, name",
            (pattern,),
        )
        return [_from_row(row) for row in rows]

    def orphans(self, live: Iterable[str]) -> list[Record]:
        """Records no longer reachable from the ``live`` target names.

        A branch is an orphan when its identity is missing from its
        pattern's current branch list; any other record is an orphan when
        its target is no longer defined.
        """
        live = set(live)
        all_records = self.records()
        current_branches: set[str] = set()
        for record in all_records:
            if record.kind == "pattern" and record.name in live:
                current_branches.update(record.branches)

        result = []
        for record in all_records:
            if record.kind == "branch":
                if record.name not in current_branches:
                    result.append(record)
            elif record.name not in live:
                result.append(record)
        return result

    def prune(self, live: Iterable[str]) -> list[Record]:
        """Delete orphaned records and return them."""
        orphans = self.orphans(live)
        if orphans:
            self._write("DELETE FROM records WHERE name = ?", [(r.name,) for r in orphans])
            logger.debug("pruned %d orphaned record(s)", len(orphans))
        return orphans

    def clear(self) -> int:
        """Delete every record. Returns the number deleted."""
        return self._write("DELETE FROM records", [()])

    # -- files ----------------------------------------------------------------

    def file_hash(self, path: Path) -> str:
        """MD5 of ``path``, reusing the cached hash while mtime and size match.

        Raises:
            FileNotFoundError: If ``path`` doesn't exist
        """
        stat = path.stat()
        size = stat.st_size
        conn = self._get_connection()
        row = conn.execute(
            "SELECT mtime, size, hash FROM file_status WHERE path = ?",
            (str(path),),
        ).fetchone()
        if path.is_file() and row is not None and row[0] == stat.st_mtime and row[1] == size:
            return row[2]

        md5 = compute_md5(path)
        self._write(
            "INSERT OR REPLACE INTO file_status (path, mtime, size, hash) VALUES (?, ?, ?, ?)",
            [(str(path), stat.st_mtime, size, md5)],
        )
        return md5

    def file_hashes(self, paths: Iterable[str], name: str | None = None) -> dict[str, str]:
        """Current hashes of ``paths``.

        Raises:
            StaleFile: If any path is missing
        """
        hashes = {}
        missing = []
        for path in paths:
            p = Path(path)
            if not p.exists():
                missing.append(path)
                continue
            hashes[path] = self.file_hash(p)
        if missing:
            raise StaleFile(missing, name=name)
        return hashes

    # -- staleness ------------------------------------------------------------

    def is_stale(
        self,
        name: str,
        command_hash: str,
        settings: Mapping[str, Any],
        deps: Mapping[str, str],
    ) -> tuple[bool, str]:
        """Decide whether ``name`` must be rebuilt.

        The fingerprint is recomputed from the current command hash, the
        settings and the upstream fingerprints, plus the current hashes of
        any files the last build recorded, and compared with the stored one.

        Returns:
            Tuple of (is_stale, reason)
        """
        record = self.get(name)
        if record is None:
            return True, "no record"
        if not record.succeeded:
            return True, f"last build failed ({record.error_kind})"

        try:
            files = self.file_hashes(record.files, name=name) if record.files else {}
        except StaleFile as e:
            return True, f"StaleFile: {', '.join(e.paths)}"

        expected = compute_fingerprint(command_hash, settings, deps, files)
        if expected != record.fingerprint:
            if record.files and files != record.files:
                changed = sorted(p for p in files if files[p] != record.files.get(p))
                return True, f"file changed: {changed[0]}"
            return True, "fingerprint changed"
        return False, "up-to-date"

    def close(self):
        """Close all database connections."""
        with self._write_lock:
            for conn in self._connections:
                conn.close()
            self._connections.clear()
        self._local = local()
