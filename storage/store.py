"""
SQLite-backed durable state for the pipeline: crash rows, components, component error records and version stats.
One connection guarded by an RLock, shared across worker threads (same approach as storage.cache.Cache).
"""

import sqlite3
import json
import time
import threading
from contextlib import contextmanager
from typing import Optional, Any, Dict, List, Iterable, Tuple

from normalize.models import (
    CrashReport,
    Component,
    ComponentErrorRecord,
    VersionStat,
    COMPONENT_STATUSES,
    CRASH_LINKED,
    CRASH_PENDING,
    STATUS_ACTIVE,
)
from normalize.util import normalize_app_version

# noinspection SqlResolve
SQL_CREATE = """
CREATE TABLE IF NOT EXISTS crashes (
    id TEXT PRIMARY KEY,
    project_id TEXT NOT NULL,
    error_message TEXT,
    stack_trace TEXT,
    app_version TEXT,
    event_count INTEGER DEFAULT 1,
    created_at REAL,
    source TEXT,
    status TEXT DEFAULT 'pending',
    reason TEXT,
    component_id INTEGER,
    analysis TEXT,
    recorded_at REAL
);
CREATE TABLE IF NOT EXISTS components (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_id TEXT NOT NULL,
    identifier TEXT NOT NULL,
    name TEXT,
    status TEXT DEFAULT 'active',
    fallback_message TEXT,
    crash_threshold INTEGER DEFAULT 3,
    crash_count INTEGER DEFAULT 0,
    status_source TEXT DEFAULT 'auto',
    revision INTEGER DEFAULT 0,
    created_at REAL,
    updated_at REAL,
    UNIQUE (project_id, identifier)
);
CREATE TABLE IF NOT EXISTS component_errors (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    component_id INTEGER NOT NULL REFERENCES components(id),
    project_id TEXT NOT NULL,
    action_id TEXT,
    app_version TEXT,
    error_message TEXT NOT NULL,
    stack_trace TEXT,
    event_count INTEGER DEFAULT 0,
    metadata TEXT,
    archived INTEGER DEFAULT 0,
    created_at REAL,
    last_seen REAL,
    UNIQUE (component_id, error_message)
);
CREATE TABLE IF NOT EXISTS error_occurrences (
    error_id INTEGER NOT NULL REFERENCES component_errors(id),
    crash_id TEXT NOT NULL,
    event_count INTEGER DEFAULT 1,
    recorded_at REAL,
    PRIMARY KEY (error_id, crash_id)
);
CREATE TABLE IF NOT EXISTS version_stats (
    component_id INTEGER NOT NULL REFERENCES components(id),
    app_version TEXT NOT NULL,
    crash_count INTEGER DEFAULT 0,
    action_count INTEGER DEFAULT 0,
    PRIMARY KEY (component_id, app_version)
);
CREATE INDEX IF NOT EXISTS idx_crashes_unlinked ON crashes (component_id, created_at);
"""


def _loads(raw: Optional[str]) -> Dict[str, Any]:
    if not raw:
        return {}
    try:
        data = json.loads(raw)
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _component(row) -> Component:
    return Component(
        component_id=row['id'],
        project_id=row['project_id'],
        identifier=row['identifier'],
        name=row['name'],
        status=row['status'],
        fallback_message=row['fallback_message'],
        crash_threshold=row['crash_threshold'],
        crash_count=row['crash_count'],
        status_source=row['status_source'],
        revision=row['revision'],
        created_at=row['created_at'],
        updated_at=row['updated_at'],
    )


def _error(row) -> ComponentErrorRecord:
    return ComponentErrorRecord(
        error_id=row['id'],
        component_id=row['component_id'],
        project_id=row['project_id'],
        action_id=row['action_id'],
        app_version=row['app_version'],
        error_message=row['error_message'],
        stack_trace=row['stack_trace'],
        event_count=row['event_count'],
        metadata=_loads(row['metadata']),
        archived=bool(row['archived']),
        last_seen=row['last_seen'],
    )


def _crash(row) -> CrashReport:
    return CrashReport(
        crash_id=row['id'],
        project_id=row['project_id'],
        error_message=row['error_message'],
        stack_trace=row['stack_trace'],
        app_version=row['app_version'],
        event_count=row['event_count'],
        created_at=row['created_at'],
        source=row['source'],
    )


class CrashStore:
    def __init__(self, path: Optional[str] = None):
        """Open (and create if needed) the store. path=None keeps everything in memory."""
        self.path = path or ':memory:'
        self.conn = sqlite3.connect(self.path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self._lock = threading.RLock()
        with self._lock:
            self.conn.executescript(SQL_CREATE)
            self.conn.commit()

    def close(self):
        with self._lock:
            if self.conn is not None:
                try:
                    self.conn.close()
                finally:
                    self.conn = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    @contextmanager
    def transaction(self):
        """Hold the store lock and commit (or roll back) everything done inside the block."""
        with self._lock:
            try:
                yield self.conn
            except Exception:
                self.conn.rollback()
                raise
            else:
                self.conn.commit()

    # --- crashes ---

    # noinspection SqlResolve
    def add_crash(self, report: CrashReport) -> bool:
        """Insert a crash row; returns False when the id is already stored."""
        with self.transaction() as conn:
            cur = conn.execute(
                'INSERT OR IGNORE INTO crashes(id, project_id, error_message, stack_trace, app_version, event_count, created_at, source, status) '
                'VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)',
                (
                    report.crash_id,
                    report.project_id,
                    report.error_message,
                    report.stack_trace,
                    normalize_app_version(report.app_version),
                    report.event_count,
                    report.created_at if report.created_at is not None else time.time(),
                    report.source,
                    CRASH_PENDING,
                ),
            )
            return cur.rowcount == 1

    # noinspection SqlResolve
    def get_crash(self, crash_id: str) -> Optional[CrashReport]:
        with self._lock:
            row = self.conn.execute('SELECT * FROM crashes WHERE id = ?', (crash_id,)).fetchone()
        return _crash(row) if row else None

    # noinspection SqlResolve
    def get_crash_state(self, crash_id: str) -> Optional[Dict[str, Any]]:
        """Processing state of a crash: status, reason, component_id, analysis, recorded_at."""
        with self._lock:
            row = self.conn.execute('SELECT status, reason, component_id, analysis, recorded_at FROM crashes WHERE id = ?', (crash_id,)).fetchone()
        if not row:
            return None
        return {
            'status': row['status'],
            'reason': row['reason'],
            'component_id': row['component_id'],
            'analysis': _loads(row['analysis']),
            'recorded_at': row['recorded_at'],
        }

    # noinspection SqlResolve
    def list_unlinked_crashes(self, limit: int = 10) -> List[CrashReport]:
        """Crashes with a stack trace and no component, oldest first."""
        with self._lock:
            rows = self.conn.execute(
                'SELECT * FROM crashes WHERE component_id IS NULL AND stack_trace IS NOT NULL ORDER BY created_at ASC, id ASC LIMIT ?',
                (int(limit),),
            ).fetchall()
        return [_crash(r) for r in rows]

    def _merge_analysis(self, conn, crash_id: str, analysis: Optional[Dict[str, Any]]) -> str:
        row = conn.execute('SELECT analysis FROM crashes WHERE id = ?', (crash_id,)).fetchone()
        merged = _loads(row['analysis']) if row else {}
        merged.update(analysis or {})
        return json.dumps(merged, default=str)

    # noinspection SqlResolve
    def mark_crash(self, crash_id: str, status: str, reason: Optional[str], analysis: Optional[Dict[str, Any]] = None):
        """Record a non-linking outcome (reason is shown to operators)."""
        with self.transaction() as conn:
            conn.execute(
                'UPDATE crashes SET status = ?, reason = ?, analysis = ? WHERE id = ?',
                (status, reason, self._merge_analysis(conn, crash_id, analysis), crash_id),
            )

    # noinspection SqlResolve
    def link_crash(self, crash_id: str, component_id: int, analysis: Optional[Dict[str, Any]] = None):
        with self.transaction() as conn:
            conn.execute(
                'UPDATE crashes SET status = ?, reason = NULL, component_id = ?, analysis = ?, recorded_at = ? WHERE id = ?',
                (CRASH_LINKED, component_id, self._merge_analysis(conn, crash_id, analysis), time.time(), crash_id),
            )

    # --- components ---

    # noinspection SqlResolve
    def get_component(self, project_id: str, identifier: str) -> Optional[Component]:
        with self._lock:
            row = self.conn.execute('SELECT * FROM components WHERE project_id = ? AND identifier = ?', (project_id, identifier)).fetchone()
        return _component(row) if row else None

    # noinspection SqlResolve
    def get_component_by_id(self, component_id: int) -> Optional[Component]:
        with self._lock:
            row = self.conn.execute('SELECT * FROM components WHERE id = ?', (component_id,)).fetchone()
        return _component(row) if row else None

    # noinspection SqlResolve
    def list_components(self, project_id: Optional[str] = None) -> List[Component]:
        with self._lock:
            if project_id:
                rows = self.conn.execute('SELECT * FROM components WHERE project_id = ? ORDER BY identifier', (project_id,)).fetchall()
            else:
                rows = self.conn.execute('SELECT * FROM components ORDER BY project_id, identifier').fetchall()
        return [_component(r) for r in rows]

    # noinspection SqlResolve
    def create_component(self, project_id: str, identifier: str, name: Optional[str] = None, crash_threshold: int = 3) -> Tuple[Component, bool]:
        """Insert the component unless (project_id, identifier) exists; returns (stored row, inserted)."""
        now = time.time()
        with self.transaction() as conn:
            cur = conn.execute(
                'INSERT OR IGNORE INTO components(project_id, identifier, name, status, crash_threshold, crash_count, status_source, revision, created_at, updated_at) '
                'VALUES (?, ?, ?, ?, ?, 0, ?, 0, ?, ?)',
                (project_id, identifier, name or identifier, STATUS_ACTIVE, int(crash_threshold), 'auto', now, now),
            )
            row = conn.execute('SELECT * FROM components WHERE project_id = ? AND identifier = ?', (project_id, identifier)).fetchone()
        return _component(row), cur.rowcount == 1

    # noinspection SqlResolve
    def compare_and_set_aggregate(self, component_id: int, expected_revision: int, crash_count: int, status: str) -> bool:
        """Write crash_count/status only if nobody else updated the component since expected_revision was read."""
        with self.transaction() as conn:
            cur = conn.execute(
                'UPDATE components SET crash_count = ?, status = ?, revision = revision + 1, updated_at = ? WHERE id = ? AND revision = ?',
                (int(crash_count), status, time.time(), component_id, int(expected_revision)),
            )
            return cur.rowcount == 1

    # noinspection SqlResolve
    def set_component_status(self, project_id: str, identifier: str, status: str, fallback_message: Optional[str] = None, manual: bool = True) -> Optional[Component]:
        """Operator status change. manual=True makes the status sticky against automatic recomputation."""
        if status not in COMPONENT_STATUSES:
            raise ValueError(f"Unknown component status {status!r}; expected one of {', '.join(COMPONENT_STATUSES)}")
        with self.transaction() as conn:
            conn.execute(
                'UPDATE components SET status = ?, fallback_message = COALESCE(?, fallback_message), status_source = ?, revision = revision + 1, updated_at = ? '
                'WHERE project_id = ? AND identifier = ?',
                (status, fallback_message, 'manual' if manual else 'auto', time.time(), project_id, identifier),
            )
        return self.get_component(project_id, identifier)

    # noinspection SqlResolve
    def clear_override(self, project_id: str, identifier: str) -> Optional[Component]:
        with self.transaction() as conn:
            conn.execute(
                "UPDATE components SET status_source = 'auto', revision = revision + 1, updated_at = ? WHERE project_id = ? AND identifier = ?",
                (time.time(), project_id, identifier),
            )
        return self.get_component(project_id, identifier)

    def component_status(self, project_id: str, identifiers: Iterable[str]) -> Dict[str, Dict[str, Any]]:
        """Status lookup for client polling; unknown identifiers are reported as active."""
        wanted = [i for i in identifiers if i]
        known = {c.identifier: c for c in self.list_components(project_id)}
        out: Dict[str, Dict[str, Any]] = {}
        for ident in wanted:
            comp = known.get(ident)
            out[ident] = {
                'status': comp.status if comp else STATUS_ACTIVE,
                'fallback_message': comp.fallback_message if comp else None,
            }
        return out

    # --- error records ---

    # noinspection SqlResolve
    def find_error(self, component_id: int, error_message: str) -> Optional[ComponentErrorRecord]:
        with self._lock:
            row = self.conn.execute('SELECT * FROM component_errors WHERE component_id = ? AND error_message = ?', (component_id, error_message)).fetchone()
        return _error(row) if row else None

    # noinspection SqlResolve
    def list_errors(self, component_id: int, include_archived: bool = True) -> List[ComponentErrorRecord]:
        sql = 'SELECT * FROM component_errors WHERE component_id = ?'
        if not include_archived:
            sql += ' AND archived = 0'
        with self._lock:
            rows = self.conn.execute(sql + ' ORDER BY id', (component_id,)).fetchall()
        return [_error(r) for r in rows]

    # noinspection SqlResolve
    def upsert_error(
        self,
        component: Component,
        crash_id: str,
        error_message: str,
        stack_trace: Optional[str],
        action_id: str,
        app_version: str,
        event_count: int,
        metadata: Dict[str, Any],
    ):
        """Find-or-create the (component, error message) record and fold this crash into it.

        Returns (record, created, counted): counted is False when this crash id was already folded in,
        in which case only action id, app version and metadata are refreshed.
        """
        now = time.time()
        payload = json.dumps(metadata or {}, default=str)
        with self.transaction() as conn:
            cur = conn.execute(
                'INSERT OR IGNORE INTO component_errors(component_id, project_id, action_id, app_version, error_message, stack_trace, event_count, metadata, archived, created_at, last_seen) '
                'VALUES (?, ?, ?, ?, ?, ?, 0, ?, 0, ?, ?)',
                (component.component_id, component.project_id, action_id, app_version, error_message, stack_trace, payload, now, now),
            )
            created = cur.rowcount == 1
            row = conn.execute('SELECT id FROM component_errors WHERE component_id = ? AND error_message = ?', (component.component_id, error_message)).fetchone()
            error_id = row['id']
            cur = conn.execute(
                'INSERT OR IGNORE INTO error_occurrences(error_id, crash_id, event_count, recorded_at) VALUES (?, ?, ?, ?)',
                (error_id, crash_id, int(event_count), now),
            )
            counted = cur.rowcount == 1
            if counted:
                conn.execute(
                    'UPDATE component_errors SET event_count = event_count + ?, archived = 0, last_seen = ? WHERE id = ?',
                    (int(event_count), now, error_id),
                )
            conn.execute(
                'UPDATE component_errors SET action_id = ?, app_version = ?, metadata = ? WHERE id = ?',
                (action_id, app_version, payload, error_id),
            )
            record = _error(conn.execute('SELECT * FROM component_errors WHERE id = ?', (error_id,)).fetchone())
        return record, created, counted

    # noinspection SqlResolve
    def archive_errors_older_than(self, days: float, now: Optional[float] = None) -> int:
        """Flag error records not seen for `days` days as archived. Returns how many were archived."""
        cutoff = (now if now is not None else time.time()) - float(days) * 86400.0
        with self.transaction() as conn:
            cur = conn.execute('UPDATE component_errors SET archived = 1 WHERE archived = 0 AND last_seen < ?', (cutoff,))
            return cur.rowcount

    # --- version stats ---

    # noinspection SqlResolve
    def increment_version_stat(self, component_id: int, app_version: str, crashes: int = 0, actions: int = 0) -> VersionStat:
        with self.transaction() as conn:
            conn.execute(
                'INSERT INTO version_stats(component_id, app_version, crash_count, action_count) VALUES (?, ?, ?, ?) '
                'ON CONFLICT(component_id, app_version) DO UPDATE SET crash_count = crash_count + excluded.crash_count, '
                'action_count = action_count + excluded.action_count',
                (component_id, app_version, int(crashes), int(actions)),
            )
        return self.get_version_stat(component_id, app_version)

    # noinspection SqlResolve
    def get_version_stat(self, component_id: int, app_version: str) -> Optional[VersionStat]:
        with self._lock:
            row = self.conn.execute(
                'SELECT * FROM version_stats WHERE component_id = ? AND app_version = ?', (component_id, app_version)
            ).fetchone()
        if not row:
            return None
        return VersionStat(row['component_id'], row['app_version'], row['crash_count'], row['action_count'])

    def record_action(self, project_id: str, identifier: str, app_version: str) -> Optional[VersionStat]:
        """Count one invocation of an action; unknown components are ignored (None)."""
        comp = self.get_component(project_id, identifier)
        if comp is None:
            return None
        return self.increment_version_stat(comp.component_id, normalize_app_version(app_version), actions=1)
