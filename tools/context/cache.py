#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN
# Distribution: D
# POC: GovProposal System Administrator
"""Context cache: one project_contexts row per (project, document_type).

State machine per key:

    none -> building -> complete
            building -> failed
    failed   -> building   (retry)
    complete -> building   (invalidated rebuild)

Each build attempt gets a number from mark_building(). commit() and
mark_failed() only land for the attempt that is still current, and a
commit never overwrites a row completed by a later attempt. commit() also
compares the fingerprint the build targeted with the current one under the
key lock; a stale result is discarded rather than written.

The payload column keeps the last complete bundle through later building
and failed states, so readers always get the newest complete value without
waiting on a builder.
"""

import json
import logging
import os
import sqlite3
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tools.context.models import (
    STATUS_BUILDING,
    STATUS_COMPLETE,
    STATUS_FAILED,
    STATUS_NONE,
    BuildStatus,
    ContextBundle,
    ScoredCandidate,
)

logger = logging.getLogger("govproposal.context.cache")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "GOVPROPOSAL_DB_PATH", str(BASE_DIR / "data" / "govproposal.db")
))

Key = Tuple[str, str]


def _now():
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


class ContextCache:
    """SQLite-backed bundle cache with key-scoped writer locks."""

    def __init__(self, db_path=None):
        self.db_path = str(db_path) if db_path else None
        self._locks: Dict[Key, threading.RLock] = {}
        self._locks_guard = threading.Lock()

    # ── plumbing ───────────────────────────────────────────────────────────────

    def _get_db(self):
        conn = sqlite3.connect(self.db_path or str(DB_PATH), timeout=30)
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA journal_mode=WAL")
        return conn

    def key_lock(self, project_name: str, document_type: str) -> threading.RLock:
        """The writer lock for one key. Re-entrant so callers can hold it across commit()."""
        key = (project_name, document_type)
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.RLock()
            return self._locks[key]

    def _ensure_row(self, conn, project_name: str, document_type: str):
        now = _now()
        conn.execute("""
            INSERT INTO project_contexts (project_name, document_type, status,
                                          created_at, updated_at)
            VALUES (?, ?, ?, ?, ?)
            ON CONFLICT(project_name, document_type) DO NOTHING
        """, (project_name, document_type, STATUS_NONE, now, now))

    # ── reads ──────────────────────────────────────────────────────────────────

    def get_record(self, project_name: str, document_type: str) -> Optional[dict]:
        conn = self._get_db()
        try:
            row = conn.execute(
                "SELECT * FROM project_contexts WHERE project_name = ? AND document_type = ?",
                (project_name, document_type),
            ).fetchone()
            return dict(row) if row else None
        finally:
            conn.close()

    def _payload(self, project_name: str, document_type: str) -> Optional[dict]:
        record = self.get_record(project_name, document_type)
        if not record or not record.get("payload"):
            return None
        try:
            return json.loads(record["payload"])
        except json.JSONDecodeError:
            logger.error("Corrupt context payload for %s/%s", project_name, document_type)
            return None

    def get_bundle(self, project_name: str, document_type: str) -> Optional[ContextBundle]:
        """Last complete bundle for the key, whatever the current status."""
        payload = self._payload(project_name, document_type)
        if not payload or "bundle" not in payload:
            return None
        return ContextBundle.from_dict(payload["bundle"])

    def get_candidates(self, project_name: str,
                       document_type: str) -> Optional[List[ScoredCandidate]]:
        """Scored candidate pool of the last complete build, for re-selection."""
        payload = self._payload(project_name, document_type)
        if not payload or "candidates" not in payload:
            return None
        return [ScoredCandidate.from_dict(c) for c in payload["candidates"]]

    def get_build_status(self, project_name: str, document_type: str) -> BuildStatus:
        record = self.get_record(project_name, document_type)
        if not record:
            return BuildStatus(status=STATUS_NONE)
        return BuildStatus(
            status=record["status"],
            token_count=record["token_count"] or 0,
            document_count=record["document_count"] or 0,
            error_message=record["error_message"],
            warning=record["warning"],
            build_timestamp=record["build_timestamp"],
            fingerprint=record["fingerprint"],
        )

    def list_keys(self, project_name: Optional[str] = None) -> List[Key]:
        conn = self._get_db()
        try:
            if project_name:
                rows = conn.execute(
                    "SELECT project_name, document_type FROM project_contexts "
                    "WHERE project_name = ? ORDER BY document_type", (project_name,),
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT project_name, document_type FROM project_contexts "
                    "ORDER BY project_name, document_type"
                ).fetchall()
            return [(r["project_name"], r["document_type"]) for r in rows]
        finally:
            conn.close()

    # ── transitions ────────────────────────────────────────────────────────────

    def mark_pending(self, project_name: str, document_type: str):
        """Flag a key as rebuilding ahead of a debounced build. Payload is kept."""
        with self.key_lock(project_name, document_type):
            conn = self._get_db()
            try:
                self._ensure_row(conn, project_name, document_type)
                conn.execute("""
                    UPDATE project_contexts SET status = ?, updated_at = ?
                     WHERE project_name = ? AND document_type = ?
                """, (STATUS_BUILDING, _now(), project_name, document_type))
                conn.commit()
            finally:
                conn.close()

    def mark_building(self, project_name: str, document_type: str,
                      fingerprint: str) -> int:
        """Start a build attempt targeting ``fingerprint``. Returns the attempt number."""
        with self.key_lock(project_name, document_type):
            conn = self._get_db()
            try:
                self._ensure_row(conn, project_name, document_type)
                conn.execute("""
                    UPDATE project_contexts
                       SET status = ?, building_fingerprint = ?,
                           build_attempt = build_attempt + 1, updated_at = ?
                     WHERE project_name = ? AND document_type = ?
                """, (STATUS_BUILDING, fingerprint, _now(), project_name, document_type))
                conn.commit()
                row = conn.execute(
                    "SELECT build_attempt FROM project_contexts "
                    "WHERE project_name = ? AND document_type = ?",
                    (project_name, document_type),
                ).fetchone()
                return row["build_attempt"]
            finally:
                conn.close()

    def commit(self, project_name: str, document_type: str, attempt: int,
               target_fingerprint: str, current_fingerprint: str,
               bundle: ContextBundle, candidates: List[ScoredCandidate],
               warning: Optional[str] = None) -> bool:
        """Write a finished build. Returns False when the result was discarded."""
        with self.key_lock(project_name, document_type):
            if target_fingerprint != current_fingerprint:
                logger.info("Discarding stale build %s/%s attempt %d (fingerprint moved)",
                            project_name, document_type, attempt)
                return False
            conn = self._get_db()
            try:
                self._ensure_row(conn, project_name, document_type)
                row = conn.execute(
                    "SELECT build_attempt, completed_attempt FROM project_contexts "
                    "WHERE project_name = ? AND document_type = ?",
                    (project_name, document_type),
                ).fetchone()
                if row["completed_attempt"] > attempt:
                    logger.info("Discarding build %s/%s attempt %d (attempt %d already complete)",
                                project_name, document_type, attempt, row["completed_attempt"])
                    return False
                status = STATUS_COMPLETE if row["build_attempt"] <= attempt else STATUS_BUILDING
                payload = json.dumps({
                    "bundle": bundle.to_dict(),
                    "candidates": [c.to_dict() for c in candidates],
                })
                conn.execute("""
                    UPDATE project_contexts
                       SET status = ?, payload = ?, token_count = ?,
                           character_count = ?, word_count = ?, document_count = ?,
                           error_message = NULL, warning = ?, fingerprint = ?,
                           building_fingerprint = NULL, completed_attempt = ?,
                           policy_hash = ?, build_timestamp = ?, updated_at = ?
                     WHERE project_name = ? AND document_type = ?
                """, (status, payload, bundle.token_count, bundle.character_count,
                      bundle.word_count, bundle.document_count, warning,
                      target_fingerprint, attempt, bundle.policy_hash,
                      bundle.build_timestamp, _now(), project_name, document_type))
                conn.commit()
                return True
            finally:
                conn.close()

    def mark_failed(self, project_name: str, document_type: str, attempt: int,
                    error_message: str) -> bool:
        """Fail the current attempt. A previous complete payload stays servable."""
        with self.key_lock(project_name, document_type):
            conn = self._get_db()
            try:
                row = conn.execute(
                    "SELECT build_attempt, payload, build_timestamp FROM project_contexts "
                    "WHERE project_name = ? AND document_type = ?",
                    (project_name, document_type),
                ).fetchone()
                if not row or row["build_attempt"] != attempt:
                    return False
                warning = None
                if row["payload"]:
                    warning = (f"Serving previous context built {row['build_timestamp']}; "
                               f"latest build failed: {error_message}")
                conn.execute("""
                    UPDATE project_contexts
                       SET status = ?, error_message = ?, warning = ?, updated_at = ?
                     WHERE project_name = ? AND document_type = ?
                """, (STATUS_FAILED, error_message, warning, _now(),
                      project_name, document_type))
                conn.commit()
                return True
            finally:
                conn.close()

    def restore_complete(self, project_name: str, document_type: str) -> bool:
        """Return a key with an up-to-date payload to ``complete`` without rebuilding."""
        with self.key_lock(project_name, document_type):
            conn = self._get_db()
            try:
                cur = conn.execute("""
                    UPDATE project_contexts
                       SET status = ?, error_message = NULL, warning = NULL,
                           building_fingerprint = NULL, updated_at = ?
                     WHERE project_name = ? AND document_type = ?
                       AND payload IS NOT NULL AND status != ?
                """, (STATUS_COMPLETE, _now(), project_name, document_type, STATUS_COMPLETE))
                conn.commit()
                return cur.rowcount > 0
            finally:
                conn.close()

    def invalidate(self, project_name: str, document_type: Optional[str] = None) -> int:
        """Forget fingerprints so the next request rebuilds. Payloads stay servable."""
        conn = self._get_db()
        try:
            sql = "UPDATE project_contexts SET fingerprint = NULL, updated_at = ? WHERE project_name = ?"
            params = [_now(), project_name]
            if document_type:
                sql += " AND document_type = ?"
                params.append(document_type)
            cur = conn.execute(sql, params)
            conn.commit()
            return cur.rowcount
        finally:
            conn.close()

    def delete(self, project_name: str, document_type: str) -> bool:
        with self.key_lock(project_name, document_type):
            conn = self._get_db()
            try:
                cur = conn.execute(
                    "DELETE FROM project_contexts WHERE project_name = ? AND document_type = ?",
                    (project_name, document_type),
                )
                conn.commit()
                return cur.rowcount > 0
            finally:
                conn.close()

    def cleanup(self, older_than_hours: int = 24) -> int:
        """Delete failed/building rows with nothing servable older than the threshold."""
        cutoff = (datetime.now(timezone.utc) - timedelta(hours=older_than_hours)
                  ).strftime("%Y-%m-%dT%H:%M:%SZ")
        conn = self._get_db()
        try:
            cur = conn.execute("""
                DELETE FROM project_contexts
                 WHERE status IN (?, ?) AND payload IS NULL AND updated_at < ?
            """, (STATUS_FAILED, STATUS_BUILDING, cutoff))
            conn.commit()
            if cur.rowcount:
                logger.info("Cleaned up %d stale context records", cur.rowcount)
            return cur.rowcount
        finally:
            conn.close()
