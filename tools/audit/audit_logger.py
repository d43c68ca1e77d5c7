#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Audit Logger — append-only audit trail writer for the context engine.

Logs context build lifecycle and overflow events to the audit_trail table
in govproposal.db. No UPDATE/DELETE operations.

Usage:
    python tools/audit/audit_logger.py \
        --event-type "context.build.complete" \
        --actor "context_service" \
        --action "Built requirements context for PROJ-A" \
        --entity-id "PROJ-A" \
        --json
    python tools/audit/audit_logger.py --query --event-type context.overflow --json
"""

import argparse
import json
import logging
import os
import sqlite3
from datetime import datetime, timedelta, timezone
from pathlib import Path

logger = logging.getLogger("govproposal.audit")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "GOVPROPOSAL_DB_PATH", str(BASE_DIR / "data" / "govproposal.db")
))


def _db_path(db_path=None) -> Path:
    return Path(db_path) if db_path else Path(DB_PATH)


def log_event(event_type: str, actor: str, action: str,
              entity_type: str = "", entity_id: str = "",
              details: dict = None, db_path=None) -> dict:
    """Append an event to the audit trail. Returns the entry."""
    entry = {
        "event_type": event_type,
        "actor": actor,
        "action": action,
        "entity_type": entity_type,
        "entity_id": entity_id,
        "details": json.dumps(details or {}, default=str),
        "created_at": datetime.now(timezone.utc).isoformat(),
    }

    path = _db_path(db_path)
    if not path.exists():
        logger.debug("Audit DB %s missing, event %s not persisted", path, event_type)
        return entry

    conn = sqlite3.connect(str(path))
    try:
        cur = conn.execute(
            """INSERT INTO audit_trail
               (event_type, actor, action, entity_type, entity_id, details, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (entry["event_type"], entry["actor"], entry["action"],
             entry["entity_type"], entry["entity_id"], entry["details"],
             entry["created_at"]),
        )
        conn.commit()
        entry["id"] = cur.lastrowid
    except sqlite3.OperationalError as exc:
        logger.warning("Audit write failed for %s: %s", event_type, exc)
    finally:
        conn.close()

    return entry


def query_events(event_type: str = None, entity_id: str = None,
                 since_days: int = None, limit: int = 500, db_path=None) -> list:
    """Return audit entries newest first, with ``details`` decoded."""
    path = _db_path(db_path)
    if not path.exists():
        return []
    clauses, params = [], []
    if event_type:
        clauses.append("event_type = ?")
        params.append(event_type)
    if entity_id:
        clauses.append("entity_id = ?")
        params.append(entity_id)
    if since_days is not None:
        cutoff = datetime.now(timezone.utc) - timedelta(days=since_days)
        clauses.append("created_at >= ?")
        params.append(cutoff.isoformat())
    where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
    params.append(limit)

    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    try:
        rows = conn.execute(
            f"SELECT * FROM audit_trail {where} ORDER BY created_at DESC, id DESC LIMIT ?",
            params,
        ).fetchall()
    finally:
        conn.close()

    events = []
    for row in rows:
        event = dict(row)
        try:
            event["details"] = json.loads(event.get("details") or "{}")
        except json.JSONDecodeError:
            event["details"] = {}
        events.append(event)
    return events


def main():
    parser = argparse.ArgumentParser(description="Audit Logger")
    parser.add_argument("--query", action="store_true", help="List events instead of logging")
    parser.add_argument("--event-type")
    parser.add_argument("--actor", default="cli")
    parser.add_argument("--action")
    parser.add_argument("--entity-type", default="")
    parser.add_argument("--entity-id", default="")
    parser.add_argument("--days", type=int)
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    if args.query:
        result = query_events(args.event_type, args.entity_id or None, args.days)
        if args.json:
            print(json.dumps(result, indent=2))
        else:
            for event in result:
                print(f"{event['created_at']} [{event['event_type']}] {event['action']}")
        return

    if not args.event_type or not args.action:
        parser.error("--event-type and --action are required when logging")
    result = log_event(args.event_type, args.actor, args.action,
                       args.entity_type, args.entity_id)
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(f"Logged: [{result['event_type']}] {result['action']}")


if __name__ == "__main__":
    main()
