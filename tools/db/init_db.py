#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: GovProposal System Administrator
"""Initialize the GovProposal context database with all required tables.

Creates tables for:
  - Projects (profile used for metadata-match relevance)
  - Project Documents (uploaded files, category, status, cached extracted text)
  - Project Contexts (one assembled context bundle per project/document type)
  - System (audit trail)

Usage:
    python tools/db/init_db.py [--json] [--db-path PATH]
"""

import json
import os
import sqlite3
from datetime import datetime, timezone
from pathlib import Path

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "GOVPROPOSAL_DB_PATH", str(BASE_DIR / "data" / "govproposal.db")
))


SCHEMA_SQL = """
-- ============================================================
-- PROJECTS & DOCUMENTS
-- ============================================================

-- Project profile (agency / technologies / keywords feed relevance scoring)
CREATE TABLE IF NOT EXISTS projects (
    name TEXT PRIMARY KEY,
    agency TEXT,
    technologies TEXT,
    keywords TEXT,
    description TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

-- Uploaded project documents
CREATE TABLE IF NOT EXISTS project_documents (
    id TEXT PRIMARY KEY,
    project_name TEXT NOT NULL,
    original_name TEXT NOT NULL,
    file_path TEXT,
    mime_type TEXT,
    size_bytes INTEGER NOT NULL DEFAULT 0,
    file_hash TEXT,
    category TEXT NOT NULL DEFAULT 'references',
    status TEXT NOT NULL DEFAULT 'active'
        CHECK(status IN ('active', 'archived')),
    description TEXT,
    metadata TEXT,
    extracted_text TEXT,
    extracted_hash TEXT,
    extraction_error TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_pdoc_project ON project_documents(project_name);
CREATE INDEX IF NOT EXISTS idx_pdoc_category ON project_documents(project_name, category);
CREATE INDEX IF NOT EXISTS idx_pdoc_status ON project_documents(status);

-- ============================================================
-- CONTEXT CACHE
-- ============================================================

-- One row per (project, document type); replaced on rebuild, never versioned
CREATE TABLE IF NOT EXISTS project_contexts (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    project_name TEXT NOT NULL,
    document_type TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'none'
        CHECK(status IN ('none', 'building', 'complete', 'failed')),
    payload TEXT,
    token_count INTEGER NOT NULL DEFAULT 0,
    character_count INTEGER NOT NULL DEFAULT 0,
    word_count INTEGER NOT NULL DEFAULT 0,
    document_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    warning TEXT,
    fingerprint TEXT,
    building_fingerprint TEXT,
    build_attempt INTEGER NOT NULL DEFAULT 0,
    completed_attempt INTEGER NOT NULL DEFAULT 0,
    policy_hash TEXT,
    build_timestamp TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now')),
    updated_at TEXT NOT NULL DEFAULT (datetime('now')),
    UNIQUE(project_name, document_type)
);

CREATE INDEX IF NOT EXISTS idx_pctx_status ON project_contexts(status);
CREATE INDEX IF NOT EXISTS idx_pctx_updated ON project_contexts(updated_at);

-- ============================================================
-- SYSTEM
-- ============================================================

-- Append-only audit trail
CREATE TABLE IF NOT EXISTS audit_trail (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    event_type TEXT NOT NULL,
    actor TEXT,
    action TEXT NOT NULL,
    entity_type TEXT,
    entity_id TEXT,
    details TEXT,
    ip_address TEXT,
    session_id TEXT,
    created_at TEXT NOT NULL DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_audit_event ON audit_trail(event_type);
CREATE INDEX IF NOT EXISTS idx_audit_entity ON audit_trail(entity_type, entity_id);
CREATE INDEX IF NOT EXISTS idx_audit_time ON audit_trail(created_at);
"""


def init_db(db_path=None):
    """Initialize the GovProposal context database."""
    path = db_path or str(DB_PATH)
    db_dir = Path(path).parent
    db_dir.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(str(path))
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA foreign_keys=ON")

    conn.executescript(SCHEMA_SQL)
    conn.commit()

    cursor = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='table' "
        "AND name NOT LIKE 'sqlite_%'"
    )
    table_count = cursor.fetchone()[0]

    cursor = conn.execute(
        "SELECT COUNT(*) FROM sqlite_master WHERE type='index' "
        "AND name NOT LIKE 'sqlite_%'"
    )
    index_count = cursor.fetchone()[0]

    conn.close()

    return {
        "status": "initialized",
        "db_path": str(path),
        "tables": table_count,
        "indexes": index_count,
        "initialized_at": datetime.now(timezone.utc).isoformat(),
    }


if __name__ == "__main__":
    import argparse

    parser = argparse.ArgumentParser(description="Initialize GovProposal context database")
    parser.add_argument("--json", action="store_true", help="JSON output")
    parser.add_argument("--db-path", help="Override database path")
    args = parser.parse_args()

    result = init_db(db_path=args.db_path)

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print("GovProposal database initialized:")
        print(f"  Path:    {result['db_path']}")
        print(f"  Tables:  {result['tables']}")
        print(f"  Indexes: {result['indexes']}")
        print(f"  Time:    {result['initialized_at']}")
