#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN
# Distribution: D
# POC: GovProposal System Administrator
"""Project document store: upload, metadata, extracted-text cache.

Files are copied into data/context_uploads/<project>/ and recorded in
project_documents with a SHA-256 content hash. Extracted text is cached on
the row together with the hash it was extracted from, so a re-upload
(new hash) forces re-extraction and an unchanged file never does.

Every mutation accepts an ``on_change(project_name)`` callback; the
context service passes ContextService.notify_documents_changed so edits
trigger a debounced context rebuild.

Usage:
    python tools/documents/document_store.py --add RFP.pdf --project PROJ-A --category solicitations
    python tools/documents/document_store.py --list --project PROJ-A --json
    python tools/documents/document_store.py --archive DOC-ID
    python tools/documents/document_store.py --profile --project PROJ-A \
        --agency "Department of Defense" --technologies "AWS,Kubernetes"
"""

import json
import logging
import os
import shutil
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable, List, Optional, Sequence

from tools.context.models import Document, ExtractionError
from tools.documents.extractor import extract_text, file_hash, guess_mime

logger = logging.getLogger("govproposal.documents")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
DB_PATH = Path(os.environ.get(
    "GOVPROPOSAL_DB_PATH", str(BASE_DIR / "data" / "govproposal.db")
))
UPLOAD_DIR = Path(os.environ.get(
    "GOVPROPOSAL_UPLOAD_DIR", str(BASE_DIR / "data" / "context_uploads")
))

VALID_STATUSES = ("active", "archived")

ChangeCallback = Optional[Callable[[str], None]]


def _now():
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def _get_db(db_path=None):
    path = db_path or str(DB_PATH)
    conn = sqlite3.connect(str(path))
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA journal_mode=WAL")
    return conn


def _stored_path(path: Path) -> str:
    try:
        return str(path.resolve().relative_to(BASE_DIR))
    except ValueError:
        return str(path.resolve())


def _resolve_path(stored: str) -> Path:
    p = Path(stored)
    return p if p.is_absolute() else BASE_DIR / p


def _notify(on_change: ChangeCallback, project_name: str):
    if on_change and project_name:
        on_change(project_name)


# ── uploads ────────────────────────────────────────────────────────────────────

def store_document(src_path, project_name: str, category: str = "references",
                   description: str = "", metadata: Optional[dict] = None,
                   status: str = "active", original_name: Optional[str] = None,
                   db_path=None, upload_dir=None,
                   on_change: ChangeCallback = None) -> dict:
    """Copy a file into the upload area and register it for a project.

    Returns a dict with ``status`` ``ok`` or ``duplicate`` (same project and
    SHA-256 hash already stored).
    """
    src_path = Path(src_path)
    name = original_name or src_path.name
    if status not in VALID_STATUSES:
        return {"status": "error", "message": f"Invalid status '{status}'"}
    if not src_path.is_file():
        return {"status": "error", "message": f"File not found: {src_path}"}

    fhash = file_hash(src_path)
    conn = _get_db(db_path)
    try:
        existing = conn.execute(
            "SELECT id FROM project_documents WHERE project_name = ? AND file_hash = ?",
            (project_name, fhash),
        ).fetchone()
        if existing:
            return {"status": "duplicate", "document_id": existing["id"],
                    "message": "Document already uploaded (same SHA-256 hash)."}

        doc_id = f"DOC-{uuid.uuid4().hex[:12]}"
        dest_dir = Path(upload_dir or UPLOAD_DIR) / project_name
        dest_dir.mkdir(parents=True, exist_ok=True)
        dest_path = dest_dir / f"{doc_id}_{Path(name).name}"
        shutil.copyfile(src_path, dest_path)
        now = _now()

        conn.execute("""
            INSERT INTO project_documents
                (id, project_name, original_name, file_path, mime_type,
                 size_bytes, file_hash, category, status, description,
                 metadata, created_at, updated_at)
            VALUES (?,?,?,?,?,?,?,?,?,?,?,?,?)
        """, (
            doc_id, project_name, name, _stored_path(dest_path),
            guess_mime(dest_path), dest_path.stat().st_size, fhash,
            (category or "").lower(), status, description,
            json.dumps(metadata or {}), now, now,
        ))
        conn.commit()
    finally:
        conn.close()

    logger.info("Stored document %s (%s) for project %s", doc_id, name, project_name)
    _notify(on_change, project_name)
    return {
        "status": "ok",
        "document_id": doc_id,
        "filename": name,
        "file_hash": fhash,
        "category": (category or "").lower(),
    }


def replace_document_file(doc_id: str, src_path, db_path=None,
                          on_change: ChangeCallback = None) -> dict:
    """Re-upload: swap the stored file, refresh hash/size, drop cached text."""
    src_path = Path(src_path)
    doc = get_document(doc_id, db_path)
    if not doc:
        return {"status": "error", "message": f"Document {doc_id} not found"}
    dest_path = _resolve_path(doc["file_path"])
    dest_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(src_path, dest_path)
    fhash = file_hash(dest_path)

    conn = _get_db(db_path)
    try:
        conn.execute("""
            UPDATE project_documents
               SET file_hash = ?, size_bytes = ?, original_name = ?,
                   extracted_text = NULL, extracted_hash = NULL,
                   extraction_error = NULL, updated_at = ?
             WHERE id = ?
        """, (fhash, dest_path.stat().st_size, src_path.name, _now(), doc_id))
        conn.commit()
    finally:
        conn.close()

    _notify(on_change, doc["project_name"])
    return {"status": "ok", "document_id": doc_id, "file_hash": fhash}


# ── metadata ───────────────────────────────────────────────────────────────────

def update_document(doc_id: str, category: Optional[str] = None,
                    status: Optional[str] = None,
                    description: Optional[str] = None,
                    metadata: Optional[dict] = None, db_path=None,
                    on_change: ChangeCallback = None) -> dict:
    """Update category, status, description and/or metadata of a document."""
    fields, params = [], []
    if category is not None:
        fields.append("category = ?")
        params.append(category.lower())
    if status is not None:
        if status not in VALID_STATUSES:
            return {"status": "error", "message": f"Invalid status '{status}'"}
        fields.append("status = ?")
        params.append(status)
    if description is not None:
        fields.append("description = ?")
        params.append(description)
    if metadata is not None:
        fields.append("metadata = ?")
        params.append(json.dumps(metadata))
    if not fields:
        return {"status": "error", "message": "Nothing to update"}

    doc = get_document(doc_id, db_path)
    if not doc:
        return {"status": "error", "message": f"Document {doc_id} not found"}

    fields.append("updated_at = ?")
    params.extend([_now(), doc_id])
    conn = _get_db(db_path)
    try:
        conn.execute(f"UPDATE project_documents SET {', '.join(fields)} WHERE id = ?", params)
        conn.commit()
    finally:
        conn.close()

    _notify(on_change, doc["project_name"])
    return {"status": "ok", "document_id": doc_id}


def archive_document(doc_id: str, db_path=None, on_change: ChangeCallback = None) -> dict:
    return update_document(doc_id, status="archived", db_path=db_path, on_change=on_change)


def delete_document(doc_id: str, db_path=None, on_change: ChangeCallback = None) -> bool:
    """Delete a document row and its stored file."""
    conn = _get_db(db_path)
    try:
        row = conn.execute(
            "SELECT project_name, file_path FROM project_documents WHERE id = ?", (doc_id,)
        ).fetchone()
        if not row:
            return False
        conn.execute("DELETE FROM project_documents WHERE id = ?", (doc_id,))
        conn.commit()
    finally:
        conn.close()

    if row["file_path"]:
        fp = _resolve_path(row["file_path"])
        if fp.exists():
            fp.unlink()
    _notify(on_change, row["project_name"])
    return True


# ── queries ────────────────────────────────────────────────────────────────────

def get_document(doc_id: str, db_path=None) -> Optional[dict]:
    conn = _get_db(db_path)
    try:
        row = conn.execute(
            "SELECT * FROM project_documents WHERE id = ?", (doc_id,)
        ).fetchone()
        return dict(row) if row else None
    finally:
        conn.close()


def list_documents(project_name: Optional[str] = None,
                   category: Optional[str] = None,
                   status: Optional[str] = None, db_path=None) -> List[dict]:
    """List project_documents rows (without extracted text), optionally filtered."""
    sql = ("SELECT id, project_name, original_name, file_path, mime_type, size_bytes, "
           "file_hash, category, status, description, metadata, extraction_error, "
           "created_at, updated_at FROM project_documents WHERE 1=1")
    params: list = []
    if project_name:
        sql += " AND project_name = ?"
        params.append(project_name)
    if category:
        sql += " AND category = ?"
        params.append(category.lower())
    if status:
        sql += " AND status = ?"
        params.append(status)
    sql += " ORDER BY created_at, id"
    conn = _get_db(db_path)
    try:
        return [dict(r) for r in conn.execute(sql, params).fetchall()]
    finally:
        conn.close()


def list_active_documents(project_name: str, document_type: Optional[str] = None,
                          include_archived: bool = False,
                          scopes: Optional[dict] = None,
                          db_path=None) -> List[Document]:
    """Documents feeding the (project, document_type) context.

    Every project document is a candidate unless ``scopes`` maps the
    document type to a list of categories. Archived documents are included
    only on request; they still rank below every active document.
    """
    sql = "SELECT * FROM project_documents WHERE project_name = ?"
    params: list = [project_name]
    if not include_archived:
        sql += " AND status = 'active'"
    categories: Sequence[str] = (scopes or {}).get(document_type) or ()
    if categories:
        sql += f" AND category IN ({', '.join('?' for _ in categories)})"
        params.extend(categories)
    sql += " ORDER BY created_at, id"
    conn = _get_db(db_path)
    try:
        rows = conn.execute(sql, params).fetchall()
    finally:
        conn.close()
    return [Document.from_row(r) for r in rows]


def get_extracted_text(document_id: str, db_path=None) -> str:
    """Return the document's text, extracting and caching it when stale.

    Raises:
        ExtractionError: the document is missing or could not be read.
    """
    doc = get_document(document_id, db_path)
    if not doc:
        raise ExtractionError(f"Document {document_id} not found", document_id=document_id)
    if doc.get("extracted_text") is not None and doc.get("extracted_hash") == doc.get("file_hash"):
        return doc["extracted_text"]
    if not doc.get("file_path"):
        raise ExtractionError(f"Document {document_id} has no stored file",
                              document_id=document_id)

    try:
        text, _ = extract_text(_resolve_path(doc["file_path"]), doc.get("mime_type") or "")
    except ExtractionError as e:
        e.document_id = document_id
        _record_extraction(document_id, None, None, str(e), db_path)
        raise
    _record_extraction(document_id, text, doc.get("file_hash"), None, db_path)
    return text


def _record_extraction(document_id, text, text_hash, error, db_path=None):
    conn = _get_db(db_path)
    try:
        conn.execute("""
            UPDATE project_documents
               SET extracted_text = ?, extracted_hash = ?, extraction_error = ?
             WHERE id = ?
        """, (text, text_hash, error, document_id))
        conn.commit()
    finally:
        conn.close()


# ── project profile ────────────────────────────────────────────────────────────

def upsert_project_profile(project_name: str, agency: Optional[str] = None,
                           technologies: Optional[Sequence[str]] = None,
                           keywords: Optional[Sequence[str]] = None,
                           description: Optional[str] = None, db_path=None,
                           on_change: ChangeCallback = None) -> dict:
    """Create or update the project profile used for metadata-match relevance."""
    existing = get_project_profile(project_name, db_path) or {}
    profile = {
        "name": project_name,
        "agency": agency if agency is not None else existing.get("agency"),
        "technologies": list(technologies) if technologies is not None
        else existing.get("technologies", []),
        "keywords": list(keywords) if keywords is not None else existing.get("keywords", []),
        "description": description if description is not None
        else existing.get("description"),
    }
    now = _now()
    conn = _get_db(db_path)
    try:
        conn.execute("""
            INSERT INTO projects (name, agency, technologies, keywords, description,
                                  created_at, updated_at)
            VALUES (?,?,?,?,?,?,?)
            ON CONFLICT(name) DO UPDATE SET
                agency = excluded.agency,
                technologies = excluded.technologies,
                keywords = excluded.keywords,
                description = excluded.description,
                updated_at = excluded.updated_at
        """, (project_name, profile["agency"], json.dumps(profile["technologies"]),
              json.dumps(profile["keywords"]), profile["description"], now, now))
        conn.commit()
    finally:
        conn.close()
    _notify(on_change, project_name)
    return {"status": "ok", "profile": profile}


def get_project_profile(project_name: str, db_path=None) -> Optional[dict]:
    conn = _get_db(db_path)
    try:
        row = conn.execute("SELECT * FROM projects WHERE name = ?", (project_name,)).fetchone()
    finally:
        conn.close()
    if not row:
        return None
    profile = dict(row)
    for key in ("technologies", "keywords"):
        try:
            profile[key] = json.loads(profile.get(key) or "[]")
        except json.JSONDecodeError:
            profile[key] = [v.strip() for v in (profile.get(key) or "").split(",") if v.strip()]
    return profile


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Project document store")
    parser.add_argument("--add", metavar="FILE", help="Upload a file")
    parser.add_argument("--list", action="store_true", help="List documents")
    parser.add_argument("--archive", metavar="DOC_ID")
    parser.add_argument("--delete", metavar="DOC_ID")
    parser.add_argument("--profile", action="store_true", help="Create/update project profile")
    parser.add_argument("--project", help="Project name")
    parser.add_argument("--category", default="references")
    parser.add_argument("--description", default="")
    parser.add_argument("--agency")
    parser.add_argument("--technologies", help="Comma-separated")
    parser.add_argument("--keywords", help="Comma-separated")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    def _split(value):
        return [v.strip() for v in value.split(",") if v.strip()] if value else None

    if args.add:
        if not args.project:
            parser.error("--project is required with --add")
        result = store_document(args.add, args.project, args.category, args.description)
    elif args.list:
        result = {"status": "ok", "documents": list_documents(args.project)}
    elif args.archive:
        result = archive_document(args.archive)
    elif args.delete:
        result = {"status": "ok" if delete_document(args.delete) else "not_found",
                  "document_id": args.delete}
    elif args.profile:
        if not args.project:
            parser.error("--project is required with --profile")
        result = upsert_project_profile(args.project, args.agency,
                                        _split(args.technologies), _split(args.keywords))
    else:
        parser.error("Specify --add, --list, --archive, --delete or --profile")

    if args.json:
        print(json.dumps(result, indent=2))
    elif args.list:
        for doc in result["documents"]:
            print(f"{doc['id']}  [{doc['category']}/{doc['status']}]  {doc['original_name']}")
    else:
        print(f"{result.get('status')}: {result.get('document_id') or result.get('message', '')}")


if __name__ == "__main__":
    main()
