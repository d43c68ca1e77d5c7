#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Shared test fixtures for the GovProposal context engine test suite."""

import os
import sqlite3
import sys
from pathlib import Path

import pytest

# Add project root to path
BASE_DIR = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(BASE_DIR))


def _patch_db_path(db_path):
    """Patch DB_PATH in all tool modules that cache it at import time."""
    p = Path(db_path)
    modules_to_patch = [
        "tools.audit.audit_logger",
        "tools.context.cache",
        "tools.documents.document_store",
        "tools.dashboard.app",
    ]
    for mod_name in modules_to_patch:
        if mod_name in sys.modules:
            mod = sys.modules[mod_name]
            if hasattr(mod, "DB_PATH"):
                mod.DB_PATH = p


@pytest.fixture
def tmp_db(tmp_path, monkeypatch):
    """Create a temporary GovProposal database with full schema."""
    db_path = tmp_path / "test_govproposal.db"

    from tools.db.init_db import init_db
    init_db(str(db_path))

    from tools.documents import document_store
    monkeypatch.setattr(document_store, "UPLOAD_DIR", tmp_path / "uploads")

    os.environ["GOVPROPOSAL_DB_PATH"] = str(db_path)
    _patch_db_path(db_path)
    yield db_path
    if "GOVPROPOSAL_DB_PATH" in os.environ:
        del os.environ["GOVPROPOSAL_DB_PATH"]


@pytest.fixture
def db_conn(tmp_db):
    """Get a connection to the test database."""
    conn = sqlite3.connect(str(tmp_db))
    conn.row_factory = sqlite3.Row
    yield conn
    conn.close()


@pytest.fixture
def context_config(tmp_path):
    """Default config with short debounce and no retry backoff."""
    from tools.context.policy import load_context_config
    return load_context_config(
        tmp_path / "no_such_config.yaml",
        overrides={"build": {
            "debounce_seconds": 0.05,
            "retry_backoff_seconds": 0,
            "timeout_seconds": 30,
            "max_workers": 2,
        }},
    )


@pytest.fixture
def policy(context_config):
    """Medium-class allocation policy (16000 total, 11200 context tokens)."""
    from tools.context.policy import get_allocation_policy
    return get_allocation_policy("medium", context_config)


@pytest.fixture
def service(tmp_db, context_config):
    """A ContextService on the temp database. Shut down after the test."""
    from tools.context.context_service import ContextService
    svc = ContextService(db_path=tmp_db, config=context_config, sleep=lambda s: None)
    yield svc
    svc.shutdown(wait=True)


@pytest.fixture
def add_document(tmp_db, tmp_path):
    """Write a file and register it for a project. Returns the document id."""
    from tools.documents.document_store import store_document
    counter = {"n": 0}

    def _add(project, name, text, category="references", status="active",
             metadata=None, on_change=None):
        counter["n"] += 1
        src_dir = tmp_path / "src" / str(counter["n"])
        src_dir.mkdir(parents=True)
        src = src_dir / name
        src.write_text(text, encoding="utf-8")
        result = store_document(src, project, category=category, status=status,
                                metadata=metadata, db_path=tmp_db, on_change=on_change)
        assert result["status"] == "ok", result
        return result["document_id"]

    return _add


@pytest.fixture
def broken_docx():
    """Write a zip-valid DOCX whose document part is not well-formed XML."""
    import zipfile
    from docx import Document as DocxDocument

    def _write(path):
        good = path.with_name(f"good_{path.name}")
        docx = DocxDocument()
        docx.add_paragraph("placeholder")
        docx.save(str(good))
        with zipfile.ZipFile(good) as src, zipfile.ZipFile(path, "w") as dst:
            for item in src.infolist():
                data = src.read(item.filename)
                if item.filename == "word/document.xml":
                    data = b"<w:document <<< broken"
                dst.writestr(item, data)
        good.unlink()
        return path

    return _write


@pytest.fixture
def long_text():
    """Multi-paragraph filler text, about 300 characters per paragraph."""
    def _text(paragraphs=20, label="Paragraph", words=60):
        return "\n\n".join(
            f"{label} {i} " + " ".join(["word"] * words) for i in range(paragraphs)
        )
    return _text


@pytest.fixture
def make_candidate(policy):
    """Factory for ScoredCandidates with explicit cost and scores."""
    from tools.context.models import Chunk, Document, ScoredCandidate
    from tools.context.scorer import priority_score, status_rank

    def _make(doc_id, tokens, category="references", status="active",
              relevance=50.0, priority=None, index=0, section="general",
              created_at="2026-01-01T00:00:00Z", name=None, bonus=0.0, text=None):
        doc = Document(id=doc_id, name=name or f"{doc_id}.txt", category=category,
                       status=status, size_bytes=tokens * 4, created_at=created_at)
        body = text if text is not None else ("x" * (tokens * 4) if tokens else "")
        chunk = Chunk(document_id=doc_id, index=index, section_label=section,
                      text=body, token_count=tokens, char_count=len(body),
                      word_count=len(body.split()), checksum=f"{doc_id}-{index}")
        prio = priority_score(doc, policy) if priority is None else priority
        return ScoredCandidate(
            document=doc, chunk=chunk, priority_score=prio,
            relevance_score=relevance, section_bonus=bonus,
            composite_score=prio + relevance + bonus, token_cost=tokens,
            status_rank=status_rank(status, policy),
        )

    return _make
