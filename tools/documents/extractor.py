#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Document text extraction.

Supports PDF (via pypdf), DOCX (via python-docx), and plain text. Failures
raise ExtractionError instead of leaking error strings into the context:
file system hiccups are marked transient so the build retries them,
corrupt or unsupported files are permanent.

Usage:
    python tools/documents/extractor.py path/to/RFP.pdf [--json]
"""

import hashlib
import json
from pathlib import Path

from tools.context.models import ExtractionError

MIME_TYPES = {
    ".pdf": "application/pdf",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    ".doc": "application/msword",
    ".txt": "text/plain",
    ".md": "text/markdown",
    ".csv": "text/csv",
    ".json": "application/json",
}

TEXT_SUFFIXES = {".txt", ".md", ".csv", ".json", ".xml", ".html", ".htm", ".rtf", ""}


# ── text extraction ────────────────────────────────────────────────────────────

def _extract_pdf(path: Path) -> tuple[str, int]:
    """Extract text from PDF. Returns (text, page_count)."""
    from pypdf import PdfReader

    try:
        reader = PdfReader(str(path))
        pages = [page.extract_text() or "" for page in reader.pages]
    except OSError:
        raise
    except Exception as e:
        # pypdf raises PdfReadError, DependencyError and plain parser errors
        raise ExtractionError(f"Corrupt PDF {path.name}: {e}") from e
    return "\n\n".join(pages), len(pages)


def _extract_docx(path: Path) -> tuple[str, int]:
    """Extract text from DOCX. Returns (text, estimated_pages)."""
    from docx import Document

    try:
        doc = Document(str(path))
        paragraphs = [p.text for p in doc.paragraphs if p.text.strip()]
    except OSError:
        raise
    except Exception as e:
        # Bad zips, missing parts and malformed XML (lxml) all land here
        raise ExtractionError(f"Unreadable DOCX {path.name}: {e}") from e
    text = "\n\n".join(paragraphs)
    return text, max(1, len(text) // 3000)


def extract_text(file_path: Path, mime_type: str = "") -> tuple[str, int]:
    """Extract raw text from a document. Returns (text, page_count).

    Raises:
        ExtractionError: transient for I/O errors, permanent for corrupt or
            unsupported content.
    """
    file_path = Path(file_path)
    suffix = file_path.suffix.lower()
    mime_type = mime_type or ""
    try:
        if not file_path.exists():
            raise ExtractionError(f"File not found: {file_path}")
        if suffix == ".pdf" or "pdf" in mime_type:
            return _extract_pdf(file_path)
        if suffix == ".docx" or "wordprocessingml" in mime_type:
            return _extract_docx(file_path)
        if suffix in TEXT_SUFFIXES or mime_type.startswith("text/"):
            text = file_path.read_text(encoding="utf-8", errors="replace")
            return text, max(1, len(text) // 3000)
    except OSError as e:
        raise ExtractionError(f"I/O error reading {file_path.name}: {e}",
                              transient=True) from e
    raise ExtractionError(f"Unsupported document type: {file_path.name}")


# ── hashing ────────────────────────────────────────────────────────────────────

def file_hash(path: Path) -> str:
    """SHA-256 hash of file contents."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            h.update(block)
    return h.hexdigest()


def guess_mime(path: Path) -> str:
    return MIME_TYPES.get(Path(path).suffix.lower(), "application/octet-stream")


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Extract text from a document")
    parser.add_argument("path", help="File to extract")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    path = Path(args.path)
    try:
        text, pages = extract_text(path, guess_mime(path))
        result = {"status": "ok", "path": str(path), "pages": pages,
                  "characters": len(text), "text": text}
    except ExtractionError as e:
        result = {"status": "error", "path": str(path), "message": str(e),
                  "transient": e.transient}

    if args.json:
        print(json.dumps(result, indent=2))
    elif result["status"] == "ok":
        print(result["text"])
    else:
        print(f"ERROR: {result['message']}")


if __name__ == "__main__":
    main()
