#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Citation resolver: map generated text back to context chunk provenance.

Explicit references are resolved first:
    [3]                 -> bundle chunk with citation number 3
    (RFP_Final.pdf)     -> every chunk of that document
    source: RFP.pdf     -> every chunk of a document whose name matches
    according to RFP    -> same, by name containment

Only when the text carries no resolvable explicit reference does the
resolver fall back to heuristics: the document name appearing verbatim, or
enough keyword overlap with the chunk (at least min(3, 30% of the chunk's
distinct 4+ letter words)).

``document_preview`` pages through a document's chunks from the cached
candidate pool with neighbouring chunks and highlighted terms. Citation
opens are recorded as ``context.citation.access`` audit events and
aggregated by ``get_citation_analytics``.

Usage:
    python tools/context/citations.py --project PROJ-A --document-type requirements \
        --text-file draft.txt [--json]
"""

import hashlib
import json
import logging
import math
import re
from typing import Dict, Iterable, List, Optional, Sequence

from tools.audit.audit_logger import log_event, query_events
from tools.context.models import BundleChunk, Chunk, ContextBundle, ScoredCandidate

logger = logging.getLogger("govproposal.context.citations")

CITATION_ACCESS_EVENT = "context.citation.access"

REFERENCE_PATTERNS = (
    ("citation_number", re.compile(r"\[(\d+)\]")),
    ("filename", re.compile(r"\(([^)]+\.(?:pdf|docx?|txt))\)", re.IGNORECASE)),
    ("source", re.compile(r"(?:source|ref|cite):\s*([^\s]+)", re.IGNORECASE)),
    ("according_to", re.compile(r"according to ([^,.;\n]+)", re.IGNORECASE)),
)

_KEYWORD_RE = re.compile(r"\b[a-z]{4,}\b")
PREVIEW_CHARS = 200
CHUNKS_PER_PAGE = 3


def extract_citation_references(text: str) -> List[dict]:
    """Find citation-like references in generated text, in reading order."""
    refs = []
    for kind, pattern in REFERENCE_PATTERNS:
        for match in pattern.finditer(text or ""):
            refs.append({
                "kind": kind,
                "full_match": match.group(0),
                "reference": match.group(1).strip(),
                "index": match.start(),
            })
    return sorted(refs, key=lambda r: (r["index"], r["kind"]))


def citation_id(chunk: BundleChunk) -> str:
    raw = f"{chunk.document_id}_{chunk.chunk_index}_{chunk.checksum}"
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()[:12]


def _section_title(chunk: BundleChunk) -> str:
    if chunk.heading:
        return chunk.heading
    first_line = chunk.text.split("\n", 1)[0].strip()
    if first_line and len(first_line) < 100:
        return first_line
    return f"{chunk.section_label.replace('_', ' ').upper()} Section"


def _keywords(text: str) -> set:
    return set(_KEYWORD_RE.findall((text or "").lower()))


def _name_matches(reference: str, document_name: str) -> bool:
    ref = reference.strip().strip("\"'").lower()
    name = document_name.lower()
    if not ref or not name:
        return False
    stem = name.rsplit(".", 1)[0]
    return ref == name or ref in name or name in ref or (len(stem) >= 4 and stem in ref)


def is_keyword_referenced(chunk: BundleChunk, text_lower: str) -> bool:
    keywords = _keywords(chunk.text)
    if not keywords:
        return False
    matches = sum(1 for kw in keywords if kw in text_lower)
    return matches >= min(3, math.ceil(len(keywords) * 0.3))


def build_citation(chunk: BundleChunk, match: str) -> dict:
    preview = chunk.text[:PREVIEW_CHARS] + ("..." if len(chunk.text) > PREVIEW_CHARS else "")
    return {
        "id": citation_id(chunk),
        "citation_number": chunk.citation_number,
        "document_id": chunk.document_id,
        "document_name": chunk.document_name,
        "document_type": chunk.category,
        "chunk_index": chunk.chunk_index,
        "section_type": chunk.section_label,
        "section_title": _section_title(chunk),
        "content_preview": preview,
        "page_number": math.ceil((chunk.chunk_index + 1) / CHUNKS_PER_PAGE),
        "word_count": len(chunk.text.split()),
        "character_count": len(chunk.text),
        "pinned": chunk.pinned,
        "match": match,
    }


def resolve_citations(bundle: ContextBundle, generated_text: str) -> List[dict]:
    """Return citation records for the bundle chunks the text refers to."""
    refs = extract_citation_references(generated_text)
    by_number = {c.citation_number: c for c in bundle.chunks}
    found: Dict[str, dict] = {}

    def add(chunk: BundleChunk, match: str):
        cid = citation_id(chunk)
        if cid not in found:
            found[cid] = build_citation(chunk, match)

    for ref in refs:
        if ref["kind"] == "citation_number":
            chunk = by_number.get(int(ref["reference"]))
            if chunk:
                add(chunk, "citation_number")
        else:
            for chunk in bundle.chunks:
                if _name_matches(ref["reference"], chunk.document_name):
                    add(chunk, ref["kind"])

    if not found:
        text_lower = (generated_text or "").lower()
        for chunk in bundle.chunks:
            if chunk.document_name and chunk.document_name.lower() in text_lower:
                add(chunk, "document_name")
            elif is_keyword_referenced(chunk, text_lower):
                add(chunk, "keyword_overlap")

    return sorted(found.values(), key=lambda c: c["citation_number"])


# ── document preview ───────────────────────────────────────────────────────────

def highlight_terms(text: str, terms: Sequence[str]) -> str:
    """Wrap case-insensitive occurrences of ``terms`` in <mark> tags."""
    terms = [t for t in (terms or []) if t and t.strip()]
    if not terms:
        return text
    pattern = re.compile("|".join(re.escape(t.strip()) for t in
                                  sorted(terms, key=len, reverse=True)), re.IGNORECASE)
    return pattern.sub(lambda m: f"<mark>{m.group(0)}</mark>", text)


def _preview_chunk(chunk: Chunk, terms: Sequence[str]) -> dict:
    return {
        "index": chunk.index,
        "content": chunk.text,
        "section_type": chunk.section_label,
        "heading": chunk.heading,
        "highlighted": highlight_terms(chunk.text, terms),
    }


def document_preview(candidates: Iterable[ScoredCandidate], document_id: str,
                     chunk_index: int = 0, context_chunks: int = 2,
                     terms: Optional[Sequence[str]] = None,
                     include_metadata: bool = True) -> Optional[dict]:
    """Chunk preview with neighbouring chunks for interactive navigation.

    Works over a candidate pool, so chunks that were not selected into the
    bundle are still navigable. Returns None when the document is not in
    the pool. An out-of-range ``chunk_index`` falls back to the first chunk.
    """
    chunks: Dict[int, Chunk] = {}
    document = None
    for cand in candidates:
        if cand.document.id == document_id:
            document = cand.document
            chunks[cand.chunk.index] = cand.chunk
    if document is None:
        return None

    ordered = [chunks[i] for i in sorted(chunks)]
    position = next((n for n, c in enumerate(ordered) if c.index == chunk_index), 0)
    target = ordered[position]
    low = max(0, position - context_chunks)
    neighbours = [c for c in ordered[low:position + context_chunks + 1] if c is not target]

    sections = []
    for chunk in ordered:
        if not sections or sections[-1]["section_type"] != chunk.section_label:
            sections.append({"section_type": chunk.section_label,
                             "first_chunk": chunk.index})

    terms = list(terms or [])
    return {
        "document_info": {
            "id": document.id,
            "name": document.name,
            "category": document.category,
            "status": document.status,
            "project_name": document.project_name,
            "uploaded_at": document.created_at,
            "size_bytes": document.size_bytes,
            "metadata": document.metadata if include_metadata else None,
        },
        "target_chunk": _preview_chunk(target, terms),
        "context_chunks": [_preview_chunk(c, terms) for c in neighbours],
        "navigation": {
            "current_chunk": target.index,
            "total_chunks": len(ordered),
            "has_previous": position > 0,
            "has_next": position < len(ordered) - 1,
            "sections": sections,
        },
        "highlight_terms": terms,
    }


# ── access tracking & analytics ────────────────────────────────────────────────

def track_citation_access(citation_id: str, project_name: str,
                          document_id: Optional[str] = None,
                          access_type: str = "view", user_id: str = "anonymous",
                          duration_seconds: Optional[float] = None,
                          rating: Optional[int] = None, db_path=None) -> dict:
    """Record that a user opened or rated a citation."""
    details = {
        "citation_id": citation_id,
        "document_id": document_id,
        "access_type": access_type,
        "user_id": user_id,
        "duration_seconds": duration_seconds,
        "rating": rating,
    }
    logger.info("Citation %s %s by %s (%s)", citation_id, access_type, user_id, project_name)
    return log_event(
        CITATION_ACCESS_EVENT, user_id,
        f"Citation {citation_id} {access_type}",
        entity_type="citation", entity_id=project_name,
        details=details, db_path=db_path,
    )


def get_citation_analytics(project_name: Optional[str] = None, days: int = 30,
                           db_path=None) -> dict:
    """Aggregate citation access events over the last ``days`` days."""
    events = query_events(CITATION_ACCESS_EVENT, entity_id=project_name,
                          since_days=days, limit=10000, db_path=db_path)
    by_document: Dict[str, int] = {}
    by_type: Dict[str, int] = {}
    citations = set()
    users = set()
    durations, ratings = [], []
    for event in events:
        details = event.get("details") or {}
        citations.add(details.get("citation_id"))
        users.add(details.get("user_id") or "anonymous")
        access_type = details.get("access_type") or "view"
        by_type[access_type] = by_type.get(access_type, 0) + 1
        doc_id = details.get("document_id")
        if doc_id:
            by_document[doc_id] = by_document.get(doc_id, 0) + 1
        if details.get("duration_seconds") is not None:
            durations.append(float(details["duration_seconds"]))
        if details.get("rating") is not None:
            ratings.append(float(details["rating"]))

    most_accessed = sorted(by_document.items(), key=lambda kv: (-kv[1], kv[0]))[:10]
    return {
        "status": "ok",
        "total_accesses": len(events),
        "unique_citations": len(citations),
        "unique_users": len(users),
        "most_accessed_documents": [{"document_id": d, "count": c} for d, c in most_accessed],
        "by_access_type": by_type,
        "average_duration_seconds": round(sum(durations) / len(durations), 1) if durations else 0,
        "average_rating": round(sum(ratings) / len(ratings), 2) if ratings else None,
        "time_range": {"days": days, "project_name": project_name},
    }


def main():
    import argparse

    from tools.context.context_service import get_service

    parser = argparse.ArgumentParser(description="Resolve citations in generated text")
    parser.add_argument("--project", required=True)
    parser.add_argument("--document-type", required=True)
    parser.add_argument("--text-file", required=True, help="File with generated text")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    with open(args.text_file, "r", encoding="utf-8") as fh:
        text = fh.read()
    service = get_service()
    try:
        result = service.resolve_citations(args.project, args.document_type, text)
    finally:
        service.shutdown()

    if args.json:
        print(json.dumps(result, indent=2))
    else:
        for c in result["citations"]:
            print(f"[{c['citation_number']}] {c['document_name']} "
                  f"({c['section_type']}, chunk {c['chunk_index']}, p.{c['page_number']})")


if __name__ == "__main__":
    main()
