#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Context bundle assembly.

Concatenates selected chunks in selector order (priority order, not
document order). Each chunk is preceded by a provenance header

    [3] RFP_Final.pdf | requirements | chunk 4

whose bracketed number is the citation number the generator is asked to
cite, so CitationResolver can map ``[3]`` back to the chunk.

Aggregate counts cover chunk text only. Headers are excluded from
token_count; their cost falls inside the allocation's safety buffer.
"""

import hashlib
import json
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence

from tools.context.models import (
    BundleChunk,
    ContextBundle,
    Document,
    ScoredCandidate,
    SelectionResult,
)
from tools.context.tokens import count_words

CHUNK_SEPARATOR = "\n\n"


def document_set_fingerprint(documents: Iterable[Document]) -> str:
    """Deterministic SHA-256 over document identities, content hashes and metadata.

    Any add, remove, re-upload, status/category change or metadata edit
    changes the result; list order does not.
    """
    records = []
    for doc in documents:
        records.append("|".join([
            doc.id,
            doc.file_hash or "",
            str(doc.updated_at or ""),
            str(doc.size_bytes),
            doc.status or "",
            doc.category or "",
            json.dumps(doc.metadata or {}, sort_keys=True, default=str),
        ]))
    digest = hashlib.sha256()
    for record in sorted(records):
        digest.update(record.encode("utf-8"))
        digest.update(b"\n")
    return digest.hexdigest()


def content_fingerprint(chunks: Sequence[BundleChunk]) -> str:
    """SHA-256 over the ordered chunk identities and checksums of a bundle."""
    raw = "\n".join(f"{c.document_id}:{c.chunk_index}:{c.checksum}" for c in chunks)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def provenance_header(chunk: BundleChunk) -> str:
    return (f"[{chunk.citation_number}] {chunk.document_name} | "
            f"{chunk.section_label} | chunk {chunk.chunk_index}")


def to_bundle_chunks(selected: Sequence[ScoredCandidate],
                     pinned_document_ids: Iterable[str] = ()) -> List[BundleChunk]:
    pinned = set(pinned_document_ids)
    return [
        BundleChunk(
            citation_number=number,
            document_id=cand.document.id,
            document_name=cand.document.name,
            category=cand.document.category,
            chunk_index=cand.chunk.index,
            section_label=cand.chunk.section_label,
            heading=cand.chunk.heading,
            text=cand.chunk.text,
            token_count=cand.token_cost,
            checksum=cand.chunk.checksum,
            pinned=cand.document.id in pinned,
        )
        for number, cand in enumerate(selected, start=1)
    ]


def assemble(selected: Sequence[ScoredCandidate], fingerprint: str = "",
             model_category: str = "", token_ceiling: int = 0,
             overflowed: bool = False, excluded_count: int = 0,
             tokens_excluded: int = 0, source_document_count: int = 0,
             failed_documents: Optional[List[dict]] = None,
             policy_hash: str = "",
             pinned_document_ids: Iterable[str] = (),
             build_timestamp: Optional[str] = None) -> ContextBundle:
    """Build a ContextBundle from selected candidates. Pure apart from the clock."""
    chunks = to_bundle_chunks(selected, pinned_document_ids)
    text = CHUNK_SEPARATOR.join(f"{provenance_header(c)}\n{c.text}" for c in chunks)
    return ContextBundle(
        chunks=chunks,
        text=text,
        token_count=sum(c.token_count for c in chunks),
        character_count=sum(len(c.text) for c in chunks),
        word_count=sum(count_words(c.text) for c in chunks),
        document_count=len({c.document_id for c in chunks}),
        chunk_count=len(chunks),
        fingerprint=fingerprint,
        content_fingerprint=content_fingerprint(chunks),
        build_timestamp=build_timestamp or datetime.now(timezone.utc).isoformat(),
        model_category=model_category,
        token_ceiling=token_ceiling,
        overflowed=overflowed,
        excluded_count=excluded_count,
        tokens_excluded=tokens_excluded,
        source_document_count=source_document_count,
        failed_documents=list(failed_documents or []),
        policy_hash=policy_hash,
    )


def assemble_selection(selection: SelectionResult, fingerprint: str = "",
                       model_category: str = "", source_document_count: int = 0,
                       failed_documents: Optional[List[dict]] = None,
                       policy_hash: str = "",
                       build_timestamp: Optional[str] = None) -> ContextBundle:
    """assemble() with the overflow bookkeeping taken from a SelectionResult."""
    return assemble(
        selection.selected,
        fingerprint=fingerprint,
        model_category=model_category,
        token_ceiling=selection.token_ceiling,
        overflowed=selection.overflowed,
        excluded_count=len(selection.excluded),
        tokens_excluded=selection.tokens_excluded,
        source_document_count=source_document_count,
        failed_documents=failed_documents,
        policy_hash=policy_hash,
        pinned_document_ids=selection.pinned_document_ids,
        build_timestamp=build_timestamp,
    )
