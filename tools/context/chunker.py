#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Structural chunker: extracted text -> ordered, labeled chunks.

Text is split on headings and blank-line paragraphs first, so a chunk
never straddles two sections. A section larger than max_chunk_chars is
packed paragraph by paragraph; a single oversized paragraph falls back to
sentence boundaries and, as a last resort, whitespace.

Each chunk gets a section label from a keyword table (first matching label
wins, default ``general``). The heading is classified first because it is
the strongest signal; the body is only consulted when the heading is
silent. Any ``classify(text) -> label`` callable can replace the table.

Empty or whitespace-only text yields zero chunks. That is a degenerate
document contributing 0 tokens, not an error.
"""

import hashlib
import re
from typing import Callable, Iterable, List, Optional, Sequence, Tuple

from tools.context.models import Chunk, Document
from tools.context.policy import AllocationPolicy
from tools.context.tokens import TokenEstimator, count_words, estimate_tokens

DEFAULT_LABEL = "general"
DEFAULT_MAX_CHUNK_CHARS = 1600

SectionClassifier = Callable[[str], str]

_PARAGRAPH_SPLIT = re.compile(r"\n\s*\n")
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")
_MD_HEADING = re.compile(r"^#{1,6}\s+(\S.*)$")
_NUMBERED_HEADING = re.compile(
    r"^(?:section\s+[a-z0-9]+[.:]?|\d+(?:\.\d+)*\.?|[A-Z]\.)\s+[A-Za-z].{0,100}$",
    re.IGNORECASE,
)


# ── classification ─────────────────────────────────────────────────────────────

def keyword_classifier(table: Iterable[Tuple[str, Sequence[str]]],
                       default: str = DEFAULT_LABEL) -> SectionClassifier:
    """Build a classify(text) function from an ordered (label, keywords) table.

    Keywords match case-insensitively at the start of a word, so
    ``requirement`` also matches ``requirements``.
    """
    compiled = []
    for label, keywords in table:
        patterns = [re.compile(r"\b" + re.escape(kw.lower())) for kw in keywords if kw]
        compiled.append((label, patterns))

    def classify(text: str) -> str:
        lower = (text or "").lower()
        for label, patterns in compiled:
            if any(p.search(lower) for p in patterns):
                return label
        return default

    return classify


def classifier_for_policy(policy: AllocationPolicy) -> SectionClassifier:
    return keyword_classifier(policy.section_keywords)


# ── structure ──────────────────────────────────────────────────────────────────

def _heading_text(line: str) -> Optional[str]:
    """Return the heading text if ``line`` looks like a heading, else None."""
    line = line.strip()
    if not line or len(line) > 120:
        return None
    md = _MD_HEADING.match(line)
    if md:
        return md.group(1).strip()
    if _NUMBERED_HEADING.match(line) and not line.endswith("."):
        return line
    letters = [c for c in line if c.isalpha()]
    if (len(letters) >= 3 and len(line) <= 80 and line.upper() == line
            and not line.endswith((".", ",", ";"))):
        return line
    return None


def split_sections(text: str) -> List[Tuple[str, List[str]]]:
    """Split text into (heading, paragraphs) units in document order."""
    normalized = (text or "").replace("\r\n", "\n").replace("\r", "\n")
    blocks = [b.strip() for b in _PARAGRAPH_SPLIT.split(normalized) if b.strip()]
    units: List[Tuple[str, List[str]]] = []
    for block in blocks:
        first, _, rest = block.partition("\n")
        heading = _heading_text(first)
        if heading is not None:
            units.append((heading, [rest.strip()] if rest.strip() else []))
        elif units:
            units[-1][1].append(block)
        else:
            units.append(("", [block]))
    return units


def _hard_wrap(text: str, max_chars: int) -> List[str]:
    pieces = []
    remaining = text
    while len(remaining) > max_chars:
        cut = remaining.rfind(" ", 0, max_chars + 1)
        if cut <= 0:
            cut = max_chars
        pieces.append(remaining[:cut].strip())
        remaining = remaining[cut:].strip()
    if remaining:
        pieces.append(remaining)
    return pieces


def _split_oversized(paragraph: str, max_chars: int) -> List[str]:
    if len(paragraph) <= max_chars:
        return [paragraph]
    pieces: List[str] = []
    for sentence in _SENTENCE_SPLIT.split(paragraph):
        pieces.extend(_hard_wrap(sentence, max_chars))
    return _pack(pieces, max_chars, sep=" ")


def _pack(pieces: List[str], max_chars: int, sep: str = "\n\n") -> List[str]:
    """Greedily join pieces in order while the joined length stays <= max_chars."""
    out: List[str] = []
    buf: List[str] = []
    size = 0
    for piece in pieces:
        added = len(piece) + (len(sep) if buf else 0)
        if buf and size + added > max_chars:
            out.append(sep.join(buf))
            buf, size = [], 0
            added = len(piece)
        buf.append(piece)
        size += added
    if buf:
        out.append(sep.join(buf))
    return out


# ── public API ─────────────────────────────────────────────────────────────────

def chunk_text(text: str, document_id: str,
               max_chunk_chars: int = DEFAULT_MAX_CHUNK_CHARS,
               classify: Optional[SectionClassifier] = None,
               estimate: TokenEstimator = estimate_tokens) -> List[Chunk]:
    """Split text into ordered Chunks for one document."""
    if not text or not text.strip():
        return []
    classify = classify or keyword_classifier(())
    chunks: List[Chunk] = []
    for heading, paragraphs in split_sections(text):
        pieces: List[str] = []
        for para in paragraphs:
            pieces.extend(_split_oversized(para, max_chunk_chars))
        if heading:
            pieces.insert(0, heading)
        heading_label = classify(heading) if heading else DEFAULT_LABEL
        for body in _pack(pieces, max_chunk_chars):
            label = heading_label if heading_label != DEFAULT_LABEL else classify(body)
            chunks.append(Chunk(
                document_id=document_id,
                index=len(chunks),
                section_label=label,
                text=body,
                token_count=estimate(body),
                char_count=len(body),
                word_count=count_words(body),
                heading=heading,
                checksum=hashlib.sha256(body.encode("utf-8")).hexdigest(),
            ))
    return chunks


def chunk_document(text: str, document: Document, policy: AllocationPolicy,
                   classify: Optional[SectionClassifier] = None,
                   estimate: TokenEstimator = estimate_tokens) -> List[Chunk]:
    """Chunk a document's extracted text using the policy's chunk size and keyword table."""
    return chunk_text(
        text,
        document.id,
        max_chunk_chars=policy.max_chunk_chars,
        classify=classify or classifier_for_policy(policy),
        estimate=estimate,
    )
