#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN (Proprietary Business Information)
# Distribution: D
# POC: GovProposal System Administrator
"""Data types and exceptions for the document context engine.

Documents and chunks are plain dataclasses so the scoring, selection and
assembly steps stay pure functions over values. Bundles serialize to dicts
for the project_contexts cache row and the JSON API.
"""

import json
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

# Build states for a (project, document_type) cache record
STATUS_NONE = "none"
STATUS_BUILDING = "building"
STATUS_COMPLETE = "complete"
STATUS_FAILED = "failed"
BUILD_STATES = (STATUS_NONE, STATUS_BUILDING, STATUS_COMPLETE, STATUS_FAILED)

# Exclusion reasons reported by the selector
REASON_BUDGET = "budget"
REASON_PINNED_OVERFLOW = "pinned_overflow"
REASON_CATEGORY_CEILING = "category_ceiling"
REASON_ZERO_SCORE = "zero_score"
REASON_EMPTY = "empty"
REASON_CANDIDATE_LIMIT = "candidate_limit"
BUDGET_REASONS = (REASON_BUDGET, REASON_PINNED_OVERFLOW)


class ContextEngineError(Exception):
    """Base class for context engine failures."""


class ExtractionError(ContextEngineError):
    """A document could not be turned into text.

    ``transient`` failures (I/O hiccups, locked files) are retried with
    backoff; permanent ones (corrupt or unsupported files) are not.
    """

    def __init__(self, message: str, document_id: str = "",
                 transient: bool = False):
        super().__init__(message)
        self.document_id = document_id
        self.transient = transient


class BuildTimeoutError(ContextEngineError):
    """A context build ran past build.timeout_seconds."""


class ConfigurationError(ContextEngineError):
    """The allocation policy or context config is malformed."""


def parse_timestamp(value) -> Optional[datetime]:
    """Parse an ISO-8601 string (``Z`` suffix allowed) into an aware datetime."""
    if not value:
        return None
    if isinstance(value, datetime):
        dt = value
    else:
        text = str(value).strip()
        if text.endswith("Z"):
            text = text[:-1] + "+00:00"
        try:
            dt = datetime.fromisoformat(text.replace(" ", "T", 1))
        except ValueError:
            return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Document:
    """A project document as seen by the context engine."""
    id: str
    name: str
    category: str = ""
    status: str = "active"
    size_bytes: int = 0
    created_at: Optional[str] = None
    updated_at: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    description: str = ""
    project_name: str = ""
    file_hash: str = ""

    @classmethod
    def from_row(cls, row) -> "Document":
        """Build a Document from a project_documents row (sqlite3.Row or dict)."""
        data = dict(row)
        raw_meta = data.get("metadata")
        if isinstance(raw_meta, str):
            try:
                meta = json.loads(raw_meta) if raw_meta else {}
            except json.JSONDecodeError:
                meta = {}
        else:
            meta = raw_meta or {}
        return cls(
            id=data["id"],
            name=data.get("original_name") or data.get("name") or data["id"],
            category=(data.get("category") or "").lower(),
            status=data.get("status") or "active",
            size_bytes=int(data.get("size_bytes") or 0),
            created_at=data.get("created_at"),
            updated_at=data.get("updated_at"),
            metadata=meta if isinstance(meta, dict) else {},
            description=data.get("description") or "",
            project_name=data.get("project_name") or "",
            file_hash=data.get("file_hash") or "",
        )

    def created_epoch(self) -> float:
        dt = parse_timestamp(self.created_at)
        return dt.timestamp() if dt else 0.0


@dataclass(frozen=True)
class Chunk:
    """A contiguous, labeled slice of one document's extracted text."""
    document_id: str
    index: int
    section_label: str
    text: str
    token_count: int
    char_count: int
    word_count: int
    heading: str = ""
    checksum: str = ""


@dataclass(frozen=True)
class ScoredCandidate:
    """A (Document, Chunk) pair annotated for one selection run."""
    document: Document
    chunk: Chunk
    priority_score: float
    relevance_score: float
    section_bonus: float
    composite_score: float
    token_cost: int
    status_rank: int = 0

    @property
    def document_id(self) -> str:
        return self.document.id

    def sort_key(self):
        """Deterministic ranking key: status first, then score, then age."""
        return (
            self.status_rank,
            -self.composite_score,
            self.document.created_epoch(),
            self.chunk.index,
            self.document.id,
        )

    def to_dict(self) -> dict:
        return {
            "document": asdict(self.document),
            "chunk": asdict(self.chunk),
            "priority_score": self.priority_score,
            "relevance_score": self.relevance_score,
            "section_bonus": self.section_bonus,
            "composite_score": self.composite_score,
            "token_cost": self.token_cost,
            "status_rank": self.status_rank,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScoredCandidate":
        return cls(
            document=Document(**data["document"]),
            chunk=Chunk(**data["chunk"]),
            priority_score=data["priority_score"],
            relevance_score=data["relevance_score"],
            section_bonus=data["section_bonus"],
            composite_score=data["composite_score"],
            token_cost=data["token_cost"],
            status_rank=data.get("status_rank", 0),
        )


@dataclass(frozen=True)
class Exclusion:
    candidate: ScoredCandidate
    reason: str


@dataclass
class SelectionResult:
    """Output of one selector run."""
    selected: List[ScoredCandidate]
    excluded: List[Exclusion]
    overflowed: bool
    token_ceiling: int
    tokens_used: int
    pinned_document_ids: List[str] = field(default_factory=list)

    @property
    def tokens_excluded(self) -> int:
        return sum(e.candidate.token_cost for e in self.excluded
                   if e.reason in BUDGET_REASONS)

    def excluded_by_reason(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for e in self.excluded:
            counts[e.reason] = counts.get(e.reason, 0) + 1
        return counts


@dataclass(frozen=True)
class BundleChunk:
    """A selected chunk with the provenance needed for citation."""
    citation_number: int
    document_id: str
    document_name: str
    category: str
    chunk_index: int
    section_label: str
    heading: str
    text: str
    token_count: int
    checksum: str
    pinned: bool = False


@dataclass
class ContextBundle:
    """The assembled, token-bounded context for one (project, document_type)."""
    chunks: List[BundleChunk] = field(default_factory=list)
    text: str = ""
    token_count: int = 0
    character_count: int = 0
    word_count: int = 0
    document_count: int = 0
    chunk_count: int = 0
    fingerprint: str = ""
    content_fingerprint: str = ""
    build_timestamp: str = ""
    model_category: str = ""
    token_ceiling: int = 0
    overflowed: bool = False
    excluded_count: int = 0
    tokens_excluded: int = 0
    source_document_count: int = 0
    failed_documents: List[Dict[str, str]] = field(default_factory=list)
    policy_hash: str = ""

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ContextBundle":
        values = dict(data)
        values["chunks"] = [BundleChunk(**c) for c in data.get("chunks", [])]
        known = cls.__dataclass_fields__
        return cls(**{k: v for k, v in values.items() if k in known})


@dataclass
class BuildStatus:
    """Lightweight status for UI polling (no bundle payload)."""
    status: str = STATUS_NONE
    token_count: int = 0
    document_count: int = 0
    error_message: Optional[str] = None
    warning: Optional[str] = None
    build_timestamp: Optional[str] = None
    fingerprint: Optional[str] = None

    def to_dict(self) -> dict:
        return asdict(self)
