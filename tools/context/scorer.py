#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN
# Distribution: D
# POC: GovProposal System Administrator
"""Candidate scoring for context selection.

Composite score (higher is selected first):

    composite = priority + relevance + section_bonus

    priority   (len(category_order) - rank) * category_step. With the
               default step of 200 the category order dominates the
               bounded relevance score, matching the strict document-type
               hierarchy (solicitations > requirements > references >
               past-performance > proposals > compliance > media).
    relevance  base score (50) plus metadata match, healthy size band,
               recency tier and finalized-name bonuses, minus the draft
               penalty, clamped to [min_score, max_score].
    section    small additive bonus for high-value section labels
               (executive_summary +5, requirements +4, technical +2).

Document status is not part of the composite. It is the leading key of
ScoredCandidate.sort_key(), so an active document always outranks an
archived one no matter how the numbers come out.
"""

import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Sequence, Tuple

from tools.context.models import Chunk, Document, ScoredCandidate, parse_timestamp
from tools.context.policy import AllocationPolicy

_TOKEN_SPLIT = re.compile(r"[^a-z0-9]+")


def _lower_set(values) -> set:
    if not values:
        return set()
    if isinstance(values, str):
        values = [v for v in re.split(r"[,;]", values)]
    return {str(v).strip().lower() for v in values if str(v).strip()}


def category_rank(category: str, policy: AllocationPolicy) -> int:
    """Position in category_order (0 = highest). Unknown categories rank last."""
    try:
        return policy.category_order.index((category or "").lower())
    except ValueError:
        return len(policy.category_order)


def status_rank(status: str, policy: AllocationPolicy) -> int:
    try:
        return policy.status_order.index((status or "").lower())
    except ValueError:
        return len(policy.status_order)


def priority_score(document: Document, policy: AllocationPolicy) -> float:
    rank = category_rank(document.category, policy)
    return float((len(policy.category_order) - rank) * policy.category_step)


def _metadata_bonus(document: Document, policy: AllocationPolicy,
                    project_profile: Optional[dict]) -> float:
    if not project_profile or not document.metadata:
        return 0.0
    meta = document.metadata
    weights = policy.metadata_weights
    bonus = 0.0

    agency = str(meta.get("agency") or "").strip().lower()
    project_agency = str(project_profile.get("agency") or "").strip().lower()
    if agency and project_agency and (agency in project_agency or project_agency in agency):
        bonus += weights.get("agency_match", 0)

    project_tech = _lower_set(project_profile.get("technologies"))
    doc_tech = _lower_set(meta.get("technologies") or meta.get("technology_tags")
                          or meta.get("tags"))
    if project_tech and doc_tech:
        overlap = len(project_tech & doc_tech) / len(project_tech)
        bonus += weights.get("technology_match", 0) * min(1.0, overlap)

    project_keywords = _lower_set(project_profile.get("keywords"))
    if project_keywords:
        haystack = " ".join([
            document.name, document.description,
            " ".join(sorted(_lower_set(meta.get("keywords")))),
        ]).lower()
        hits = sum(1 for kw in project_keywords if kw in haystack)
        bonus += weights.get("keyword_relevance", 0) * hits / len(project_keywords)

    return bonus


def _recency_bonus(document: Document, policy: AllocationPolicy,
                   now: datetime) -> float:
    created = parse_timestamp(document.created_at)
    if created is None:
        return 0.0
    age_days = (now - created).total_seconds() / 86400
    for max_days, bonus in policy.recency_tiers:
        if age_days < max_days:
            return bonus
    return 0.0


def _name_bonus(document: Document, policy: AllocationPolicy) -> float:
    tokens = set(_TOKEN_SPLIT.split((document.name or "").lower()))
    bonus = 0.0
    if any(term in tokens for term in policy.finalized_terms):
        bonus += policy.finalized_bonus
    if any(term in tokens for term in policy.draft_terms):
        bonus -= policy.draft_penalty
    return bonus


def relevance_score(document: Document, policy: AllocationPolicy,
                    project_profile: Optional[dict] = None,
                    now: Optional[datetime] = None) -> float:
    """Bounded document relevance in [policy.min_score, policy.max_score]."""
    now = now or datetime.now(timezone.utc)
    score = policy.base_score
    score += _metadata_bonus(document, policy, project_profile)
    if policy.size_min_bytes < document.size_bytes < policy.size_max_bytes:
        score += policy.size_bonus
    score += _recency_bonus(document, policy, now)
    score += _name_bonus(document, policy)
    return float(max(policy.min_score, min(policy.max_score, score)))


def section_bonus(label: str, policy: AllocationPolicy) -> float:
    return float(policy.section_bonuses.get(label, 0.0))


def score(document: Document, chunk: Chunk, policy: AllocationPolicy,
          project_profile: Optional[dict] = None,
          now: Optional[datetime] = None) -> float:
    """Composite score for one chunk of one document."""
    return (priority_score(document, policy)
            + relevance_score(document, policy, project_profile, now)
            + section_bonus(chunk.section_label, policy))


def score_candidate(document: Document, chunk: Chunk, policy: AllocationPolicy,
                    project_profile: Optional[dict] = None,
                    now: Optional[datetime] = None,
                    relevance: Optional[float] = None) -> ScoredCandidate:
    priority = priority_score(document, policy)
    if relevance is None:
        relevance = relevance_score(document, policy, project_profile, now)
    bonus = section_bonus(chunk.section_label, policy)
    return ScoredCandidate(
        document=document,
        chunk=chunk,
        priority_score=priority,
        relevance_score=relevance,
        section_bonus=bonus,
        composite_score=priority + relevance + bonus,
        token_cost=chunk.token_count,
        status_rank=status_rank(document.status, policy),
    )


def score_documents(documents: Iterable[Tuple[Document, Sequence[Chunk]]],
                    policy: AllocationPolicy,
                    project_profile: Optional[dict] = None,
                    now: Optional[datetime] = None) -> List[ScoredCandidate]:
    """Score every chunk of every document. Relevance is computed once per document."""
    now = now or datetime.now(timezone.utc)
    candidates: List[ScoredCandidate] = []
    for document, chunks in documents:
        relevance = relevance_score(document, policy, project_profile, now)
        for chunk in chunks:
            candidates.append(score_candidate(document, chunk, policy,
                                              relevance=relevance))
    return candidates


def rank_candidates(candidates: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
    """Sort by status, composite desc, creation time asc, chunk ordinal, document id."""
    return sorted(candidates, key=lambda c: c.sort_key())
