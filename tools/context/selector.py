#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN
# Distribution: D
# POC: GovProposal System Administrator
"""Overflow resolver: greedy, priority-ordered selection under a token ceiling.

This is deliberately not an optimal knapsack. The output must be
deterministic and explainable, so the walk is:

    1. Pinned documents are admitted first, bypassing scoring. The most
       recently pinned document goes first and its chunks are walked in
       document order. The first pinned chunk that does not fit ends pinned
       admission: it and every remaining pinned chunk are excluded as
       ``pinned_overflow``, so truncation always removes the
       least-recently-pinned content. When that happens nothing else is
       admitted.
    2. Remaining candidates are dropped as ``empty`` (no tokens) or
       ``zero_score`` (composite <= 0); neither counts as overflow.
    3. Survivors are ranked by ScoredCandidate.sort_key(): status, composite
       score descending, document creation time ascending, chunk ordinal,
       document id. Anything past ``max_candidates`` is excluded as
       ``candidate_limit``.
    4. The ranked list is walked once. A candidate is admitted when
       ``tokens_used + cost <= ceiling``; otherwise it is excluded as
       ``budget`` and the walk continues looking for smaller candidates that
       still fit (best-effort fill). Once more than ``max_scan_misses``
       misses have occurred the rest are excluded without being examined,
       so 0 stops the walk at the first miss. Optional per-category ceilings
       exclude as ``category_ceiling``.

``overflowed`` is True iff something was excluded for ``budget`` or
``pinned_overflow``.

Total tokens used never decreases when the ceiling grows. A small filler
chunk admitted after a miss can, however, be displaced at a larger ceiling
by the bigger chunk it was filling in for; the selected set is only nested
across ceilings when no such filler is involved.
"""

from typing import Dict, Iterable, List, Optional, Sequence

from tools.context.models import (
    REASON_BUDGET,
    REASON_CANDIDATE_LIMIT,
    REASON_CATEGORY_CEILING,
    REASON_EMPTY,
    REASON_PINNED_OVERFLOW,
    REASON_ZERO_SCORE,
    ConfigurationError,
    Exclusion,
    ScoredCandidate,
    SelectionResult,
)
from tools.context.policy import AllocationPolicy

DEFAULT_MAX_CANDIDATES = 5000
DEFAULT_MAX_SCAN_MISSES = 1000


def _pinned_order(candidates: Iterable[ScoredCandidate],
                  pinned_document_ids: Sequence[str]) -> List[ScoredCandidate]:
    """Pinned candidates, most recently pinned document first, chunks in order."""
    by_doc: Dict[str, List[ScoredCandidate]] = {}
    for cand in candidates:
        by_doc.setdefault(cand.document_id, []).append(cand)
    ordered: List[ScoredCandidate] = []
    seen = set()
    for doc_id in reversed(list(pinned_document_ids)):
        if doc_id in seen:
            continue
        seen.add(doc_id)
        ordered.extend(sorted(by_doc.get(doc_id, []), key=lambda c: c.chunk.index))
    return ordered


def select(candidates: Iterable[ScoredCandidate], ceiling: int,
           pinned_document_ids: Optional[Sequence[str]] = None,
           policy: Optional[AllocationPolicy] = None,
           max_candidates: Optional[int] = None,
           max_scan_misses: Optional[int] = None,
           category_ceilings: Optional[Dict[str, int]] = None) -> SelectionResult:
    """Select candidates that fit ``ceiling`` tokens.

    Args:
        candidates: Scored (document, chunk) pairs, in any order.
        ceiling: Context token ceiling from the allocator.
        pinned_document_ids: Caller allow-list, oldest pin first.
        policy: Supplies max_candidates, max_scan_misses and
            category_token_ceilings when the explicit arguments are omitted.

    Returns:
        SelectionResult with ``selected`` in admission order.
    """
    if isinstance(ceiling, bool) or not isinstance(ceiling, int) or ceiling < 0:
        raise ConfigurationError(f"Token ceiling must be a non-negative integer, got {ceiling!r}")
    if max_candidates is None:
        max_candidates = policy.max_candidates if policy else DEFAULT_MAX_CANDIDATES
    if max_scan_misses is None:
        max_scan_misses = policy.max_scan_misses if policy else DEFAULT_MAX_SCAN_MISSES
    if category_ceilings is None:
        category_ceilings = dict(policy.category_token_ceilings) if policy else {}

    pinned_ids = list(pinned_document_ids or [])
    pinned_set = set(pinned_ids)
    pool = list(candidates)
    pinned_pool = [c for c in pool if c.document_id in pinned_set]
    rest = [c for c in pool if c.document_id not in pinned_set]

    selected: List[ScoredCandidate] = []
    excluded: List[Exclusion] = []
    used = 0
    category_used: Dict[str, int] = {}

    def admit(cand: ScoredCandidate):
        nonlocal used
        selected.append(cand)
        used += cand.token_cost
        cat = cand.document.category
        category_used[cat] = category_used.get(cat, 0) + cand.token_cost

    # ── pinned pass ────────────────────────────────────────────────────────────
    pinned_overflow = False
    for cand in _pinned_order(pinned_pool, pinned_ids):
        if cand.token_cost <= 0:
            excluded.append(Exclusion(cand, REASON_EMPTY))
        elif pinned_overflow or used + cand.token_cost > ceiling:
            pinned_overflow = True
            excluded.append(Exclusion(cand, REASON_PINNED_OVERFLOW))
        else:
            admit(cand)

    # ── greedy pass ────────────────────────────────────────────────────────────
    ranked: List[ScoredCandidate] = []
    for cand in rest:
        if cand.token_cost <= 0 or not cand.chunk.text.strip():
            excluded.append(Exclusion(cand, REASON_EMPTY))
        elif cand.composite_score <= 0:
            excluded.append(Exclusion(cand, REASON_ZERO_SCORE))
        else:
            ranked.append(cand)
    ranked.sort(key=lambda c: c.sort_key())

    for cand in ranked[max_candidates:]:
        excluded.append(Exclusion(cand, REASON_CANDIDATE_LIMIT))
    ranked = ranked[:max_candidates]

    misses = 0
    for cand in ranked:
        if pinned_overflow or misses > max_scan_misses:
            excluded.append(Exclusion(cand, REASON_BUDGET))
            continue
        cat = cand.document.category
        cat_limit = category_ceilings.get(cat)
        if cat_limit is not None and category_used.get(cat, 0) + cand.token_cost > cat_limit:
            excluded.append(Exclusion(cand, REASON_CATEGORY_CEILING))
        elif used + cand.token_cost <= ceiling:
            admit(cand)
        else:
            excluded.append(Exclusion(cand, REASON_BUDGET))
            misses += 1

    excluded.sort(key=lambda e: e.candidate.sort_key())
    overflowed = any(e.reason in (REASON_BUDGET, REASON_PINNED_OVERFLOW) for e in excluded)
    return SelectionResult(
        selected=selected,
        excluded=excluded,
        overflowed=overflowed,
        token_ceiling=ceiling,
        tokens_used=used,
        pinned_document_ids=pinned_ids,
    )


def selected_document_ids(result: SelectionResult) -> List[str]:
    """Document ids with at least one admitted chunk, in first-admission order."""
    seen: Dict[str, None] = {}
    for cand in result.selected:
        seen.setdefault(cand.document_id, None)
    return list(seen)
