#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN
# Distribution: D
# POC: GovProposal System Administrator
"""Context overflow analysis and recommendations.

Budget exhaustion is not an exception. When the selector reports
``overflowed`` this module explains the outcome at document granularity:
which documents made it in fully or partially, which were dropped and why,
how many tokens the exclusions saved, and optionally an alternate subset
that swaps one low-priority, large document for several smaller, more
relevant ones.

Overflowed builds are written to the audit trail as ``context.overflow``
events so get_overflow_statistics() can report on them.

Usage:
    python tools/context/overflow.py --stats --project PROJ-A --days 30 --json
"""

import json
import logging
from typing import Dict, Iterable, List, Optional, Sequence

from tools.audit.audit_logger import log_event, query_events
from tools.context.allocator import context_ceiling
from tools.context.models import (
    REASON_BUDGET,
    REASON_CANDIDATE_LIMIT,
    REASON_CATEGORY_CEILING,
    REASON_EMPTY,
    REASON_PINNED_OVERFLOW,
    REASON_ZERO_SCORE,
    ScoredCandidate,
    SelectionResult,
)
from tools.context.policy import AllocationPolicy
from tools.context.selector import select

logger = logging.getLogger("govproposal.context.overflow")

OVERFLOW_EVENT = "context.overflow"

REASON_LABELS = {
    REASON_BUDGET: "Exceeds token limit",
    REASON_PINNED_OVERFLOW: "Pinned content exceeds token limit",
    REASON_CATEGORY_CEILING: "Category token ceiling reached",
    REASON_CANDIDATE_LIMIT: "Candidate limit reached",
    REASON_ZERO_SCORE: "Zero score",
    REASON_EMPTY: "No extractable text",
}


# ── document breakdown ─────────────────────────────────────────────────────────

def document_breakdown(selection: SelectionResult) -> List[dict]:
    """Aggregate a selection per document, highest priority first."""
    docs: Dict[str, dict] = {}
    pinned = set(selection.pinned_document_ids)

    def entry(cand: ScoredCandidate) -> dict:
        doc = cand.document
        if doc.id not in docs:
            docs[doc.id] = {
                "id": doc.id,
                "name": doc.name,
                "category": doc.category,
                "status": doc.status,
                "priority_score": cand.priority_score,
                "relevance_score": cand.relevance_score,
                "token_count": 0,
                "selected_tokens": 0,
                "chunk_count": 0,
                "selected_chunks": 0,
                "sections": [],
                "exclusion_reasons": {},
                "pinned": doc.id in pinned,
                "is_recommended": False,
            }
        return docs[doc.id]

    def add_section(data: dict, cand: ScoredCandidate):
        for section in data["sections"]:
            if section["type"] == cand.chunk.section_label:
                section["token_count"] += cand.token_cost
                return
        data["sections"].append({"type": cand.chunk.section_label,
                                 "token_count": cand.token_cost})

    for cand in selection.selected:
        data = entry(cand)
        data["token_count"] += cand.token_cost
        data["selected_tokens"] += cand.token_cost
        data["chunk_count"] += 1
        data["selected_chunks"] += 1
        data["is_recommended"] = True
        add_section(data, cand)
    for excl in selection.excluded:
        data = entry(excl.candidate)
        data["token_count"] += excl.candidate.token_cost
        data["chunk_count"] += 1
        reasons = data["exclusion_reasons"]
        reasons[excl.reason] = reasons.get(excl.reason, 0) + 1
        add_section(data, excl.candidate)

    for data in docs.values():
        if data["selected_chunks"] == 0:
            data["inclusion"] = "excluded"
        elif data["selected_chunks"] == data["chunk_count"]:
            data["inclusion"] = "full"
        else:
            data["inclusion"] = "partial"
    return sorted(docs.values(), key=lambda d: (-d["priority_score"],
                                                 -d["relevance_score"], d["id"]))


def _dominant_reason(reasons: Dict[str, int]) -> str:
    if not reasons:
        return REASON_BUDGET
    return sorted(reasons.items(), key=lambda kv: (-kv[1], kv[0]))[0][0]


# ── recommendations ────────────────────────────────────────────────────────────

def suggest_alternate(breakdown: List[dict], selection: SelectionResult,
                      min_documents: int = 2) -> Optional[dict]:
    """Swap the lowest-priority, largest included document for several smaller ones.

    Only documents excluded purely for budget are considered as additions,
    and each must have a higher relevance score than the dropped document.
    Returns None when no swap adds at least ``min_documents`` documents.
    """
    included = [d for d in breakdown if d["selected_chunks"] and not d["pinned"]]
    if not included:
        return None
    victim = sorted(included, key=lambda d: (d["priority_score"], -d["selected_tokens"],
                                             d["id"]))[0]
    freed = victim["selected_tokens"] + max(0, selection.token_ceiling - selection.tokens_used)

    pool = [d for d in breakdown
            if d["inclusion"] == "excluded"
            and set(d["exclusion_reasons"]) == {REASON_BUDGET}
            and d["relevance_score"] > victim["relevance_score"]]
    pool.sort(key=lambda d: (-d["relevance_score"], d["token_count"], d["id"]))

    added, used = [], 0
    for doc in pool:
        if used + doc["token_count"] <= freed:
            added.append(doc)
            used += doc["token_count"]
    if len(added) < min_documents:
        return None
    return {
        "drop_document": victim["id"],
        "drop_document_name": victim["name"],
        "add_documents": [d["id"] for d in added],
        "add_document_names": [d["name"] for d in added],
        "tokens_freed": victim["selected_tokens"],
        "tokens_added": used,
        "relevance_gain": round(sum(d["relevance_score"] for d in added)
                                - victim["relevance_score"], 2),
    }


def build_recommendations(selection: SelectionResult,
                          policy: Optional[AllocationPolicy] = None,
                          breakdown: Optional[List[dict]] = None) -> dict:
    """Human-auditable explanation of a selection run."""
    breakdown = breakdown if breakdown is not None else document_breakdown(selection)
    suggested = [d["id"] for d in breakdown if d["selected_chunks"]]
    partial = [d["id"] for d in breakdown if d["inclusion"] == "partial"]
    removed = [
        {
            "id": d["id"],
            "name": d["name"],
            "token_count": d["token_count"],
            "reason": REASON_LABELS.get(_dominant_reason(d["exclusion_reasons"]),
                                        "Excluded"),
        }
        for d in breakdown if d["inclusion"] == "excluded"
    ]
    recommendations = {
        "suggested_documents": suggested,
        "partial_documents": partial,
        "removed_documents": removed,
        "tokens_saved": selection.tokens_excluded,
        "priority_message": "",
        "alternate": None,
    }
    if not selection.overflowed:
        recommendations["priority_message"] = "All documents fit within token limits"
        return recommendations

    recommendations["priority_message"] = (
        f"Recommended {len(suggested)}/{len(breakdown)} documents to stay within "
        f"{selection.token_ceiling} token limit"
    )
    if policy is None or policy.suggest_alternates:
        min_docs = policy.alternate_min_documents if policy else 2
        recommendations["alternate"] = suggest_alternate(breakdown, selection, min_docs)
    return recommendations


# ── analysis ───────────────────────────────────────────────────────────────────

def analyze_overflow(candidates: Iterable[ScoredCandidate], policy: AllocationPolicy,
                     pinned_document_ids: Optional[Sequence[str]] = None,
                     total_model_budget: Optional[int] = None,
                     selection: Optional[SelectionResult] = None) -> dict:
    """Check whether a candidate pool overflows the policy's context ceiling."""
    pool = list(candidates)
    ceiling = context_ceiling(policy, total_model_budget)
    if selection is None:
        selection = select(pool, ceiling, pinned_document_ids, policy=policy)
    current = sum(c.token_cost for c in pool if c.token_cost > 0)
    breakdown = document_breakdown(selection)
    usage = round(current / ceiling * 100, 1) if ceiling else (0.0 if not current else 100.0)

    analysis = {
        "will_overflow": selection.overflowed,
        "current_tokens": current,
        "selected_tokens": selection.tokens_used,
        "max_context_tokens": ceiling,
        "token_limit": total_model_budget if total_model_budget is not None else policy.max_tokens,
        "overflow_amount": max(0, current - ceiling),
        "context_percent": policy.context_percent,
        "usage_percent": usage,
        "warning": usage >= policy.warning_threshold_percent,
        "model_category": policy.model_category,
        "document_breakdown": breakdown,
        "excluded_by_reason": selection.excluded_by_reason(),
        "recommendations": build_recommendations(selection, policy, breakdown),
    }
    if analysis["will_overflow"]:
        logger.warning("Context overflow detected: %d/%d tokens (%d over limit)",
                       current, ceiling, analysis["overflow_amount"])
    return analysis


def apply_document_selection(document_ids: Iterable[str],
                             candidates: Iterable[ScoredCandidate]) -> List[ScoredCandidate]:
    """Keep only candidates whose document the user selected, order preserved."""
    wanted = set(document_ids)
    return [c for c in candidates if c.document_id in wanted]


# ── events & statistics ────────────────────────────────────────────────────────

def record_overflow_event(project_name: str, document_type: str,
                          selection: SelectionResult, model_category: str = "",
                          db_path=None) -> dict:
    """Write a context.overflow audit event for an overflowed selection."""
    excluded_docs = sorted({e.candidate.document_id for e in selection.excluded
                            if e.reason in (REASON_BUDGET, REASON_PINNED_OVERFLOW)})
    details = {
        "document_type": document_type,
        "model_category": model_category,
        "token_ceiling": selection.token_ceiling,
        "tokens_used": selection.tokens_used,
        "overflow_amount": selection.tokens_excluded,
        "excluded_documents": excluded_docs,
        "pinned_documents": list(selection.pinned_document_ids),
    }
    logger.info("Overflow event: %s/%s %d/%d tokens, %d documents excluded",
                project_name, document_type, selection.tokens_used,
                selection.token_ceiling, len(excluded_docs))
    return log_event(
        OVERFLOW_EVENT, "context_service",
        f"Context overflow for {project_name}/{document_type}: "
        f"{selection.tokens_excluded} tokens excluded",
        entity_type="project_context", entity_id=project_name,
        details=details, db_path=db_path,
    )


def get_overflow_statistics(project_name: str = None, days: int = 30,
                            db_path=None) -> dict:
    """Aggregate context.overflow events over the last ``days`` days."""
    events = query_events(OVERFLOW_EVENT, entity_id=project_name,
                          since_days=days, limit=10000, db_path=db_path)
    excluded_counts: Dict[str, int] = {}
    by_type: Dict[str, int] = {}
    total_amount = 0
    for event in events:
        details = event.get("details") or {}
        total_amount += int(details.get("overflow_amount") or 0)
        doc_type = details.get("document_type") or "unknown"
        by_type[doc_type] = by_type.get(doc_type, 0) + 1
        for doc_id in details.get("excluded_documents") or []:
            excluded_counts[doc_id] = excluded_counts.get(doc_id, 0) + 1

    most_excluded = sorted(excluded_counts.items(), key=lambda kv: (-kv[1], kv[0]))[:10]
    return {
        "status": "ok",
        "total_overflow_events": len(events),
        "average_overflow_amount": round(total_amount / len(events), 1) if events else 0,
        "most_excluded_documents": [{"document_id": d, "count": c} for d, c in most_excluded],
        "by_document_type": by_type,
        "time_range": {"days": days, "project_name": project_name},
    }


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Context overflow statistics")
    parser.add_argument("--stats", action="store_true", help="Show overflow statistics")
    parser.add_argument("--project", help="Project name filter")
    parser.add_argument("--days", type=int, default=30)
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    if not args.stats:
        parser.error("Nothing to do (use --stats)")
    result = get_overflow_statistics(args.project, args.days)
    if args.json:
        print(json.dumps(result, indent=2))
    else:
        print(f"Overflow events (last {args.days} days): {result['total_overflow_events']}")
        print(f"Average overflow: {result['average_overflow_amount']} tokens")
        for item in result["most_excluded_documents"]:
            print(f"  {item['document_id']}: excluded {item['count']}x")


if __name__ == "__main__":
    main()
