#!/usr/bin/env python3
# CUI // SP-PROPIN
# Controlled by: GovProposal Portal
# CUI Category: PROPIN
# Distribution: D
# POC: GovProposal System Administrator
"""Context engine configuration and allocation policies.

Reads args/context_config.yaml and merges it over DEFAULT_CONFIG. The
category ordering, section keyword table, relevance weights and token
splits are data, not code, so admins can retune them and call
ContextService.reload_config() without touching the engine.

get_allocation_policy() returns an immutable AllocationPolicy for one model
size class. Policies are passed explicitly into the scorer, allocator and
selector; nothing in those modules reads global state.

Usage:
    python tools/context/policy.py --policy medium --json
    python tools/context/policy.py --validate
"""

import copy
import hashlib
import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Dict, Optional, Tuple

import yaml

from tools.context.models import ConfigurationError

logger = logging.getLogger("govproposal.context.policy")

BASE_DIR = Path(__file__).resolve().parent.parent.parent
CONFIG_PATH = Path(os.environ.get(
    "GOVPROPOSAL_CONTEXT_CONFIG", str(BASE_DIR / "args" / "context_config.yaml")
))

# ---------------------------------------------------------------------------
# Defaults (used for any key the YAML file omits)
# ---------------------------------------------------------------------------
DEFAULT_CONFIG = {
    "model_categories": {
        "small": {"max_tokens": 4000},
        "medium": {"max_tokens": 16000},
        "large": {"max_tokens": 32000},
    },
    "token_allocation": {
        "context_percent": 70,
        "generation_percent": 20,
        "buffer_percent": 10,
    },
    "warning_threshold_percent": 85,
    "category_order": [
        "solicitations", "requirements", "references", "past-performance",
        "proposals", "compliance", "media",
    ],
    "category_step": 200,
    "status_order": ["active", "archived"],
    "category_token_ceilings": {},
    "section_keywords": [
        {"label": "executive_summary", "keywords": ["executive summary", "executive", "summary"]},
        {"label": "technical", "keywords": ["technical", "technology", "solution"]},
        {"label": "management", "keywords": ["management", "project management", "timeline"]},
        {"label": "requirements", "keywords": ["requirement", "specification"]},
        {"label": "experience", "keywords": ["experience", "past performance", "performance", "past"]},
    ],
    "section_bonuses": {
        "executive_summary": 5,
        "requirements": 4,
        "technical": 2,
    },
    "relevance": {
        "base_score": 50,
        "min_score": 0,
        "max_score": 100,
        "size_band": {"min_bytes": 100, "max_bytes": 5 * 1024 * 1024, "bonus": 20},
        "recency_tiers": [
            {"max_days": 30, "bonus": 15},
            {"max_days": 90, "bonus": 10},
        ],
        "finalized_terms": ["final", "approved"],
        "finalized_bonus": 10,
        "draft_terms": ["draft", "temp"],
        "draft_penalty": 10,
        "metadata_weights": {
            "agency_match": 10,
            "technology_match": 10,
            "keyword_relevance": 10,
        },
    },
    "chunking": {"max_chunk_chars": 1600},
    "selection": {
        "max_candidates": 5000,
        "max_scan_misses": 1000,
        "suggest_alternates": True,
        "alternate_min_documents": 2,
    },
    "build": {
        "model_category": "medium",
        "debounce_seconds": 10,
        "extraction_attempts": 3,
        "retry_backoff_seconds": 0.5,
        "timeout_seconds": 300,
        "max_workers": 4,
        "include_archived": False,
        "cleanup_hours": 24,
        "token_estimator": "heuristic",
    },
    "document_type_scopes": {},
}


def _deep_merge(base: dict, override: dict) -> dict:
    """Merge override into a copy of base. Dicts merge, everything else replaces."""
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_context_config(config_path=None, overrides: Optional[dict] = None) -> dict:
    """Load context_config.yaml merged over DEFAULT_CONFIG.

    A missing file yields the defaults. A file that is not valid YAML, or
    whose top level is not a mapping, raises ConfigurationError.
    """
    path = Path(config_path) if config_path else CONFIG_PATH
    loaded: dict = {}
    if path.exists():
        try:
            with open(path, "r", encoding="utf-8") as fh:
                loaded = yaml.safe_load(fh) or {}
        except yaml.YAMLError as exc:
            raise ConfigurationError(f"Invalid YAML in {path}: {exc}") from exc
        if not isinstance(loaded, dict):
            raise ConfigurationError(f"{path} must contain a mapping at top level")
    else:
        logger.info("Context config not found at %s, using defaults", path)
    config = _deep_merge(DEFAULT_CONFIG, loaded)
    if overrides:
        config = _deep_merge(config, overrides)
    return config


# ---------------------------------------------------------------------------
# Policy values
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class AllocationPolicy:
    """Immutable per-build policy: token split, ordering and scoring weights."""
    model_category: str
    max_tokens: int
    context_percent: float = 70
    generation_percent: float = 20
    buffer_percent: float = 10
    warning_threshold_percent: float = 85
    category_order: Tuple[str, ...] = ()
    category_step: float = 200
    status_order: Tuple[str, ...] = ("active", "archived")
    category_token_ceilings: Dict[str, int] = field(default_factory=dict)
    section_keywords: Tuple[Tuple[str, Tuple[str, ...]], ...] = ()
    section_bonuses: Dict[str, float] = field(default_factory=dict)
    base_score: float = 50
    min_score: float = 0
    max_score: float = 100
    size_min_bytes: int = 100
    size_max_bytes: int = 5 * 1024 * 1024
    size_bonus: float = 20
    recency_tiers: Tuple[Tuple[int, float], ...] = ((30, 15), (90, 10))
    finalized_terms: Tuple[str, ...] = ("final", "approved")
    finalized_bonus: float = 10
    draft_terms: Tuple[str, ...] = ("draft", "temp")
    draft_penalty: float = 10
    metadata_weights: Dict[str, float] = field(default_factory=dict)
    max_chunk_chars: int = 1600
    max_candidates: int = 5000
    max_scan_misses: int = 1000
    suggest_alternates: bool = True
    alternate_min_documents: int = 2

    @property
    def policy_hash(self) -> str:
        """Stable SHA-256 over the policy contents (first 16 hex chars)."""
        raw = json.dumps(asdict(self), sort_keys=True, default=list)
        return hashlib.sha256(raw.encode()).hexdigest()[:16]


@dataclass(frozen=True)
class BuildSettings:
    """Service-level knobs for background context builds."""
    model_category: str = "medium"
    debounce_seconds: float = 10
    extraction_attempts: int = 3
    retry_backoff_seconds: float = 0.5
    timeout_seconds: float = 300
    max_workers: int = 4
    include_archived: bool = False
    cleanup_hours: int = 24
    token_estimator: str = "heuristic"
    document_type_scopes: Dict[str, Tuple[str, ...]] = field(default_factory=dict)


def _number(value, name, minimum=None, maximum=None):
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigurationError(f"{name} must be a number, got {value!r}")
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{name} must be >= {minimum}, got {value}")
    if maximum is not None and value > maximum:
        raise ConfigurationError(f"{name} must be <= {maximum}, got {value}")
    return value


def _string_list(value, name):
    if not isinstance(value, (list, tuple)) or not all(isinstance(v, str) for v in value):
        raise ConfigurationError(f"{name} must be a list of strings")
    return tuple(v.lower() for v in value)


def _section_table(value):
    if not isinstance(value, list):
        raise ConfigurationError("section_keywords must be a list of {label, keywords}")
    table = []
    for entry in value:
        if not isinstance(entry, dict) or "label" not in entry:
            raise ConfigurationError(f"Malformed section_keywords entry: {entry!r}")
        keywords = _string_list(entry.get("keywords", []),
                                f"section_keywords[{entry['label']}].keywords")
        table.append((str(entry["label"]), keywords))
    return tuple(table)


def get_allocation_policy(model_category: str = "medium",
                          config: Optional[dict] = None) -> AllocationPolicy:
    """Build and validate the AllocationPolicy for a model size class.

    A model category may carry its own ``token_allocation`` block, which
    overrides the global split for that class only.
    """
    cfg = config if config is not None else load_context_config()
    categories = cfg.get("model_categories") or {}
    if model_category not in categories:
        raise ConfigurationError(
            f"Unknown model category '{model_category}' "
            f"(known: {', '.join(sorted(categories)) or 'none'})"
        )
    model_cfg = categories[model_category] or {}
    max_tokens = model_cfg.get("max_tokens")
    if isinstance(max_tokens, bool) or not isinstance(max_tokens, int) or max_tokens <= 0:
        raise ConfigurationError(
            f"model_categories.{model_category}.max_tokens must be a positive integer"
        )

    alloc = _deep_merge(cfg.get("token_allocation") or {},
                        model_cfg.get("token_allocation") or {})
    context_pct = _number(alloc.get("context_percent"), "context_percent", 0, 100)
    generation_pct = _number(alloc.get("generation_percent", 0), "generation_percent", 0, 100)
    buffer_pct = _number(alloc.get("buffer_percent", 0), "buffer_percent", 0, 100)
    if context_pct <= 0:
        raise ConfigurationError("context_percent must be > 0")
    if abs(context_pct + generation_pct + buffer_pct - 100) > 0.01:
        raise ConfigurationError(
            "token_allocation percents must sum to 100 "
            f"(got {context_pct}/{generation_pct}/{buffer_pct})"
        )

    order = _string_list(cfg.get("category_order") or [], "category_order")
    if not order or len(set(order)) != len(order):
        raise ConfigurationError("category_order must be a non-empty list without duplicates")

    ceilings = cfg.get("category_token_ceilings") or {}
    if not isinstance(ceilings, dict):
        raise ConfigurationError("category_token_ceilings must be a mapping")
    for cat, limit in ceilings.items():
        _number(limit, f"category_token_ceilings.{cat}", 0)

    rel = cfg.get("relevance") or {}
    min_score = _number(rel.get("min_score", 0), "relevance.min_score")
    max_score = _number(rel.get("max_score", 100), "relevance.max_score")
    if min_score >= max_score:
        raise ConfigurationError("relevance.min_score must be below relevance.max_score")
    base = _number(rel.get("base_score", 50), "relevance.base_score", min_score, max_score)
    band = rel.get("size_band") or {}
    tiers = []
    for tier in rel.get("recency_tiers") or []:
        if not isinstance(tier, dict):
            raise ConfigurationError(f"Malformed recency tier: {tier!r}")
        tiers.append((int(_number(tier.get("max_days"), "recency_tiers.max_days", 0)),
                      _number(tier.get("bonus", 0), "recency_tiers.bonus")))
    weights = rel.get("metadata_weights") or {}
    for key, weight in weights.items():
        _number(weight, f"metadata_weights.{key}", 0)

    bonuses = cfg.get("section_bonuses") or {}
    for label, bonus in bonuses.items():
        _number(bonus, f"section_bonuses.{label}")

    # Relevance plus section bonus must never outrank one category step
    step = _number(cfg.get("category_step", 200), "category_step", 0)
    bonus_values = [float(v) for v in bonuses.values()] + [0.0]
    score_span = (max_score - min_score) + (max(bonus_values) - min(bonus_values))
    if step <= score_span:
        raise ConfigurationError(
            f"category_step must exceed {score_span:g} (relevance range plus "
            f"section bonus range), got {step:g}")

    chunking = cfg.get("chunking") or {}
    selection = cfg.get("selection") or {}

    return AllocationPolicy(
        model_category=model_category,
        max_tokens=max_tokens,
        context_percent=context_pct,
        generation_percent=generation_pct,
        buffer_percent=buffer_pct,
        warning_threshold_percent=_number(
            cfg.get("warning_threshold_percent", 85), "warning_threshold_percent", 0, 100),
        category_order=order,
        category_step=step,
        status_order=_string_list(cfg.get("status_order") or ["active", "archived"],
                                  "status_order"),
        category_token_ceilings={str(k).lower(): int(v) for k, v in ceilings.items()},
        section_keywords=_section_table(cfg.get("section_keywords") or []),
        section_bonuses={str(k): float(v) for k, v in bonuses.items()},
        base_score=base,
        min_score=min_score,
        max_score=max_score,
        size_min_bytes=int(_number(band.get("min_bytes", 100), "size_band.min_bytes", 0)),
        size_max_bytes=int(_number(band.get("max_bytes", 5 * 1024 * 1024),
                                   "size_band.max_bytes", 0)),
        size_bonus=_number(band.get("bonus", 20), "size_band.bonus"),
        recency_tiers=tuple(sorted(tiers)),
        finalized_terms=_string_list(rel.get("finalized_terms") or [], "finalized_terms"),
        finalized_bonus=_number(rel.get("finalized_bonus", 10), "finalized_bonus"),
        draft_terms=_string_list(rel.get("draft_terms") or [], "draft_terms"),
        draft_penalty=_number(rel.get("draft_penalty", 10), "draft_penalty"),
        metadata_weights={str(k): float(v) for k, v in weights.items()},
        max_chunk_chars=int(_number(chunking.get("max_chunk_chars", 1600),
                                    "chunking.max_chunk_chars", 40)),
        max_candidates=int(_number(selection.get("max_candidates", 5000),
                                   "selection.max_candidates", 1)),
        max_scan_misses=int(_number(selection.get("max_scan_misses", 1000),
                                    "selection.max_scan_misses", 0)),
        suggest_alternates=bool(selection.get("suggest_alternates", True)),
        alternate_min_documents=int(_number(selection.get("alternate_min_documents", 2),
                                            "selection.alternate_min_documents", 1)),
    )


def get_build_settings(config: Optional[dict] = None) -> BuildSettings:
    """Extract and validate the ``build`` block plus document_type_scopes."""
    cfg = config if config is not None else load_context_config()
    build = cfg.get("build") or {}
    scopes = cfg.get("document_type_scopes") or {}
    if not isinstance(scopes, dict):
        raise ConfigurationError("document_type_scopes must be a mapping")
    model_category = build.get("model_category", "medium")
    if model_category not in (cfg.get("model_categories") or {}):
        raise ConfigurationError(f"build.model_category '{model_category}' is not defined")
    return BuildSettings(
        model_category=model_category,
        debounce_seconds=_number(build.get("debounce_seconds", 10), "build.debounce_seconds", 0),
        extraction_attempts=int(_number(build.get("extraction_attempts", 3),
                                        "build.extraction_attempts", 1)),
        retry_backoff_seconds=_number(build.get("retry_backoff_seconds", 0.5),
                                      "build.retry_backoff_seconds", 0),
        timeout_seconds=_number(build.get("timeout_seconds", 300), "build.timeout_seconds", 0),
        max_workers=int(_number(build.get("max_workers", 4), "build.max_workers", 1)),
        include_archived=bool(build.get("include_archived", False)),
        cleanup_hours=int(_number(build.get("cleanup_hours", 24), "build.cleanup_hours", 0)),
        token_estimator=str(build.get("token_estimator", "heuristic")),
        document_type_scopes={
            str(k): _string_list(v, f"document_type_scopes.{k}") for k, v in scopes.items()
        },
    )


def main():
    import argparse

    parser = argparse.ArgumentParser(description="Context engine policy inspector")
    parser.add_argument("--policy", default="medium", help="Model category")
    parser.add_argument("--config", help="Override config path")
    parser.add_argument("--validate", action="store_true",
                        help="Validate every model category and the build block")
    parser.add_argument("--json", action="store_true")
    args = parser.parse_args()

    try:
        config = load_context_config(args.config)
        if args.validate:
            for name in config.get("model_categories", {}):
                get_allocation_policy(name, config)
            get_build_settings(config)
            result = {"status": "ok",
                      "model_categories": sorted(config.get("model_categories", {}))}
        else:
            policy = get_allocation_policy(args.policy, config)
            result = {"status": "ok", "policy_hash": policy.policy_hash,
                      "policy": asdict(policy)}
    except ConfigurationError as exc:
        result = {"status": "error", "message": str(exc)}

    if args.json:
        print(json.dumps(result, indent=2, default=list))
    elif result["status"] == "ok":
        print(f"Policy OK: {result.get('policy_hash') or ', '.join(result['model_categories'])}")
    else:
        print(f"ERROR: {result['message']}")


if __name__ == "__main__":
    main()
