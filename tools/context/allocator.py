#!/usr/bin/env python3
# CUI // SP-PROPIN
"""Token budget allocation.

Splits a model's total token budget into context / generation / safety
buffer per the AllocationPolicy (default 70/20/10). The context share is
the ceiling the selector packs chunks into; it is recomputed per model
category since each size class exposes a different total budget.
"""

import math
from dataclasses import dataclass
from typing import Optional

from tools.context.models import ConfigurationError
from tools.context.policy import AllocationPolicy


@dataclass(frozen=True)
class TokenAllocation:
    total_tokens: int
    context_tokens: int
    generation_tokens: int
    buffer_tokens: int

    def to_dict(self) -> dict:
        return {
            "total_tokens": self.total_tokens,
            "context_tokens": self.context_tokens,
            "generation_tokens": self.generation_tokens,
            "buffer_tokens": self.buffer_tokens,
        }


def allocate(total_model_budget: int, policy: AllocationPolicy) -> int:
    """Return the context token ceiling: floor(total * context_percent / 100)."""
    return split_budget(total_model_budget, policy).context_tokens


def split_budget(total_model_budget: int, policy: AllocationPolicy) -> TokenAllocation:
    """Split a total budget three ways. The buffer absorbs rounding remainders."""
    if isinstance(total_model_budget, bool) or not isinstance(total_model_budget, int):
        raise ConfigurationError(f"Total model budget must be an integer, got {total_model_budget!r}")
    if total_model_budget < 0:
        raise ConfigurationError("Total model budget must be >= 0")
    context = math.floor(total_model_budget * policy.context_percent / 100)
    generation = math.floor(total_model_budget * policy.generation_percent / 100)
    buffer = total_model_budget - context - generation
    return TokenAllocation(
        total_tokens=total_model_budget,
        context_tokens=context,
        generation_tokens=generation,
        buffer_tokens=buffer,
    )


def context_ceiling(policy: AllocationPolicy, total_model_budget: Optional[int] = None) -> int:
    """Ceiling for the policy's own model category unless a budget is given."""
    budget = policy.max_tokens if total_model_budget is None else total_model_budget
    return allocate(budget, policy)


def category_ceiling(category: str, policy: AllocationPolicy) -> Optional[int]:
    """Per-category token cap inside the context share, or None if uncapped."""
    return policy.category_token_ceilings.get((category or "").lower())
