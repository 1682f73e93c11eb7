"""Decide which source owns a branch name when several report it."""

from __future__ import annotations

import math
from enum import Enum
from typing import Collection, Iterable, Optional

from .model import BranchSource


class Winner(str, Enum):
    OWNER = "owner"
    CHALLENGER = "challenger"


def source_ranks(sources: Iterable[BranchSource]) -> dict[str, int]:
    """Map each source id to its 1-based rank; the first occurrence wins."""
    ranks: dict[str, int] = {}
    for index, branch_source in enumerate(sources, start=1):
        ranks.setdefault(branch_source.id, index)
    return ranks


def rank_of(ranks: dict[str, int], source_id: Optional[str]) -> float:
    """Rank of ``source_id``; sources not in the list rank after everything."""
    if source_id is None:
        return math.inf
    return ranks.get(source_id, math.inf)


def arbitrate(
    sources: Iterable[BranchSource],
    owner_id: Optional[str],
    challenger_id: str,
    *,
    vacated: Collection[str] = (),
) -> Winner:
    """Return whether the current owner keeps a branch name or the challenger takes it.

    The lower rank wins. An owner that is no longer configured, or that is
    listed in ``vacated`` (it was consulted this pass and did not report the
    name), has infinite rank and loses to any configured challenger. Ties go
    to the owner.
    """
    ranks = source_ranks(sources)
    owner_rank = math.inf if owner_id in vacated else rank_of(ranks, owner_id)
    challenger_rank = rank_of(ranks, challenger_id)
    if challenger_rank < owner_rank:
        return Winner.CHALLENGER
    return Winner.OWNER
