"""Dead-branch transitions and the retention policy for dead children."""

from __future__ import annotations

import time
from typing import Optional, Sequence

from .model import Branch, DeadBranch
from .observability import TaskLog, log_debug

SECONDS_PER_DAY = 24 * 60 * 60


def mark_dead(branch: Branch) -> DeadBranch:
    """Replace a branch with its dead form, keeping head, properties and actions."""
    if isinstance(branch, DeadBranch):
        return branch
    return DeadBranch(head=branch.head, properties=branch.properties, actions=branch.actions)


def is_reopen(current: Branch, observed: Branch) -> bool:
    """True when ``observed`` revives a dead branch or moves it to another source."""
    return current.is_dead or current.source_id != observed.source_id


class DefaultDeadBranchStrategy:
    """Decide which dead children to delete.

    With ``prune`` off, or neither limit set (``-1``), nothing is removed.
    Otherwise dead children are ranked by last build time, most recent
    first and never-built last. Children past the first ``num_to_keep`` go;
    of those left, any not built within ``days_to_keep`` days goes too.
    """

    def __init__(self, prune: bool = True, days_to_keep: int = -1, num_to_keep: int = -1):
        self.prune = prune
        self.days_to_keep = days_to_keep if prune else -1
        self.num_to_keep = num_to_keep if prune else -1

    @classmethod
    def from_config(cls, config) -> "DefaultDeadBranchStrategy":
        return cls(config.prune, config.days_to_keep, config.num_to_keep)

    def select_for_removal(
        self, dead: Sequence, log: TaskLog, *, now: Optional[float] = None
    ) -> list:
        if not self.prune or (self.num_to_keep == -1 and self.days_to_keep == -1):
            return []
        candidates = sorted(dead, key=_recency_key)
        to_remove = []
        if self.num_to_keep != -1:
            to_remove.extend(candidates[self.num_to_keep:])
            candidates = candidates[: self.num_to_keep]
        if self.days_to_keep != -1:
            cutoff = (time.time() if now is None else now) - self.days_to_keep * SECONDS_PER_DAY
            keep = []
            for child in candidates:
                built = child.last_build_time
                if built is not None and built >= cutoff:
                    log_debug("dead branch kept, still new", child=child.name)
                    keep.append(child)
                else:
                    to_remove.append(child)
            candidates = keep
        for child in to_remove:
            log.println(f"Dead branch {child.display_name} is to be removed")
        return to_remove


def _recency_key(child) -> tuple:
    built = child.last_build_time
    if built is None:
        return (1, 0.0)
    return (0, -built)
