"""Build Decision Gate: should an observed change trigger a build?

Each source carries a chain of build strategies. The first strategy giving a
definite answer decides; if all abstain the default policy applies (build
everything except tags). Branch properties can then suppress or force the
outcome for the cause at hand.
"""

from __future__ import annotations

import re
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional, Sequence

from .errors import ConfigurationError
from .model import Branch, BranchSource, Head, Revision
from .observability import TaskLog, log_debug
from .properties import is_match


@dataclass(frozen=True)
class BranchIndexingCause:
    """Build triggered by a full scan."""

    description: str = "Branch indexing"


@dataclass(frozen=True)
class BranchEventCause:
    """Build triggered by an incremental event."""

    description: str = "Push event"
    origin: Optional[str] = None


class SuppressionStrategy(str, Enum):
    """Which automatic triggers a ``NoTriggerBranchProperty`` suppresses."""

    ALL = "all"
    INDEXING = "indexing"
    EVENTS = "events"
    NONE = "none"

    def should_suppress(self, cause: Any) -> bool:
        indexing = isinstance(cause, BranchIndexingCause)
        events = isinstance(cause, BranchEventCause)
        if not indexing and not events:
            kind = type(cause).__name__ if cause is not None else "None"
            raise ConfigurationError(f"Unsupported cause type: {kind}")
        if self is SuppressionStrategy.ALL:
            return True
        return (indexing and self is SuppressionStrategy.INDEXING) or (
            events and self is SuppressionStrategy.EVENTS
        )


@dataclass(frozen=True)
class NoTriggerBranchProperty:
    """Suppress automatic builds of a branch.

    Branches whose name does not fully match ``triggered_branches_regex`` are
    always suppressed.
    """

    strategy: SuppressionStrategy = SuppressionStrategy.ALL
    triggered_branches_regex: str = ".*"

    def suppresses(self, branch_name: str, cause: Any) -> bool:
        if not re.fullmatch(self.triggered_branches_regex, branch_name):
            return True
        return self.strategy.should_suppress(cause)


@dataclass(frozen=True)
class OverrideTriggersProperty:
    """Force automatic triggering on or off, ignoring every other rule."""

    enable_triggers: bool = True


@dataclass(frozen=True)
class BuildDecision:
    build: bool
    reason: str
    update_last_built: bool = False


class BuildDecisionGate:
    """Evaluate the build-strategy chain for one observation."""

    def __init__(self, *, skip_tags_by_default: bool = True):
        self.skip_tags_by_default = skip_tags_by_default

    def evaluate(
        self,
        branch_source: BranchSource,
        branch: Branch,
        revision: Revision,
        last_built: Optional[Revision],
        last_seen: Optional[Revision],
        cause: Any,
        log: TaskLog,
    ) -> BuildDecision:
        override = branch.get_property(OverrideTriggersProperty)
        if override is not None:
            return BuildDecision(override.enable_triggers, "trigger override property")

        decision = self._chain(branch_source, branch.head, revision, last_built, last_seen, log)
        if decision.build:
            for prop in branch.properties:
                if isinstance(prop, NoTriggerBranchProperty) and prop.suppresses(branch.name, cause):
                    return BuildDecision(False, "suppressed by branch property")
        log_debug(
            "build decision",
            branch=branch.name,
            source=branch_source.id,
            build=decision.build,
            reason=decision.reason,
        )
        return decision

    def _chain(
        self,
        branch_source: BranchSource,
        head: Head,
        revision: Revision,
        last_built: Optional[Revision],
        last_seen: Optional[Revision],
        log: TaskLog,
    ) -> BuildDecision:
        for strategy in branch_source.build_strategies:
            answer = strategy.is_automatic_build(
                branch_source, head, revision, last_built, last_seen, log
            )
            if answer is None:
                continue
            name = type(strategy).__name__
            return BuildDecision(
                bool(answer),
                name,
                update_last_built=not answer and getattr(strategy, "updates_last_built_without_build", False),
            )
        if head.is_tag and self.skip_tags_by_default:
            return BuildDecision(False, "tags are not built by default")
        return BuildDecision(True, "default policy")


class SkipInitialBuildStrategy:
    """Do not build a branch the first time it is seen."""

    updates_last_built_without_build = True

    def is_automatic_build(self, source, head, revision, last_built, last_seen, log):
        if last_built is None and last_seen is None:
            return False
        return None


class ChangeRequestBuildStrategy:
    """Answer for change requests only; optionally skip those targeting ``ignore_targets``."""

    updates_last_built_without_build = False

    def __init__(self, ignore_targets: Sequence[str] = ()):
        self.ignore_targets = list(ignore_targets)

    def is_automatic_build(self, source, head, revision, last_built, last_seen, log):
        if not head.is_change_request:
            return None
        if head.target and any(is_match(head.target, t) for t in self.ignore_targets):
            log.println(f"Change request {head.name} targets {head.target}; not building")
            return False
        return True


class TagBuildStrategy:
    """Build tags, optionally only those created within ``max_age_seconds``."""

    updates_last_built_without_build = False

    def __init__(self, max_age_seconds: Optional[float] = None):
        self.max_age_seconds = max_age_seconds

    def is_automatic_build(self, source, head, revision, last_built, last_seen, log):
        if not head.is_tag:
            return None
        if self.max_age_seconds is None or head.timestamp is None:
            return True
        age = time.time() - head.timestamp
        if age > self.max_age_seconds:
            log.println(f"Tag {head.name} is {age:.0f}s old; not building")
            return False
        return True


class NamedBranchBuildStrategy:
    """Build only heads whose name matches ``names`` (comma-separated patterns)."""

    updates_last_built_without_build = False

    def __init__(self, names: str):
        self.names = names

    def is_automatic_build(self, source, head, revision, last_built, last_seen, log):
        return is_match(head.name, self.names)
