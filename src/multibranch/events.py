"""Incremental, event-scoped reconciliation.

An event names the sources and heads it concerns. Only those are fetched
and only children in that scope are touched; the result for those names
matches what a full scan would compute.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, FrozenSet, Optional, Sequence

from .build_gate import BranchEventCause
from .errors import PersistenceError, ReconciliationAborted, SourceError
from .mangler import mangle
from .model import BranchSource
from .observability import TaskLog, format_duration, log_action, log_debug, timeit
from .scan import BranchObserver, ScanOutcome, check_cancelled, new_run_id

if TYPE_CHECKING:
    from .container import MultiBranchContainer


class EventType(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    REMOVED = "removed"


@dataclass(frozen=True)
class HeadEvent:
    """Heads were created, updated or removed in some sources.

    ``source_ids`` empty means the event applies to every source.
    """

    type: EventType
    head_names: FrozenSet[str]
    source_ids: FrozenSet[str] = frozenset()
    origin: Optional[str] = None
    timestamp: float = field(default_factory=time.time, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "head_names", frozenset(self.head_names))
        object.__setattr__(self, "source_ids", frozenset(self.source_ids))

    def matches(self, source_id: str) -> bool:
        return not self.source_ids or source_id in self.source_ids

    def in_scope(self, head_name: str) -> bool:
        return head_name in self.head_names

    def describe(self) -> str:
        return f"{self.type.value.capitalize()} event for {', '.join(sorted(self.head_names))}"


@dataclass(frozen=True)
class SourceEvent:
    """Source-level metadata changed; no branch is affected."""

    source_ids: FrozenSet[str] = frozenset()
    origin: Optional[str] = None
    timestamp: float = field(default_factory=time.time, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "source_ids", frozenset(self.source_ids))

    def matches(self, source_id: str) -> bool:
        return not self.source_ids or source_id in self.source_ids


class EventReconciler:
    """Apply one event to a container."""

    def __init__(self, container: "MultiBranchContainer"):
        self.container = container

    def process(
        self,
        event: "HeadEvent | SourceEvent",
        log: TaskLog,
        *,
        cancel: Optional[threading.Event] = None,
    ) -> ScanOutcome:
        container = self.container
        outcome = ScanOutcome(run_id=log.run_id or new_run_id())
        start = time.time()
        kind = "source" if isinstance(event, SourceEvent) else event.type.value
        with container.lock, timeit("event", container=container.name, kind=kind, run_id=outcome.run_id):
            try:
                sources = container.snapshot_sources()
            except Exception as e:
                raise ReconciliationAborted(f"Cannot enumerate sources of {container.name}: {e}") from e
            matched = [s for s in sources if event.matches(s.id)]
            if not matched:
                log.println(f"No source of {container.name} matches the event; ignoring")
                return outcome
            if isinstance(event, SourceEvent):
                self._source_metadata(event, matched, log)
            else:
                log.phase(f"{event.describe()} from {event.origin or 'unknown origin'}")
                observer = BranchObserver(
                    container,
                    sources,
                    log,
                    outcome,
                    cause=BranchEventCause(description=event.describe(), origin=event.origin),
                    event=event,
                )
                if event.type is EventType.CREATED:
                    self._created(event, matched, observer, cancel)
                else:
                    self._updated(event, matched, observer, cancel)
            outcome.duration = time.time() - start
            log.phase(f"Finished event processing. Took {format_duration(outcome.duration)}")
        log_action("event_summary", container=container.name, kind=kind, run_id=outcome.run_id, **outcome.summary())
        return outcome

    def _created(
        self,
        event: HeadEvent,
        matched: Sequence[BranchSource],
        observer: BranchObserver,
        cancel: Optional[threading.Event],
    ) -> None:
        factory = self.container.factory
        for branch_source in matched:
            check_cancelled(cancel, self.container.name)
            observations = observer.fetch(branch_source)
            if observations is None:
                continue
            for head, revision in observations:
                check_cancelled(cancel, self.container.name)
                if not event.in_scope(head.name):
                    continue
                child = self.container.get_child(mangle(head.name))
                if child is not None and factory.is_project(child) and not factory.get_branch(child).is_dead:
                    observer.log.println(f"{head.pronoun} {head.name} already exists; nothing to create")
                    continue
                observer.observe(branch_source, head, revision)

    def _updated(
        self,
        event: HeadEvent,
        matched: Sequence[BranchSource],
        observer: BranchObserver,
        cancel: Optional[threading.Event],
    ) -> None:
        for branch_source in matched:
            check_cancelled(cancel, self.container.name)
            observations = observer.fetch(branch_source)
            if observations is None:
                continue
            for head, revision in observations:
                check_cancelled(cancel, self.container.name)
                if event.in_scope(head.name):
                    observer.observe(branch_source, head, revision)
        check_cancelled(cancel, self.container.name)

        factory = self.container.factory
        for head_name in sorted(event.head_names):
            encoded_name = mangle(head_name)
            if encoded_name in observer.observed or encoded_name in observer.protected:
                continue
            child = self.container.get_child(encoded_name)
            if child is None or not factory.is_project(child):
                continue
            branch = factory.get_branch(child)
            if branch.is_dead:
                continue
            if branch.source_id not in observer.completed:
                log_debug(
                    "event leaves branch of unmatched source alone",
                    branch=branch.name,
                    owner=branch.source_id,
                )
                continue
            observer.kill(child)

    def _source_metadata(self, event: SourceEvent, matched: Sequence[BranchSource], log: TaskLog) -> None:
        for branch_source in matched:
            try:
                actions = branch_source.source.fetch_source_actions(event, log)
            except SourceError as e:
                log.error(f"Could not fetch metadata for source {branch_source.id}: {e}")
                continue
            self.container.source_actions[branch_source.id] = list(actions or ())
            log.println(f"Refreshed metadata of source {branch_source.id}")
        try:
            self.container.save()
        except PersistenceError as e:
            log.error(str(e))
