"""Full-scan reconciliation.

Every configured source is asked for all of its heads, in priority order.
Each observation creates, refreshes, reopens or ignores a branch project;
anything no source reported is marked dead and offered to the cleanup
policy.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence, Set

from ulid import ULID

from .arbitration import Winner, arbitrate
from .build_gate import BranchIndexingCause
from .errors import PersistenceError, ReconciliationAborted, SourceError
from .lifecycle import is_reopen, mark_dead
from .mangler import mangle
from .model import Branch, BranchSource, Head, Revision
from .observability import TaskLog, format_duration, log_action, log_error, log_warning, timeit

if TYPE_CHECKING:
    from .container import MultiBranchContainer
    from .events import HeadEvent


@dataclass
class ScanOutcome:
    """What one reconciliation pass did, by child name."""

    run_id: str
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    reopened: List[str] = field(default_factory=list)
    unchanged: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    dead: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    scheduled: List[str] = field(default_factory=list)
    failed_sources: List[str] = field(default_factory=list)
    duration: float = 0.0

    @property
    def changed(self) -> bool:
        return bool(self.created or self.updated or self.reopened or self.dead or self.removed)

    def summary(self) -> Dict[str, Any]:
        return {
            "created": len(self.created),
            "updated": len(self.updated),
            "reopened": len(self.reopened),
            "unchanged": len(self.unchanged),
            "dead": len(self.dead),
            "removed": len(self.removed),
            "scheduled": len(self.scheduled),
            "failed_sources": self.failed_sources,
        }


def new_run_id() -> str:
    return str(ULID()).lower()


def _same_value(a: Branch, b: Branch) -> bool:
    return (
        a.is_dead == b.is_dead
        and a == b
        and a.head == b.head
        and a.properties == b.properties
        and a.actions == b.actions
    )


class BranchObserver:
    """Applies observations from a pass to a container's children.

    One observer lives for one pass. It remembers which names the pass has
    already claimed, which sources finished fetching and which failed, and
    which heads could not be processed, so that arbitration and the orphan
    step see the whole pass.
    """

    def __init__(
        self,
        container: "MultiBranchContainer",
        sources: Sequence[BranchSource],
        log: TaskLog,
        outcome: ScanOutcome,
        *,
        cause: Any = None,
        event: Optional["HeadEvent"] = None,
    ):
        self.container = container
        self.factory = container.factory
        self.sources = tuple(sources)
        self.log = log
        self.outcome = outcome
        self.cause = cause if cause is not None else BranchIndexingCause()
        self.event = event
        self.observed: Dict[str, str] = {}
        self.reported: Dict[str, Set[str]] = {}
        self.completed: Set[str] = set()
        self.failed: Set[str] = set()
        self.protected: Set[str] = set()

    def fetch(self, branch_source: BranchSource) -> Optional[list]:
        """All observations of one source, or None if the source failed."""
        source = branch_source.source
        try:
            if self.event is None:
                observations = list(source.fetch(self.container.criteria, self.log))
            else:
                observations = list(source.fetch_event(self.container.criteria, self.event, self.log))
        except SourceError as e:
            self.log.error(f"Could not fetch branches from source {branch_source.id}: {e}")
            log_warning("source fetch failed", source=branch_source.id, error=str(e), run_id=self.outcome.run_id)
            self.failed.add(branch_source.id)
            self.outcome.failed_sources.append(branch_source.id)
            return None
        self.completed.add(branch_source.id)
        self.reported[branch_source.id] = {mangle(head.name) for head, _ in observations}
        return observations

    def vacated_owners(self, encoded_name: str) -> Set[str]:
        """Sources that finished this pass without reporting ``encoded_name``."""
        return {sid for sid in self.completed if encoded_name not in self.reported.get(sid, ())}

    def _head_actions(self, branch_source: BranchSource, head: Head) -> tuple:
        try:
            return tuple(branch_source.source.fetch_head_actions(head, self.event, self.log) or ())
        except SourceError as e:
            self.log.error(f"Could not fetch metadata for {head.name}: {e}")
            return ()

    def observe(self, branch_source: BranchSource, head: Head, revision: Revision) -> None:
        """Apply one observation. A source failure on this head skips only this head."""
        try:
            self._observe(branch_source, head, revision)
        except SourceError as e:
            encoded_name = mangle(head.name)
            self.protected.add(encoded_name)
            self.outcome.ignored.append(encoded_name)
            self.log.error(f"Could not process {head.name} from source {branch_source.id}: {e}")
            log_warning(
                "head processing failed",
                source=branch_source.id,
                head=head.name,
                error=str(e),
                run_id=self.outcome.run_id,
            )

    def _observe(self, branch_source: BranchSource, head: Head, revision: Revision) -> None:
        encoded_name = mangle(head.name)
        if encoded_name in self.observed:
            self.log.println(f"Ignoring duplicate branch project {head.name}")
            self.outcome.ignored.append(encoded_name)
            return
        child = self.container.get_child(encoded_name)
        if child is None:
            self._create(branch_source, head, revision, encoded_name)
            return
        if not self.factory.is_project(child):
            self.log.println(f"Detected unsupported subitem {encoded_name}, skipping")
            self.outcome.ignored.append(encoded_name)
            return

        current = self.factory.get_branch(child)
        new_branch = branch_source.new_branch(head).with_actions(self._head_actions(branch_source, head))
        reopen = is_reopen(current, new_branch)
        if reopen and not current.is_dead:
            winner = arbitrate(
                self.sources,
                current.source_id,
                branch_source.id,
                vacated=self.vacated_owners(encoded_name),
            )
            if winner is Winner.OWNER:
                self.log.println(
                    f"Ignoring {head.name} from source {branch_source.id}: "
                    f"owned by higher priority source {current.source_id}"
                )
                self.outcome.ignored.append(encoded_name)
                return
        self.observed[encoded_name] = branch_source.id

        last_built = self.factory.get_revision(child)
        last_seen = self.factory.get_last_seen_revision(child)
        if reopen:
            if current.is_dead:
                self.log.println(f"Reopening {head.pronoun.lower()} {head.name} from source {branch_source.id}")
            else:
                self.log.println(
                    f"Source {branch_source.id} takes over {head.name} from {current.source_id}"
                )
            changed = True
        elif revision.deterministic:
            changed = revision != last_built and revision != last_seen
            if changed:
                self.log.println(f"Changes detected in {head.name} ({last_built} → {revision})")
            else:
                self.log.println(f"No changes detected in {head.name} (still at {revision})")
        else:
            changed = self._poll(child, head)

        needs_save = not _same_value(current, new_branch)
        decision = None
        if changed:
            decision = self.container.gate.evaluate(
                branch_source, new_branch, revision, last_built, last_seen, self.cause, self.log
            )
        self.factory.decorate(self.factory.set_branch(child, new_branch))
        if decision is not None:
            last_built = self._schedule(child, head, revision, last_built, decision)
            self.factory.set_revision_hash(child, last_built, revision)
            needs_save = True
            (self.outcome.reopened if reopen else self.outcome.updated).append(encoded_name)
        elif needs_save:
            self.outcome.updated.append(encoded_name)
        else:
            self.outcome.unchanged.append(encoded_name)
        if needs_save:
            self._save(child, head.name)

    def _create(self, branch_source: BranchSource, head: Head, revision: Revision, encoded_name: str) -> None:
        branch = branch_source.new_branch(head).with_actions(self._head_actions(branch_source, head))
        child = self.factory.new_instance(branch)
        if child.name != encoded_name:
            self.log.error(f"Name of created project {child.name} did not match expected {encoded_name}")
            self.outcome.ignored.append(encoded_name)
            return
        decision = self.container.gate.evaluate(
            branch_source, branch, revision, None, None, self.cause, self.log
        )
        self.observed[encoded_name] = branch_source.id
        self.factory.decorate(child)
        self.container.add_child(child)
        self.log.println(f"New {head.pronoun.lower()} {head.name} from source {branch_source.id}")
        self.outcome.created.append(encoded_name)
        last_built = self._schedule(child, head, revision, None, decision)
        self.factory.set_revision_hash(child, last_built, revision)
        self._save(child, head.name)

    def _poll(self, child: Any, head: Head) -> bool:
        poller = self.container.poller
        if poller is None:
            self.log.println(f"No changes detected in {head.name} (no poller configured)")
            return False
        try:
            changed = poller.has_changes(child, self.log)
        except SourceError as e:
            self.log.error(f"Could not poll {head.name}: {e}")
            return False
        self.log.println(f"{'Changes' if changed else 'No changes'} detected in {head.name}")
        return changed

    def _schedule(self, child: Any, head: Head, revision: Revision, last_built: Optional[Revision], decision) -> Optional[Revision]:
        """Queue a build if the gate allows it; return the new last-built revision."""
        if not decision.build:
            self.log.println(f"Not building {head.name}: {decision.reason}")
            return revision if decision.update_last_built else last_built
        scheduler = self.container.scheduler
        accepted = scheduler is not None and scheduler.schedule(child, [self.cause], [])
        if accepted:
            self.log.println(f"Scheduled build for {head.pronoun.lower()}: {head.name}")
            self.outcome.scheduled.append(child.name)
            return revision
        self.log.println(f"Did not schedule build for {head.pronoun.lower()}: {head.name}")
        return last_built

    def _save(self, child: Any, raw_name: str) -> None:
        try:
            self.factory.save(child)
        except PersistenceError as e:
            self.log.error(f"Could not save changes to {raw_name}: {e}")
            log_error("child save failed", child=child.name, error=str(e), run_id=self.outcome.run_id)

    def kill(self, child: Any) -> bool:
        """Mark one child dead. Returns False if it was already dead."""
        branch = self.factory.get_branch(child)
        if branch.is_dead:
            return False
        self.factory.decorate(self.factory.set_branch(child, mark_dead(branch)))
        self.log.println(f"{branch.head.pronoun} {branch.name} is no longer reported; marking dead")
        self.outcome.dead.append(child.name)
        self._save(child, branch.name)
        return True


class FullScan:
    """One full reconciliation pass over a container."""

    def __init__(self, container: "MultiBranchContainer"):
        self.container = container

    def run(self, log: TaskLog, *, cancel: Optional[threading.Event] = None) -> ScanOutcome:
        container = self.container
        outcome = ScanOutcome(run_id=log.run_id or new_run_id())
        start = time.time()
        with container.lock, timeit("full_scan", container=container.name, run_id=outcome.run_id):
            try:
                sources = container.snapshot_sources()
            except Exception as e:
                raise ReconciliationAborted(f"Cannot enumerate sources of {container.name}: {e}") from e
            log.phase("Starting branch scan")
            observer = BranchObserver(container, sources, log, outcome)
            for branch_source in sources:
                check_cancelled(cancel, container.name)
                self._refresh_source_actions(branch_source, log)
                log.println(f"Checking branches in source {branch_source.id}")
                observations = observer.fetch(branch_source)
                if observations is None:
                    continue
                for head, revision in observations:
                    check_cancelled(cancel, container.name)
                    observer.observe(branch_source, head, revision)
            check_cancelled(cancel, container.name)
            self._orphans(observer, log)
            self._prune_source_actions(sources)
            try:
                container.save()
            except PersistenceError as e:
                log.error(str(e))
            outcome.duration = time.time() - start
            log.phase(f"Finished branch scan. Scan took {format_duration(outcome.duration)}")
        log_action("scan_summary", container=container.name, run_id=outcome.run_id, **outcome.summary())
        return outcome

    def _refresh_source_actions(self, branch_source: BranchSource, log: TaskLog) -> None:
        try:
            actions = branch_source.source.fetch_source_actions(None, log)
        except SourceError as e:
            log.error(f"Could not fetch metadata for source {branch_source.id}: {e}")
            return
        self.container.source_actions[branch_source.id] = list(actions or ())

    def _prune_source_actions(self, sources: Sequence[BranchSource]) -> None:
        ids = {s.id for s in sources}
        for source_id in list(self.container.source_actions):
            if source_id not in ids:
                del self.container.source_actions[source_id]

    def _orphans(self, observer: BranchObserver, log: TaskLog) -> None:
        container = self.container
        factory = container.factory
        dead = []
        for name, child in list(container.children.items()):
            if name in observer.observed:
                continue
            if name in observer.protected:
                log.println(f"Leaving {name} untouched: it could not be refreshed")
                continue
            if not factory.is_project(child):
                log.println(f"Detected unsupported subitem {name}, skipping")
                continue
            branch = factory.get_branch(child)
            if not branch.is_dead and branch.source_id in observer.failed:
                log.println(f"Leaving {branch.name} untouched: source {branch.source_id} could not be reached")
                continue
            observer.kill(child)
            dead.append(child)
        policy = container.cleanup_policy
        if policy is None or not dead:
            return
        for child in policy.select_for_removal(dead, log):
            container.remove_child(child)
            observer.outcome.removed.append(child.name)


def check_cancelled(cancel: Optional[threading.Event], name: str) -> None:
    if cancel is not None and cancel.is_set():
        raise ReconciliationAborted(f"Reconciliation of {name} was cancelled")
