"""Organization folders: containers of multi-branch containers.

Navigators enumerate repositories, each with its sources. Reconciliation at
this level creates and updates nested containers the same way a full scan
creates and updates branch projects, one level up.
"""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Sequence, Set

from .container import MultiBranchContainer
from .errors import ReconciliationAborted, SourceError
from .interfaces import CleanupPolicy, Navigator, RepositorySource
from .lock import ContainerLock
from .mangler import mangle
from .model import BranchSource
from .observability import TaskLog, format_duration, log_action, timeit
from .scan import check_cancelled, new_run_id


class MultiBranchProjectFactory:
    """Turns a navigator's (name, sources) into a multi-branch container.

    ``container_options`` are passed to every container created.
    ``branch_source`` wraps each raw source, so strategies can be attached.
    """

    def __init__(
        self,
        *,
        state_dir: Optional[Path] = None,
        branch_source: Optional[Callable[[RepositorySource], BranchSource]] = None,
        **container_options: Any,
    ):
        self.state_dir = Path(state_dir) if state_dir else None
        self.branch_source = branch_source or (lambda source: BranchSource(source))
        self.container_options = container_options

    def recognizes(self, name: str, sources: Sequence[RepositorySource], log: TaskLog) -> bool:
        return bool(sources)

    def create(self, name: str, sources: Sequence[RepositorySource], log: TaskLog) -> MultiBranchContainer:
        state_dir = self.state_dir / mangle(name) if self.state_dir else None
        return MultiBranchContainer(
            name,
            [self.branch_source(s) for s in sources],
            state_dir=state_dir,
            **self.container_options,
        )

    def update(self, container: MultiBranchContainer, sources: Sequence[RepositorySource], log: TaskLog) -> None:
        """Replace the container's sources, keeping strategies of sources it already had."""
        existing = {bs.id: bs for bs in container.sources}
        updated = []
        for source in sources:
            current = existing.get(source.id)
            if current is None:
                updated.append(self.branch_source(source))
            else:
                updated.append(BranchSource(source, current.property_strategy, list(current.build_strategies)))
        container.set_sources(updated)


@dataclass
class OrganizationOutcome:
    run_id: str
    created: List[str] = field(default_factory=list)
    updated: List[str] = field(default_factory=list)
    ignored: List[str] = field(default_factory=list)
    orphaned: List[str] = field(default_factory=list)
    removed: List[str] = field(default_factory=list)
    failed_navigators: List[str] = field(default_factory=list)
    rescan: List[MultiBranchContainer] = field(default_factory=list)
    duration: float = 0.0


class OrganizationFolder:
    """Ordered navigators plus the containers they produced."""

    def __init__(
        self,
        name: str,
        navigators: Sequence[Navigator] = (),
        factories: Sequence[MultiBranchProjectFactory] = (),
        *,
        cleanup_policy: Optional[CleanupPolicy] = None,
        lock_timeout: Optional[float] = None,
    ):
        self.name = name
        self.navigators = list(navigators)
        self.factories = list(factories) or [MultiBranchProjectFactory()]
        self.cleanup_policy = cleanup_policy
        self.children: Dict[str, MultiBranchContainer] = {}
        self.owners: Dict[str, str] = {}
        self.orphaned: Set[str] = set()
        self.navigator_actions: Dict[str, Any] = {}
        self.lock = ContainerLock(timeout=lock_timeout)

    def get_child(self, name: str) -> Optional[MultiBranchContainer]:
        return self.children.get(mangle(name)) or self.children.get(name)

    def scan(
        self,
        log: Optional[TaskLog] = None,
        *,
        cancel: Optional[threading.Event] = None,
        rescan: bool = False,
    ) -> OrganizationOutcome:
        """Reconcile nested containers with what the navigators report.

        With ``rescan`` each created or updated container is scanned right
        away; otherwise they are listed in ``OrganizationOutcome.rescan``.
        """
        log = log or TaskLog()
        outcome = OrganizationOutcome(run_id=log.run_id or new_run_id())
        start = time.time()
        with self.lock, timeit("organization_scan", organization=self.name, run_id=outcome.run_id):
            navigators = tuple(self.navigators)
            if not navigators:
                raise ReconciliationAborted(f"Organization {self.name} has no navigators")
            log.phase("Starting organization scan")
            observed: Dict[str, str] = {}
            for navigator in navigators:
                check_cancelled(cancel, self.name)
                try:
                    repositories = list(navigator.visit(log))
                except SourceError as e:
                    log.error(f"Could not visit navigator {navigator.id}: {e}")
                    outcome.failed_navigators.append(navigator.id)
                    continue
                for name, sources in repositories:
                    check_cancelled(cancel, self.name)
                    self._observe(navigator, name, list(sources), observed, log, outcome)
            check_cancelled(cancel, self.name)
            self._merge_actions(navigators, log)
            self._orphans(observed, outcome, log)
            outcome.duration = time.time() - start
            log.phase(f"Finished organization scan. Scan took {format_duration(outcome.duration)}")
        log_action(
            "organization_summary",
            organization=self.name,
            run_id=outcome.run_id,
            created=len(outcome.created),
            updated=len(outcome.updated),
            orphaned=len(outcome.orphaned),
            removed=len(outcome.removed),
        )
        if rescan:
            for container in outcome.rescan:
                container.scan(TaskLog(run_id=outcome.run_id), cancel)
        return outcome

    def _observe(
        self,
        navigator: Navigator,
        name: str,
        sources: List[RepositorySource],
        observed: Dict[str, str],
        log: TaskLog,
        outcome: OrganizationOutcome,
    ) -> None:
        encoded = mangle(name)
        if encoded in observed:
            log.println(f"Ignoring {name} from {navigator.id}: already reported by {observed[encoded]}")
            outcome.ignored.append(encoded)
            return
        factory = next((f for f in self.factories if f.recognizes(name, sources, log)), None)
        if factory is None:
            log.println(f"No project factory recognizes {name}")
            return
        observed[encoded] = navigator.id
        self.owners[encoded] = navigator.id
        self.orphaned.discard(encoded)
        existing = self.children.get(encoded)
        if existing is None:
            container = factory.create(name, sources, log)
            self.children[encoded] = container
            log.println(f"New project {name} from {navigator.id}")
            outcome.created.append(encoded)
        else:
            container = existing
            factory.update(container, sources, log)
            log.println(f"Updated project {name}")
            outcome.updated.append(encoded)
        outcome.rescan.append(container)

    def _merge_actions(self, navigators: Sequence[Navigator], log: TaskLog) -> None:
        merged: Dict[str, Any] = {}
        for navigator in navigators:
            try:
                actions = navigator.fetch_actions(log) or {}
            except SourceError as e:
                log.error(f"Could not fetch metadata from navigator {navigator.id}: {e}")
                continue
            for key, value in actions.items():
                merged.setdefault(key, value)
        self.navigator_actions = merged

    def _orphans(self, observed: Dict[str, str], outcome: OrganizationOutcome, log: TaskLog) -> None:
        candidates = []
        failed = set(outcome.failed_navigators)
        for encoded, container in list(self.children.items()):
            if encoded in observed:
                continue
            if self.owners.get(encoded) in failed:
                log.println(f"Leaving {container.name} untouched: navigator {self.owners[encoded]} could not be reached")
                continue
            if encoded not in self.orphaned:
                log.println(f"Project {container.name} is no longer reported; marking orphaned")
                self.orphaned.add(encoded)
                outcome.orphaned.append(encoded)
            candidates.append(_ContainerView(encoded, container))
        if self.cleanup_policy is None or not candidates:
            return
        for view in self.cleanup_policy.select_for_removal(candidates, log):
            self.children.pop(view.name, None)
            self.owners.pop(view.name, None)
            self.orphaned.discard(view.name)
            outcome.removed.append(view.name)
            log_action("orphan_removed", organization=self.name, project=view.display_name)


class _ContainerView:
    """Presents a nested container to a cleanup policy like a child project."""

    def __init__(self, name: str, container: MultiBranchContainer):
        self.name = name
        self.display_name = container.name
        self.container = container
        times = [
            child.last_build_time
            for child in container.children.values()
            if getattr(child, "last_build_time", None) is not None
        ]
        self.last_build_time = max(times) if times else None
