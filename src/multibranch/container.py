"""The multi-branch container: ordered sources plus the branch projects it owns."""

from __future__ import annotations

import json
import threading
from pathlib import Path
from typing import TYPE_CHECKING, Any, Dict, List, Optional, Sequence

from .build_gate import BuildDecisionGate
from .constants import CONTAINER_STATE_FILE, LOCK_FILE_NAME
from .errors import PersistenceError
from .interfaces import BuildScheduler, ChangePoller, CleanupPolicy, ProjectFactory, SourceCriteria
from .lock import ContainerLock
from .mangler import raw_decode
from .model import BranchSource
from .observability import TaskLog, log_debug, log_warning
from .projects import InMemoryProjectFactory, atomic_write_json, jsonable_actions

if TYPE_CHECKING:
    from .config_schema import MultibranchConfig
    from .events import HeadEvent, SourceEvent
    from .scan import ScanOutcome


class MultiBranchContainer:
    """One repository's worth of branch projects.

    The order of ``sources`` is their priority. Every reconciliation pass
    takes a snapshot of it under ``lock`` and works from that snapshot.
    """

    def __init__(
        self,
        name: str,
        sources: Sequence[BranchSource] = (),
        *,
        factory: Optional[ProjectFactory] = None,
        scheduler: Optional[BuildScheduler] = None,
        poller: Optional[ChangePoller] = None,
        cleanup_policy: Optional[CleanupPolicy] = None,
        gate: Optional[BuildDecisionGate] = None,
        criteria: Optional[SourceCriteria] = None,
        state_dir: Optional[Path] = None,
        lock_timeout: Optional[float] = None,
        lock_ttl: Optional[int] = None,
        use_file_lock: bool = True,
    ):
        self.name = name
        self.state_dir = Path(state_dir) if state_dir else None
        self._sources: List[BranchSource] = list(sources)
        self.factory = factory if factory is not None else InMemoryProjectFactory(self.state_dir)
        self.scheduler = scheduler
        self.poller = poller
        self.cleanup_policy = cleanup_policy
        self.gate = gate or BuildDecisionGate()
        self.criteria = criteria
        self.children: Dict[str, Any] = {}
        self.source_actions: Dict[str, list] = {}
        self.rescan_requested = threading.Event()
        lock_file = self.state_dir / LOCK_FILE_NAME if self.state_dir and use_file_lock else None
        self.lock = ContainerLock(lock_file, timeout=lock_timeout, ttl=lock_ttl)
        self._load_state()

    @classmethod
    def from_config(
        cls,
        name: str,
        sources: Sequence[BranchSource],
        config: "MultibranchConfig",
        **kwargs: Any,
    ) -> "MultiBranchContainer":
        """Build a container whose gate, lock and cleanup policy follow ``config``."""
        from .lifecycle import DefaultDeadBranchStrategy

        kwargs.setdefault("gate", BuildDecisionGate(skip_tags_by_default=config.reconcile.skip_tags_by_default))
        kwargs.setdefault("cleanup_policy", DefaultDeadBranchStrategy.from_config(config.dead_branches))
        kwargs.setdefault("lock_timeout", config.lock.timeout)
        kwargs.setdefault("lock_ttl", config.lock.ttl)
        kwargs.setdefault("use_file_lock", config.lock.use_file_lock)
        return cls(name, sources, **kwargs)

    # Sources

    @property
    def sources(self) -> tuple:
        return tuple(self._sources)

    def snapshot_sources(self) -> tuple:
        """Consistent copy of the source list for one pass."""
        with self.lock:
            return tuple(self._sources)

    def set_sources(self, sources: Sequence[BranchSource]) -> None:
        """Replace the source list. Waits for any pass in progress."""
        with self.lock:
            self._sources = list(sources)
            for source_id in list(self.source_actions):
                if source_id not in {s.id for s in self._sources}:
                    del self.source_actions[source_id]
        log_debug("sources replaced", container=self.name, sources=[s.id for s in sources])

    # Children

    def get_child(self, name: str) -> Any:
        """Child stored under ``name``, accepting a percent-encoded name too."""
        if name is None:
            return None
        if "%" in name:
            child = self.children.get(raw_decode(name))
            if child is not None:
                return child
        return self.children.get(name)

    def add_child(self, child: Any) -> None:
        self.children[child.name] = child

    def remove_child(self, child: Any) -> None:
        self.children.pop(child.name, None)
        delete = getattr(self.factory, "delete", None)
        if delete is not None:
            delete(child)
        log_debug("child removed", container=self.name, child=child.name)

    def dead_children(self) -> list:
        return [
            child
            for child in self.children.values()
            if self.factory.is_project(child) and self.factory.get_branch(child).is_dead
        ]

    # Persistence

    def _load_state(self) -> None:
        load = getattr(self.factory, "load_children", None)
        if load is not None:
            self.children.update(load())
        if self.state_dir is None:
            return
        path = self.state_dir / CONTAINER_STATE_FILE
        if not path.exists():
            return
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            log_warning("Ignoring unreadable container state", path=str(path), error=str(e))
            return
        self.source_actions = {k: list(v) for k, v in (data.get("source_actions") or {}).items()}

    def save(self) -> None:
        """Persist the source order and source metadata."""
        if self.state_dir is None:
            return
        payload = {
            "name": self.name,
            "sources": [s.id for s in self._sources],
            "source_actions": {k: jsonable_actions(v) for k, v in self.source_actions.items()},
        }
        try:
            atomic_write_json(self.state_dir / CONTAINER_STATE_FILE, payload)
        except OSError as e:
            raise PersistenceError(f"Could not save container {self.name}: {e}") from e

    # Reconciliation entry points

    def scan(self, log: Optional[TaskLog] = None, cancel: Optional[threading.Event] = None) -> "ScanOutcome":
        from .scan import FullScan

        return FullScan(self).run(log or TaskLog(), cancel=cancel)

    def on_event(
        self,
        event: "HeadEvent | SourceEvent",
        log: Optional[TaskLog] = None,
        cancel: Optional[threading.Event] = None,
    ) -> "ScanOutcome":
        from .events import EventReconciler

        return EventReconciler(self).process(event, log or TaskLog(), cancel=cancel)

    def __repr__(self) -> str:
        return f"MultiBranchContainer({self.name!r}, sources={[s.id for s in self._sources]})"
