"""Contracts for the collaborators the reconciliation core talks to."""

from __future__ import annotations

from typing import (
    TYPE_CHECKING,
    Any,
    Callable,
    Iterable,
    Optional,
    Protocol,
    Sequence,
    Tuple,
    runtime_checkable,
)

from .model import Branch, BranchSource, Head, Revision

if TYPE_CHECKING:
    from .events import HeadEvent, SourceEvent
    from .observability import TaskLog

Observation = Tuple[Head, Revision]

# Filters observations before they reach the engine (e.g. "has a build file")
SourceCriteria = Callable[[Head, Revision], bool]


@runtime_checkable
class RepositorySource(Protocol):
    """Enumerates heads and revisions for one repository."""

    @property
    def id(self) -> str: ...

    def fetch(
        self, criteria: Optional[SourceCriteria], log: "TaskLog"
    ) -> Iterable[Observation]:
        """Report every current head. Raise ``SourceError`` on failure."""
        ...

    def fetch_event(
        self, criteria: Optional[SourceCriteria], event: "HeadEvent", log: "TaskLog"
    ) -> Iterable[Observation]:
        """Report only the heads in the scope of ``event`` that still exist."""
        ...

    def build(self, head: Head) -> Any:
        """Return the checkout handle for ``head``."""
        ...

    def fetch_source_actions(self, event: Optional["SourceEvent"], log: "TaskLog") -> list:
        ...

    def fetch_head_actions(self, head: Head, event: Optional["HeadEvent"], log: "TaskLog") -> list:
        ...


@runtime_checkable
class ChildProject(Protocol):
    """A child owned by a container, keyed by its encoded name."""

    name: str
    display_name: str
    last_build_time: Optional[float]


class ProjectFactory(Protocol):
    """Creates and inspects branch projects.

    ``set_branch`` and ``decorate`` only change the in-memory child;
    ``save`` is the single persistence entry point.
    """

    def new_instance(self, branch: Branch) -> ChildProject: ...

    def is_project(self, candidate: Any) -> bool: ...

    def get_branch(self, child: ChildProject) -> Branch: ...

    def set_branch(self, child: ChildProject, branch: Branch) -> ChildProject: ...

    def get_revision(self, child: ChildProject) -> Optional[Revision]: ...

    def get_last_seen_revision(self, child: ChildProject) -> Optional[Revision]: ...

    def set_revision_hash(
        self,
        child: ChildProject,
        last_built: Optional[Revision],
        last_seen: Optional[Revision],
    ) -> None: ...

    def decorate(self, child: ChildProject) -> ChildProject: ...

    def save(self, child: ChildProject) -> None: ...


class BuildScheduler(Protocol):
    def schedule(self, child: ChildProject, causes: Sequence[Any], actions: Sequence[Any]) -> bool:
        """Queue a build; return whether it was accepted."""
        ...


class ChangePoller(Protocol):
    """Answers "has this child changed" for non-deterministic revisions."""

    def has_changes(self, child: ChildProject, log: "TaskLog") -> bool: ...


class CleanupPolicy(Protocol):
    """Decides which dead children (or orphaned containers) to delete now."""

    def select_for_removal(self, dead: Sequence[ChildProject], log: "TaskLog") -> list: ...


class BranchPropertyStrategy(Protocol):
    def properties_for(self, head: Head) -> list: ...


class BuildStrategy(Protocol):
    """One link in a source's build-decision chain.

    Return ``True`` or ``False`` to decide, ``None`` to abstain.
    """

    updates_last_built_without_build: bool

    def is_automatic_build(
        self,
        source: BranchSource,
        head: Head,
        revision: Revision,
        last_built: Optional[Revision],
        last_seen: Optional[Revision],
        log: "TaskLog",
    ) -> Optional[bool]: ...


class Navigator(Protocol):
    """Enumerates repositories for an organization folder."""

    @property
    def id(self) -> str: ...

    def visit(self, log: "TaskLog") -> Iterable[Tuple[str, Sequence[RepositorySource]]]: ...

    def fetch_actions(self, log: "TaskLog") -> dict: ...
