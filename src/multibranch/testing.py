"""In-memory collaborators for tests.

Usage:
    from multibranch.testing import FakeSource, make_container

    source = FakeSource("origin", {"main": "abc123"})
    container = make_container(source)
    container.scan()
    assert container.scheduler.names() == ["main"]

    with mock_env_vars(MULTIBRANCH_LOG_LEVEL="DEBUG"):
        ...
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from typing import Any, Dict, Iterator, List, Mapping, Optional, Sequence, Set, Tuple

from .container import MultiBranchContainer
from .errors import SourceError
from .model import BranchSource, Head, HeadKind, Revision


class FakeSource:
    """A repository source whose heads are set by the test.

    ``fail_after`` makes the next fetches yield that many observations and
    then raise ``SourceError``; ``fail_after=0`` fails immediately. Heads
    named in ``broken`` are listed but raise ``SourceError`` from ``build``.
    """

    def __init__(self, source_id: str, heads: Optional[Mapping[str, str]] = None):
        self._id = source_id
        self.heads: Dict[str, Tuple[Head, Revision]] = {}
        self.fail_after: Optional[int] = None
        self.fetch_calls = 0
        self.event_calls = 0
        self.source_actions: List[Any] = []
        self.head_actions: Dict[str, List[Any]] = {}
        self.broken: Set[str] = set()
        for name, rev in (heads or {}).items():
            self.set_head(name, rev)

    @property
    def id(self) -> str:
        return self._id

    def set_head(
        self,
        name: str,
        rev: str,
        kind: HeadKind = HeadKind.BRANCH,
        *,
        deterministic: bool = True,
        target: Optional[str] = None,
        timestamp: Optional[float] = None,
    ) -> Head:
        head = Head(name, kind, timestamp=timestamp, target=target)
        self.heads[name] = (head, Revision(name, rev, deterministic))
        return head

    def remove_head(self, name: str) -> None:
        self.heads.pop(name, None)

    def fail(self, after: int = 0) -> None:
        self.fail_after = after

    def heal(self) -> None:
        self.fail_after = None

    def _iterate(self, criteria, scope=None) -> Iterator[Tuple[Head, Revision]]:
        emitted = 0
        for head, revision in list(self.heads.values()):
            if self.fail_after is not None and emitted >= self.fail_after:
                raise SourceError(self.id, "connection reset")
            if scope is not None and not scope(head.name):
                continue
            if criteria is not None and not criteria(head, revision):
                continue
            emitted += 1
            yield head, revision
        if self.fail_after is not None:
            raise SourceError(self.id, "connection reset")

    def fetch(self, criteria, log) -> Iterator[Tuple[Head, Revision]]:
        self.fetch_calls += 1
        return self._iterate(criteria)

    def fetch_event(self, criteria, event, log) -> Iterator[Tuple[Head, Revision]]:
        self.event_calls += 1
        return self._iterate(criteria, scope=event.in_scope)

    def build(self, head: Head) -> str:
        if head.name in self.broken:
            raise SourceError(self.id, f"cannot build {head.name}")
        return f"{self.id}:{head.name}"

    def fetch_source_actions(self, event, log) -> list:
        if self.fail_after == 0:
            raise SourceError(self.id, "connection reset")
        return list(self.source_actions)

    def fetch_head_actions(self, head: Head, event, log) -> list:
        return list(self.head_actions.get(head.name, ()))

    def __repr__(self) -> str:
        return f"FakeSource({self.id!r})"


class RecordingScheduler:
    """Build scheduler that records every request."""

    def __init__(self, accept: bool = True):
        self.accept = accept
        self.requests: List[Tuple[str, list]] = []

    def schedule(self, child, causes: Sequence[Any], actions: Sequence[Any]) -> bool:
        self.requests.append((child.name, list(causes)))
        if self.accept:
            child.last_build_time = time.time()
        return self.accept

    def names(self) -> List[str]:
        return [name for name, _ in self.requests]

    def clear(self) -> None:
        self.requests.clear()


class FakePoller:
    """Change poller answering from a set of child names."""

    def __init__(self, changed: Sequence[str] = (), error: Optional[str] = None):
        self.changed = set(changed)
        self.error = error
        self.calls: List[str] = []

    def has_changes(self, child, log) -> bool:
        self.calls.append(child.name)
        if self.error:
            raise SourceError("poller", self.error)
        return child.name in self.changed


class FakeNavigator:
    """Navigator reporting fixed repositories."""

    def __init__(
        self,
        navigator_id: str,
        repositories: Optional[Mapping[str, Sequence[Any]]] = None,
        actions: Optional[Mapping[str, Any]] = None,
    ):
        self._id = navigator_id
        self.repositories: Dict[str, List[Any]] = {k: list(v) for k, v in (repositories or {}).items()}
        self.actions = dict(actions or {})
        self.failing = False

    @property
    def id(self) -> str:
        return self._id

    def visit(self, log):
        if self.failing:
            raise SourceError(self.id, "API rate limit exceeded")
        return list(self.repositories.items())

    def fetch_actions(self, log) -> dict:
        return dict(self.actions)


def make_container(*sources: Any, name: str = "repo", **kwargs: Any) -> MultiBranchContainer:
    """Container over ``sources`` (raw sources or ``BranchSource``) with a recording scheduler."""
    kwargs.setdefault("scheduler", RecordingScheduler())
    branch_sources = [s if isinstance(s, BranchSource) else BranchSource(s) for s in sources]
    return MultiBranchContainer(name, branch_sources, **kwargs)


@contextmanager
def mock_env_vars(**env_vars):
    """Temporarily set environment variables for testing.

    Saves current env vars, sets new values, then restores
    originals on exit. Setting value to None deletes the var.
    """
    old_env: Dict[str, Optional[str]] = {}

    try:
        for key, value in env_vars.items():
            old_env[key] = os.environ.get(key)
            if value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = str(value)

        yield

    finally:
        for key, old_value in old_env.items():
            if old_value is None:
                os.environ.pop(key, None)
            else:
                os.environ[key] = old_value


@contextmanager
def temp_config(config_dict: Optional[Dict[str, Any]] = None, **env_overrides: str):
    """Temporarily replace the cached configuration.

    ``get_config()`` returns a config built from ``config_dict`` until the
    block exits; environment overrides are applied for the same span.

    Yields:
        config: The MultibranchConfig in effect
    """
    from . import config_loader
    from .config_schema import MultibranchConfig

    with config_loader._config_lock:
        old_config = config_loader._cached_config
        old_path = config_loader._cached_project_path
    try:
        with mock_env_vars(**env_overrides):
            config = MultibranchConfig.model_validate(config_dict or {})
            with config_loader._config_lock:
                config_loader._cached_config = config
                config_loader._cached_project_path = None
            yield config
    finally:
        with config_loader._config_lock:
            config_loader._cached_config = old_config
            config_loader._cached_project_path = old_path
