"""Repository source backed by a local git repository.

Uses GitPython for git operations (no subprocess plumbing of our own).
Branches and tags of the repository become heads; commit hashes are
deterministic revisions.
"""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Iterator, List, Optional, Sequence

from git import GitCommandError, InvalidGitRepositoryError, NoSuchPathError, Repo

from .errors import SourceError
from .interfaces import Observation, SourceCriteria
from .model import Head, HeadKind, Revision
from .observability import TaskLog, log_debug

if TYPE_CHECKING:
    from .events import HeadEvent, SourceEvent


@dataclass(frozen=True)
class GitCheckout:
    """What a build of a head checks out."""

    repo_path: Path
    ref: str


class GitRepositorySource:
    """Report the branches (and optionally tags) of a git repository.

    Args:
        repo_path: Working tree or bare repository
        source_id: Stable id; defaults to ``git:<resolved path>``
        include_tags: Also report tags
        tag_prefixes: Only report tags starting with one of these (empty = all)
    """

    def __init__(
        self,
        repo_path: Path,
        source_id: Optional[str] = None,
        *,
        include_tags: bool = True,
        tag_prefixes: Sequence[str] = (),
    ):
        self.repo_path = Path(repo_path)
        self._id = source_id or f"git:{self.repo_path.resolve()}"
        self.include_tags = include_tags
        self.tag_prefixes = tuple(tag_prefixes)

    @property
    def id(self) -> str:
        return self._id

    def _open(self) -> Repo:
        try:
            return Repo(self.repo_path)
        except (InvalidGitRepositoryError, NoSuchPathError) as e:
            raise SourceError(self.id, f"not a git repository: {self.repo_path} ({e})") from e

    def _observations(self, repo: Repo, log: TaskLog) -> Iterator[Observation]:
        for ref in repo.heads:
            commit = ref.commit
            head = Head(ref.name, HeadKind.BRANCH, timestamp=float(commit.committed_date))
            yield head, Revision(ref.name, commit.hexsha)
        if not self.include_tags:
            return
        for tag in repo.tags:
            if self.tag_prefixes and not tag.name.startswith(self.tag_prefixes):
                continue
            try:
                commit = tag.commit
            except ValueError:
                # tag pointing at something other than a commit
                log.println(f"Skipping tag {tag.name}: does not point at a commit")
                continue
            tagged = tag.tag.tagged_date if tag.tag is not None else commit.committed_date
            head = Head(tag.name, HeadKind.TAG, timestamp=float(tagged))
            yield head, Revision(tag.name, commit.hexsha)

    def _fetch(self, criteria: Optional[SourceCriteria], log: TaskLog, scope=None) -> List[Observation]:
        repo = self._open()
        result: List[Observation] = []
        try:
            for head, revision in self._observations(repo, log):
                if scope is not None and not scope(head.name):
                    continue
                if criteria is not None and not criteria(head, revision):
                    log.println(f"Does not meet criteria: {head.pronoun.lower()} {head.name}")
                    continue
                log.println(f"Checking {head.pronoun.lower()} {head.name} at {revision}")
                result.append((head, revision))
        except GitCommandError as e:
            raise SourceError(self.id, f"git failed: {e}") from e
        finally:
            repo.close()
        log_debug("git fetch", source=self.id, heads=len(result))
        return result

    def fetch(self, criteria: Optional[SourceCriteria], log: TaskLog) -> List[Observation]:
        return self._fetch(criteria, log)

    def fetch_event(
        self, criteria: Optional[SourceCriteria], event: "HeadEvent", log: TaskLog
    ) -> List[Observation]:
        return self._fetch(criteria, log, scope=event.in_scope)

    def build(self, head: Head) -> GitCheckout:
        prefix = "refs/tags/" if head.is_tag else "refs/heads/"
        return GitCheckout(self.repo_path, prefix + head.name)

    def fetch_source_actions(self, event: Optional["SourceEvent"], log: TaskLog) -> list:
        repo = self._open()
        try:
            try:
                default_branch = repo.active_branch.name
            except TypeError:
                # Detached HEAD
                default_branch = None
            return [{"repository": str(self.repo_path), "default_branch": default_branch}]
        finally:
            repo.close()

    def fetch_head_actions(self, head: Head, event: Optional["HeadEvent"], log: TaskLog) -> list:
        return []

    def __repr__(self) -> str:
        return f"GitRepositorySource({str(self.repo_path)!r}, id={self.id!r})"
