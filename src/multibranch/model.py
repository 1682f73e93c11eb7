"""Value types: heads, revisions, branches and branch sources."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import Enum
from typing import TYPE_CHECKING, Any, Optional, Sequence, Union

from .constants import (
    DEAD_SOURCE_ID,
    PRONOUN_BRANCH,
    PRONOUN_CHANGE_REQUEST,
    PRONOUN_TAG,
)
from .mangler import mangle

if TYPE_CHECKING:
    from .interfaces import BranchPropertyStrategy, BuildStrategy, RepositorySource


class HeadKind(str, Enum):
    """What sort of ref a head is."""

    BRANCH = "branch"
    TAG = "tag"
    CHANGE_REQUEST = "change_request"


@dataclass(frozen=True)
class Head:
    """A named ref reported by a source.

    Two heads are the same head when name and kind match; ``timestamp`` and
    ``target`` are descriptive only.
    """

    name: str
    kind: HeadKind = HeadKind.BRANCH
    timestamp: Optional[float] = field(default=None, compare=False)
    target: Optional[str] = field(default=None, compare=False)

    @property
    def pronoun(self) -> str:
        if self.kind is HeadKind.TAG:
            return PRONOUN_TAG
        if self.kind is HeadKind.CHANGE_REQUEST:
            return PRONOUN_CHANGE_REQUEST
        return PRONOUN_BRANCH

    @property
    def is_tag(self) -> bool:
        return self.kind is HeadKind.TAG

    @property
    def is_change_request(self) -> bool:
        return self.kind is HeadKind.CHANGE_REQUEST

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "timestamp": self.timestamp,
            "target": self.target,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Head":
        return cls(
            name=data["name"],
            kind=HeadKind(data.get("kind", HeadKind.BRANCH.value)),
            timestamp=data.get("timestamp"),
            target=data.get("target"),
        )


@dataclass(frozen=True)
class Revision:
    """A point-in-time value of a head.

    Deterministic revisions compare by hash. Non-deterministic ones can only
    be checked for change by polling.
    """

    head_name: str
    hash: str
    deterministic: bool = True

    def __str__(self) -> str:
        return self.hash[:12] if self.deterministic else f"{self.hash} (polled)"

    def to_dict(self) -> dict:
        return {"head": self.head_name, "hash": self.hash, "deterministic": self.deterministic}

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> Optional["Revision"]:
        if not data:
            return None
        return cls(
            head_name=data["head"],
            hash=data["hash"],
            deterministic=data.get("deterministic", True),
        )


class _BranchIdentity:
    """Branch equality: two branches are the same when source id and head name match."""

    source_id: str
    head: Head

    @property
    def name(self) -> str:
        return self.head.name

    @property
    def encoded_name(self) -> str:
        return mangle(self.head.name)

    def _key(self) -> tuple[str, str]:
        return (self.source_id, self.head.name)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, _BranchIdentity):
            return NotImplemented
        return self._key() == other._key()

    def __hash__(self) -> int:
        return hash(self._key())

    def get_property(self, kind: type) -> Any:
        for prop in self.properties:  # type: ignore[attr-defined]
            if isinstance(prop, kind):
                return prop
        return None

    def has_property(self, kind: type) -> bool:
        return self.get_property(kind) is not None


@dataclass(frozen=True, eq=False)
class LiveBranch(_BranchIdentity):
    """A branch currently reported by a configured source."""

    source_id: str
    head: Head
    scm: Any = None
    properties: tuple = ()
    actions: tuple = ()

    is_dead = False
    buildable = True

    def with_actions(self, actions: Sequence[Any]) -> "LiveBranch":
        return replace(self, actions=tuple(actions))


@dataclass(frozen=True, eq=False)
class DeadBranch(_BranchIdentity):
    """A branch no configured source reports any more.

    Keeps the head, properties and actions of the branch it replaced.
    """

    head: Head
    properties: tuple = ()
    actions: tuple = ()

    source_id = DEAD_SOURCE_ID
    scm = None
    is_dead = True
    buildable = False


Branch = Union[LiveBranch, DeadBranch]


@dataclass
class BranchSource:
    """A configured source plus the strategies applied to its heads.

    The position of a ``BranchSource`` in its container's list is its
    priority; index 0 wins.
    """

    source: "RepositorySource"
    property_strategy: Optional["BranchPropertyStrategy"] = None
    build_strategies: list["BuildStrategy"] = field(default_factory=list)

    @property
    def id(self) -> str:
        return self.source.id

    def properties_for(self, head: Head) -> tuple:
        if self.property_strategy is None:
            return ()
        return tuple(self.property_strategy.properties_for(head))

    def new_branch(self, head: Head) -> LiveBranch:
        """Build the branch value this source would own for ``head``."""
        return LiveBranch(
            source_id=self.source.id,
            head=head,
            scm=self.source.build(head),
            properties=self.properties_for(head),
        )
