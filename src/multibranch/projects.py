"""Branch projects and a project factory that keeps them in memory or on disk."""

from __future__ import annotations

import json
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Dict, Optional

from .build_gate import NoTriggerBranchProperty, OverrideTriggersProperty, SuppressionStrategy
from .constants import CHILD_STATE_FILE, CHILDREN_DIR_NAME
from .errors import PersistenceError
from .git_source import GitCheckout
from .model import Branch, DeadBranch, Head, LiveBranch, Revision
from .observability import log_debug, log_warning
from .properties import BuildRetentionProperty, ParameterProperty


@dataclass
class BranchProject:
    """A child of a multi-branch container, holding exactly one branch."""

    name: str
    display_name: str
    branch: Branch
    last_built: Optional[Revision] = None
    last_seen: Optional[Revision] = None
    last_build_time: Optional[float] = None
    parameters: tuple = ()
    build_retention: Optional[BuildRetentionProperty] = None
    state_path: Optional[Path] = None
    save_count: int = 0

    @property
    def is_dead(self) -> bool:
        return self.branch.is_dead

    def to_dict(self) -> dict:
        branch = self.branch
        return {
            "name": self.name,
            "display_name": self.display_name,
            "branch": {
                "source_id": branch.source_id,
                "dead": branch.is_dead,
                "head": branch.head.to_dict(),
                "scm": encode_scm(branch.scm),
                "properties": encode_properties(branch.properties, self.name),
                "actions": jsonable_actions(branch.actions),
            },
            "last_built": self.last_built.to_dict() if self.last_built else None,
            "last_seen": self.last_seen.to_dict() if self.last_seen else None,
            "last_build_time": self.last_build_time,
        }

    @classmethod
    def from_dict(cls, data: dict, state_path: Optional[Path] = None) -> "BranchProject":
        raw = data["branch"]
        head = Head.from_dict(raw["head"])
        actions = tuple(raw.get("actions") or ())
        properties = tuple(decode_property(p) for p in raw.get("properties") or ())
        branch: Branch
        if raw.get("dead"):
            branch = DeadBranch(head=head, properties=properties, actions=actions)
        else:
            branch = LiveBranch(
                source_id=raw["source_id"],
                head=head,
                scm=decode_scm(raw.get("scm")),
                properties=properties,
                actions=actions,
            )
        return cls(
            name=data["name"],
            display_name=data.get("display_name", head.name),
            branch=branch,
            last_built=Revision.from_dict(data.get("last_built")),
            last_seen=Revision.from_dict(data.get("last_seen")),
            last_build_time=data.get("last_build_time"),
            state_path=state_path,
        )


def jsonable_actions(actions: Any) -> list:
    result = []
    for action in actions:
        if isinstance(action, (str, int, float, bool, dict, list)) or action is None:
            result.append(action)
        else:
            result.append(repr(action))
    return result


def encode_property(prop: Any) -> Optional[dict]:
    """JSON form of one branch property, or None for unknown types."""
    if isinstance(prop, ParameterProperty):
        return {"type": "parameters", "parameters": list(prop.parameters)}
    if isinstance(prop, BuildRetentionProperty):
        return {"type": "build_retention", "num_to_keep": prop.num_to_keep, "days_to_keep": prop.days_to_keep}
    if isinstance(prop, NoTriggerBranchProperty):
        return {
            "type": "no_trigger",
            "strategy": prop.strategy.value,
            "triggered_branches_regex": prop.triggered_branches_regex,
        }
    if isinstance(prop, OverrideTriggersProperty):
        return {"type": "override_triggers", "enable_triggers": prop.enable_triggers}
    return None


def decode_property(data: dict) -> Any:
    kind = data["type"]
    if kind == "parameters":
        return ParameterProperty(tuple(data.get("parameters") or ()))
    if kind == "build_retention":
        return BuildRetentionProperty(
            num_to_keep=int(data.get("num_to_keep", -1)),
            days_to_keep=int(data.get("days_to_keep", -1)),
        )
    if kind == "no_trigger":
        return NoTriggerBranchProperty(
            strategy=SuppressionStrategy(data.get("strategy", SuppressionStrategy.ALL.value)),
            triggered_branches_regex=data.get("triggered_branches_regex", ".*"),
        )
    if kind == "override_triggers":
        return OverrideTriggersProperty(enable_triggers=bool(data.get("enable_triggers", True)))
    raise ValueError(f"Unknown branch property type: {kind}")


def encode_properties(properties: Any, child_name: str) -> list:
    result = []
    for prop in properties:
        encoded = encode_property(prop)
        if encoded is None:
            log_warning("branch property not persisted", child=child_name, property=type(prop).__name__)
            continue
        result.append(encoded)
    return result


def encode_scm(scm: Any) -> Any:
    """JSON form of a branch's SCM reference."""
    if scm is None:
        return None
    if isinstance(scm, GitCheckout):
        return {"type": "git", "repo_path": str(scm.repo_path), "ref": scm.ref}
    if isinstance(scm, (str, int, float, bool)):
        return {"type": "value", "value": scm}
    return {"type": "repr", "value": repr(scm)}


def decode_scm(data: Optional[dict]) -> Any:
    if not data:
        return None
    if data["type"] == "git":
        return GitCheckout(Path(data["repo_path"]), data["ref"])
    return data.get("value")


def atomic_write_json(path: Path, payload: dict) -> None:
    """Write JSON atomically (temp + rename)."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, temp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.stem}_", suffix=".tmp")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True)
        os.replace(temp_path, path)
    except Exception:
        try:
            os.unlink(temp_path)
        except OSError:
            pass
        raise


class InMemoryProjectFactory:
    """Project factory backed by plain objects, optionally saved as JSON.

    With a ``state_dir`` each child persists to
    ``<state_dir>/branches/<encoded name>/branch.json``.
    """

    def __init__(self, state_dir: Optional[Path] = None):
        self.state_dir = Path(state_dir) if state_dir else None

    def _state_path(self, name: str) -> Optional[Path]:
        if self.state_dir is None:
            return None
        return self.state_dir / CHILDREN_DIR_NAME / name / CHILD_STATE_FILE

    def new_instance(self, branch: Branch) -> BranchProject:
        name = branch.encoded_name
        return BranchProject(
            name=name,
            display_name=branch.name,
            branch=branch,
            state_path=self._state_path(name),
        )

    def is_project(self, candidate: Any) -> bool:
        return isinstance(candidate, BranchProject)

    def get_branch(self, child: BranchProject) -> Branch:
        return child.branch

    def set_branch(self, child: BranchProject, branch: Branch) -> BranchProject:
        child.branch = branch
        return child

    def get_revision(self, child: BranchProject) -> Optional[Revision]:
        return child.last_built

    def get_last_seen_revision(self, child: BranchProject) -> Optional[Revision]:
        return child.last_seen

    def set_revision_hash(
        self,
        child: BranchProject,
        last_built: Optional[Revision],
        last_seen: Optional[Revision],
    ) -> None:
        child.last_built = last_built
        child.last_seen = last_seen

    def decorate(self, child: BranchProject) -> BranchProject:
        """Apply the branch's properties to the project. Does not save."""
        params: tuple = ()
        retention = None
        for prop in child.branch.properties:
            if isinstance(prop, ParameterProperty):
                params += tuple(prop.parameters)
            elif isinstance(prop, BuildRetentionProperty):
                retention = prop
        child.parameters = params
        child.build_retention = retention
        return child

    def save(self, child: BranchProject) -> None:
        child.save_count += 1
        if child.state_path is None:
            return
        try:
            atomic_write_json(child.state_path, child.to_dict())
        except OSError as e:
            raise PersistenceError(f"Could not save {child.name}: {e}") from e

    def load_children(self) -> Dict[str, BranchProject]:
        """Read every persisted child from ``state_dir``.

        Unreadable entries are logged and skipped.
        """
        children: Dict[str, BranchProject] = {}
        if self.state_dir is None:
            return children
        root = self.state_dir / CHILDREN_DIR_NAME
        if not root.is_dir():
            return children
        for path in sorted(root.glob(f"*/{CHILD_STATE_FILE}")):
            try:
                data = json.loads(path.read_text(encoding="utf-8"))
                child = BranchProject.from_dict(data, state_path=path)
            except (OSError, json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
                log_warning("Skipping unreadable branch state", path=str(path), error=str(e))
                continue
            children[child.name] = self.decorate(child)
        log_debug("loaded branch projects", count=len(children), state_dir=str(self.state_dir))
        return children

    def delete(self, child: BranchProject) -> None:
        if child.state_path is None:
            return
        try:
            child.state_path.unlink()
            child.state_path.parent.rmdir()
        except FileNotFoundError:
            pass
        except OSError as e:
            raise PersistenceError(f"Could not delete {child.name}: {e}") from e
