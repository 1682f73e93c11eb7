"""Branch property strategies: which properties a head's branch carries."""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from functools import lru_cache
from typing import Any, List, Sequence

from .model import Head


@dataclass(frozen=True)
class ParameterProperty:
    """Build parameters to declare on a branch project."""

    parameters: tuple = ()

    def __post_init__(self):
        object.__setattr__(self, "parameters", tuple(self.parameters))


@dataclass(frozen=True)
class BuildRetentionProperty:
    """How many builds a branch project keeps."""

    num_to_keep: int = -1
    days_to_keep: int = -1


class DefaultBranchPropertyStrategy:
    """Every head gets the same properties."""

    def __init__(self, properties: Sequence[Any] = ()):
        self.properties = list(properties)

    def properties_for(self, head: Head) -> list:
        return list(self.properties)


@lru_cache(maxsize=512)
def _segment_regex(segment: str) -> re.Pattern[str]:
    parts = []
    for ch in segment:
        if ch == "*":
            parts.append("[^/]*")
        elif ch == "?":
            parts.append("[^/]")
        else:
            parts.append(re.escape(ch))
    return re.compile("".join(parts), re.IGNORECASE)


def _match_segments(patterns: Sequence[str], parts: Sequence[str]) -> bool:
    if not patterns:
        return not parts
    if patterns[0] == "**":
        return any(_match_segments(patterns[1:], parts[i:]) for i in range(len(parts) + 1))
    if not parts:
        return False
    if not _segment_regex(patterns[0]).fullmatch(parts[0]):
        return False
    return _match_segments(patterns[1:], parts[1:])


def match_path(pattern: str, name: str) -> bool:
    """Path-style wildcard match, case-insensitive.

    ``*`` and ``?`` stay within one ``/`` segment; a ``**`` segment spans any
    number of segments. Backslashes count as separators.
    """
    pattern = pattern.replace("\\", "/")
    name = name.replace("\\", "/")
    return _match_segments(pattern.split("/"), name.split("/"))


def is_match(branch_name: str, names: str) -> bool:
    """True if ``branch_name`` matches any entry of the comma-separated ``names``.

    ``!pattern`` inverts an entry; ``\\!`` escapes a literal leading ``!``.
    Entries without wildcards compare case-insensitively.
    """
    for raw in names.split(","):
        name = raw.strip()
        if not name:
            continue
        invert = False
        if name.startswith("!"):
            name = name[1:]
            invert = True
        elif name.startswith("\\!") or name.startswith("\\\\!"):
            name = name[1:]
        if "*" not in name and "?" not in name:
            matched = name.lower() == branch_name.lower()
        else:
            matched = match_path(name, branch_name)
        if matched != invert:
            return True
    return False


@dataclass
class NamedException:
    """Properties applied to heads whose name matches ``name``."""

    name: str
    properties: List[Any] = field(default_factory=list)

    def matches(self, head: Head) -> bool:
        return is_match(head.name, self.name)


class NamedExceptionsBranchPropertyStrategy:
    """Defaults for most heads, with per-name exceptions.

    Properties of every matching exception are combined. Heads no exception
    matches get the defaults.
    """

    def __init__(
        self,
        default_properties: Sequence[Any] = (),
        named_exceptions: Sequence[NamedException] = (),
    ):
        self.default_properties = list(default_properties)
        self.named_exceptions = list(named_exceptions)

    def properties_for(self, head: Head) -> list:
        properties: list = []
        for named in self.named_exceptions:
            if named.matches(head):
                properties.extend(named.properties)
        if not properties:
            properties.extend(self.default_properties)
        return properties
