"""Constants shared across the reconciliation core."""

from __future__ import annotations

# Names at or below this length made only of safe characters are kept verbatim.
MAX_SAFE_LENGTH = 32
MIN_HASH_LENGTH = 6
MAX_HASH_LENGTH = 12

# Characters folded to "-" when a name has to be mangled
SEPARATOR_CHARS = frozenset("/\\ ._")

# Device names reserved on at least one supported filesystem (compared lower-case)
RESERVED_NAMES = frozenset(
    [".", "..", "con", "prn", "aux", "nul"]
    + [f"com{i}" for i in range(1, 10)]
    + [f"lpt{i}" for i in range(1, 10)]
)

# Source id carried by dead branches; never a valid configured source id
DEAD_SOURCE_ID = "::NullSCMSource::"

# Head pronouns as reported to users
PRONOUN_BRANCH = "Branch"
PRONOUN_TAG = "Tag"
PRONOUN_CHANGE_REQUEST = "Change request"

# Names of the per-container state files
CHILDREN_DIR_NAME = "branches"
CONTAINER_STATE_FILE = "container.json"
CHILD_STATE_FILE = "branch.json"
LOCK_FILE_NAME = ".reconcile.lock"
