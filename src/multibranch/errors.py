"""Exception hierarchy for reconciliation."""

from __future__ import annotations


class MultibranchError(Exception):
    """Base exception for this package."""


class SourceError(MultibranchError):
    """A repository source could not be read (network, API or git failure).

    Engines treat these as transient: the source's contribution to the pass
    is skipped and branches it owns are left as they are.
    """

    def __init__(self, source_id: str, message: str):
        super().__init__(f"{source_id}: {message}")
        self.source_id = source_id


class StructuralError(MultibranchError):
    """A child exists under an encoded name but is not a branch project."""


class PersistenceError(MultibranchError):
    """Saving a child or container failed."""


class ConfigurationError(MultibranchError):
    """Invalid configuration detected while making a decision.

    Never swallowed by the engines.
    """


class ReconciliationAborted(MultibranchError):
    """A pass could not start or was cancelled before finishing."""


class LockTimeout(MultibranchError, TimeoutError):
    """The container lock could not be acquired in time."""
