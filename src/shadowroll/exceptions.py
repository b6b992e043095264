"""
Exception hierarchy for the shadowroll progression resolver.

Content gaps (a roll with no matching entry, a document that cannot be
fetched) are never raised to the caller; they are absorbed by the resolver
and turned into empty or best-effort results. The exceptions below cover
the remaining cases: broken integrations (protocol errors), transport
failures inside fetcher adapters, and invalid configuration.
"""

from __future__ import annotations

from typing import Any


class ShadowrollError(Exception):
    """Base exception for all shadowroll errors.

    Attributes:
        message: Human-readable error message
        details: Optional dictionary of additional error context
    """

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ProtocolError(ShadowrollError):
    """The caller drove a progression run out of order.

    These indicate a broken integration rather than bad content, so they
    propagate immediately.
    """


class ChoiceAlreadyPendingError(ProtocolError):
    """A new choice was presented (or a roll attempted) while one is outstanding."""


class NoPendingChoiceError(ProtocolError):
    """A selection was supplied but no choice is outstanding."""


class InvalidSelectionError(ProtocolError):
    """The supplied selection is not one of the offered options."""


class IncompleteRunError(ProtocolError):
    """Finalization was requested before every requirement was satisfied.

    Attributes:
        unmet: Human-readable descriptions of the unmet requirements
    """

    def __init__(
        self,
        message: str,
        unmet: list[str] | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.unmet = unmet or []


class RunFinalizedError(ProtocolError):
    """The run was already finalized or abandoned."""


class DocumentFetchError(ShadowrollError):
    """A fetcher adapter failed to retrieve a document.

    Attributes:
        identifier: The remote identifier that was requested
    """

    def __init__(
        self,
        message: str,
        identifier: str,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.identifier = identifier


class ConfigError(ShadowrollError):
    """Configuration values are invalid or incomplete."""
