"""Deduplication Ledger: never grant the same content twice in one run."""

from __future__ import annotations

import logging
import threading

from .models import GrantDescriptor

logger = logging.getLogger("shadowroll")


def _name_key(name: str) -> str:
    return " ".join(name.split()).lower()


class DeduplicationLedger:
    """Tracks every grant accepted during one progression run.

    A candidate is rejected when its remote identifier was already granted,
    or when its display name was already granted. Either test alone is
    enough: the same content is sometimes reachable both as a direct
    document and as a differently identified table result.

    The ledger only grows. ``accept`` performs check-then-insert under a
    lock so two resolution branches can never both accept the same grant.
    """

    def __init__(self) -> None:
        self._identifiers: set[str] = set()
        self._names: set[str] = set()
        self._lock = threading.Lock()

    def accept(self, candidate: GrantDescriptor) -> bool:
        """Record ``candidate`` and return True, or return False if it is a duplicate."""
        name_key = _name_key(candidate.name)
        with self._lock:
            if candidate.remote_identifier and candidate.remote_identifier in self._identifiers:
                logger.debug(f"Rejected duplicate grant by identifier: {candidate.remote_identifier}")
                return False
            if name_key and name_key in self._names:
                logger.debug(f"Rejected duplicate grant by name: {candidate.name}")
                return False

            if candidate.remote_identifier:
                self._identifiers.add(candidate.remote_identifier)
            if name_key:
                self._names.add(name_key)
            return True

    def copy(self) -> "DeduplicationLedger":
        """Return an independent ledger holding the same grants."""
        clone = DeduplicationLedger()
        with self._lock:
            clone._identifiers = set(self._identifiers)
            clone._names = set(self._names)
        return clone

    def record_name(self, name: str) -> None:
        """Record an extra display name (e.g. after a grant is renamed)."""
        key = _name_key(name)
        if key:
            with self._lock:
                self._names.add(key)

    def __contains__(self, candidate: GrantDescriptor) -> bool:
        with self._lock:
            return (
                bool(candidate.remote_identifier) and candidate.remote_identifier in self._identifiers
            ) or _name_key(candidate.name) in self._names

    def __len__(self) -> int:
        return len(self._names)
