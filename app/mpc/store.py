# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Key material store.

Maps ``(user_id, algorithm)`` to the opaque key record returned by the
engine. The store does no locking of its own: every check-then-act
sequence runs while the caller holds the
:class:`~app.mpc.guard.ConcurrencyGuard` for the pair.

:class:`InMemoryKeyStore` keeps records in process memory only, so key
material is lost on restart. A durable backend implements the same
:class:`KeyStore` interface.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Dict, Optional

from app.mpc.exceptions import KeyNotFoundError, UserNotFoundError
from app.mpc.models import Algorithm, KeyRecord

logger = logging.getLogger("mpc.store")

__all__ = [
    "InMemoryKeyStore",
    "KeyStore",
    "get_key_store",
    "reset_key_store",
]


class KeyStore(ABC):
    """Storage interface for per-user, per-algorithm key records."""

    @abstractmethod
    def exists(self, user_id: str, algorithm: Algorithm) -> bool:
        """Whether a key record is stored for the pair."""

    @abstractmethod
    def has_user(self, user_id: str) -> bool:
        """Whether any key record is stored for the user."""

    @abstractmethod
    def get(self, user_id: str, algorithm: Algorithm) -> KeyRecord:
        """Return the stored record.

        Raises:
            UserNotFoundError: The user has no key material at all.
            KeyNotFoundError: The user has no key for ``algorithm``.
        """

    @abstractmethod
    def put(self, user_id: str, algorithm: Algorithm, record: KeyRecord) -> None:
        """Insert or overwrite the record for the pair."""

    @abstractmethod
    def count(self) -> int:
        """Number of stored (user, algorithm) records."""


class InMemoryKeyStore(KeyStore):
    """Volatile dict-of-dicts store."""

    def __init__(self) -> None:
        self._records: Dict[str, Dict[Algorithm, KeyRecord]] = {}

    def exists(self, user_id: str, algorithm: Algorithm) -> bool:
        return Algorithm(algorithm) in self._records.get(user_id, {})

    def has_user(self, user_id: str) -> bool:
        return bool(self._records.get(user_id))

    def get(self, user_id: str, algorithm: Algorithm) -> KeyRecord:
        algorithm = Algorithm(algorithm)
        user_records = self._records.get(user_id)
        if not user_records:
            raise UserNotFoundError.for_user(user_id)
        if algorithm not in user_records:
            raise KeyNotFoundError.for_pair(user_id, algorithm.value)
        return user_records[algorithm]

    def put(self, user_id: str, algorithm: Algorithm, record: KeyRecord) -> None:
        algorithm = Algorithm(algorithm)
        replaced = algorithm in self._records.get(user_id, {})
        self._records.setdefault(user_id, {})[algorithm] = record
        logger.debug(
            "%s key record for user=%s algorithm=%s",
            "Replaced" if replaced else "Stored", user_id, algorithm.value,
        )

    def count(self) -> int:
        return sum(len(records) for records in self._records.values())


# =============================================================================
# Module-level singleton
# =============================================================================

_key_store: Optional[KeyStore] = None


def get_key_store() -> KeyStore:
    """Return the process-wide key store, creating it on first use."""
    global _key_store
    if _key_store is None:
        _key_store = InMemoryKeyStore()
    return _key_store


def reset_key_store() -> None:
    """Drop the process-wide key store (for testing)."""
    global _key_store
    _key_store = None
