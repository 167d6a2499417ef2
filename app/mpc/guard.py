# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Mutual exclusion for session operations.

Two scopes are supported:

* ``"global"``: one lock serializes every session operation across all
  users and algorithms. While one protocol run is in flight nothing else
  proceeds.
* ``"pair"``: one lock per ``(user_id, algorithm)``. Unrelated pairs run
  concurrently; operations on the same pair are serialized. Per-pair
  locks are created and reclaimed inside a short global critical
  section.

The lock is acquired by the request handler and may be released by a
different task (the background protocol run), so ownership is tracked
by key rather than by task.
"""

from __future__ import annotations

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Dict, Tuple

from app.mpc.models import Algorithm

logger = logging.getLogger("mpc.guard")

__all__ = ["ConcurrencyGuard", "LOCK_SCOPES"]

LOCK_SCOPES = ("pair", "global")

_GLOBAL_KEY: Tuple[str, str] = ("*", "*")


class ConcurrencyGuard:
    """Keyed asyncio lock registry."""

    def __init__(self, scope: str = "pair") -> None:
        if scope not in LOCK_SCOPES:
            raise ValueError(f"Unknown lock scope: {scope!r} (expected one of {LOCK_SCOPES})")
        self.scope = scope
        self._registry_lock = asyncio.Lock()
        self._locks: Dict[Tuple[str, str], asyncio.Lock] = {}
        # Tasks waiting on or holding each lock; the lock is reclaimed at zero.
        self._refs: Dict[Tuple[str, str], int] = {}

    def _key(self, user_id: str, algorithm: Algorithm) -> Tuple[str, str]:
        if self.scope == "global":
            return _GLOBAL_KEY
        return (user_id, Algorithm(algorithm).value)

    async def acquire(self, user_id: str, algorithm: Algorithm) -> None:
        """Block until the guard for the pair is held by the caller."""
        key = self._key(user_id, algorithm)
        async with self._registry_lock:
            lock = self._locks.setdefault(key, asyncio.Lock())
            self._refs[key] = self._refs.get(key, 0) + 1

        try:
            await lock.acquire()
        except BaseException:
            await self._unref(key)
            raise
        logger.debug("Guard acquired for %s/%s", *key)

    async def release(self, user_id: str, algorithm: Algorithm) -> None:
        """Release the guard for the pair.

        Raises:
            RuntimeError: If the guard is not held.
        """
        key = self._key(user_id, algorithm)
        lock = self._locks.get(key)
        if lock is None or not lock.locked():
            raise RuntimeError(f"Guard for {key[0]}/{key[1]} released while not held")
        lock.release()
        await self._unref(key)
        logger.debug("Guard released for %s/%s", *key)

    async def _unref(self, key: Tuple[str, str]) -> None:
        async with self._registry_lock:
            remaining = self._refs.get(key, 0) - 1
            if remaining <= 0:
                self._refs.pop(key, None)
                self._locks.pop(key, None)
            else:
                self._refs[key] = remaining

    @asynccontextmanager
    async def hold(self, user_id: str, algorithm: Algorithm) -> AsyncIterator[None]:
        """Hold the guard for the duration of the ``async with`` block."""
        await self.acquire(user_id, algorithm)
        try:
            yield
        finally:
            await self.release(user_id, algorithm)

    def is_locked(self, user_id: str, algorithm: Algorithm) -> bool:
        lock = self._locks.get(self._key(user_id, algorithm))
        return lock is not None and lock.locked()

    @property
    def active_count(self) -> int:
        """Number of keys currently held or waited on."""
        return len(self._locks)
