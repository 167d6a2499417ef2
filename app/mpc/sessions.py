# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Session status registry.

Every acknowledged protocol run is tracked here under its room id so
callers can poll for the outcome of the background completion,
including engine failures that happen after the acknowledgment was
sent.

History is bounded: once ``max_entries`` is reached the oldest finished
sessions are dropped first. Sessions still in flight are never evicted.
"""

from __future__ import annotations

import logging
import time
from collections import OrderedDict
from typing import Any, Dict, Optional

from app.mpc.models import Algorithm, SessionOperation, SessionState, SessionStatus

logger = logging.getLogger("mpc.sessions")

__all__ = ["SessionRegistry"]


class SessionRegistry:
    """In-memory map of room id to :class:`SessionState`."""

    def __init__(self, max_entries: int = 1000) -> None:
        if max_entries < 1:
            raise ValueError("max_entries must be positive")
        self._max_entries = max_entries
        self._sessions: OrderedDict[str, SessionState] = OrderedDict()
        self._evictions = 0

    def open(
        self,
        room_id: str,
        operation: SessionOperation,
        user_id: str,
        algorithm: Algorithm,
    ) -> SessionState:
        """Register a newly acknowledged session in ``PENDING`` state."""
        session = SessionState(
            room_id=room_id,
            operation=operation,
            user_id=user_id,
            algorithm=Algorithm(algorithm),
        )
        self._sessions[room_id] = session
        self._sessions.move_to_end(room_id)
        self._evict()
        return session

    def get(self, room_id: str) -> Optional[SessionState]:
        return self._sessions.get(room_id)

    def mark_running(self, room_id: str) -> None:
        self._transition(room_id, SessionStatus.RUNNING)

    def complete(self, room_id: str, result: Optional[Dict[str, Any]] = None) -> None:
        session = self._transition(room_id, SessionStatus.COMPLETED)
        if session is not None and result:
            session.result.update(result)

    def fail(self, room_id: str, error: str) -> None:
        session = self._transition(room_id, SessionStatus.FAILED)
        if session is not None:
            session.error = error

    def _transition(self, room_id: str, status: SessionStatus) -> Optional[SessionState]:
        session = self._sessions.get(room_id)
        if session is None:
            logger.warning("Status update %s for unknown session %s", status.value, room_id)
            return None
        if session.status.is_terminal:
            logger.warning(
                "Ignoring %s for session %s already %s",
                status.value, room_id, session.status.value,
            )
            return None
        session.status = status
        session.updated_at = time.time()
        return session

    def _evict(self) -> None:
        if len(self._sessions) <= self._max_entries:
            return
        for room_id in list(self._sessions):
            if len(self._sessions) <= self._max_entries:
                break
            if self._sessions[room_id].status.is_terminal:
                del self._sessions[room_id]
                self._evictions += 1

    def stats(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in SessionStatus}
        for session in self._sessions.values():
            counts[session.status.value] += 1
        counts["total"] = len(self._sessions)
        counts["evictions"] = self._evictions
        return counts
