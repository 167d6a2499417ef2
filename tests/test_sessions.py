# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the session status registry (app.mpc.sessions)."""

from __future__ import annotations

import pytest

from app.mpc.models import Algorithm, SessionOperation, SessionStatus
from app.mpc.sessions import SessionRegistry


def _open(registry: SessionRegistry, room_id: str, operation=SessionOperation.SIGN):
    return registry.open(room_id, operation, "alice", Algorithm.ECDSA)


class TestTransitions:

    def test_open_is_pending(self):
        registry = SessionRegistry()
        session = _open(registry, "room-1", SessionOperation.KEYGEN)

        assert session.status is SessionStatus.PENDING
        assert registry.get("room-1") is session
        assert session.operation is SessionOperation.KEYGEN

    def test_complete_records_result(self):
        registry = SessionRegistry()
        _open(registry, "room-1")
        registry.mark_running("room-1")
        registry.complete("room-1", {"signature": "abcd"})

        session = registry.get("room-1")
        assert session.status is SessionStatus.COMPLETED
        assert session.result == {"signature": "abcd"}
        assert session.updated_at >= session.created_at

    def test_fail_records_error(self):
        registry = SessionRegistry()
        _open(registry, "room-1")
        registry.mark_running("room-1")
        registry.fail("room-1", "peer disconnected")

        session = registry.get("room-1")
        assert session.status is SessionStatus.FAILED
        assert session.error == "peer disconnected"

    def test_terminal_status_is_final(self):
        registry = SessionRegistry()
        _open(registry, "room-1")
        registry.complete("room-1", {"signature": "abcd"})

        registry.fail("room-1", "late failure")
        registry.mark_running("room-1")

        session = registry.get("room-1")
        assert session.status is SessionStatus.COMPLETED
        assert session.error is None

    def test_unknown_session_is_ignored(self):
        registry = SessionRegistry()
        registry.complete("missing", {"x": 1})
        registry.fail("missing", "error")
        assert registry.get("missing") is None


class TestEviction:

    def test_invalid_capacity(self):
        with pytest.raises(ValueError):
            SessionRegistry(max_entries=0)

    def test_oldest_finished_sessions_evicted_first(self):
        registry = SessionRegistry(max_entries=2)
        _open(registry, "room-1")
        registry.complete("room-1")
        _open(registry, "room-2")
        registry.complete("room-2")
        _open(registry, "room-3")

        assert registry.get("room-1") is None
        assert registry.get("room-2") is not None
        assert registry.get("room-3") is not None
        assert registry.stats()["evictions"] == 1

    def test_in_flight_sessions_never_evicted(self):
        registry = SessionRegistry(max_entries=2)
        _open(registry, "room-1")
        registry.mark_running("room-1")
        _open(registry, "room-2")
        _open(registry, "room-3")

        assert all(registry.get(r) is not None for r in ("room-1", "room-2", "room-3"))

        registry.complete("room-1")
        _open(registry, "room-4")
        assert registry.get("room-1") is None
        assert registry.get("room-2") is not None


class TestStats:

    def test_counts_by_status(self):
        registry = SessionRegistry()
        _open(registry, "room-1")
        _open(registry, "room-2")
        registry.mark_running("room-2")
        _open(registry, "room-3")
        registry.complete("room-3")
        _open(registry, "room-4")
        registry.fail("room-4", "boom")

        stats = registry.stats()
        assert stats == {
            "pending": 1,
            "running": 1,
            "completed": 1,
            "failed": 1,
            "total": 4,
            "evictions": 0,
        }
