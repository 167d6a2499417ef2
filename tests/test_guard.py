# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the concurrency guard (app.mpc.guard).

Covers per-pair and global scopes, cross-task release, cancellation
while waiting, and reclamation of per-pair locks.
"""

from __future__ import annotations

import asyncio

import pytest

from app.mpc.guard import LOCK_SCOPES, ConcurrencyGuard
from app.mpc.models import Algorithm


class TestScopes:

    def test_unknown_scope_rejected(self):
        with pytest.raises(ValueError):
            ConcurrencyGuard(scope="user")

    def test_known_scopes(self):
        for scope in LOCK_SCOPES:
            assert ConcurrencyGuard(scope=scope).scope == scope

    @pytest.mark.asyncio
    async def test_pair_scope_isolates_pairs(self):
        guard = ConcurrencyGuard("pair")
        await guard.acquire("alice", Algorithm.ECDSA)

        # Different user, different algorithm: both proceed
        await asyncio.wait_for(guard.acquire("bob", Algorithm.ECDSA), timeout=1.0)
        await asyncio.wait_for(guard.acquire("alice", Algorithm.ED25519), timeout=1.0)
        assert guard.active_count == 3

        for user, algo in (("alice", Algorithm.ECDSA), ("bob", Algorithm.ECDSA),
                           ("alice", Algorithm.ED25519)):
            await guard.release(user, algo)
        assert guard.active_count == 0

    @pytest.mark.asyncio
    async def test_pair_scope_serializes_same_pair(self):
        guard = ConcurrencyGuard("pair")
        await guard.acquire("alice", Algorithm.ECDSA)

        waiter = asyncio.create_task(guard.acquire("alice", Algorithm.ECDSA))
        await asyncio.sleep(0.01)
        assert not waiter.done()

        await guard.release("alice", Algorithm.ECDSA)
        await asyncio.wait_for(waiter, timeout=1.0)
        assert guard.is_locked("alice", Algorithm.ECDSA)
        await guard.release("alice", Algorithm.ECDSA)

    @pytest.mark.asyncio
    async def test_global_scope_serializes_everything(self):
        guard = ConcurrencyGuard("global")
        await guard.acquire("alice", Algorithm.ECDSA)

        assert guard.is_locked("bob", Algorithm.ED25519)
        with pytest.raises(asyncio.TimeoutError):
            await asyncio.wait_for(guard.acquire("bob", Algorithm.ED25519), timeout=0.05)

        await guard.release("alice", Algorithm.ECDSA)
        await asyncio.wait_for(guard.acquire("bob", Algorithm.ED25519), timeout=1.0)
        await guard.release("bob", Algorithm.ED25519)


class TestRelease:

    @pytest.mark.asyncio
    async def test_release_without_acquire(self):
        guard = ConcurrencyGuard()
        with pytest.raises(RuntimeError):
            await guard.release("alice", Algorithm.ECDSA)

    @pytest.mark.asyncio
    async def test_release_from_another_task(self):
        """Background protocol runs release what the request handler acquired."""
        guard = ConcurrencyGuard()
        await guard.acquire("alice", Algorithm.ECDSA)

        await asyncio.create_task(guard.release("alice", Algorithm.ECDSA))
        assert not guard.is_locked("alice", Algorithm.ECDSA)

    @pytest.mark.asyncio
    async def test_cancelled_waiter_does_not_leak(self):
        guard = ConcurrencyGuard()
        await guard.acquire("alice", Algorithm.ECDSA)

        waiter = asyncio.create_task(guard.acquire("alice", Algorithm.ECDSA))
        await asyncio.sleep(0.01)
        waiter.cancel()
        with pytest.raises(asyncio.CancelledError):
            await waiter

        await guard.release("alice", Algorithm.ECDSA)
        assert guard.active_count == 0

    @pytest.mark.asyncio
    async def test_hold_releases_on_error(self):
        guard = ConcurrencyGuard()
        with pytest.raises(KeyError):
            async with guard.hold("alice", Algorithm.ED25519):
                assert guard.is_locked("alice", Algorithm.ED25519)
                raise KeyError("boom")

        assert not guard.is_locked("alice", Algorithm.ED25519)
        assert guard.active_count == 0
