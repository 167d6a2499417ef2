# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for the in-memory key store (app.mpc.store)."""

from __future__ import annotations

import pytest

from app.mpc.exceptions import KeyNotFoundError, PreconditionFailed, UserNotFoundError
from app.mpc.models import Algorithm
from app.mpc.store import InMemoryKeyStore, get_key_store, reset_key_store


class TestInMemoryKeyStore:

    def test_empty_store(self, store):
        assert store.count() == 0
        assert not store.exists("alice", Algorithm.ECDSA)
        assert not store.has_user("alice")

    def test_put_then_get(self, store):
        store.put("alice", Algorithm.ECDSA, "share-1")

        assert store.exists("alice", Algorithm.ECDSA)
        assert store.has_user("alice")
        assert store.get("alice", Algorithm.ECDSA) == "share-1"
        assert store.count() == 1

    def test_put_overwrites(self, store):
        store.put("alice", Algorithm.ED25519, "share-1")
        store.put("alice", Algorithm.ED25519, "share-2")

        assert store.get("alice", Algorithm.ED25519) == "share-2"
        assert store.count() == 1

    def test_algorithms_are_independent(self, store):
        store.put("alice", Algorithm.ECDSA, "ecdsa-share")

        assert not store.exists("alice", Algorithm.ED25519)
        store.put("alice", Algorithm.ED25519, "ed-share")
        assert store.get("alice", Algorithm.ECDSA) == "ecdsa-share"
        assert store.count() == 2

    def test_unknown_user(self, store):
        with pytest.raises(UserNotFoundError) as exc_info:
            store.get("nobody", Algorithm.ECDSA)
        assert exc_info.value.message == "User does not exist"

    def test_known_user_missing_algorithm(self, store):
        store.put("alice", Algorithm.ECDSA, "share")

        with pytest.raises(KeyNotFoundError) as exc_info:
            store.get("alice", Algorithm.ED25519)
        assert exc_info.value.message == "User does not have key material for ed25519 yet"
        assert isinstance(exc_info.value, PreconditionFailed)

    def test_accepts_algorithm_strings(self, store):
        store.put("alice", "ecdsa", "share")
        assert store.exists("alice", Algorithm.ECDSA)
        assert store.get("alice", "ecdsa") == "share"


class TestKeyStoreSingleton:

    def test_singleton_is_reused(self):
        assert get_key_store() is get_key_store()

    def test_reset_drops_records(self):
        get_key_store().put("alice", Algorithm.ECDSA, "share")
        reset_key_store()
        store = get_key_store()
        assert isinstance(store, InMemoryKeyStore)
        assert store.count() == 0
