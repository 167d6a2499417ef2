# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Tests for request parsing helpers and session state (app.mpc.models)."""

from __future__ import annotations

import pytest

from app.mpc.exceptions import InvalidRequestError
from app.mpc.models import (
    HARDENED_OFFSET,
    Algorithm,
    SessionOperation,
    SessionState,
    SessionStatus,
    parse_algorithm,
    parse_derivation_path,
)


class TestParseAlgorithm:

    @pytest.mark.parametrize("raw,expected", [
        ("ecdsa", Algorithm.ECDSA),
        ("ed25519", Algorithm.ED25519),
        ("ECDSA", Algorithm.ECDSA),
        ("Ed25519", Algorithm.ED25519),
    ])
    def test_known_names(self, raw, expected):
        assert parse_algorithm(raw) is expected

    @pytest.mark.parametrize("raw", ["schnorr", "", "rsa"])
    def test_unknown_name_rejected(self, raw):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_algorithm(raw)
        assert "Unsupported signature algorithm" in exc_info.value.message


class TestParseDerivationPath:

    def test_json_array(self):
        assert parse_derivation_path("[44, 60, 0, 0, 0]") == [44, 60, 0, 0, 0]

    def test_empty_path_is_master_key(self):
        assert parse_derivation_path("[]") == []

    def test_list_input_is_copied(self):
        raw = [1, 2]
        parsed = parse_derivation_path(raw)
        assert parsed == raw
        assert parsed is not raw

    def test_largest_non_hardened_index(self):
        assert parse_derivation_path([HARDENED_OFFSET - 1]) == [HARDENED_OFFSET - 1]

    @pytest.mark.parametrize("raw", [
        "[2147483648]",
        "[-1]",
        "[0, 4294967295]",
    ])
    def test_out_of_range_index_rejected(self, raw):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_derivation_path(raw)
        assert "out of range" in exc_info.value.message

    @pytest.mark.parametrize("raw", [
        "not json",
        "[1, 2",
    ])
    def test_malformed_json_rejected(self, raw):
        with pytest.raises(InvalidRequestError):
            parse_derivation_path(raw)

    @pytest.mark.parametrize("raw", [
        '{"path": [1]}',
        "44",
        '"m/44/60"',
    ])
    def test_non_array_rejected(self, raw):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_derivation_path(raw)
        assert "JSON array" in exc_info.value.message

    @pytest.mark.parametrize("raw", [
        "[1.5]",
        '["1"]',
        "[true]",
        "[null]",
    ])
    def test_non_integer_index_rejected(self, raw):
        with pytest.raises(InvalidRequestError) as exc_info:
            parse_derivation_path(raw)
        assert "integer" in exc_info.value.message


class TestSessionState:

    def test_terminal_statuses(self):
        assert SessionStatus.COMPLETED.is_terminal
        assert SessionStatus.FAILED.is_terminal
        assert not SessionStatus.PENDING.is_terminal
        assert not SessionStatus.RUNNING.is_terminal

    def test_to_dict_uses_wire_values(self):
        state = SessionState(
            room_id="room-1",
            operation=SessionOperation.SIGN,
            user_id="alice",
            algorithm=Algorithm.ED25519,
        )
        state.result["signature"] = "ab"

        data = state.to_dict()
        assert data["operation"] == "sign"
        assert data["algorithm"] == "ed25519"
        assert data["status"] == "pending"
        assert data["error"] is None
        assert data["result"] == {"signature": "ab"}

        # Snapshot, not a live view
        data["result"]["signature"] = "cd"
        assert state.result["signature"] == "ab"
