# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Data model for MPC key material and protocol sessions.

Key records are opaque: whatever the engine adapter returns from keygen
or refresh is stored as-is and only ever handed back to the same
adapter. Nothing outside :mod:`app.mpc.engine` inspects them.
"""

from __future__ import annotations

import json
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from app.mpc.exceptions import InvalidRequestError

__all__ = [
    "Algorithm",
    "KeyRecord",
    "KeygenInit",
    "SessionOperation",
    "SessionState",
    "SessionStatus",
    "parse_algorithm",
    "parse_derivation_path",
]

# Opaque engine-provided key share handle.
KeyRecord = Any

# Non-hardened child indices are below 2^31.
HARDENED_OFFSET = 0x80000000


class Algorithm(str, Enum):
    """Signature algorithms supported by the engine."""

    ECDSA = "ecdsa"
    ED25519 = "ed25519"


def parse_algorithm(value: str) -> Algorithm:
    """Parse an algorithm name from a request path."""
    try:
        return Algorithm(value.lower())
    except ValueError:
        raise InvalidRequestError(f"Unsupported signature algorithm: {value}")


def parse_derivation_path(raw: str | List[int]) -> List[int]:
    """Parse a derivation path given as a JSON array string or a list.

    Every index must be a non-hardened unsigned 32-bit integer.

    Raises:
        InvalidRequestError: If the path is malformed or contains a
            hardened or negative index.
    """
    if isinstance(raw, str):
        try:
            path = json.loads(raw)
        except json.JSONDecodeError as e:
            raise InvalidRequestError(f"Derivation path is not valid JSON: {e}")
    else:
        path = raw

    if not isinstance(path, list):
        raise InvalidRequestError("Derivation path must be a JSON array")

    for index in path:
        # bool is an int subclass
        if isinstance(index, bool) or not isinstance(index, int):
            raise InvalidRequestError(f"Derivation index must be an integer: {index!r}")
        if index < 0 or index >= HARDENED_OFFSET:
            raise InvalidRequestError(
                f"Derivation index {index} is out of range for non-hardened derivation"
            )
    return list(path)


@dataclass(frozen=True)
class KeygenInit:
    """Server-side keygen initialization.

    Attributes:
        keygen_id: Value sent to the peer so it can include us in keygen.
        state: Opaque state the engine needs to finish keygen.
    """

    keygen_id: str
    state: Any


# =============================================================================
# Sessions
# =============================================================================


class SessionOperation(str, Enum):
    KEYGEN = "keygen"
    SIGN = "sign"
    REFRESH = "refresh"


class SessionStatus(str, Enum):
    """Lifecycle of one acknowledged protocol run.

    ``PENDING`` -> ``RUNNING`` -> ``COMPLETED`` | ``FAILED``
    """

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (SessionStatus.COMPLETED, SessionStatus.FAILED)


@dataclass
class SessionState:
    """Observable state of a protocol run, keyed by its room id."""

    room_id: str
    operation: SessionOperation
    user_id: str
    algorithm: Algorithm
    status: SessionStatus = SessionStatus.PENDING
    created_at: float = field(default_factory=time.time)
    updated_at: float = field(default_factory=time.time)
    error: Optional[str] = None
    result: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "room_id": self.room_id,
            "operation": self.operation.value,
            "user_id": self.user_id,
            "algorithm": self.algorithm.value,
            "status": self.status.value,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "error": self.error,
            "result": dict(self.result),
        }
