# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Sign authorization policies.

A policy decides whether the server participates in signing a given
message under a given derivation path. Fraud detection or other limits
on what may be signed belong here.
"""

from __future__ import annotations

from typing import Callable, Iterable, List

__all__ = ["SignPolicy", "allow_all", "denylist_policy"]

SignPolicy = Callable[[bytes, List[int]], bool]


def allow_all(message: bytes, derivation_path: List[int]) -> bool:
    """Default policy: sign everything."""
    return True


def denylist_policy(denied: Iterable[str]) -> SignPolicy:
    """Refuse messages whose text or hex encoding is in ``denied``."""
    entries = frozenset(denied)

    def policy(message: bytes, derivation_path: List[int]) -> bool:
        if message.hex() in entries:
            return False
        try:
            return message.decode("utf-8") not in entries
        except UnicodeDecodeError:
            return True

    return policy
