# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""MPC session coordinator configuration.

Protocol parameters default to a 2-of-2 client/server setting. All
values may be overridden via environment variables.
"""

import os

# =============================================================================
# PROTOCOL PARAMETERS
# =============================================================================

# T of N shares are required to sign or refresh
THRESHOLD: int = int(os.getenv("MPC_THRESHOLD", "2"))
NUM_PARTIES: int = int(os.getenv("MPC_NUM_PARTIES", "2"))

# =============================================================================
# VERTEX (ENGINE + ROOM RENDEZVOUS)
# =============================================================================

VERTEX_URL: str = os.getenv("MPC_VERTEX_URL", "https://vertex-demo-0.sodot.dev")
VERTEX_API_KEY: str = os.getenv("MPC_VERTEX_API_KEY", os.getenv("VERTEX_API_KEY", ""))

# Reads (keygen init, pubkey derivation) vs. multi-round protocol calls
VERTEX_TIMEOUT: float = float(os.getenv("MPC_VERTEX_TIMEOUT", "30.0"))
VERTEX_PROTOCOL_TIMEOUT: float = float(os.getenv("MPC_VERTEX_PROTOCOL_TIMEOUT", "300.0"))

# =============================================================================
# SESSIONS
# =============================================================================

# "pair" locks each (user, algorithm) independently; "global" serializes everything
LOCK_SCOPE: str = os.getenv("MPC_LOCK_SCOPE", "pair").lower()
SESSION_MAX_ENTRIES: int = int(os.getenv("MPC_SESSION_MAX_ENTRIES", "1000"))
SHUTDOWN_GRACE_SECONDS: float = float(os.getenv("MPC_SHUTDOWN_GRACE_SECONDS", "5.0"))


def _parse_denylist() -> frozenset[str]:
    env_value = os.getenv("MPC_SIGN_DENYLIST", "")
    return frozenset(m.strip() for m in env_value.split(",") if m.strip())


SIGN_DENYLIST: frozenset[str] = _parse_denylist()

# =============================================================================
# NETWORK
# =============================================================================

HTTP_HOST: str = os.getenv("MPC_HTTP_HOST", "0.0.0.0")
HTTP_PORT: int = int(os.getenv("MPC_HTTP_PORT", "3000"))

# =============================================================================
# LOGGING
# =============================================================================

LOG_LEVEL: str = os.getenv("LOG_LEVEL", "INFO")
