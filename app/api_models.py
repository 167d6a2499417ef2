# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""HTTP response models for the MPC session API."""

from typing import Any, Dict, Optional

from pydantic import BaseModel, Field


class KeygenResponse(BaseModel):
    room_id: str = Field(..., description="Room both parties join for keygen")
    server_keygen_id: str = Field(..., description="Server keygen id the client passes to its engine")


class RoomResponse(BaseModel):
    room_id: str = Field(..., description="Room both parties join for this protocol run")


class PublicKeyResponse(BaseModel):
    user_id: str
    algorithm: str
    derivation_path: list[int]
    public_key: str = Field(..., description="Hex; compressed SEC1 for ecdsa, raw for ed25519")


class SessionStatusResponse(BaseModel):
    room_id: str
    operation: str
    user_id: str
    algorithm: str
    status: str = Field(..., description="pending | running | completed | failed")
    created_at: float
    updated_at: float
    error: Optional[str] = None
    result: Dict[str, Any] = {}


class HealthResponse(BaseModel):
    status: str
    engine_circuit: str
    engine_peer_timeouts: int = Field(0, description="Protocol rounds that timed out waiting for the peer")
    key_count: int
    sessions: Dict[str, int]
    in_flight: int
