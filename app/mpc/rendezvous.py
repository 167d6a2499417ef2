# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Room rendezvous client.

A room is the token both parties' engines use to find each other for a
single protocol run. Rooms are sized for the number of parties taking
part (N for keygen/refresh, T for sign).
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod

from app.mpc.exceptions import EngineUnavailableError, ProtocolError, RendezvousError
from app.mpc.vertex_client import VertexClient

log = logging.getLogger(__name__)

__all__ = ["RendezvousClient", "VertexRendezvousClient"]


class RendezvousClient(ABC):
    """Allocates protocol rooms."""

    @abstractmethod
    async def create_room(self, party_size: int) -> str:
        """Allocate a room for ``party_size`` parties and return its id.

        Raises:
            RendezvousError: The rendezvous service failed.
        """


class VertexRendezvousClient(RendezvousClient):
    """Room allocation via Vertex ``POST /create-room``."""

    def __init__(self, client: VertexClient):
        self._client = client

    async def create_room(self, party_size: int) -> str:
        if party_size < 1:
            raise ValueError(f"Room size must be positive, got {party_size}")
        try:
            data = await self._client.post_json("create-room", {"room_size": party_size})
        except (EngineUnavailableError, ProtocolError) as e:
            raise RendezvousError(f"Room creation failed: {e.message}") from e

        room_id = data.get("room_uuid") if isinstance(data, dict) else None
        if not room_id:
            raise RendezvousError("Room creation returned no room_uuid")
        log.debug(f"Created room {room_id} for {party_size} parties")
        return room_id
