# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""MPC engine adapter.

The engine runs the actual threshold cryptography. Each operation that
takes a room id blocks for the whole multi-round exchange with the peer
and can fail if the peer disconnects or a round times out.

Key records returned by :meth:`EngineAdapter.keygen` and
:meth:`EngineAdapter.refresh` are opaque to the rest of the service and
are only ever passed back into the adapter that produced them.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, List

from app.mpc.exceptions import ProtocolError
from app.mpc.models import Algorithm, KeygenInit, KeyRecord
from app.mpc.rendezvous import RendezvousClient, VertexRendezvousClient
from app.mpc.vertex_client import VertexClient, get_vertex_client

log = logging.getLogger(__name__)

__all__ = [
    "EngineAdapter",
    "EngineFactory",
    "VertexEngine",
    "VertexKeyShare",
    "vertex_engine_factory",
]


class EngineAdapter(ABC):
    """Capability interface to one algorithm variant of the MPC engine."""

    algorithm: Algorithm

    @abstractmethod
    async def create_room(self, party_count: int) -> str:
        """Allocate a protocol room for ``party_count`` parties."""

    @abstractmethod
    async def init_keygen(self) -> KeygenInit:
        """Produce this party's keygen id and the state needed to finish keygen."""

    @abstractmethod
    async def keygen(
        self,
        room_id: str,
        num_parties: int,
        threshold: int,
        init: KeygenInit,
        peer_keygen_ids: List[str],
    ) -> KeyRecord:
        """Run distributed keygen and return this party's key record."""

    @abstractmethod
    async def derive_pubkey(self, record: KeyRecord, derivation_path: List[int]) -> bytes:
        """Return the public key of the child key at ``derivation_path``."""

    @abstractmethod
    async def sign(
        self,
        room_id: str,
        record: KeyRecord,
        message: bytes,
        derivation_path: List[int],
    ) -> bytes:
        """Co-sign an already-encoded message with the child key.

        Returns ``r || s`` (ecdsa, 64 bytes) or the raw signature (ed25519).
        """

    @abstractmethod
    async def refresh(self, room_id: str, record: KeyRecord) -> KeyRecord:
        """Re-randomize the shares; the public key is unchanged."""


EngineFactory = Callable[[Algorithm], EngineAdapter]


# =============================================================================
# Vertex
# =============================================================================


@dataclass(frozen=True)
class VertexKeyShare:
    """Handle to a key share held inside Vertex."""

    key_id: str

    def __repr__(self) -> str:
        return f"VertexKeyShare(key_id={self.key_id[:8]}...)"


def _hex_field(data: Any, *names: str) -> bytes:
    """Read the first present hex field from a Vertex JSON response."""
    if isinstance(data, str):
        value = data
    elif isinstance(data, dict):
        value = next((data[n] for n in names if data.get(n)), None)
    else:
        value = None
    if not isinstance(value, str):
        raise ProtocolError(f"Engine response is missing {'/'.join(names)}")
    try:
        return bytes.fromhex(value.removeprefix("0x"))
    except ValueError as e:
        raise ProtocolError(f"Engine returned non-hex {'/'.join(names)}: {e}") from e


class VertexEngine(EngineAdapter):
    """Server-side MPC party hosted by Vertex.

    Endpoints are namespaced by algorithm (``/ecdsa/...``, ``/ed25519/...``).

    The sign body always carries ``msg`` as hex of the bytes the client
    signs over, and never a ``hash_algo`` field. For ecdsa that is the
    SHA-256 digest computed here, so Vertex must co-sign it as a prehashed
    value; the browser client instead sends hex of the raw message with
    ``hash_algo: "SHA256"`` and lets Vertex hash. For ed25519 it is hex
    of the UTF-8 message, where the browser client sends the message
    unencoded. Both parties must agree on the same ``msg`` for a round to
    complete, so a client built against the other convention fails with
    a :class:`ProtocolError` from the sign call rather than producing a
    bad signature.
    """

    def __init__(
        self,
        algorithm: Algorithm,
        client: VertexClient,
        rendezvous: RendezvousClient | None = None,
    ):
        self.algorithm = Algorithm(algorithm)
        self._client = client
        self._rendezvous = rendezvous or VertexRendezvousClient(client)

    def _path(self, endpoint: str) -> str:
        return f"{self.algorithm.value}/{endpoint}"

    @staticmethod
    def _key_id(record: KeyRecord) -> str:
        if not isinstance(record, VertexKeyShare):
            raise TypeError(f"Expected VertexKeyShare, got {type(record).__name__}")
        return record.key_id

    async def create_room(self, party_count: int) -> str:
        return await self._rendezvous.create_room(party_count)

    async def init_keygen(self) -> KeygenInit:
        data = await self._client.get_json(self._path("create"))
        if not isinstance(data, dict) or not data.get("keygen_id") or not data.get("key_id"):
            raise ProtocolError("Keygen init response is missing keygen_id/key_id")
        return KeygenInit(keygen_id=data["keygen_id"], state=data["key_id"])

    async def keygen(
        self,
        room_id: str,
        num_parties: int,
        threshold: int,
        init: KeygenInit,
        peer_keygen_ids: List[str],
    ) -> KeyRecord:
        body = {
            "key_id": init.state,
            "num_parties": num_parties,
            "others_keygen_ids": list(peer_keygen_ids),
            "room_uuid": room_id,
            "threshold": threshold,
        }
        await self._client.post_json(
            self._path("keygen"), body, protocol=True, expect_json=False
        )
        return VertexKeyShare(key_id=init.state)

    async def derive_pubkey(self, record: KeyRecord, derivation_path: List[int]) -> bytes:
        body = {"key_id": self._key_id(record), "derivation_path": list(derivation_path)}
        data = await self._client.post_json(self._path("derive-pubkey"), body)
        return _hex_field(data, "pubkey", "public_key")

    async def sign(
        self,
        room_id: str,
        record: KeyRecord,
        message: bytes,
        derivation_path: List[int],
    ) -> bytes:
        body = {
            "key_id": self._key_id(record),
            "room_uuid": room_id,
            "derivation_path": list(derivation_path),
            "msg": message.hex(),
        }
        data = await self._client.post_json(self._path("sign"), body, protocol=True)

        if self.algorithm is Algorithm.ECDSA and isinstance(data, dict) and "r" in data and "s" in data:
            r = _hex_field(data, "r")
            s = _hex_field(data, "s")
            return r.rjust(32, b"\x00") + s.rjust(32, b"\x00")
        if self.algorithm is Algorithm.ECDSA:
            return _hex_field(data, "der")
        return _hex_field(data, "signature", "sig")

    async def refresh(self, room_id: str, record: KeyRecord) -> KeyRecord:
        body = {"key_id": self._key_id(record), "room_uuid": room_id}
        data = await self._client.post_json(self._path("refresh"), body, protocol=True)
        if not isinstance(data, dict) or not data.get("key_id"):
            raise ProtocolError("Refresh response is missing key_id")
        return VertexKeyShare(key_id=data["key_id"])


def vertex_engine_factory(algorithm: Algorithm) -> EngineAdapter:
    """Build the Vertex adapter for ``algorithm`` on the shared client."""
    return VertexEngine(algorithm, get_vertex_client())
