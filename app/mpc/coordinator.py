# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""Session coordinator for two-party keygen, signing, and refresh.

Each operation is split into two phases:

**Synchronous phase** (runs in the request handler)

1. Acquire the :class:`~app.mpc.guard.ConcurrencyGuard` for the
   ``(user_id, algorithm)`` pair.
2. Check the store precondition (keygen: absent; sign/refresh: present)
   and, for signing, the sign policy.
3. Allocate a protocol room (and, for keygen, the server keygen id).
4. Register the session as ``PENDING`` and return the acknowledgment.

**Background phase** (an ``asyncio.Task``)

5. Run the multi-round protocol inside the engine with the peer.
6. On success, mutate the store (keygen: insert; refresh: replace) and
   mark the session ``COMPLETED``; on failure mark it ``FAILED``. The
   store is left untouched by a failed run.
7. Release the guard.

The guard is held from step 1 until step 7, so a second operation on the
same pair cannot observe the transient Generating/Refreshing states.
The acknowledgment is only a room handle; the outcome is available via
:meth:`SessionCoordinator.session_status`.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Set

from app.mpc.algorithms import get_profile
from app.mpc.engine import EngineAdapter, EngineFactory
from app.mpc.exceptions import (
    AuthorizationDeniedError,
    KeyAlreadyExistsError,
    MPCSessionError,
)
from app.mpc.guard import ConcurrencyGuard
from app.mpc.models import (
    Algorithm,
    KeygenInit,
    KeyRecord,
    SessionOperation,
    SessionState,
)
from app.mpc.policy import SignPolicy, allow_all
from app.mpc.rendezvous import RendezvousClient
from app.mpc.sessions import SessionRegistry
from app.mpc.store import KeyStore

logger = logging.getLogger("mpc.coordinator")

__all__ = [
    "KeygenAck",
    "SessionAck",
    "SessionCoordinator",
    "close_coordinator",
    "get_coordinator",
    "reset_coordinator",
]

BackgroundWork = Callable[[], Awaitable[Optional[Dict[str, Any]]]]


@dataclass(frozen=True)
class KeygenAck:
    """Keygen acknowledgment: the room plus our keygen id for the peer."""

    room_id: str
    server_keygen_id: str


@dataclass(frozen=True)
class SessionAck:
    """Sign/refresh acknowledgment."""

    room_id: str


class SessionCoordinator:
    """Runs keygen, sign, and refresh sessions against the key store.

    Parameters
    ----------
    store : KeyStore
        Key material store; only mutated while the pair's guard is held.
    engine_factory : callable
        Returns the engine adapter for an :class:`Algorithm`.
    rendezvous : RendezvousClient
        Allocates protocol rooms.
    guard : ConcurrencyGuard, optional
        Defaults to a per-pair guard.
    sessions : SessionRegistry, optional
        Session status history.
    sign_policy : callable, optional
        ``(message, derivation_path) -> bool``; defaults to allowing all.
    threshold, num_parties : int
        T-of-N protocol parameters.
    """

    def __init__(
        self,
        store: KeyStore,
        engine_factory: EngineFactory,
        rendezvous: RendezvousClient,
        guard: Optional[ConcurrencyGuard] = None,
        sessions: Optional[SessionRegistry] = None,
        sign_policy: SignPolicy = allow_all,
        threshold: int = 2,
        num_parties: int = 2,
    ) -> None:
        if threshold < 1 or num_parties < 1:
            raise ValueError("threshold and num_parties must be positive")
        if threshold > num_parties:
            raise ValueError(
                f"threshold ({threshold}) cannot exceed num_parties ({num_parties})"
            )
        self.threshold = threshold
        self.num_parties = num_parties
        self.store = store
        self.guard = guard or ConcurrencyGuard()
        self.sessions = sessions or SessionRegistry()
        self._engine_factory = engine_factory
        self._rendezvous = rendezvous
        self._sign_policy = sign_policy
        self._tasks: Set[asyncio.Task] = set()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def keygen(
        self, user_id: str, algorithm: Algorithm, peer_keygen_id: str
    ) -> KeygenAck:
        """Start distributed keygen with the peer.

        Raises
        ------
        KeyAlreadyExistsError
            The pair already has a key record.
        RendezvousError, EngineUnavailableError, ProtocolError
            Room allocation or keygen initialization failed.
        """
        algorithm = Algorithm(algorithm)
        engine = self._engine_factory(algorithm)

        await self.guard.acquire(user_id, algorithm)
        try:
            if self.store.exists(user_id, algorithm):
                raise KeyAlreadyExistsError.for_pair(user_id, algorithm.value)

            room_id = await self._rendezvous.create_room(self.num_parties)
            init = await engine.init_keygen()
            self.sessions.open(room_id, SessionOperation.KEYGEN, user_id, algorithm)
        except BaseException:
            await self.guard.release(user_id, algorithm)
            raise

        async def work() -> Dict[str, Any]:
            return await self._run_keygen(
                engine, user_id, algorithm, room_id, init, peer_keygen_id
            )

        self._spawn(room_id, user_id, algorithm, work)
        logger.info(
            "Keygen acknowledged: user=%s algorithm=%s room=%s",
            user_id, algorithm.value, room_id,
        )
        return KeygenAck(room_id=room_id, server_keygen_id=init.keygen_id)

    async def sign(
        self,
        user_id: str,
        algorithm: Algorithm,
        message: bytes,
        derivation_path: List[int],
    ) -> SessionAck:
        """Start co-signing ``message`` under the child key at ``derivation_path``.

        The sign policy is consulted before a room is allocated, so a
        denial is reported to the caller and no protocol run starts.

        Raises
        ------
        UserNotFoundError, KeyNotFoundError
            No key record for the pair.
        AuthorizationDeniedError
            The sign policy refused the message.
        RendezvousError, EngineUnavailableError
            Room allocation failed.
        """
        algorithm = Algorithm(algorithm)
        engine = self._engine_factory(algorithm)
        path = list(derivation_path)

        await self.guard.acquire(user_id, algorithm)
        try:
            record = self.store.get(user_id, algorithm)
            if not self._sign_policy(message, path):
                logger.warning(
                    "Sign policy denied message for user=%s algorithm=%s",
                    user_id, algorithm.value,
                )
                raise AuthorizationDeniedError.for_message(_printable(message))

            room_id = await self._rendezvous.create_room(self.threshold)
            self.sessions.open(room_id, SessionOperation.SIGN, user_id, algorithm)
        except BaseException:
            await self.guard.release(user_id, algorithm)
            raise

        async def work() -> Dict[str, Any]:
            return await self._run_sign(engine, algorithm, room_id, record, message, path)

        self._spawn(room_id, user_id, algorithm, work)
        logger.info(
            "Sign acknowledged: user=%s algorithm=%s room=%s path=%s",
            user_id, algorithm.value, room_id, path,
        )
        return SessionAck(room_id=room_id)

    async def refresh(self, user_id: str, algorithm: Algorithm) -> SessionAck:
        """Start a share refresh; the derived public keys stay the same.

        Raises
        ------
        UserNotFoundError, KeyNotFoundError
            No key record for the pair.
        RendezvousError, EngineUnavailableError
            Room allocation failed.
        """
        algorithm = Algorithm(algorithm)
        engine = self._engine_factory(algorithm)

        await self.guard.acquire(user_id, algorithm)
        try:
            record = self.store.get(user_id, algorithm)
            room_id = await self._rendezvous.create_room(self.num_parties)
            self.sessions.open(room_id, SessionOperation.REFRESH, user_id, algorithm)
        except BaseException:
            await self.guard.release(user_id, algorithm)
            raise

        async def work() -> Dict[str, Any]:
            return await self._run_refresh(engine, user_id, algorithm, room_id, record)

        self._spawn(room_id, user_id, algorithm, work)
        logger.info(
            "Refresh acknowledged: user=%s algorithm=%s room=%s",
            user_id, algorithm.value, room_id,
        )
        return SessionAck(room_id=room_id)

    async def derive_pubkey(
        self, user_id: str, algorithm: Algorithm, derivation_path: List[int]
    ) -> str:
        """Return the encoded child public key for the pair's current record."""
        algorithm = Algorithm(algorithm)
        engine = self._engine_factory(algorithm)
        async with self.guard.hold(user_id, algorithm):
            record = self.store.get(user_id, algorithm)
            public_key = await engine.derive_pubkey(record, list(derivation_path))
        return get_profile(algorithm).encode_public_key(public_key)

    def session_status(self, room_id: str) -> Optional[SessionState]:
        return self.sessions.get(room_id)

    # ------------------------------------------------------------------
    # Background protocol runs
    # ------------------------------------------------------------------

    async def _run_keygen(
        self,
        engine: EngineAdapter,
        user_id: str,
        algorithm: Algorithm,
        room_id: str,
        init: KeygenInit,
        peer_keygen_id: str,
    ) -> Dict[str, Any]:
        record = await engine.keygen(
            room_id, self.num_parties, self.threshold, init, [peer_keygen_id]
        )
        self.store.put(user_id, algorithm, record)
        logger.info("Keygen done: user=%s algorithm=%s room=%s", user_id, algorithm.value, room_id)
        return {"server_keygen_id": init.keygen_id}

    async def _run_sign(
        self,
        engine: EngineAdapter,
        algorithm: Algorithm,
        room_id: str,
        record: KeyRecord,
        message: bytes,
        derivation_path: List[int],
    ) -> Dict[str, Any]:
        profile = get_profile(algorithm)
        encoded = profile.encode_message(message)
        signature = await engine.sign(room_id, record, encoded, derivation_path)
        encoded_signature = profile.encode_signature(signature)
        result: Dict[str, Any] = {
            "signed_message": encoded.hex(),
            "public_key": None,
            "signature": encoded_signature,
            "derivation_path": derivation_path,
        }

        # Diagnostic only; the signature stands even if the lookup fails
        try:
            result["public_key"] = profile.encode_public_key(
                await engine.derive_pubkey(record, derivation_path)
            )
        except MPCSessionError as e:
            result["public_key_error"] = e.message
            logger.warning(
                "Signed in room=%s but public key lookup failed: %s", room_id, e.message
            )

        logger.info(
            "Signature created with the client: room=%s pubkey=%s signature=%s",
            room_id, result["public_key"], encoded_signature,
        )
        return result

    async def _run_refresh(
        self,
        engine: EngineAdapter,
        user_id: str,
        algorithm: Algorithm,
        room_id: str,
        record: KeyRecord,
    ) -> Dict[str, Any]:
        refreshed = await engine.refresh(room_id, record)
        self.store.put(user_id, algorithm, refreshed)
        logger.info(
            "Key material refreshed: user=%s algorithm=%s room=%s",
            user_id, algorithm.value, room_id,
        )
        return {}

    def _spawn(
        self, room_id: str, user_id: str, algorithm: Algorithm, work: BackgroundWork
    ) -> None:
        task = asyncio.create_task(
            self._complete(room_id, user_id, algorithm, work),
            name=f"mpc-session-{room_id}",
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _complete(
        self, room_id: str, user_id: str, algorithm: Algorithm, work: BackgroundWork
    ) -> None:
        """Run one protocol to completion and release the pair's guard."""
        self.sessions.mark_running(room_id)
        try:
            result = await work()
        except asyncio.CancelledError:
            self.sessions.fail(room_id, "Session cancelled")
            logger.warning("Session %s cancelled", room_id)
            raise
        except Exception as e:
            self.sessions.fail(room_id, str(e) or type(e).__name__)
            logger.error(
                "Session %s failed for user=%s algorithm=%s: %s",
                room_id, user_id, algorithm.value, e,
                exc_info=True,
            )
        else:
            self.sessions.complete(room_id, result)
        finally:
            await self.guard.release(user_id, algorithm)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    @property
    def in_flight(self) -> int:
        return len(self._tasks)

    async def wait_for_sessions(self, timeout: Optional[float] = None) -> bool:
        """Wait for in-flight sessions; returns False if any are still running."""
        if not self._tasks:
            return True
        _, pending = await asyncio.wait(set(self._tasks), timeout=timeout)
        return not pending

    async def shutdown(self, grace_seconds: float = 5.0) -> None:
        """Give in-flight sessions ``grace_seconds`` to finish, then cancel them."""
        if await self.wait_for_sessions(timeout=grace_seconds):
            return
        pending = list(self._tasks)
        logger.warning("Cancelling %d in-flight sessions at shutdown", len(pending))
        for task in pending:
            task.cancel()
        await asyncio.gather(*pending, return_exceptions=True)


def _printable(message: bytes) -> str:
    try:
        return message.decode("utf-8")
    except UnicodeDecodeError:
        return message.hex()


# ======================================================================
# Module-level singleton
# ======================================================================

_coordinator: Optional[SessionCoordinator] = None


def get_coordinator() -> SessionCoordinator:
    """Return the process-wide coordinator, wired from :mod:`app.config`."""
    global _coordinator
    if _coordinator is None:
        from app.config import (
            LOCK_SCOPE,
            NUM_PARTIES,
            SESSION_MAX_ENTRIES,
            SIGN_DENYLIST,
            THRESHOLD,
        )
        from app.mpc.engine import vertex_engine_factory
        from app.mpc.policy import denylist_policy
        from app.mpc.rendezvous import VertexRendezvousClient
        from app.mpc.store import get_key_store
        from app.mpc.vertex_client import get_vertex_client

        _coordinator = SessionCoordinator(
            store=get_key_store(),
            engine_factory=vertex_engine_factory,
            rendezvous=VertexRendezvousClient(get_vertex_client()),
            guard=ConcurrencyGuard(scope=LOCK_SCOPE),
            sessions=SessionRegistry(max_entries=SESSION_MAX_ENTRIES),
            sign_policy=denylist_policy(SIGN_DENYLIST) if SIGN_DENYLIST else allow_all,
            threshold=THRESHOLD,
            num_parties=NUM_PARTIES,
        )
    return _coordinator


def reset_coordinator() -> None:
    """Reset the singleton (for testing). Does not cancel in-flight sessions."""
    global _coordinator
    _coordinator = None


async def close_coordinator(grace_seconds: float = 5.0) -> None:
    """Drain and drop the singleton (call during shutdown)."""
    global _coordinator
    if _coordinator is not None:
        await _coordinator.shutdown(grace_seconds=grace_seconds)
        _coordinator = None
