# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""HTTP client for the Vertex MPC service.

Vertex hosts both the server-side MPC engine and the room rendezvous
service. This module holds the shared transport; the capability
interfaces live in :mod:`app.mpc.engine` and :mod:`app.mpc.rendezvous`.

Failures fall into two classes, and only one of them is an outage:

* **Engine outage**: connection refused, connect timeout, 5xx, or a
  read timeout on a plain call (room creation, keygen init, pubkey
  derivation). Raised as :class:`EngineUnavailableError` and counted by
  the :class:`EngineCircuitBreaker`.
* **Session failure**: a 4xx, or a protocol round (keygen/sign/refresh)
  that times out because the peer never joined the room or dropped
  mid-round. Raised as :class:`ProtocolError` and charged to that
  session only. The breaker never opens because of it, so one client
  that abandons its rooms cannot lock every other user out of the
  engine.

Idempotent GETs are retried with exponential backoff while the circuit
stays closed.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from enum import Enum
from typing import Any, Callable, Deque, Dict, Optional

import httpx

from app.mpc.exceptions import EngineUnavailableError, ProtocolError

log = logging.getLogger(__name__)

__all__ = [
    "CircuitState",
    "EngineCircuitBreaker",
    "VertexClient",
    "close_vertex_client",
    "get_vertex_client",
    "reset_vertex_client",
]


# =============================================================================
# Circuit Breaker
# =============================================================================


class CircuitState(str, Enum):
    CLOSED = "closed"
    OPEN = "open"
    HALF_OPEN = "half_open"


class EngineCircuitBreaker:
    """Fails fast while the engine is down.

    ``failure_threshold`` outages inside ``failure_window`` seconds open
    the circuit for ``recovery_timeout`` seconds; after that a single
    trial request is let through. Peer timeouts are counted for
    ``/healthz`` but never move the circuit.
    """

    def __init__(
        self,
        failure_threshold: int = 5,
        failure_window: float = 60.0,
        recovery_timeout: float = 30.0,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.failure_threshold = failure_threshold
        self.failure_window = failure_window
        self.recovery_timeout = recovery_timeout
        self._clock = clock

        self._state = CircuitState.CLOSED
        self._outages: Deque[float] = deque()
        self._opened_at = 0.0
        self._trial_in_flight = False
        self.peer_timeouts = 0

    @property
    def state(self) -> CircuitState:
        if (
            self._state is CircuitState.OPEN
            and self._clock() - self._opened_at >= self.recovery_timeout
        ):
            self._state = CircuitState.HALF_OPEN
            self._trial_in_flight = False
        return self._state

    def allow_request(self) -> bool:
        state = self.state
        if state is CircuitState.CLOSED:
            return True
        if state is CircuitState.HALF_OPEN and not self._trial_in_flight:
            self._trial_in_flight = True
            return True
        return False

    def record_reachable(self) -> None:
        """The engine answered (any status below 500)."""
        if self._state is not CircuitState.CLOSED:
            log.info("Vertex circuit closed: engine answered the trial request")
        self._state = CircuitState.CLOSED
        self._outages.clear()
        self._trial_in_flight = False

    def record_outage(self) -> None:
        now = self._clock()
        while self._outages and now - self._outages[0] >= self.failure_window:
            self._outages.popleft()
        self._outages.append(now)

        if self.state is CircuitState.HALF_OPEN:
            self._open(now, "trial request failed")
        elif self._state is CircuitState.CLOSED and len(self._outages) >= self.failure_threshold:
            self._open(now, f"{len(self._outages)} outages in {self.failure_window}s")

    def record_peer_timeout(self) -> None:
        """A protocol round timed out waiting for the peer.

        The engine was reachable, but this says nothing about its health
        either way, so a pending half-open trial slot is simply freed.
        """
        self.peer_timeouts += 1
        self._trial_in_flight = False

    def _open(self, now: float, reason: str) -> None:
        self._state = CircuitState.OPEN
        self._opened_at = now
        self._trial_in_flight = False
        log.warning(f"Vertex circuit open ({reason}); failing fast for {self.recovery_timeout}s")

    def snapshot(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "recent_outages": len(self._outages),
            "peer_timeouts": self.peer_timeouts,
        }


# =============================================================================
# Client
# =============================================================================


class VertexClient:
    """Async HTTP client for Vertex.

    ``transport`` may be supplied to route requests through an
    ``httpx.AsyncBaseTransport`` (tests use scripted responses).
    """

    def __init__(
        self,
        base_url: str = "https://vertex-demo-0.sodot.dev",
        api_key: str = "",
        read_timeout: float = 30.0,
        protocol_timeout: float = 300.0,
        transport: httpx.AsyncBaseTransport | None = None,
        circuit: EngineCircuitBreaker | None = None,
        retry_backoff: float = 0.5,
    ):
        self.base_url = base_url.rstrip("/")
        self._read_timeout = read_timeout
        self._protocol_timeout = protocol_timeout
        self._retry_backoff = retry_backoff
        self.circuit = circuit or EngineCircuitBreaker()

        headers = {"Content-Type": "application/json"}
        if api_key:
            # Vertex expects the bare key, not a Bearer token
            headers["Authorization"] = api_key

        self._http = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=httpx.Timeout(read_timeout, connect=10.0),
            transport=transport,
        )

    async def close(self) -> None:
        await self._http.aclose()

    @property
    def circuit_state(self) -> str:
        return self.circuit.state.value

    # -------------------------------------------------------------------------
    # Internal request helpers
    # -------------------------------------------------------------------------

    async def _request(
        self,
        method: str,
        path: str,
        *,
        json: dict | None = None,
        protocol: bool = False,
        retry: bool = False,
    ) -> httpx.Response:
        """Send one Vertex call, classifying failures as outage or session failure.

        Args:
            method: HTTP method
            path: URL path relative to the base URL (e.g., "ecdsa/sign")
            json: Request body
            protocol: Multi-round call that blocks until the peer finishes;
                uses the protocol timeout and charges read timeouts to the
                session instead of the engine.
            retry: Retry outages with backoff (idempotent GETs only)
        """
        if not self.circuit.allow_request():
            raise EngineUnavailableError(
                f"Vertex circuit is open; not calling {path}"
            )

        timeout = self._protocol_timeout if protocol else self._read_timeout
        max_attempts = 3 if retry else 1

        for attempt in range(max_attempts):
            try:
                response = await self._http.request(
                    method, f"/{path.lstrip('/')}", json=json, timeout=timeout,
                )
            except httpx.ReadTimeout as e:
                if protocol:
                    self.circuit.record_peer_timeout()
                    log.warning(f"Protocol round {path} timed out after {timeout}s")
                    raise ProtocolError(
                        f"Protocol round {path} timed out after {timeout}s waiting for the peer"
                    ) from e
                error, cause = EngineUnavailableError(f"Vertex {path} timed out: {e}"), e
            except (httpx.TimeoutException, httpx.ConnectError) as e:
                error, cause = EngineUnavailableError(f"Vertex {path} connection failed: {e}"), e
            else:
                if response.status_code < 500:
                    self.circuit.record_reachable()
                    return response
                error, cause = EngineUnavailableError(
                    f"Vertex returned {response.status_code} for {path}: {response.text[:200]}"
                ), None

            self.circuit.record_outage()
            if attempt < max_attempts - 1 and self.circuit.state is CircuitState.CLOSED:
                backoff = self._retry_backoff * (2 ** attempt)
                log.warning(
                    f"{error.message}; retry {attempt + 1}/{max_attempts} in {backoff}s"
                )
                await asyncio.sleep(backoff)
                continue
            raise error from cause

        raise EngineUnavailableError(f"Vertex {path} failed after {max_attempts} attempts")

    def _handle_error_response(self, path: str, response: httpx.Response) -> None:
        """Map Vertex 4xx responses to ProtocolError."""
        if response.status_code < 400:
            return

        raise ProtocolError(
            f"Failed to call {path}: {response.status_code}, {response.text[:200]}",
            status_code=response.status_code,
        )

    @staticmethod
    def _json(path: str, response: httpx.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise ProtocolError(f"Vertex returned invalid JSON for {path}: {e}") from e

    # -------------------------------------------------------------------------
    # Public helpers
    # -------------------------------------------------------------------------

    async def get_json(self, path: str) -> Any:
        """GET with retry on outages; returns decoded JSON."""
        response = await self._request("GET", path, retry=True)
        self._handle_error_response(path, response)
        return self._json(path, response)

    async def post_json(
        self, path: str, body: dict, *, protocol: bool = False, expect_json: bool = True,
    ) -> Any:
        """POST without retry; returns decoded JSON.

        ``protocol=True`` marks a multi-round keygen/sign/refresh call.
        Returns None when ``expect_json`` is False or the body is empty.
        """
        response = await self._request("POST", path, json=body, protocol=protocol)
        self._handle_error_response(path, response)
        if not expect_json or not response.content:
            return None
        return self._json(path, response)


# =============================================================================
# Singleton
# =============================================================================

_client: Optional[VertexClient] = None


def get_vertex_client() -> VertexClient:
    """Get or create the Vertex client singleton."""
    global _client
    if _client is None:
        from app.config import (
            VERTEX_API_KEY,
            VERTEX_PROTOCOL_TIMEOUT,
            VERTEX_TIMEOUT,
            VERTEX_URL,
        )
        _client = VertexClient(
            base_url=VERTEX_URL,
            api_key=VERTEX_API_KEY,
            read_timeout=VERTEX_TIMEOUT,
            protocol_timeout=VERTEX_PROTOCOL_TIMEOUT,
        )
    return _client


def reset_vertex_client() -> None:
    """Reset the singleton (for testing)."""
    global _client
    _client = None


async def close_vertex_client() -> None:
    """Close the HTTP client (call during shutdown)."""
    global _client
    if _client is not None:
        await _client.close()
        _client = None
