# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.

"""FastAPI application for the MPC session coordinator.

The server is one party of a 2-of-2 threshold signing setup; the other
party is the client. Each protocol endpoint validates preconditions,
allocates a room, and returns immediately with the room handle while
the server's side of the protocol runs in the background.

**HTTP Endpoints**

* ``GET /keygen/{user_id}/{algorithm}/{keygen_id}``: Start keygen with
  the client's keygen id. Returns the room and the server keygen id.
* ``GET /sign/{user_id}/{algorithm}/{message}/{derivation_path}``:
  Start co-signing ``message`` under a non-hardened child key.
  ``?encoding=hex`` treats ``message`` as hex-encoded bytes.
* ``GET /refresh/{user_id}/{algorithm}``: Start a share refresh.
* ``GET /sessions/{room_id}``: Poll the outcome of a protocol run.
* ``GET /pubkey/{user_id}/{algorithm}/{derivation_path}``: Derived
  public key for a stored key.
* ``GET /livez``, ``GET /healthz``, ``GET /version``: Probes.

**Error mapping**

=================================  ======
PreconditionFailed (key exists)    403
PreconditionFailed (no key/user)   400
AuthorizationDenied                403
Invalid parameters                 400
Engine/rendezvous unavailable      503
Engine protocol error              502
=================================  ======

**Logging**

Structured JSON logging is configured at startup using the
``LOG_LEVEL`` setting. Every request is logged with route, method,
status, and duration.
"""

from __future__ import annotations

import json
import logging
import os
import sys
import time
from contextlib import asynccontextmanager
from typing import Any, Dict

from fastapi import Depends, FastAPI, HTTPException, Query, Request
from fastapi.middleware.cors import CORSMiddleware

from app.api_models import (
    HealthResponse,
    KeygenResponse,
    PublicKeyResponse,
    RoomResponse,
    SessionStatusResponse,
)
from app.config import HTTP_HOST, HTTP_PORT, LOG_LEVEL, SHUTDOWN_GRACE_SECONDS
from app.mpc.coordinator import SessionCoordinator, close_coordinator, get_coordinator
from app.mpc.exceptions import (
    AuthorizationDeniedError,
    EngineUnavailableError,
    InvalidRequestError,
    KeyAlreadyExistsError,
    MPCSessionError,
    PreconditionFailed,
    ProtocolError,
)
from app.mpc.models import parse_algorithm, parse_derivation_path
from app.mpc.vertex_client import close_vertex_client


# ======================================================================
# Structured JSON logging
# ======================================================================


class _JSONFormatter(logging.Formatter):
    """Structured JSON log formatter.

    Produces one JSON object per log line with ``timestamp``, ``level``,
    ``logger``, ``message``, ``module`` and ``funcName`` fields, plus an
    ``exception`` field holding the formatted traceback when present.
    """

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S.%fZ"),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "funcName": record.funcName,
        }
        if record.exc_info and record.exc_info[1] is not None:
            log_entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_entry, default=str)


def _configure_logging() -> None:
    """Install the JSON formatter on the root logger.

    Existing handlers are removed first to prevent duplicate output
    when running under uvicorn.
    """
    root = logging.getLogger()

    for handler in root.handlers[:]:
        root.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(_JSONFormatter())

    root.addHandler(handler)
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))

    # Suppress noisy third-party loggers.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


# ======================================================================
# Application lifespan
# ======================================================================


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Configure logging and build the coordinator on startup; drain on shutdown.

    Building the coordinator here rejects a bad lock scope or threshold
    before the server accepts traffic.
    """
    _configure_logging()
    logger.info("MPC session coordinator starting: HTTP=%s:%d", HTTP_HOST, HTTP_PORT)
    coordinator = get_coordinator()
    logger.info(
        "Coordinator ready: threshold=%d num_parties=%d lock_scope=%s",
        coordinator.threshold, coordinator.num_parties, coordinator.guard.scope,
    )

    yield

    logger.info("MPC session coordinator shutting down")
    await close_coordinator(grace_seconds=SHUTDOWN_GRACE_SECONDS)
    await close_vertex_client()
    logger.info("MPC session coordinator shutdown complete")


app = FastAPI(
    title="MPC Session Coordinator",
    description="Server party for two-party threshold keygen, signing, and refresh.",
    version="1.0.0",
    lifespan=lifespan,
)

# Any origin may drive the client side of the protocol.
app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_methods=["*"],
    allow_headers=["*"],
)

logger = logging.getLogger("mpc.main")


@app.middleware("http")
async def request_logging(request: Request, call_next):
    """Log all requests with timing."""
    start = time.time()
    response = await call_next(request)
    duration_ms = int((time.time() - start) * 1000)

    logger.info(
        f"request_complete status={response.status_code} duration_ms={duration_ms}",
        extra={
            "route": request.url.path,
            "method": request.method,
            "status": response.status_code,
        },
    )
    return response


def _to_http_exception(e: MPCSessionError) -> HTTPException:
    """Map coordinator errors to HTTP status codes."""
    if isinstance(e, KeyAlreadyExistsError):
        status = 403
    elif isinstance(e, (PreconditionFailed, InvalidRequestError)):
        status = 400
    elif isinstance(e, AuthorizationDeniedError):
        status = 403
    elif isinstance(e, EngineUnavailableError):
        status = 503
    elif isinstance(e, ProtocolError):
        status = 502
    else:
        status = 500
    if status >= 500:
        logger.error("Request failed: %s", e.message)
    else:
        logger.info("Request rejected (%d): %s", status, e.message)
    return HTTPException(status_code=status, detail=e.message)


def _decode_message(message: str, encoding: str) -> bytes:
    if encoding == "utf8":
        return message.encode("utf-8")
    try:
        return bytes.fromhex(message.removeprefix("0x"))
    except ValueError:
        raise InvalidRequestError("Message is not valid hex")


# ======================================================================
# Session endpoints
# ======================================================================


@app.get("/keygen/{user_id}/{algorithm}/{keygen_id}", response_model=KeygenResponse, tags=["sessions"])
async def keygen(
    user_id: str,
    algorithm: str,
    keygen_id: str,
    coordinator: SessionCoordinator = Depends(get_coordinator),
) -> KeygenResponse:
    """Start distributed keygen with the client."""
    try:
        ack = await coordinator.keygen(user_id, parse_algorithm(algorithm), keygen_id)
    except MPCSessionError as e:
        raise _to_http_exception(e)
    return KeygenResponse(room_id=ack.room_id, server_keygen_id=ack.server_keygen_id)


@app.get(
    "/sign/{user_id}/{algorithm}/{message}/{derivation_path}",
    response_model=RoomResponse,
    tags=["sessions"],
)
async def sign(
    user_id: str,
    algorithm: str,
    message: str,
    derivation_path: str,
    encoding: str = Query("utf8", pattern="^(utf8|hex)$"),
    coordinator: SessionCoordinator = Depends(get_coordinator),
) -> RoomResponse:
    """Start co-signing a message with the client."""
    try:
        ack = await coordinator.sign(
            user_id,
            parse_algorithm(algorithm),
            _decode_message(message, encoding),
            parse_derivation_path(derivation_path),
        )
    except MPCSessionError as e:
        raise _to_http_exception(e)
    return RoomResponse(room_id=ack.room_id)


@app.get("/refresh/{user_id}/{algorithm}", response_model=RoomResponse, tags=["sessions"])
async def refresh(
    user_id: str,
    algorithm: str,
    coordinator: SessionCoordinator = Depends(get_coordinator),
) -> RoomResponse:
    """Start refreshing the key shares for the same public key."""
    try:
        ack = await coordinator.refresh(user_id, parse_algorithm(algorithm))
    except MPCSessionError as e:
        raise _to_http_exception(e)
    return RoomResponse(room_id=ack.room_id)


@app.get("/sessions/{room_id}", response_model=SessionStatusResponse, tags=["sessions"])
async def session_status(
    room_id: str,
    coordinator: SessionCoordinator = Depends(get_coordinator),
) -> SessionStatusResponse:
    """Outcome of an acknowledged protocol run."""
    session = coordinator.session_status(room_id)
    if session is None:
        raise HTTPException(status_code=404, detail=f"Session not found: {room_id}")
    return SessionStatusResponse(**session.to_dict())


@app.get(
    "/pubkey/{user_id}/{algorithm}/{derivation_path}",
    response_model=PublicKeyResponse,
    tags=["keys"],
)
async def pubkey(
    user_id: str,
    algorithm: str,
    derivation_path: str,
    coordinator: SessionCoordinator = Depends(get_coordinator),
) -> PublicKeyResponse:
    """Public key of the child key at ``derivation_path``."""
    try:
        algo = parse_algorithm(algorithm)
        path = parse_derivation_path(derivation_path)
        public_key = await coordinator.derive_pubkey(user_id, algo, path)
    except MPCSessionError as e:
        raise _to_http_exception(e)
    return PublicKeyResponse(
        user_id=user_id,
        algorithm=algo.value,
        derivation_path=path,
        public_key=public_key,
    )


# ======================================================================
# Probes
# ======================================================================


@app.get("/livez", tags=["health"])
async def livez():
    """Liveness probe; always returns 200."""
    return {"status": "alive"}


@app.get("/healthz", response_model=HealthResponse, tags=["health"])
async def healthz(coordinator: SessionCoordinator = Depends(get_coordinator)) -> HealthResponse:
    """Engine circuit state plus key and session counts."""
    from app.mpc.vertex_client import get_vertex_client

    circuit = get_vertex_client().circuit.snapshot()
    return HealthResponse(
        status="ok",
        engine_circuit=circuit["state"],
        engine_peer_timeouts=circuit["peer_timeouts"],
        key_count=coordinator.store.count(),
        sessions=coordinator.sessions.stats(),
        in_flight=coordinator.in_flight,
    )


@app.get("/version", tags=["health"])
def version():
    """Return service version."""
    git_sha = os.getenv("GIT_SHA", "unknown")
    result = {"service": "mpc-session-coordinator", "git_sha": git_sha}
    if git_sha != "unknown":
        result["short_sha"] = git_sha[:7]
    return result


# ======================================================================
# Application runner (for direct invocation)
# ======================================================================


def main() -> None:
    """Run the coordinator using uvicorn.

    For production deployments, use uvicorn directly::

        uvicorn app.main:app --host 0.0.0.0 --port 3000
    """
    import uvicorn

    _configure_logging()
    logger.info("Starting MPC session coordinator: HTTP=%s:%d", HTTP_HOST, HTTP_PORT)

    uvicorn.run(
        "app.main:app",
        host=HTTP_HOST,
        port=HTTP_PORT,
        log_level=LOG_LEVEL.lower(),
        reload=False,
    )


if __name__ == "__main__":
    main()
