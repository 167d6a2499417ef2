# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""MPC session exceptions.

Precondition failures are raised synchronously, before any room is
allocated or protocol round begins. Engine and rendezvous failures may
surface either synchronously (room allocation, keygen init) or inside
the background protocol run, where they are recorded on the session.
"""


class MPCSessionError(Exception):
    """Base exception for session coordinator errors."""

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class InvalidRequestError(MPCSessionError):
    """Request parameters could not be parsed (algorithm, path, message)."""
    pass


# =============================================================================
# Preconditions
# =============================================================================


class PreconditionFailed(MPCSessionError):
    """The key material store is not in the state the operation requires."""
    pass


class KeyAlreadyExistsError(PreconditionFailed):
    """Raised by keygen when the (user, algorithm) pair already has a key."""

    @classmethod
    def for_pair(cls, user_id: str, algorithm: str) -> "KeyAlreadyExistsError":
        return cls("User already exists")


class UserNotFoundError(PreconditionFailed):
    """Raised by sign/refresh when the user has no key material at all."""

    @classmethod
    def for_user(cls, user_id: str) -> "UserNotFoundError":
        return cls("User does not exist")


class KeyNotFoundError(PreconditionFailed):
    """Raised when the user exists but has no key for the algorithm."""

    @classmethod
    def for_pair(cls, user_id: str, algorithm: str) -> "KeyNotFoundError":
        return cls(f"User does not have key material for {algorithm} yet")


# =============================================================================
# Authorization
# =============================================================================


class AuthorizationDeniedError(MPCSessionError):
    """The sign policy refused to participate in signing a message."""

    @classmethod
    def for_message(cls, message: str) -> "AuthorizationDeniedError":
        return cls(f"The server does not want to sign: {message}")


# =============================================================================
# External services
# =============================================================================


class EngineUnavailableError(MPCSessionError):
    """Raised when Vertex is unreachable, times out, or the circuit is open."""

    def __init__(self, message: str = "MPC engine unavailable"):
        super().__init__(message)


class RendezvousError(EngineUnavailableError):
    """Room allocation failed."""

    def __init__(self, message: str = "Room rendezvous failed"):
        super().__init__(message)


class ProtocolError(MPCSessionError):
    """The engine rejected a protocol call or returned a malformed result.

    Covers peer disconnects and round timeouts reported by the engine.
    """

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(message)
