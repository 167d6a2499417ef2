# Copyright (c) Rich Connexions Ltd. All rights reserved.
# Licensed under the MIT License. See LICENSE for details.
"""Per-algorithm message, public key, and signature encodings.

One :class:`AlgorithmProfile` is selected per request so that the
ecdsa/ed25519 differences live in a single place:

==========  ======================  ======================  ==================
algorithm   message to sign         public key              signature
==========  ======================  ======================  ==================
ecdsa       SHA-256 digest          compressed SEC1 point   DER (r, s)
ed25519     raw message bytes       raw 32-byte point       raw 64 bytes
==========  ======================  ======================  ==================
"""

from __future__ import annotations

import hashlib
from typing import Dict

from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.asymmetric.utils import (
    decode_dss_signature,
    encode_dss_signature,
)

from app.mpc.exceptions import ProtocolError
from app.mpc.models import Algorithm

__all__ = [
    "AlgorithmProfile",
    "EcdsaProfile",
    "Ed25519Profile",
    "get_profile",
]

ED25519_PUBLIC_KEY_SIZE = 32
ED25519_SIGNATURE_SIZE = 64
SECP256K1_SCALAR_SIZE = 32


class AlgorithmProfile:
    """Encoding capabilities for one signature algorithm."""

    algorithm: Algorithm

    def encode_message(self, message: bytes) -> bytes:
        """Return the bytes the engine should sign for ``message``."""
        raise NotImplementedError

    def encode_public_key(self, public_key: bytes) -> str:
        """Return the canonical hex encoding of an engine public key."""
        raise NotImplementedError

    def encode_signature(self, signature: bytes) -> str:
        """Return the canonical hex encoding of an engine signature."""
        raise NotImplementedError


class EcdsaProfile(AlgorithmProfile):
    """secp256k1 ECDSA: hash-then-sign, compressed keys, DER signatures."""

    algorithm = Algorithm.ECDSA

    def encode_message(self, message: bytes) -> bytes:
        return hashlib.sha256(message).digest()

    def encode_public_key(self, public_key: bytes) -> str:
        # Accepts compressed (33 byte) or uncompressed (65 byte) points
        try:
            point = ec.EllipticCurvePublicKey.from_encoded_point(ec.SECP256K1(), public_key)
        except ValueError as e:
            raise ProtocolError(f"Engine returned an invalid secp256k1 public key: {e}")
        return point.public_bytes(
            serialization.Encoding.X962,
            serialization.PublicFormat.CompressedPoint,
        ).hex()

    def encode_signature(self, signature: bytes) -> str:
        if len(signature) == 2 * SECP256K1_SCALAR_SIZE:
            r = int.from_bytes(signature[:SECP256K1_SCALAR_SIZE], "big")
            s = int.from_bytes(signature[SECP256K1_SCALAR_SIZE:], "big")
            return encode_dss_signature(r, s).hex()

        try:
            r, s = decode_dss_signature(signature)
        except ValueError as e:
            raise ProtocolError(f"Engine returned an invalid ECDSA signature: {e}")
        return encode_dss_signature(r, s).hex()


class Ed25519Profile(AlgorithmProfile):
    """Ed25519: raw message, raw point, raw signature."""

    algorithm = Algorithm.ED25519

    def encode_message(self, message: bytes) -> bytes:
        return message

    def encode_public_key(self, public_key: bytes) -> str:
        if len(public_key) != ED25519_PUBLIC_KEY_SIZE:
            raise ProtocolError(
                f"Engine returned a {len(public_key)}-byte Ed25519 public key"
            )
        return public_key.hex()

    def encode_signature(self, signature: bytes) -> str:
        if len(signature) != ED25519_SIGNATURE_SIZE:
            raise ProtocolError(
                f"Engine returned a {len(signature)}-byte Ed25519 signature"
            )
        return signature.hex()


_PROFILES: Dict[Algorithm, AlgorithmProfile] = {
    Algorithm.ECDSA: EcdsaProfile(),
    Algorithm.ED25519: Ed25519Profile(),
}


def get_profile(algorithm: Algorithm) -> AlgorithmProfile:
    """Return the encoding profile for ``algorithm``."""
    return _PROFILES[Algorithm(algorithm)]
