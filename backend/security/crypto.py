"""
Security module: ephemeral X25519 keypair + HMAC challenge/response.

The device proves it owns the public key we have on record by returning
HMAC-SHA256(ECDH(device_priv, our_pub), challenge). We recompute the same
value from our side of the key exchange. This is a proof of key possession
only; nothing here encrypts traffic.
"""

import base64
import binascii
import logging
import os

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hmac
from cryptography.hazmat.primitives.asymmetric.x25519 import (
    X25519PrivateKey,
    X25519PublicKey,
)
from cryptography.hazmat.primitives.hashes import SHA256
from cryptography.hazmat.primitives.serialization import (
    Encoding,
    PublicFormat,
)

from errors import IdentityError

logger = logging.getLogger(__name__)

CHALLENGE_SIZE = 32
PROOF_SIZE = 32
SHORT_ID_BYTES = 10


def decode_public_key(public_key: bytes | str) -> bytes:
    """Return raw key bytes from either raw bytes or standard base64 text."""
    if isinstance(public_key, bytes):
        return public_key
    try:
        return base64.b64decode(public_key, validate=True)
    except (binascii.Error, ValueError) as e:
        raise IdentityError(f"Public key is not valid base64: {e}")


def short_id(public_key: bytes | str) -> str:
    """
    Short, URL-safe fingerprint of a device key: hex(public_key[:10]).

    Used as the subdomain label of the device's relay origin.
    """
    raw = decode_public_key(public_key)
    if len(raw) < SHORT_ID_BYTES:
        raise IdentityError(
            f"Public key too short for a short id ({len(raw)} bytes)"
        )
    return raw[:SHORT_ID_BYTES].hex()


def compute_proof(shared_secret: bytes, challenge: bytes) -> bytes:
    """HMAC-SHA256 of the challenge, keyed with the ECDH shared secret."""
    h = hmac.HMAC(shared_secret, SHA256())
    h.update(challenge)
    return h.finalize()


class IdentityVerifier:
    """Holds this run's ephemeral keypair and checks device proofs."""

    def __init__(self):
        # Never persisted; a new keypair for every process run
        self._private_key = X25519PrivateKey.generate()
        self._public_bytes = self._private_key.public_key().public_bytes(
            encoding=Encoding.Raw,
            format=PublicFormat.Raw,
        )

    @staticmethod
    def create_challenge() -> bytes:
        """32 bytes from the OS CSPRNG."""
        return os.urandom(CHALLENGE_SIZE)

    def own_public_key(self) -> bytes:
        return self._public_bytes

    def own_public_key_b64(self) -> str:
        return base64.b64encode(self._public_bytes).decode("ascii")

    def shared_secret(self, peer_public_key: bytes | str) -> bytes:
        """Raw X25519 shared secret with the given peer key."""
        peer = X25519PublicKey.from_public_bytes(decode_public_key(peer_public_key))
        return self._private_key.exchange(peer)

    def verify(
        self,
        device_public_key: bytes | str,
        challenge: bytes,
        proof: bytes,
    ) -> bool:
        """
        Check that `proof` is HMAC-SHA256(ECDH(own_priv, device_pub), challenge).

        Returns False on any malformed input or crypto failure; never raises.
        """
        if len(challenge) != CHALLENGE_SIZE or len(proof) != PROOF_SIZE:
            return False
        try:
            secret = self.shared_secret(device_public_key)
        except (IdentityError, ValueError) as e:
            # Wrong key length, bad base64, or an all-zero shared secret
            logger.debug(f"Key exchange failed: {e}")
            return False

        h = hmac.HMAC(secret, SHA256())
        h.update(challenge)
        try:
            h.verify(proof)
            return True
        except InvalidSignature:
            return False
