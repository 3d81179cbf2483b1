"""Key-pair validation by proof of possession.

A public key is accepted when it parses for its algorithm; when a private key
is supplied as well, the pair must complete a reversible round trip over a
fixed marker:

- RSA: encrypt with the public key, decrypt with the private key
- Ed25519: sign with the private key, verify with the public key

Parse failures and pairing failures are reported as different error types so
callers can tell a malformed private key from a well-formed one that belongs
to another public key.
"""

from __future__ import annotations

import hmac
from typing import Dict, Optional, Protocol

import base58
from cryptography.exceptions import InvalidSignature, UnsupportedAlgorithm
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ed25519, padding, rsa

from keyhub.errors import InvalidPrivateKey, InvalidPublicKey, KeyPairMismatch, UnsupportedKeyType
from keyhub.models import KeyAlgorithm, PrivateKey, PublicKey

__all__ = [
    "KeyPairValidator",
    "RsaKeyPairCheck",
    "Ed25519KeyPairCheck",
    "check_key_pair",
]

PLAINTEXT = b"plaintext"

ED25519_PUBLIC_KEY_BYTES = 32
ED25519_PRIVATE_KEY_BYTES = 64  # seed || public key
ED25519_PUBLIC_KEY_BASE58_CHARS = 44
ED25519_PRIVATE_KEY_BASE58_CHARS = 88

_OAEP = padding.OAEP(
    mgf=padding.MGF1(algorithm=hashes.SHA1()),
    algorithm=hashes.SHA1(),
    label=None,
)


class KeyPairCheck(Protocol):
    def check(self, public_key: PublicKey, private_key: Optional[PrivateKey]) -> None: ...


# ---------------------------------------------------------------------------
# RSA
# ---------------------------------------------------------------------------


class RsaKeyPairCheck:
    """Validate PEM-encoded RSA keys with an OAEP encrypt/decrypt round trip."""

    def check(self, public_key: PublicKey, private_key: Optional[PrivateKey]) -> None:
        try:
            loaded = serialization.load_pem_public_key(public_key.public_key_pem.encode("utf-8"))
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise InvalidPublicKey("Could not add public key. Invalid public key.") from exc
        if not isinstance(loaded, rsa.RSAPublicKey):
            raise InvalidPublicKey(
                "Could not add public key. Invalid public key.",
                reason=f"expected an RSA key, got {type(loaded).__name__}",
            )
        try:
            ciphertext = loaded.encrypt(PLAINTEXT, _OAEP)
        except ValueError as exc:
            raise InvalidPublicKey("Could not add public key. Invalid public key.") from exc

        if private_key is None:
            return

        if private_key.private_key_pem is None:
            raise InvalidPrivateKey(
                "Could not add private key. Invalid private key.",
                reason="RSA public keys pair with 'private_key_pem'",
            )
        # Parsing and decrypting are separate steps so an unparsable key is
        # never mistaken for a mismatched one.
        try:
            loaded_private = serialization.load_pem_private_key(
                private_key.private_key_pem.encode("utf-8"), password=None
            )
        except (ValueError, TypeError, UnsupportedAlgorithm) as exc:
            raise InvalidPrivateKey("Could not add private key. Invalid private key.") from exc
        if not isinstance(loaded_private, rsa.RSAPrivateKey):
            raise KeyPairMismatch(
                "Could not add key pair. Key pair does not match.",
                reason=f"private key is {type(loaded_private).__name__}",
            )
        try:
            decrypted = loaded_private.decrypt(ciphertext, _OAEP)
        except ValueError as exc:
            # wrong padding, or ciphertext larger than the private modulus
            raise KeyPairMismatch("Could not add key pair. Key pair does not match.") from exc
        if decrypted != PLAINTEXT:
            raise KeyPairMismatch("Could not add key pair. Key pair does not match.")


# ---------------------------------------------------------------------------
# Ed25519
# ---------------------------------------------------------------------------


def _decode_base58(value: str, *, chars: int, size: int, what: str, error_cls) -> bytes:
    try:
        raw = base58.b58decode(value)
    except ValueError as exc:
        raise error_cls(f"Could not add {what}. Invalid {what}.") from exc
    if len(value) != chars or len(raw) != size:
        cause = ValueError(
            f"invalid {what} length: expected {chars} base58 characters ({size} bytes), "
            f"got {len(value)} characters ({len(raw)} bytes)"
        )
        raise error_cls(f"Could not add {what}. Invalid {what}.") from cause
    return raw


class Ed25519KeyPairCheck:
    """Validate base58 Ed25519 keys with a sign/verify round trip."""

    def check(self, public_key: PublicKey, private_key: Optional[PrivateKey]) -> None:
        public_raw = _decode_base58(
            public_key.public_key_base58,
            chars=ED25519_PUBLIC_KEY_BASE58_CHARS,
            size=ED25519_PUBLIC_KEY_BYTES,
            what="public key",
            error_cls=InvalidPublicKey,
        )
        if private_key is None:
            return

        if private_key.private_key_base58 is None:
            raise InvalidPrivateKey(
                "Could not add private key. Invalid private key.",
                reason="Ed25519 public keys pair with 'private_key_base58'",
            )
        secret = _decode_base58(
            private_key.private_key_base58,
            chars=ED25519_PRIVATE_KEY_BASE58_CHARS,
            size=ED25519_PRIVATE_KEY_BYTES,
            what="private key",
            error_cls=InvalidPrivateKey,
        )
        # the trailing half is the public key the signer will publish
        if not hmac.compare_digest(secret[32:], public_raw):
            raise KeyPairMismatch("Could not add key pair. Key pair does not match.")
        try:
            signer = ed25519.Ed25519PrivateKey.from_private_bytes(secret[:32])
            signature = signer.sign(PLAINTEXT)
            ed25519.Ed25519PublicKey.from_public_bytes(public_raw).verify(signature, PLAINTEXT)
        except (InvalidSignature, ValueError) as exc:
            raise KeyPairMismatch("Could not add key pair. Key pair does not match.") from exc


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------

DEFAULT_CHECKS: Dict[KeyAlgorithm, KeyPairCheck] = {
    KeyAlgorithm.rsa: RsaKeyPairCheck(),
    KeyAlgorithm.ed25519: Ed25519KeyPairCheck(),
}


class KeyPairValidator:
    """Route a key pair to the check registered for its material variant."""

    def __init__(self, checks: Optional[Dict[KeyAlgorithm, KeyPairCheck]] = None):
        self._checks = dict(DEFAULT_CHECKS if checks is None else checks)

    def validate(self, public_key: PublicKey, private_key: Optional[PrivateKey] = None) -> None:
        algorithm = public_key.algorithm
        check = self._checks.get(algorithm) if algorithm is not None else None
        if check is None:
            raise UnsupportedKeyType(
                "Could not add public key. Exactly one of 'public_key_pem' or "
                "'public_key_base58' must be set.",
            )
        check.check(public_key, private_key)


_default_validator = KeyPairValidator()


def check_key_pair(public_key: PublicKey, private_key: Optional[PrivateKey] = None) -> None:
    """Validate with the default RSA/Ed25519 checks."""
    _default_validator.validate(public_key, private_key)
