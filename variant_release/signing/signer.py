"""Artifact signing.

A signed payload is the original bytes followed by a trailer:

    <payload><trailer JSON><4-byte big-endian trailer length>VRSIG1

The trailer JSON (canonical, sorted keys) records the key alias, the
public key fingerprint, the algorithm and the base64 signature over
the payload. Ed25519 and RSA PKCS#1 v1.5 signatures are deterministic,
so signing the same payload with the same key always yields the same
bytes.
"""

from __future__ import annotations

import base64
import binascii
import json
import logging
import os
import struct
from pathlib import Path
from typing import Any

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.asymmetric import padding
from cryptography.hazmat.primitives.asymmetric.ed25519 import (
    Ed25519PrivateKey,
    Ed25519PublicKey,
)
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPublicKey

from variant_release.signing.credentials import (
    SigningCredential,
    SigningError,
    SigningKey,
    public_key_fingerprint,
)
from variant_release.types import Artifact, Signed, Unsigned

logger = logging.getLogger(__name__)

SIGNATURE_MAGIC = b"VRSIG1"
_LENGTH = struct.Struct(">I")

ALGORITHM_ED25519 = "ed25519"
ALGORITHM_RSA_SHA256 = "rsa-pkcs1v15-sha256"


class SignatureVerificationError(SigningError):
    """Raised when a signed payload does not verify."""

    def __init__(self, message: str, code: str = "signature_invalid") -> None:
        super().__init__(message, code=code)


def algorithm_name(key: SigningKey) -> str:
    """Return the signature algorithm used for a key."""
    if isinstance(key, Ed25519PrivateKey):
        return ALGORITHM_ED25519
    return ALGORITHM_RSA_SHA256


def sign_bytes(key: SigningKey, payload: bytes) -> bytes:
    """Sign payload bytes with an Ed25519 or RSA key."""
    if isinstance(key, Ed25519PrivateKey):
        return key.sign(payload)
    return key.sign(payload, padding.PKCS1v15(), hashes.SHA256())


def build_trailer(alias: str, fingerprint: str, algorithm: str, signature: bytes) -> bytes:
    """Encode the signature trailer appended to a payload."""
    block = json.dumps(
        {
            "alias": alias,
            "algorithm": algorithm,
            "key_fingerprint": fingerprint,
            "signature": base64.b64encode(signature).decode("ascii"),
        },
        sort_keys=True,
        separators=(",", ":"),
    ).encode("utf-8")
    return block + _LENGTH.pack(len(block)) + SIGNATURE_MAGIC


def split_signed_payload(data: bytes) -> tuple[bytes, dict[str, Any]] | None:
    """Separate a signed payload into original bytes and trailer.

    Args:
        data: Possibly signed bytes.

    Returns:
        Tuple of (payload, trailer), or None if data carries no trailer.
    """
    footer = _LENGTH.size + len(SIGNATURE_MAGIC)
    if len(data) < footer or not data.endswith(SIGNATURE_MAGIC):
        return None
    (length,) = _LENGTH.unpack(data[-footer : -len(SIGNATURE_MAGIC)])
    start = len(data) - footer - length
    if start < 0:
        return None
    try:
        trailer = json.loads(data[start : len(data) - footer].decode("utf-8"))
    except (UnicodeDecodeError, ValueError):
        return None
    if not isinstance(trailer, dict) or "signature" not in trailer:
        return None
    return data[:start], trailer


def verify_signed_payload(
    data: bytes, public_key: Ed25519PublicKey | RSAPublicKey
) -> tuple[bytes, dict[str, Any]]:
    """Verify a signed payload against a public key.

    Args:
        data: Signed bytes.
        public_key: Expected signer's public key.

    Returns:
        Tuple of (original payload, trailer).

    Raises:
        SignatureVerificationError: If the trailer is missing or invalid.
    """
    split = split_signed_payload(data)
    if split is None:
        raise SignatureVerificationError("Payload carries no signature", code="not_signed")
    payload, trailer = split
    try:
        signature = base64.b64decode(trailer["signature"], validate=True)
    except (binascii.Error, TypeError) as e:
        raise SignatureVerificationError(f"Malformed signature trailer: {e}") from e

    try:
        if isinstance(public_key, Ed25519PublicKey):
            public_key.verify(signature, payload)
        else:
            public_key.verify(signature, payload, padding.PKCS1v15(), hashes.SHA256())
    except InvalidSignature as e:
        raise SignatureVerificationError("Signature does not match payload") from e
    return payload, trailer


def _replace_file(path: Path, content: bytes) -> None:
    tmp = path.with_name(f".{path.name}.{os.getpid()}.signing")
    try:
        tmp.write_bytes(content)
        os.replace(tmp, path)
    finally:
        if tmp.exists():
            tmp.unlink()


class ArtifactSigner:
    """Signs artifacts with an optional credential.

    Without a credential every artifact passes through unsigned. With a
    credential, any failure raises SigningError; an artifact is never
    downgraded to unsigned.
    """

    def __init__(self, credential: SigningCredential | None = None) -> None:
        self.credential = credential

    @property
    def enabled(self) -> bool:
        return self.credential is not None

    @staticmethod
    def _signed_by(payload: bytes, key: SigningKey, fingerprint: str) -> bool:
        split = split_signed_payload(payload)
        if split is None or split[1].get("key_fingerprint") != fingerprint:
            return False
        try:
            verify_signed_payload(payload, key.public_key())
        except SignatureVerificationError:
            logger.warning("Ignoring invalid signature trailer claiming key %s", fingerprint[:23])
            return False
        return True

    def sign(self, artifact: Artifact) -> Artifact:
        """Sign an artifact payload in place.

        Args:
            artifact: Unsigned artifact.

        Returns:
            The artifact with a Signed status, or unchanged if signing is
            not configured.

        Raises:
            SigningError: If a configured credential cannot sign the payload.
        """
        if self.credential is None:
            return artifact.with_signature(Unsigned())

        key = self.credential.load_private_key()
        fingerprint = public_key_fingerprint(key)
        algorithm = algorithm_name(key)

        try:
            payload = artifact.path.read_bytes()
        except OSError as e:
            raise SigningError(
                f"Cannot read {artifact.release_path} for signing: {e}",
                code="unreadable_payload",
            ) from e

        if self._signed_by(payload, key, fingerprint):
            logger.debug("%s already signed with this key", artifact.release_path)
        else:
            signature = sign_bytes(key, payload)
            trailer = build_trailer(self.credential.alias, fingerprint, algorithm, signature)
            try:
                _replace_file(artifact.path, payload + trailer)
            except OSError as e:
                raise SigningError(
                    f"Cannot write signed {artifact.release_path}: {e}",
                    code="unwritable_payload",
                ) from e
            logger.info("Signed %s with key %s", artifact.release_path, self.credential.alias)

        return artifact.with_signature(
            Signed(
                key_fingerprint=fingerprint,
                key_alias=self.credential.alias,
                algorithm=algorithm,
            )
        )


__all__ = [
    "ALGORITHM_ED25519",
    "ALGORITHM_RSA_SHA256",
    "SIGNATURE_MAGIC",
    "ArtifactSigner",
    "SignatureVerificationError",
    "algorithm_name",
    "build_trailer",
    "sign_bytes",
    "split_signed_payload",
    "verify_signed_payload",
]
