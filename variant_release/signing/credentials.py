"""Signing credential loading.

Credentials come only from settings (environment variables or a .env
file). The key file is read once when the credential is created; the
private key itself is decoded each time it is needed so a corrupt key
or wrong passphrase fails the job that uses it.

Supported key material:
- PEM private key, optionally encrypted with a passphrase
- PKCS#12 keystore (.p12/.pfx) whose certificate friendly name is the alias
"""

from __future__ import annotations

import hashlib
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Union

from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric.ed25519 import Ed25519PrivateKey
from cryptography.hazmat.primitives.asymmetric.rsa import RSAPrivateKey
from cryptography.hazmat.primitives.serialization import pkcs12

if TYPE_CHECKING:
    from variant_release.config import Settings

logger = logging.getLogger(__name__)

PKCS12_SUFFIXES = frozenset({".p12", ".pfx"})

SigningKey = Union[Ed25519PrivateKey, RSAPrivateKey]


class SigningError(Exception):
    """Raised when an artifact cannot be signed."""

    def __init__(self, message: str, code: str = "signing_error") -> None:
        super().__init__(message)
        self.code = code


class CredentialError(SigningError):
    """Raised when a configured credential is unusable before any job runs."""

    def __init__(self, message: str, code: str = "credential_error") -> None:
        super().__init__(message, code=code)


def public_key_fingerprint(key: SigningKey) -> str:
    """Return the sha256 fingerprint of a key's public half.

    The fingerprint covers the DER SubjectPublicKeyInfo encoding.
    """
    der = key.public_key().public_bytes(
        encoding=serialization.Encoding.DER,
        format=serialization.PublicFormat.SubjectPublicKeyInfo,
    )
    return f"sha256:{hashlib.sha256(der).hexdigest()}"


@dataclass(frozen=True)
class SigningCredential:
    """Key material and identity used to sign artifacts.

    Attributes:
        alias: Key alias recorded in signatures.
        key_data: Raw key file content.
        source: Where the key was read from (for messages only).
        passphrase: Passphrase protecting the key, if any.
    """

    alias: str
    key_data: bytes = field(repr=False)
    source: str = "<memory>"
    passphrase: str | None = field(default=None, repr=False)

    @property
    def is_keystore(self) -> bool:
        return Path(self.source).suffix.lower() in PKCS12_SUFFIXES

    @classmethod
    def from_file(
        cls, key_file: Path, alias: str, passphrase: str | None = None
    ) -> SigningCredential:
        """Read a credential from a key file.

        Raises:
            CredentialError: If the alias is empty or the file is unreadable.
        """
        if not alias:
            raise CredentialError(
                "A signing key is configured without a key alias",
                code="missing_alias",
            )
        try:
            key_data = key_file.read_bytes()
        except OSError as e:
            raise CredentialError(
                f"Cannot read signing key {key_file}: {e}",
                code="unreadable_key",
            ) from e
        return cls(alias=alias, key_data=key_data, source=str(key_file), passphrase=passphrase)

    @classmethod
    def from_settings(cls, settings: Settings) -> SigningCredential | None:
        """Create the credential configured in settings.

        Returns:
            SigningCredential, or None when signing is not configured.

        Raises:
            CredentialError: If the configuration is incomplete or unreadable.
        """
        if settings.signing_key_file is None:
            if settings.signing_key_alias:
                logger.warning("Signing key alias set without a key file; signing disabled")
            return None
        passphrase = None
        if settings.signing_key_passphrase is not None:
            passphrase = settings.signing_key_passphrase.get_secret_value()
        return cls.from_file(
            settings.signing_key_file,
            settings.signing_key_alias or "",
            passphrase,
        )

    def _password(self) -> bytes | None:
        return self.passphrase.encode("utf-8") if self.passphrase else None

    def _load_keystore(self) -> object:
        try:
            bundle = pkcs12.load_pkcs12(self.key_data, self._password())
        except (ValueError, TypeError) as e:
            raise SigningError(
                f"Cannot open keystore {self.source}: wrong passphrase or corrupt file",
                code="key_load_failed",
            ) from e
        if bundle.key is None:
            raise SigningError(
                f"Keystore {self.source} contains no private key", code="key_load_failed"
            )
        friendly = bundle.cert.friendly_name if bundle.cert is not None else None
        if friendly is None or friendly.decode("utf-8", "replace") != self.alias:
            raise SigningError(
                f"Keystore {self.source} has no key with alias '{self.alias}'",
                code="alias_mismatch",
            )
        return bundle.key

    def _load_pem(self) -> object:
        try:
            return serialization.load_pem_private_key(self.key_data, password=self._password())
        except TypeError as e:
            # Password given for an unencrypted key, or missing for an encrypted one
            raise SigningError(
                f"Passphrase mismatch for signing key {self.source}: {e}",
                code="bad_passphrase",
            ) from e
        except ValueError as e:
            raise SigningError(
                f"Cannot load signing key {self.source}: wrong passphrase or corrupt key",
                code="key_load_failed",
            ) from e

    def load_private_key(self) -> SigningKey:
        """Decode the private key.

        Returns:
            Ed25519 or RSA private key.

        Raises:
            SigningError: If the key cannot be decoded or is unsupported.
        """
        try:
            key = self._load_keystore() if self.is_keystore else self._load_pem()
        except UnsupportedAlgorithm as e:
            raise SigningError(
                f"Unsupported key algorithm in {self.source}", code="unsupported_key_type"
            ) from e

        if not isinstance(key, (Ed25519PrivateKey, RSAPrivateKey)):
            raise SigningError(
                f"Unsupported signing key type {type(key).__name__}; "
                "use an Ed25519 or RSA key",
                code="unsupported_key_type",
            )
        return key


__all__ = [
    "PKCS12_SUFFIXES",
    "CredentialError",
    "SigningCredential",
    "SigningError",
    "SigningKey",
    "public_key_fingerprint",
]
