"""Checksums and release manifests.

This module handles:
- Streaming SHA-256 digests of final artifact bytes
- Manifest entries (one per artifact) and the release manifest model
- SHA256SUMS rendering and parsing
- Re-verification of published payloads

SHA256SUMS format (GNU coreutils, sorted by path):

    <sha256hex>  <variant>/<filename>
"""

from __future__ import annotations

import hashlib
import json
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, model_validator

from variant_release.types import Artifact, ReleaseStatus, Signed

logger = logging.getLogger(__name__)

MANIFEST_SCHEMA_VERSION = 1
MANIFEST_FILENAME = "manifest.json"
CHECKSUMS_FILENAME = "SHA256SUMS"

# Chunk size for streaming hashes
HASH_CHUNK_SIZE = 64 * 1024  # 64KB

VERSION_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9._+-]*$")
_CHECKSUM_LINE = re.compile(r"^([0-9a-f]{64}) [ *](.+)$")


class DigestError(Exception):
    """Raised when an artifact cannot be digested."""

    def __init__(self, message: str, path: Path | None = None, code: str = "digest_error") -> None:
        super().__init__(message)
        self.path = path
        self.code = code


class InvalidVersionError(ValueError):
    """Raised when a release version tag is malformed."""

    def __init__(self, version: str) -> None:
        super().__init__(
            f"Invalid release version '{version}': use letters, digits and ._+- "
            "starting with a letter or digit"
        )
        self.version = version
        self.code = "invalid_version"


def validate_version(version: str) -> str:
    """Validate a release version tag.

    Returns:
        The version unchanged.

    Raises:
        InvalidVersionError: If the tag is empty or has unsafe characters.
    """
    if not VERSION_PATTERN.match(version) or len(version) > 128:
        raise InvalidVersionError(version)
    return version


def compute_file_digest(path: Path, chunk_size: int = HASH_CHUNK_SIZE) -> str:
    """Compute the SHA-256 digest of a file.

    Args:
        path: File to hash.
        chunk_size: Size of chunks for streaming hash.

    Returns:
        SHA-256 hex digest.

    Raises:
        DigestError: If the file cannot be read.
    """
    sha256 = hashlib.sha256()
    try:
        with path.open("rb") as f:
            while chunk := f.read(chunk_size):
                sha256.update(chunk)
    except OSError as e:
        raise DigestError(f"Cannot read {path} for digest: {e}", path=path) from e
    return sha256.hexdigest()


class ManifestEntry(BaseModel):
    """Checksum record of one published artifact."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    variant: str
    filename: str
    path: str = Field(description="Path inside the release: <variant>/<filename>")
    sha256: str = Field(pattern=r"^[0-9a-f]{64}$")
    size_bytes: int = Field(ge=0)
    signed: bool = False
    signing_key: str | None = Field(
        default=None, description="Fingerprint of the signing public key"
    )
    signing_alias: str | None = None

    @model_validator(mode="after")
    def check_signing_status(self) -> ManifestEntry:
        """Signed entries must name their key; unsigned ones must not."""
        if self.signed and not self.signing_key:
            raise ValueError("signed entry requires a signing key fingerprint")
        if not self.signed and (self.signing_key or self.signing_alias):
            raise ValueError("unsigned entry must not carry signing key details")
        return self


class OmittedVariant(BaseModel):
    """An optional variant left out of a partial release."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    variant: str
    state: str
    error_type: str | None = None
    reason: str | None = Field(
        default=None, description="Human-readable failure message, not part of the content"
    )


class ReleaseManifest(BaseModel):
    """Immutable record of a release's artifacts and checksums."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    schema_version: int = MANIFEST_SCHEMA_VERSION
    project: str
    version: str
    status: ReleaseStatus
    entries: list[ManifestEntry]
    omitted: list[OmittedVariant] = Field(default_factory=list)
    published_at: datetime | None = None

    @model_validator(mode="after")
    def check_entries(self) -> ReleaseManifest:
        paths = [e.path for e in self.entries]
        if len(set(paths)) != len(paths):
            raise ValueError("manifest entries must have unique paths")
        return self

    @property
    def variants(self) -> list[str]:
        """Variants with entries, in manifest order."""
        seen: list[str] = []
        for entry in self.entries:
            if entry.variant not in seen:
                seen.append(entry.variant)
        return seen

    def content_dict(self) -> dict[str, Any]:
        """Manifest content without the publication time or failure messages.

        Failure messages of omitted variants carry timings that differ
        between runs with identical inputs.
        """
        return self.model_dump(
            mode="json",
            exclude={"published_at": True, "omitted": {"__all__": {"reason"}}},
        )

    def content_fingerprint(self) -> str:
        """Hash of the manifest content, ignoring the publication time."""
        canonical = json.dumps(self.content_dict(), sort_keys=True, separators=(",", ":"))
        return f"sha256:{hashlib.sha256(canonical.encode('utf-8')).hexdigest()}"

    def same_content(self, other: ReleaseManifest) -> bool:
        return self.content_fingerprint() == other.content_fingerprint()

    def to_json(self) -> str:
        """Serialize to the published manifest.json form."""
        return json.dumps(self.model_dump(mode="json"), indent=2, sort_keys=True) + "\n"

    @classmethod
    def from_json(cls, text: str | bytes) -> ReleaseManifest:
        return cls.model_validate_json(text)


def create_manifest_entry(artifact: Artifact) -> ManifestEntry:
    """Digest an artifact's final bytes into a manifest entry.

    Args:
        artifact: Artifact after signing (or unsigned).

    Returns:
        ManifestEntry reflecting the bytes on disk.

    Raises:
        DigestError: If the payload cannot be read.
    """
    sha256 = compute_file_digest(artifact.path)
    try:
        size_bytes = artifact.path.stat().st_size
    except OSError as e:
        raise DigestError(f"Cannot stat {artifact.path}: {e}", path=artifact.path) from e

    signature = artifact.signature
    return ManifestEntry(
        variant=artifact.variant,
        filename=artifact.filename,
        path=artifact.release_path,
        sha256=sha256,
        size_bytes=size_bytes,
        signed=signature.signed,
        signing_key=signature.key_fingerprint if isinstance(signature, Signed) else None,
        signing_alias=signature.key_alias if isinstance(signature, Signed) else None,
    )


def render_checksums(manifest: ReleaseManifest) -> str:
    """Render a SHA256SUMS file for a manifest."""
    lines = [f"{e.sha256}  {e.path}" for e in sorted(manifest.entries, key=lambda e: e.path)]
    return "\n".join(lines) + ("\n" if lines else "")


def parse_checksums(text: str) -> dict[str, str]:
    """Parse a SHA256SUMS file.

    Returns:
        Mapping of path to hex digest.

    Raises:
        ValueError: If a line is malformed.
    """
    checksums: dict[str, str] = {}
    for number, line in enumerate(text.splitlines(), start=1):
        if not line.strip():
            continue
        match = _CHECKSUM_LINE.match(line)
        if match is None:
            raise ValueError(f"Malformed checksum line {number}: {line!r}")
        checksums[match.group(2)] = match.group(1)
    return checksums


@dataclass(frozen=True)
class VerificationResult:
    """Outcome of re-hashing a published release."""

    checked_count: int
    mismatches: list[str] = field(default_factory=list)
    missing_files: list[str] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.mismatches and not self.missing_files

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "checked_count": self.checked_count,
            "mismatches": self.mismatches,
            "missing_files": self.missing_files,
        }


def verify_release_payloads(manifest: ReleaseManifest, root: Path) -> VerificationResult:
    """Re-hash the payloads of a published release.

    Args:
        manifest: Published manifest.
        root: Directory containing <variant>/<filename> payloads.

    Returns:
        VerificationResult listing mismatched and missing paths.
    """
    mismatches: list[str] = []
    missing: list[str] = []
    checked = 0
    for entry in manifest.entries:
        path = root / entry.path
        if not path.is_file():
            missing.append(entry.path)
            continue
        checked += 1
        if compute_file_digest(path) != entry.sha256:
            logger.warning("Checksum mismatch for %s", entry.path)
            mismatches.append(entry.path)
    return VerificationResult(checked_count=checked, mismatches=mismatches, missing_files=missing)


__all__ = [
    "CHECKSUMS_FILENAME",
    "MANIFEST_FILENAME",
    "MANIFEST_SCHEMA_VERSION",
    "DigestError",
    "InvalidVersionError",
    "ManifestEntry",
    "OmittedVariant",
    "ReleaseManifest",
    "VerificationResult",
    "compute_file_digest",
    "create_manifest_entry",
    "parse_checksums",
    "render_checksums",
    "validate_version",
    "verify_release_payloads",
]
