"""Cache key computation for build layers.

This module handles:
- Source tree and dependency lock content hashing
- Canonical input snapshots per cache layer
- Deterministic hash computation over normalized inputs

Every layer (toolchain setup, dependency resolution, variant outputs)
shares one key abstraction. Keys are derived from content only, never
from time, so any input change produces a new key.
"""

from __future__ import annotations

import fnmatch
import hashlib
import json
import stat
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any

from variant_release.matrix.resolver import VariantSpec
from variant_release.matrix.schema import MatrixSchema
from variant_release.types import CacheLayer

# Schema version for cache key format; bump when cache key format changes
CACHE_KEY_SCHEMA_VERSION = "1"

# Chunk size for streaming file hashes
HASH_CHUNK_SIZE = 64 * 1024  # 64KB


class CacheKeyError(Exception):
    """Raised when cache key inputs cannot be read."""

    def __init__(self, message: str, code: str = "cache_key_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class BuildInputs:
    """Canonical representation of all inputs of one cache layer.

    Attributes:
        schema_version: Version of cache key schema.
        layer: Cache layer the inputs belong to.
        toolchain: Toolchain identity (version, command, image).
        dependency_lock_hash: Hash of dependency lock file content.
        variant_flags: Variant identity and build flags (outputs layer only).
        source_hash: Source tree content hash (outputs layer only).
        outputs: Declared output filenames (outputs layer only).
    """

    schema_version: str = CACHE_KEY_SCHEMA_VERSION
    layer: str = CacheLayer.OUTPUTS.value
    toolchain: dict[str, Any] = field(default_factory=dict)
    dependency_lock_hash: str | None = None
    variant_flags: dict[str, Any] = field(default_factory=dict)
    source_hash: str | None = None
    outputs: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)


def _is_excluded(rel_parts: tuple[str, ...], exclude: list[str]) -> bool:
    return any(fnmatch.fnmatch(part, pattern) for part in rel_parts for pattern in exclude)


def compute_tree_hash(directory: Path, exclude: list[str] | None = None) -> str:
    """Compute a deterministic hash of a directory tree.

    The hash is computed over sorted relative paths, file modes
    (lower 9 bits) and file contents. Any path component matching an
    exclude pattern is skipped.

    Args:
        directory: Directory to hash.
        exclude: fnmatch patterns for path components to skip.

    Returns:
        SHA-256 hex digest of the tree.
    """
    hasher = hashlib.sha256()
    exclude = exclude or []

    if not directory.exists():
        return hasher.hexdigest()

    for path in sorted(directory.rglob("*")):
        rel = path.relative_to(directory)
        if _is_excluded(rel.parts, exclude):
            continue
        if not path.is_file():
            continue

        mode = stat.S_IMODE(path.stat().st_mode)
        # Hash: path\0mode\0content\0
        hasher.update(rel.as_posix().encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(f"{mode:o}".encode())
        hasher.update(b"\0")
        with path.open("rb") as f:
            while chunk := f.read(HASH_CHUNK_SIZE):
                hasher.update(chunk)
        hasher.update(b"\0")

    return hasher.hexdigest()


def hash_lockfiles(base_dir: Path, lockfiles: list[str]) -> str | None:
    """Hash the content of dependency lock files.

    Args:
        base_dir: Directory lock file paths are relative to.
        lockfiles: Declared lock file paths.

    Returns:
        SHA-256 hex digest, or None if no lock files are declared.

    Raises:
        CacheKeyError: If a declared lock file cannot be read.
    """
    if not lockfiles:
        return None

    hasher = hashlib.sha256()
    for name in sorted(lockfiles):
        path = base_dir / name
        try:
            content = path.read_bytes()
        except OSError as e:
            raise CacheKeyError(
                f"Cannot read dependency lock file {path}: {e}",
                code="missing_lockfile",
            ) from e
        hasher.update(name.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(content)
        hasher.update(b"\0")
    return hasher.hexdigest()


def toolchain_identity(matrix: MatrixSchema) -> dict[str, Any]:
    """Return the toolchain fields that affect build output."""
    identity: dict[str, Any] = {
        "version": matrix.toolchain.version,
        "command": list(matrix.toolchain.command),
    }
    if matrix.toolchain.env:
        identity["env"] = dict(sorted(matrix.toolchain.env.items()))
    if matrix.isolation.runtime != "none":
        identity["image"] = matrix.isolation.image
    return identity


def create_layer_inputs(
    matrix: MatrixSchema,
    layer: CacheLayer,
    dependency_lock_hash: str | None = None,
) -> BuildInputs:
    """Create inputs for a layer shared by all variants.

    The toolchain layer depends only on the toolchain identity; the
    dependency layer adds the lock file content.

    Args:
        matrix: Matrix schema.
        layer: TOOLCHAIN or DEPENDENCIES.
        dependency_lock_hash: Hash of the dependency lock files.

    Returns:
        BuildInputs for the layer.
    """
    if layer == CacheLayer.OUTPUTS:
        raise ValueError("use create_variant_inputs for the outputs layer")

    identity = toolchain_identity(matrix)
    if layer == CacheLayer.TOOLCHAIN:
        identity["setup_command"] = list(matrix.toolchain.setup_command or [])
        return BuildInputs(layer=layer.value, toolchain=identity)

    identity["dependency_command"] = list(matrix.dependencies.command or [])
    return BuildInputs(
        layer=layer.value,
        toolchain=identity,
        dependency_lock_hash=dependency_lock_hash,
    )


def create_variant_inputs(
    matrix: MatrixSchema,
    variant: VariantSpec,
    dependency_lock_hash: str | None = None,
    source_hash: str | None = None,
) -> BuildInputs:
    """Create inputs for a variant's compiled outputs.

    Args:
        matrix: Matrix schema.
        variant: Variant to build.
        dependency_lock_hash: Hash of the dependency lock files.
        source_hash: Source tree content hash.

    Returns:
        BuildInputs for the outputs layer.
    """
    return BuildInputs(
        layer=CacheLayer.OUTPUTS.value,
        toolchain=toolchain_identity(matrix),
        dependency_lock_hash=dependency_lock_hash,
        variant_flags={
            "name": variant.name,
            "channel": variant.channel,
            "crypto_mode": variant.crypto_mode,
            "flags": variant.flag_dict(),
        },
        source_hash=source_hash,
        outputs=list(variant.outputs),
    )


def compute_cache_key(inputs: BuildInputs) -> str:
    """Compute a cache key hash from build inputs.

    The cache key is a SHA-256 hash of the canonical JSON representation
    of the inputs.

    Args:
        inputs: BuildInputs instance.

    Returns:
        Cache key as hex string (sha256:...).
    """
    canonical_json = json.dumps(
        inputs.to_dict(),
        sort_keys=True,
        separators=(",", ":"),
    )
    hash_bytes = hashlib.sha256(canonical_json.encode("utf-8")).hexdigest()
    return f"sha256:{hash_bytes}"


__all__ = [
    "CACHE_KEY_SCHEMA_VERSION",
    "HASH_CHUNK_SIZE",
    "BuildInputs",
    "CacheKeyError",
    "compute_cache_key",
    "compute_tree_hash",
    "create_layer_inputs",
    "create_variant_inputs",
    "hash_lockfiles",
    "toolchain_identity",
]
