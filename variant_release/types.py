"""Shared type definitions for variant_release.

This module contains enums and dataclasses shared across subpackages
to avoid circular imports.
"""

from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path


class JobState(str, Enum):
    """State of a build job."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    TIMED_OUT = "timed_out"

    @property
    def is_terminal(self) -> bool:
        """Whether no further transition is possible from this state."""
        return self in TERMINAL_JOB_STATES


TERMINAL_JOB_STATES = frozenset(
    {JobState.SUCCEEDED, JobState.FAILED, JobState.TIMED_OUT}
)


class AggregateStatus(str, Enum):
    """Aggregate outcome of a scheduled set of jobs."""

    ALL_SUCCEEDED = "all_succeeded"
    PARTIAL_FAILURE = "partial_failure"
    TOTAL_FAILURE = "total_failure"


class ReleaseStatus(str, Enum):
    """Completeness of a release manifest."""

    COMPLETE = "complete"
    PARTIAL = "partial"


class PublishStatus(str, Enum):
    """Outcome of a publish attempt."""

    PUBLISHED = "published"
    UNCHANGED = "unchanged"
    BLOCKED = "blocked"
    CONFLICT = "conflict"


class CacheLayer(str, Enum):
    """Cacheable build layers sharing one key abstraction."""

    TOOLCHAIN = "toolchain"
    DEPENDENCIES = "dependencies"
    OUTPUTS = "outputs"


@dataclass(frozen=True)
class Unsigned:
    """Signing status of an artifact that was not signed."""

    @property
    def signed(self) -> bool:
        return False


@dataclass(frozen=True)
class Signed:
    """Signing status of an artifact signed with a known key.

    Attributes:
        key_fingerprint: sha256 fingerprint of the signing public key.
        key_alias: Alias of the credential used.
        algorithm: Signature algorithm name.
    """

    key_fingerprint: str
    key_alias: str
    algorithm: str

    @property
    def signed(self) -> bool:
        return True


Signature = Unsigned | Signed


@dataclass(frozen=True)
class Artifact:
    """A build output file belonging to one variant.

    Attributes:
        variant: Name of the variant that produced the file.
        filename: Output filename.
        path: Location of the payload on disk.
        signature: Unsigned or Signed status.
    """

    variant: str
    filename: str
    path: Path
    signature: Signature = Unsigned()

    @property
    def signed(self) -> bool:
        """Whether the payload carries a signature."""
        return self.signature.signed

    @property
    def release_path(self) -> str:
        """Path of the artifact inside a published release."""
        return f"{self.variant}/{self.filename}"

    def with_signature(self, signature: Signature) -> "Artifact":
        """Return a copy with a different signing status."""
        return replace(self, signature=signature)


__all__ = [
    "TERMINAL_JOB_STATES",
    "AggregateStatus",
    "Artifact",
    "CacheLayer",
    "JobState",
    "PublishStatus",
    "ReleaseStatus",
    "Signature",
    "Signed",
    "Unsigned",
]
