"""Release registry queries.

This module records published releases in the database and converts
stored rows back into release manifests. The registry is append-only:
record_release refuses to overwrite an existing version.
"""

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from variant_release.releases.manifest import ReleaseManifest
from variant_release.releases.models import ReleaseArtifact, ReleaseRecord


class ReleaseNotFoundError(Exception):
    """Raised when a release version is not in the registry."""

    def __init__(self, version: str) -> None:
        self.version = version
        self.code = "release_not_found"
        super().__init__(f"Release not found: {version}")


class ReleaseExistsError(Exception):
    """Raised when recording a version that is already registered."""

    def __init__(self, version: str) -> None:
        self.version = version
        self.code = "release_exists"
        super().__init__(f"Release already recorded: {version}")


def get_release(session: Session, version: str) -> ReleaseRecord:
    """Get a release by version.

    Args:
        session: SQLAlchemy session.
        version: Release version tag.

    Returns:
        ReleaseRecord ORM instance.

    Raises:
        ReleaseNotFoundError: If the version was never recorded.
    """
    release = get_release_or_none(session, version)
    if release is None:
        raise ReleaseNotFoundError(version)
    return release


def get_release_or_none(session: Session, version: str) -> ReleaseRecord | None:
    """Get a release by version, or None if not found."""
    stmt = select(ReleaseRecord).where(ReleaseRecord.version == version)
    return session.execute(stmt).scalar_one_or_none()


def list_releases(session: Session, project: str | None = None) -> Sequence[ReleaseRecord]:
    """List recorded releases, newest first.

    Args:
        session: SQLAlchemy session.
        project: Only list releases of this project.

    Returns:
        ReleaseRecord instances.
    """
    stmt = select(ReleaseRecord)
    if project is not None:
        stmt = stmt.where(ReleaseRecord.project == project)
    stmt = stmt.order_by(ReleaseRecord.recorded_at.desc(), ReleaseRecord.id.desc())
    return session.execute(stmt).scalars().all()


def record_release(session: Session, manifest: ReleaseManifest, sink: str) -> ReleaseRecord:
    """Insert a published release.

    Args:
        session: SQLAlchemy session.
        manifest: Published manifest.
        sink: Name of the sink the release was published to.

    Returns:
        Created ReleaseRecord.

    Raises:
        ReleaseExistsError: If the version is already recorded.
    """
    if get_release_or_none(session, manifest.version) is not None:
        raise ReleaseExistsError(manifest.version)

    published_at = manifest.published_at
    if published_at is not None and published_at.tzinfo is not None:
        # SQLite DateTime columns are naive; store UTC
        published_at = published_at.replace(tzinfo=None)

    record = ReleaseRecord(
        version=manifest.version,
        project=manifest.project,
        status=manifest.status.value,
        fingerprint=manifest.content_fingerprint(),
        manifest=manifest.model_dump(mode="json"),
        sink=sink,
        published_at=published_at,
    )
    record.artifacts = [
        ReleaseArtifact(
            position=position,
            variant=entry.variant,
            path=entry.path,
            sha256=entry.sha256,
            size_bytes=entry.size_bytes,
            signed=entry.signed,
            signing_key=entry.signing_key,
        )
        for position, entry in enumerate(manifest.entries)
    ]
    session.add(record)
    session.flush()
    return record


def release_to_manifest(release: ReleaseRecord) -> ReleaseManifest:
    """Convert a stored release back into its manifest."""
    return ReleaseManifest.model_validate(release.manifest)


__all__ = [
    "ReleaseExistsError",
    "ReleaseNotFoundError",
    "get_release",
    "get_release_or_none",
    "list_releases",
    "record_release",
    "release_to_manifest",
]
