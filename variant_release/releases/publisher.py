"""Release publication.

This module handles:
- The release barrier: every job must be terminal before publishing
- The required-variant gate: any failed required variant blocks release
- Manifest assembly in resolver order, with omitted optional variants
- Idempotent, single-writer publication per version tag

Publishing the same version twice with identical content is a no-op
that returns the stored manifest. Publishing different content under an
existing version is a conflict; a published manifest is never changed.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from sqlalchemy.orm import Session, sessionmaker

from variant_release.builds.scheduler import ScheduleResult
from variant_release.db import get_session
from variant_release.locks import file_lock
from variant_release.releases.manifest import (
    ManifestEntry,
    OmittedVariant,
    ReleaseManifest,
    validate_version,
)
from variant_release.releases.registry import (
    get_release_or_none,
    record_release,
    release_to_manifest,
)
from variant_release.releases.sinks import PublicationSink, SinkConflictError
from variant_release.types import JobState, PublishStatus, ReleaseStatus

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """Raised when a release cannot be published."""

    def __init__(self, message: str, code: str = "publish_error") -> None:
        super().__init__(message)
        self.code = code


class BarrierError(PublishError):
    """Raised when publishing before every job reached a terminal state."""

    def __init__(self, pending: list[str]) -> None:
        super().__init__(
            f"Jobs still running: {', '.join(pending)}", code="barrier_incomplete"
        )
        self.pending = pending


class ReleaseBlockedError(PublishError):
    """Raised when failed variants prevent a release."""

    def __init__(self, blocking_variants: list[str], message: str | None = None) -> None:
        super().__init__(
            message or f"Required variants failed: {', '.join(blocking_variants)}",
            code="release_blocked",
        )
        self.blocking_variants = blocking_variants


class VersionConflictError(PublishError):
    """Raised when a version is already published with different content."""

    def __init__(
        self,
        version: str,
        existing_fingerprint: str | None = None,
        new_fingerprint: str | None = None,
    ) -> None:
        super().__init__(
            f"Release {version} is already published with different content",
            code="version_conflict",
        )
        self.version = version
        self.existing_fingerprint = existing_fingerprint
        self.new_fingerprint = new_fingerprint


@dataclass
class PublishOutcome:
    """Result of a publish attempt."""

    status: PublishStatus
    manifest: ReleaseManifest

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "manifest": self.manifest.model_dump(mode="json"),
        }


def build_release_manifest(
    project: str, version: str, result: ScheduleResult
) -> ReleaseManifest:
    """Assemble the manifest of a finished build run.

    Args:
        project: Project name.
        version: Release version tag.
        result: Scheduler result with every job terminal.

    Returns:
        Unpublished manifest (published_at unset).

    Raises:
        InvalidVersionError: If the version tag is malformed.
        BarrierError: If a job is not terminal.
        ReleaseBlockedError: If a required variant failed or nothing succeeded.
        PublishError: If a succeeded job lacks manifest entries.
    """
    validate_version(version)

    pending = [j.variant.name for j in result.jobs if not j.state.is_terminal]
    if pending:
        raise BarrierError(pending)

    blocking = result.required_failures
    if blocking:
        raise ReleaseBlockedError(blocking)

    entries: list[ManifestEntry] = []
    omitted: list[OmittedVariant] = []
    for job in result.jobs:
        if job.state == JobState.SUCCEEDED:
            if not job.entries or len(job.entries) != len(job.artifacts):
                raise PublishError(
                    f"Job for {job.variant.name} has no matching manifest entries",
                    code="inconsistent_job",
                )
            entries.extend(job.entries)
        else:
            omitted.append(
                OmittedVariant(
                    variant=job.variant.name,
                    state=job.state.value,
                    error_type=job.error_type,
                    reason=job.error_message,
                )
            )

    if not entries:
        raise ReleaseBlockedError(
            [o.variant for o in omitted], message="No variant produced artifacts"
        )

    return ReleaseManifest(
        project=project,
        version=version,
        status=ReleaseStatus.PARTIAL if omitted else ReleaseStatus.COMPLETE,
        entries=entries,
        omitted=omitted,
    )


def collect_payloads(result: ScheduleResult) -> dict[str, Path]:
    """Map release paths of succeeded jobs' artifacts to local files."""
    return {
        artifact.release_path: artifact.path
        for job in result.jobs
        if job.state == JobState.SUCCEEDED
        for artifact in job.artifacts
    }


class ReleasePublisher:
    """Publishes release manifests to a sink and records them.

    Args:
        sink: Publication sink.
        session_factory: Registry session factory (None = no registry).
        lock_dir: Directory for per-version file locks (None = in-process only).
        lock_timeout: Maximum wait for the per-version lock, in seconds.
    """

    _guard = threading.Lock()
    # version -> (lock, number of publishers holding or waiting on it)
    _version_locks: dict[str, tuple[threading.Lock, int]] = {}

    def __init__(
        self,
        sink: PublicationSink,
        session_factory: sessionmaker[Session] | None = None,
        lock_dir: Path | None = None,
        lock_timeout: float | None = None,
    ) -> None:
        self.sink = sink
        self.session_factory = session_factory
        self.lock_dir = lock_dir
        self.lock_timeout = lock_timeout

    @classmethod
    def _checkout_lock(cls, version: str) -> threading.Lock:
        with cls._guard:
            lock, users = cls._version_locks.get(version, (None, 0))
            if lock is None:
                lock = threading.Lock()
            cls._version_locks[version] = (lock, users + 1)
            return lock

    @classmethod
    def _return_lock(cls, version: str) -> None:
        with cls._guard:
            lock, users = cls._version_locks[version]
            if users <= 1:
                del cls._version_locks[version]
            else:
                cls._version_locks[version] = (lock, users - 1)

    @contextmanager
    def _version_lock(self, version: str) -> Iterator[None]:
        lock = self._checkout_lock(version)
        try:
            timeout = -1 if self.lock_timeout is None else self.lock_timeout
            if not lock.acquire(timeout=timeout):
                raise PublishError(
                    f"Timed out waiting to publish {version}", code="publish_lock_timeout"
                )
            try:
                with ExitStack() as stack:
                    if self.lock_dir is not None:
                        try:
                            stack.enter_context(
                                file_lock(
                                    self.lock_dir,
                                    version,
                                    timeout=self.lock_timeout,
                                    prefix="release",
                                )
                            )
                        except TimeoutError as e:
                            raise PublishError(
                                f"Timed out waiting to publish {version}",
                                code="publish_lock_timeout",
                            ) from e
                    yield
            finally:
                lock.release()
        finally:
            self._return_lock(version)

    def _registered(self, version: str) -> ReleaseManifest | None:
        if self.session_factory is None:
            return None
        with get_session(self.session_factory) as session:
            record = get_release_or_none(session, version)
            return release_to_manifest(record) if record is not None else None

    def _record(self, manifest: ReleaseManifest) -> None:
        if self.session_factory is None:
            return
        with get_session(self.session_factory) as session:
            if get_release_or_none(session, manifest.version) is None:
                record_release(session, manifest, self.sink.name)

    def _resolve_existing(
        self, existing: ReleaseManifest, manifest: ReleaseManifest
    ) -> PublishOutcome:
        if existing.same_content(manifest):
            logger.info("Release %s already published with identical content", manifest.version)
            return PublishOutcome(status=PublishStatus.UNCHANGED, manifest=existing)
        logger.error(
            "Release %s already published with different content (%s != %s)",
            manifest.version,
            existing.content_fingerprint()[:23],
            manifest.content_fingerprint()[:23],
        )
        raise VersionConflictError(
            manifest.version,
            existing_fingerprint=existing.content_fingerprint(),
            new_fingerprint=manifest.content_fingerprint(),
        )

    def publish(self, project: str, version: str, result: ScheduleResult) -> PublishOutcome:
        """Publish the outcome of a build run as a release.

        Args:
            project: Project name.
            version: Release version tag.
            result: Scheduler result.

        Returns:
            PublishOutcome with PUBLISHED or UNCHANGED status.

        Raises:
            BarrierError: If a job is not terminal.
            ReleaseBlockedError: If a required variant failed.
            VersionConflictError: If the version exists with different content.
            SinkError: If the sink fails.
        """
        manifest = build_release_manifest(project, version, result)
        return self.publish_manifest(manifest, collect_payloads(result))

    def publish_manifest(
        self, manifest: ReleaseManifest, payloads: Mapping[str, Path]
    ) -> PublishOutcome:
        """Publish an assembled manifest and its payloads."""
        version = manifest.version
        with self._version_lock(version):
            existing = self._registered(version)
            if existing is not None:
                return self._resolve_existing(existing, manifest)

            existing = self.sink.fetch_manifest(version)
            if existing is not None:
                outcome = self._resolve_existing(existing, manifest)
                self._record(existing)
                return outcome

            published = manifest.model_copy(update={"published_at": datetime.now(timezone.utc)})
            try:
                self.sink.publish(published, payloads)
            except SinkConflictError as e:
                if e.existing is None:
                    raise VersionConflictError(
                        version, new_fingerprint=manifest.content_fingerprint()
                    ) from e
                outcome = self._resolve_existing(e.existing, manifest)
                self._record(e.existing)
                return outcome

            self._record(published)
            logger.info(
                "Published release %s (%s, %d artifacts)",
                version,
                published.status.value,
                len(published.entries),
            )
            return PublishOutcome(status=PublishStatus.PUBLISHED, manifest=published)


__all__ = [
    "BarrierError",
    "PublishError",
    "PublishOutcome",
    "ReleaseBlockedError",
    "ReleasePublisher",
    "VersionConflictError",
    "build_release_manifest",
    "collect_payloads",
]
