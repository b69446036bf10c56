"""Tests for releases/registry.py module."""

from datetime import datetime, timezone

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from variant_release.db import Base, create_all_tables
from variant_release.releases.manifest import ManifestEntry, OmittedVariant, ReleaseManifest
from variant_release.releases.registry import (
    ReleaseExistsError,
    ReleaseNotFoundError,
    get_release,
    get_release_or_none,
    list_releases,
    record_release,
    release_to_manifest,
)
from variant_release.types import ReleaseStatus


@pytest.fixture
def engine():
    """Create an in-memory SQLite engine."""
    engine = create_engine("sqlite:///:memory:")
    create_all_tables(engine)
    yield engine
    Base.metadata.drop_all(engine)


@pytest.fixture
def session(engine):
    """Create a session for testing."""
    factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
    session = factory()
    yield session
    session.close()


def _manifest(version: str = "1.0.0", project: str = "wallet", **kwargs) -> ReleaseManifest:
    entries = [
        ManifestEntry(
            variant="play-standard",
            filename="play-standard.apk",
            path="play-standard/play-standard.apk",
            sha256="a" * 64,
            size_bytes=42,
            signed=True,
            signing_key="sha256:" + "f" * 64,
            signing_alias="release",
        ),
        ManifestEntry(
            variant="fdroid-standard",
            filename="fdroid-standard.apk",
            path="fdroid-standard/fdroid-standard.apk",
            sha256="b" * 64,
            size_bytes=43,
        ),
    ]
    return ReleaseManifest(
        project=project,
        version=version,
        status=kwargs.pop("status", ReleaseStatus.COMPLETE),
        entries=entries,
        published_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
        **kwargs,
    )


class TestRecordRelease:
    """Tests for record_release."""

    def test_record(self, session) -> None:
        """A release row and one artifact row per entry are stored."""
        manifest = _manifest()

        record = record_release(session, manifest, "dir:/srv/releases")
        session.commit()

        assert record.id is not None
        assert record.version == "1.0.0"
        assert record.status == "complete"
        assert record.fingerprint == manifest.content_fingerprint()
        assert record.sink == "dir:/srv/releases"
        assert record.published_at == datetime(2024, 5, 1, 12, 0)
        assert [a.path for a in record.artifacts] == [e.path for e in manifest.entries]
        assert record.artifacts[0].signed is True
        assert record.artifacts[1].signing_key is None

    def test_duplicate_version(self, session) -> None:
        """A version is recorded at most once."""
        record_release(session, _manifest(), "sink")
        with pytest.raises(ReleaseExistsError) as exc_info:
            record_release(session, _manifest(), "sink")
        assert exc_info.value.code == "release_exists"

    def test_manifest_round_trip(self, session) -> None:
        """Stored releases convert back to an identical manifest."""
        manifest = _manifest(
            status=ReleaseStatus.PARTIAL,
            omitted=[OmittedVariant(variant="play-fips", state="failed", reason="exit 1")],
        )
        record_release(session, manifest, "sink")
        session.commit()

        restored = release_to_manifest(get_release(session, "1.0.0"))

        assert restored == manifest


class TestQueries:
    """Tests for get and list queries."""

    def test_get_missing(self, session) -> None:
        """Unknown versions raise ReleaseNotFoundError."""
        assert get_release_or_none(session, "9.9.9") is None
        with pytest.raises(ReleaseNotFoundError) as exc_info:
            get_release(session, "9.9.9")
        assert exc_info.value.code == "release_not_found"

    def test_list_newest_first(self, session) -> None:
        """Releases are listed newest first."""
        for version in ("1.0.0", "1.1.0", "1.2.0"):
            record_release(session, _manifest(version), "sink")
        session.commit()

        assert [r.version for r in list_releases(session)] == ["1.2.0", "1.1.0", "1.0.0"]

    def test_list_by_project(self, session) -> None:
        """Releases can be filtered by project."""
        record_release(session, _manifest("1.0.0", project="wallet"), "sink")
        record_release(session, _manifest("2.0.0", project="other"), "sink")
        session.commit()

        assert [r.version for r in list_releases(session, project="other")] == ["2.0.0"]
