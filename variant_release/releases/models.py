"""Release registry ORM models.

This module defines the ReleaseRecord and ReleaseArtifact models that
record every published release. Rows are only ever inserted; a
published version is never updated or deleted.
"""

from datetime import datetime

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from variant_release.db import Base


class ReleaseRecord(Base):
    """ORM model for a published release.

    Attributes:
        id: Primary key.
        version: Release version tag (unique).
        project: Project name.
        status: Release status (complete, partial).
        fingerprint: Content fingerprint of the manifest.
        manifest: Full manifest as published.
        sink: Name of the publication sink.
        published_at: Publication time.
        recorded_at: Time the row was inserted.
    """

    __tablename__ = "releases"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    version: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    project: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    fingerprint: Mapped[str] = mapped_column(String(80), nullable=False)
    manifest: Mapped[dict[str, object]] = mapped_column(JSON, nullable=False)
    sink: Mapped[str] = mapped_column(String(500), nullable=False)
    published_at: Mapped[datetime | None] = mapped_column(DateTime, nullable=True)
    recorded_at: Mapped[datetime] = mapped_column(
        DateTime, nullable=False, server_default=func.now()
    )

    artifacts: Mapped[list["ReleaseArtifact"]] = relationship(
        "ReleaseArtifact",
        back_populates="release",
        cascade="all, delete-orphan",
        order_by="ReleaseArtifact.position",
    )

    def __repr__(self) -> str:
        """Return string representation of ReleaseRecord."""
        return (
            f"<ReleaseRecord(id={self.id}, version='{self.version}', "
            f"status='{self.status}')>"
        )


class ReleaseArtifact(Base):
    """ORM model for one artifact of a published release.

    Attributes:
        id: Primary key.
        release_id: Foreign key to ReleaseRecord.
        position: Order within the manifest.
        variant: Variant name.
        path: Path inside the release.
        sha256: Payload digest.
        size_bytes: Payload size.
        signed: Whether the payload is signed.
        signing_key: Signing key fingerprint.
    """

    __tablename__ = "release_artifacts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    release_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("releases.id"), nullable=False, index=True
    )
    position: Mapped[int] = mapped_column(Integer, nullable=False)
    variant: Mapped[str] = mapped_column(String(255), nullable=False, index=True)
    path: Mapped[str] = mapped_column(String(500), nullable=False)
    sha256: Mapped[str] = mapped_column(String(64), nullable=False)
    size_bytes: Mapped[int] = mapped_column(BigInteger, nullable=False)
    signed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    signing_key: Mapped[str | None] = mapped_column(String(80), nullable=True)

    release: Mapped[ReleaseRecord] = relationship("ReleaseRecord", back_populates="artifacts")

    def __repr__(self) -> str:
        """Return string representation of ReleaseArtifact."""
        return f"<ReleaseArtifact(id={self.id}, path='{self.path}')>"


__all__ = ["ReleaseArtifact", "ReleaseRecord"]
