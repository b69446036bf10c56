"""Publication sinks.

A sink stores a release: the payload files, manifest.json and
SHA256SUMS, keyed by version tag. Sinks never overwrite a version; an
attempt to publish an existing version raises SinkConflictError
carrying the manifest already stored (when it can be read).

Available sinks:
- DirectorySink: local or mounted directory, atomic per version
- HttpSink: release server accepting PUT uploads
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from collections.abc import Mapping
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import httpx
from pydantic import ValidationError

from variant_release.releases.manifest import (
    CHECKSUMS_FILENAME,
    MANIFEST_FILENAME,
    ReleaseManifest,
    compute_file_digest,
    render_checksums,
)

if TYPE_CHECKING:
    from variant_release.config import Settings

logger = logging.getLogger(__name__)

# Timeout for release server requests (seconds)
HTTP_TIMEOUT = 300

CHECKSUM_HEADER = "X-Checksum-Sha256"


class SinkError(Exception):
    """Raised when a sink cannot store or read a release."""

    def __init__(self, message: str, code: str = "sink_error") -> None:
        super().__init__(message)
        self.code = code


class SinkConflictError(SinkError):
    """Raised when the sink already holds the version."""

    def __init__(self, version: str, existing: ReleaseManifest | None = None) -> None:
        super().__init__(f"Release {version} already exists in sink", code="sink_conflict")
        self.version = version
        self.existing = existing


class PublicationSink(Protocol):
    """Destination of published releases."""

    @property
    def name(self) -> str: ...

    def fetch_manifest(self, version: str) -> ReleaseManifest | None:
        """Return the stored manifest of a version, or None if absent."""
        ...

    def publish(self, manifest: ReleaseManifest, payloads: Mapping[str, Path]) -> None:
        """Store a release.

        Args:
            manifest: Manifest to publish (published_at set).
            payloads: Local file for each manifest entry path.

        Raises:
            SinkConflictError: If the version already exists.
            SinkError: If the release cannot be stored.
        """
        ...


def _payload_for(payloads: Mapping[str, Path], path: str) -> Path:
    try:
        return payloads[path]
    except KeyError:
        raise SinkError(f"No payload supplied for {path}", code="missing_payload") from None


class DirectorySink:
    """Publishes releases into <root>/<version>/.

    A release is assembled in <root>/.staging and renamed into place,
    so a version directory is either complete or absent.
    """

    def __init__(self, root: Path) -> None:
        self.root = root

    @property
    def name(self) -> str:
        return f"dir:{self.root}"

    def release_dir(self, version: str) -> Path:
        return self.root / version

    def fetch_manifest(self, version: str) -> ReleaseManifest | None:
        path = self.release_dir(version) / MANIFEST_FILENAME
        if not path.is_file():
            return None
        try:
            return ReleaseManifest.from_json(path.read_bytes())
        except (OSError, ValidationError) as e:
            raise SinkError(
                f"Cannot read published manifest {path}: {e}", code="corrupt_manifest"
            ) from e

    def publish(self, manifest: ReleaseManifest, payloads: Mapping[str, Path]) -> None:
        target = self.release_dir(manifest.version)
        if target.exists():
            raise SinkConflictError(manifest.version, self.fetch_manifest(manifest.version))

        staging_root = self.root / ".staging"
        staging_root.mkdir(parents=True, exist_ok=True)
        staged = Path(tempfile.mkdtemp(prefix=f"{manifest.version}_", dir=staging_root))
        try:
            for entry in manifest.entries:
                source = _payload_for(payloads, entry.path)
                dest = staged / entry.path
                dest.parent.mkdir(parents=True, exist_ok=True)
                try:
                    shutil.copy2(source, dest)
                except OSError as e:
                    raise SinkError(f"Cannot copy {source}: {e}", code="copy_failed") from e
                digest = compute_file_digest(dest)
                if digest != entry.sha256:
                    raise SinkError(
                        f"Digest mismatch for {entry.path}: manifest {entry.sha256[:16]}..., "
                        f"copied {digest[:16]}...",
                        code="digest_mismatch",
                    )

            (staged / MANIFEST_FILENAME).write_text(manifest.to_json(), encoding="utf-8")
            (staged / CHECKSUMS_FILENAME).write_text(render_checksums(manifest), encoding="utf-8")

            try:
                os.rename(staged, target)
            except OSError as e:
                if target.exists():
                    raise SinkConflictError(
                        manifest.version, self.fetch_manifest(manifest.version)
                    ) from e
                raise SinkError(f"Cannot move release into {target}: {e}") from e
        finally:
            if staged.exists():
                shutil.rmtree(staged, ignore_errors=True)

        logger.info("Published %s to %s", manifest.version, target)


class HttpSink:
    """Publishes releases to an HTTP release server.

    Protocol:
        GET  <base>/releases/<version>/manifest.json     404 = absent
        PUT  <base>/releases/<version>/files/<path>      with X-Checksum-Sha256
        PUT  <base>/releases/<version>/manifest.json     last
    HTTP 409 on any PUT means the version already exists.
    """

    def __init__(
        self,
        base_url: str,
        token: str | None = None,
        client: httpx.Client | None = None,
        timeout: float = HTTP_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.client = client or httpx.Client(follow_redirects=True)
        self.timeout = timeout

    @property
    def name(self) -> str:
        return self.base_url

    def _url(self, version: str, suffix: str) -> str:
        return f"{self.base_url}/releases/{version}/{suffix}"

    def _headers(self, extra: dict[str, str] | None = None) -> dict[str, str]:
        headers = dict(extra or {})
        if self.token:
            headers["Authorization"] = f"Bearer {self.token}"
        return headers

    def fetch_manifest(self, version: str) -> ReleaseManifest | None:
        url = self._url(version, MANIFEST_FILENAME)
        logger.debug("Fetching manifest from %s", url)
        try:
            response = self.client.get(url, headers=self._headers(), timeout=self.timeout)
            if response.status_code == 404:
                return None
            response.raise_for_status()
            return ReleaseManifest.from_json(response.content)
        except ValidationError as e:
            raise SinkError(
                f"Release server returned an invalid manifest for {version}: {e}",
                code="corrupt_manifest",
            ) from e
        except httpx.HTTPStatusError as e:
            raise SinkError(
                f"HTTP error fetching manifest: {e.response.status_code}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise SinkError(f"Timeout fetching manifest from {url}", code="timeout") from e
        except httpx.RequestError as e:
            raise SinkError(
                f"Network error fetching manifest from {url}: {e}", code="network_error"
            ) from e

    def _put(self, version: str, url: str, content: bytes, headers: dict[str, str]) -> None:
        try:
            response = self.client.put(
                url, content=content, headers=self._headers(headers), timeout=self.timeout
            )
            if response.status_code == 409:
                raise SinkConflictError(version, self.fetch_manifest(version))
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            raise SinkError(
                f"HTTP error uploading {url}: {e.response.status_code} "
                f"{e.response.reason_phrase}",
                code="http_error",
            ) from e
        except httpx.TimeoutException as e:
            raise SinkError(f"Timeout uploading {url}", code="timeout") from e
        except httpx.RequestError as e:
            raise SinkError(f"Network error uploading {url}: {e}", code="network_error") from e

    def publish(self, manifest: ReleaseManifest, payloads: Mapping[str, Path]) -> None:
        for entry in manifest.entries:
            source = _payload_for(payloads, entry.path)
            try:
                content = source.read_bytes()
            except OSError as e:
                raise SinkError(f"Cannot read {source}: {e}", code="copy_failed") from e
            self._put(
                manifest.version,
                self._url(manifest.version, f"files/{entry.path}"),
                content,
                {CHECKSUM_HEADER: entry.sha256, "Content-Type": "application/octet-stream"},
            )
            logger.debug("Uploaded %s", entry.path)

        self._put(
            manifest.version,
            self._url(manifest.version, MANIFEST_FILENAME),
            manifest.to_json().encode("utf-8"),
            {"Content-Type": "application/json"},
        )
        logger.info("Published %s to %s", manifest.version, self.base_url)


def create_sink(settings: Settings, client: httpx.Client | None = None) -> PublicationSink:
    """Create the sink configured in settings.

    Uses the HTTP release server when publish_url is set, otherwise the
    releases directory.
    """
    if settings.publish_url:
        token = settings.publish_token.get_secret_value() if settings.publish_token else None
        return HttpSink(settings.publish_url, token=token, client=client)
    return DirectorySink(settings.releases_dir)


__all__ = [
    "CHECKSUM_HEADER",
    "DirectorySink",
    "HttpSink",
    "PublicationSink",
    "SinkConflictError",
    "SinkError",
    "create_sink",
]
