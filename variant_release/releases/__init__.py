"""Release module.

This module handles:
- Checksums and release manifests
- Publication sinks (directory, HTTP release server)
- The release registry (published versions in the database)
- Idempotent release publication
"""

from variant_release.releases.manifest import ManifestEntry, ReleaseManifest
from variant_release.releases.models import ReleaseArtifact, ReleaseRecord

__all__ = ["ManifestEntry", "ReleaseArtifact", "ReleaseManifest", "ReleaseRecord"]

# Access submodules via variant_release.releases.publisher,
# variant_release.releases.sinks, etc.
