"""Artifact signing module.

This module handles:
- Loading signing credentials from settings (PEM or PKCS#12)
- Signing build outputs and reporting a truthful signing status
- Verifying signed payloads
"""

from variant_release.signing.credentials import (
    CredentialError,
    SigningCredential,
    SigningError,
)
from variant_release.signing.signer import ArtifactSigner, verify_signed_payload

__all__ = [
    "ArtifactSigner",
    "CredentialError",
    "SigningCredential",
    "SigningError",
    "verify_signed_payload",
]
