"""Variant Release - build-variant orchestrator and release pipeline.

This package expands a channel x crypto-mode variant matrix into isolated
parallel builds, caches build layers by content, optionally signs the
outputs, and publishes checksummed, idempotent release manifests.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]
