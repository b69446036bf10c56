"""Shared fixtures for variant_release tests."""

from collections.abc import Callable
from typing import Any

import pytest

from variant_release.matrix.schema import MatrixSchema


def _matrix_data(**overrides: Any) -> dict[str, Any]:
    data: dict[str, Any] = {
        "project": "wallet",
        "toolchain": {
            "command": ["gradle", "assemble", "-Pvariant={variant}"],
            "version": "8.7",
        },
        "channels": [
            {"name": "play", "flags": {"STORE": "google"}},
            {"name": "fdroid", "tags": ["foss"]},
        ],
        "crypto_modes": [
            {"name": "standard"},
            {"name": "fips", "required": False, "tags": ["certified"]},
        ],
        "outputs": ["{variant}.apk"],
    }
    data.update(overrides)
    return data


@pytest.fixture
def matrix_data() -> Callable[..., dict[str, Any]]:
    """Factory for minimal valid matrix data with top-level overrides."""
    return _matrix_data


@pytest.fixture
def make_matrix() -> Callable[..., MatrixSchema]:
    """Factory for validated matrices."""

    def factory(**overrides: Any) -> MatrixSchema:
        return MatrixSchema.model_validate(_matrix_data(**overrides))

    return factory
