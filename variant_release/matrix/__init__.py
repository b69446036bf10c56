"""Variant matrix module.

This module handles:
- Matrix file schema and loading (YAML/JSON)
- Expansion of channel x crypto-mode axes into variants
- Exclusion rules, overrides and variant selection
"""

from variant_release.matrix.resolver import (
    InvalidMatrixError,
    VariantSelectionError,
    VariantSpec,
    resolve_matrix,
    select_variants,
)
from variant_release.matrix.schema import MatrixSchema

__all__ = [
    "InvalidMatrixError",
    "MatrixSchema",
    "VariantSelectionError",
    "VariantSpec",
    "resolve_matrix",
    "select_variants",
]
