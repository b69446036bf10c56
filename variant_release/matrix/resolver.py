"""Variant matrix resolution.

Expands the channel x crypto-mode matrix into an ordered list of
VariantSpec, applying exclusion rules and per-variant overrides.

Resolution is a pure function of the matrix: identical input always
yields the identical, sorted variant list.
"""

from __future__ import annotations

import fnmatch
import string
from collections.abc import Iterable, Sequence
from dataclasses import dataclass
from typing import Any

from variant_release.matrix.schema import (
    AxisValueSchema,
    ExclusionSchema,
    MatrixSchema,
)

OUTPUT_PLACEHOLDERS = frozenset({"variant", "channel", "crypto_mode"})
COMMAND_PLACEHOLDERS = OUTPUT_PLACEHOLDERS | {"output_dir"}
LAYER_PLACEHOLDERS = frozenset({"output_dir"})


class InvalidMatrixError(Exception):
    """Raised when a variant matrix is malformed."""

    def __init__(
        self,
        message: str,
        code: str = "invalid_matrix",
        details: list[str] | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.details = details or []


class VariantSelectionError(Exception):
    """Raised when a variant selector matches nothing."""

    def __init__(self, patterns: Sequence[str], code: str = "no_variants_selected") -> None:
        super().__init__(f"No variants match selector: {', '.join(patterns)}")
        self.patterns = list(patterns)
        self.code = code


@dataclass(frozen=True)
class VariantSpec:
    """One buildable product configuration.

    Attributes:
        name: Variant name (<channel>-<crypto_mode>).
        channel: Distribution channel.
        crypto_mode: Cryptography mode.
        required: Whether a release requires this variant.
        tags: Exclusion tags of the channel and crypto mode.
        flags: Sorted (name, value) build flags.
        outputs: Declared output filenames.
    """

    name: str
    channel: str
    crypto_mode: str
    required: bool
    tags: tuple[str, ...] = ()
    flags: tuple[tuple[str, str], ...] = ()
    outputs: tuple[str, ...] = ()

    @property
    def sort_key(self) -> tuple[str, str]:
        """Stable ordering key: channel, then crypto mode."""
        return (self.channel, self.crypto_mode)

    def flag_dict(self) -> dict[str, str]:
        """Return build flags as a dictionary."""
        return dict(self.flags)

    def placeholders(self) -> dict[str, str]:
        """Return template placeholder values for this variant."""
        return {
            "variant": self.name,
            "channel": self.channel,
            "crypto_mode": self.crypto_mode,
        }

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "name": self.name,
            "channel": self.channel,
            "crypto_mode": self.crypto_mode,
            "required": self.required,
            "tags": list(self.tags),
            "flags": self.flag_dict(),
            "outputs": list(self.outputs),
        }


def template_fields(template: str) -> set[str]:
    """Return the placeholder names used by a format template.

    Raises:
        ValueError: If the template has unbalanced braces.
    """
    return {
        field_name
        for _, field_name, _, _ in string.Formatter().parse(template)
        if field_name is not None
    }


def _check_unique(values: Iterable[AxisValueSchema], axis: str) -> dict[str, AxisValueSchema]:
    by_name: dict[str, AxisValueSchema] = {}
    for value in values:
        if value.name in by_name:
            raise InvalidMatrixError(f"Duplicate {axis} '{value.name}'")
        by_name[value.name] = value
    if not by_name:
        raise InvalidMatrixError(f"Matrix axis '{axis}' is empty")
    return by_name


def _check_templates(templates: Iterable[str], allowed: frozenset[str], what: str) -> None:
    for template in templates:
        try:
            fields = template_fields(template)
        except ValueError as e:
            raise InvalidMatrixError(f"Malformed {what} template '{template}': {e}") from e
        unknown = fields - allowed
        if unknown:
            raise InvalidMatrixError(
                f"Unknown placeholder(s) {sorted(unknown)} in {what} template '{template}'"
            )


def _check_exclusions(
    rules: Sequence[ExclusionSchema],
    channels: dict[str, AxisValueSchema],
    crypto_modes: dict[str, AxisValueSchema],
) -> None:
    known_tags = {t for v in (*channels.values(), *crypto_modes.values()) for t in v.tags}
    for rule in rules:
        if rule.channel is not None and rule.channel not in channels:
            raise InvalidMatrixError(
                f"Exclusion references undefined channel '{rule.channel}'"
            )
        if rule.crypto_mode is not None and rule.crypto_mode not in crypto_modes:
            raise InvalidMatrixError(
                f"Exclusion references undefined crypto mode '{rule.crypto_mode}'"
            )
        if rule.tag is not None and rule.tag not in known_tags:
            raise InvalidMatrixError(f"Exclusion references undefined tag '{rule.tag}'")


def is_excluded(
    rules: Sequence[ExclusionSchema],
    channel: AxisValueSchema,
    crypto_mode: AxisValueSchema,
) -> bool:
    """Check whether any exclusion rule matches a combination."""
    tags = set(channel.tags) | set(crypto_mode.tags)
    for rule in rules:
        if rule.channel is not None and rule.channel != channel.name:
            continue
        if rule.crypto_mode is not None and rule.crypto_mode != crypto_mode.name:
            continue
        if rule.tag is not None and rule.tag not in tags:
            continue
        return True
    return False


def render_outputs(templates: Sequence[str], placeholders: dict[str, str]) -> tuple[str, ...]:
    """Render output filename templates for one variant."""
    return tuple(t.format(**placeholders) for t in templates)


def resolve_matrix(matrix: MatrixSchema) -> list[VariantSpec]:
    """Expand a matrix into concrete variants.

    Args:
        matrix: Validated matrix schema.

    Returns:
        Variants sorted by (channel, crypto_mode).

    Raises:
        InvalidMatrixError: If the matrix is malformed or resolves to nothing.
    """
    channels = _check_unique(matrix.channels, "channels")
    crypto_modes = _check_unique(matrix.crypto_modes, "crypto_modes")
    _check_exclusions(matrix.exclude, channels, crypto_modes)
    _check_templates(matrix.outputs, OUTPUT_PLACEHOLDERS, "output")
    _check_templates(matrix.toolchain.command, COMMAND_PLACEHOLDERS, "command")
    _check_templates(matrix.toolchain.setup_command or [], LAYER_PLACEHOLDERS, "setup command")
    _check_templates(matrix.dependencies.command or [], LAYER_PLACEHOLDERS, "dependency command")

    overrides: dict[tuple[str, str], Any] = {}
    for override in matrix.overrides:
        if override.channel not in channels:
            raise InvalidMatrixError(
                f"Override references undefined channel '{override.channel}'"
            )
        if override.crypto_mode not in crypto_modes:
            raise InvalidMatrixError(
                f"Override references undefined crypto mode '{override.crypto_mode}'"
            )
        if is_excluded(
            matrix.exclude, channels[override.channel], crypto_modes[override.crypto_mode]
        ):
            raise InvalidMatrixError(
                f"Override targets excluded variant "
                f"'{override.channel}-{override.crypto_mode}'"
            )
        if override.outputs is not None:
            if not override.outputs:
                raise InvalidMatrixError("Override outputs must not be empty")
            _check_templates(override.outputs, OUTPUT_PLACEHOLDERS, "output")
        overrides[(override.channel, override.crypto_mode)] = override

    variants: list[VariantSpec] = []
    seen_names: set[str] = set()
    for channel_name in sorted(channels):
        channel = channels[channel_name]
        for mode_name in sorted(crypto_modes):
            crypto_mode = crypto_modes[mode_name]
            if is_excluded(matrix.exclude, channel, crypto_mode):
                continue

            name = f"{channel.name}-{crypto_mode.name}"
            if name in seen_names:
                raise InvalidMatrixError(f"Variant name collision: '{name}'")
            seen_names.add(name)

            override = overrides.get((channel.name, crypto_mode.name))
            required = channel.required and crypto_mode.required
            if override is not None and override.required is not None:
                required = override.required
            templates = matrix.outputs
            if override is not None and override.outputs is not None:
                templates = override.outputs

            placeholders = {
                "variant": name,
                "channel": channel.name,
                "crypto_mode": crypto_mode.name,
            }
            outputs = render_outputs(templates, placeholders)
            if len(set(outputs)) != len(outputs):
                raise InvalidMatrixError(f"Variant '{name}' declares duplicate outputs")
            for output in outputs:
                if not output or "/" in output or output in (".", ".."):
                    raise InvalidMatrixError(
                        f"Variant '{name}' declares invalid output filename '{output}'"
                    )

            flags = {**channel.flags, **crypto_mode.flags}
            variants.append(
                VariantSpec(
                    name=name,
                    channel=channel.name,
                    crypto_mode=crypto_mode.name,
                    required=required,
                    tags=tuple(sorted(set(channel.tags) | set(crypto_mode.tags))),
                    flags=tuple(sorted(flags.items())),
                    outputs=outputs,
                )
            )

    if not variants:
        raise InvalidMatrixError("Every matrix combination is excluded")

    return sorted(variants, key=lambda v: v.sort_key)


def select_variants(
    variants: Sequence[VariantSpec],
    patterns: Sequence[str] | None,
) -> list[VariantSpec]:
    """Filter variants by fnmatch patterns on their names.

    Args:
        variants: Resolved variants.
        patterns: Glob patterns; None or empty selects everything.

    Returns:
        Matching variants in their original order.

    Raises:
        VariantSelectionError: If no variant matches.
    """
    if not patterns:
        return list(variants)
    selected = [
        v for v in variants if any(fnmatch.fnmatchcase(v.name, p) for p in patterns)
    ]
    if not selected:
        raise VariantSelectionError(patterns)
    return selected


__all__ = [
    "COMMAND_PLACEHOLDERS",
    "LAYER_PLACEHOLDERS",
    "OUTPUT_PLACEHOLDERS",
    "InvalidMatrixError",
    "VariantSelectionError",
    "VariantSpec",
    "is_excluded",
    "render_outputs",
    "resolve_matrix",
    "select_variants",
    "template_fields",
]
