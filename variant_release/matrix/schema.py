"""Pydantic models for variant matrix validation.

This module defines the declarative matrix file format: the channel and
crypto-mode axes, exclusion rules, per-variant overrides, declared outputs,
and how the toolchain is invoked and isolated.

Cross-field rules (undefined references, empty axes, collisions) are
checked by the resolver so they surface as InvalidMatrixError.
"""

import re
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

NAME_PATTERN = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9_.\-]*$")
FLAG_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

DEFAULT_SOURCE_EXCLUDE = [".git", "build", ".gradle"]


def _check_name(value: str, what: str) -> str:
    if not NAME_PATTERN.match(value):
        raise ValueError(
            f"{what} must contain only alphanumeric, underscore, dot, or hyphen "
            f"characters and start with an alphanumeric character, got '{value}'"
        )
    return value


class AxisValueSchema(BaseModel):
    """One value of a matrix axis (a channel or a crypto mode).

    Attributes:
        name: Value name, used in variant names.
        required: Whether variants using this value must succeed for a release.
        tags: Exclusion tags attached to this value.
        flags: Build flags exported to the toolchain.
    """

    model_config = ConfigDict(extra="forbid")

    name: str
    required: bool = True
    tags: list[str] = Field(default_factory=list)
    flags: dict[str, str] = Field(default_factory=dict)

    @field_validator("name")
    @classmethod
    def validate_name(cls, v: str) -> str:
        """Validate the value name format."""
        return _check_name(v, "name")

    @field_validator("tags")
    @classmethod
    def validate_tags(cls, v: list[str]) -> list[str]:
        """Validate tags are non-empty and unique."""
        cleaned = [t.strip() for t in v]
        if any(not t for t in cleaned):
            raise ValueError("tags must be non-empty strings")
        return sorted(set(cleaned))

    @field_validator("flags")
    @classmethod
    def validate_flags(cls, v: dict[str, str]) -> dict[str, str]:
        """Validate flag names are usable as environment variable suffixes."""
        for key in v:
            if not FLAG_NAME_PATTERN.match(key):
                raise ValueError(f"invalid flag name '{key}'")
        return v


class ExclusionSchema(BaseModel):
    """A rule removing combinations from the matrix.

    All given criteria must match for a combination to be excluded.
    """

    model_config = ConfigDict(extra="forbid")

    channel: str | None = None
    crypto_mode: str | None = None
    tag: str | None = None
    reason: str | None = None

    @model_validator(mode="after")
    def validate_has_criteria(self) -> "ExclusionSchema":
        """Require at least one matching criterion."""
        if self.channel is None and self.crypto_mode is None and self.tag is None:
            raise ValueError(
                "exclusion must specify at least one of channel, crypto_mode, tag"
            )
        return self


class VariantOverrideSchema(BaseModel):
    """Overrides for a single (channel, crypto_mode) combination."""

    model_config = ConfigDict(extra="forbid")

    channel: str
    crypto_mode: str
    required: bool | None = None
    outputs: list[str] | None = None


class ToolchainSchema(BaseModel):
    """How the application toolchain is invoked for each variant.

    Attributes:
        command: Argument list; supports {variant}, {channel},
            {crypto_mode} and {output_dir} placeholders.
        version: Toolchain identity, part of every cache key.
        setup_command: Optional command producing a cached toolchain layer.
        env: Extra environment variables for every toolchain command.
    """

    model_config = ConfigDict(extra="forbid")

    command: list[str] = Field(min_length=1)
    version: str = Field(min_length=1)
    setup_command: list[str] | None = None
    env: dict[str, str] = Field(default_factory=dict)


class DependenciesSchema(BaseModel):
    """Dependency lock files and the shared dependency resolution step."""

    model_config = ConfigDict(extra="forbid")

    lockfiles: list[str] = Field(default_factory=list)
    command: list[str] | None = None


class IsolationSchema(BaseModel):
    """Per-job isolation settings.

    Attributes:
        runtime: Container runtime, or "none" to run on the host.
        image: Container image (required with a container runtime).
        extra_args: Extra arguments for the runtime's run command.
        copy_source: Copy the source tree into each job workspace.
    """

    model_config = ConfigDict(extra="forbid")

    runtime: Literal["none", "docker", "podman"] = "none"
    image: str | None = None
    extra_args: list[str] = Field(default_factory=list)
    copy_source: bool = True

    @model_validator(mode="after")
    def validate_image(self) -> "IsolationSchema":
        """Require an image when a container runtime is used."""
        if self.runtime != "none" and not self.image:
            raise ValueError(f"isolation.image is required for runtime '{self.runtime}'")
        return self


class MatrixSchema(BaseModel):
    """Complete variant matrix definition."""

    model_config = ConfigDict(extra="forbid")

    project: str
    source_dir: str = "."
    source_exclude: list[str] = Field(
        default_factory=lambda: list(DEFAULT_SOURCE_EXCLUDE)
    )
    toolchain: ToolchainSchema
    dependencies: DependenciesSchema = Field(default_factory=DependenciesSchema)
    isolation: IsolationSchema = Field(default_factory=IsolationSchema)
    channels: list[AxisValueSchema] = Field(default_factory=list)
    crypto_modes: list[AxisValueSchema] = Field(default_factory=list)
    exclude: list[ExclusionSchema] = Field(default_factory=list)
    overrides: list[VariantOverrideSchema] = Field(default_factory=list)
    outputs: list[str] = Field(min_length=1)

    @field_validator("project")
    @classmethod
    def validate_project(cls, v: str) -> str:
        """Validate the project name format."""
        return _check_name(v, "project")


__all__ = [
    "DEFAULT_SOURCE_EXCLUDE",
    "NAME_PATTERN",
    "AxisValueSchema",
    "DependenciesSchema",
    "ExclusionSchema",
    "IsolationSchema",
    "MatrixSchema",
    "ToolchainSchema",
    "VariantOverrideSchema",
]
