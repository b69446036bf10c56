"""Matrix file loading.

This module loads variant matrix definitions from YAML or JSON files and
validates them with the schema. Every parse or validation failure is
reported as InvalidMatrixError.
"""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from variant_release.matrix.resolver import InvalidMatrixError
from variant_release.matrix.schema import MatrixSchema


def load_yaml(path: Path) -> dict[str, Any]:
    """Load a YAML file and return its contents as a dict.

    Args:
        path: Path to the YAML file.

    Returns:
        Parsed YAML content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        yaml.YAMLError: If the file is not valid YAML.
        ValueError: If the content is not a mapping.
    """
    with open(path, encoding="utf-8") as f:
        data = yaml.safe_load(f)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected a YAML mapping, got {type(data).__name__}")
    return data


def load_json(path: Path) -> dict[str, Any]:
    """Load a JSON file and return its contents as a dict.

    Args:
        path: Path to the JSON file.

    Returns:
        Parsed JSON content as a dictionary.

    Raises:
        FileNotFoundError: If the file does not exist.
        json.JSONDecodeError: If the file is not valid JSON.
        ValueError: If the content is not an object.
    """
    with open(path, encoding="utf-8") as f:
        data = json.load(f)
    if not isinstance(data, dict):
        raise ValueError(f"Expected a JSON object, got {type(data).__name__}")
    return data


def _format_validation_error(error: ValidationError) -> list[str]:
    details = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"]) or "(root)"
        details.append(f"{location}: {item['msg']}")
    return details


def parse_matrix_data(data: dict[str, Any]) -> MatrixSchema:
    """Validate matrix data against the schema.

    Args:
        data: Dictionary containing matrix data.

    Returns:
        Validated MatrixSchema instance.

    Raises:
        InvalidMatrixError: If data does not match the schema.
    """
    try:
        return MatrixSchema.model_validate(data)
    except ValidationError as e:
        details = _format_validation_error(e)
        raise InvalidMatrixError(
            f"Matrix validation failed: {'; '.join(details)}",
            details=details,
        ) from e


def load_matrix(path: Path) -> MatrixSchema:
    """Load and validate a matrix file, detecting format by extension.

    Args:
        path: Path to a .yaml, .yml or .json matrix file.

    Returns:
        Validated MatrixSchema instance.

    Raises:
        InvalidMatrixError: If the file is missing, unparseable or invalid.
    """
    suffix = path.suffix.lower()
    try:
        if suffix in (".yaml", ".yml"):
            data = load_yaml(path)
        elif suffix == ".json":
            data = load_json(path)
        else:
            raise InvalidMatrixError(
                f"Unsupported matrix file format: {suffix or '(none)'}",
                code="unsupported_format",
            )
    except FileNotFoundError as e:
        raise InvalidMatrixError(
            f"Matrix file not found: {path}", code="matrix_not_found"
        ) from e
    except (yaml.YAMLError, json.JSONDecodeError, ValueError) as e:
        raise InvalidMatrixError(f"Cannot parse matrix file {path}: {e}") from e

    return parse_matrix_data(data)


def resolve_source_dir(matrix: MatrixSchema, matrix_path: Path) -> Path:
    """Resolve the matrix source directory relative to the matrix file.

    Args:
        matrix: Loaded matrix.
        matrix_path: Location of the matrix file.

    Returns:
        Absolute source directory.
    """
    source = Path(matrix.source_dir)
    if not source.is_absolute():
        source = matrix_path.resolve().parent / source
    return source.resolve()


__all__ = [
    "load_json",
    "load_matrix",
    "load_yaml",
    "parse_matrix_data",
    "resolve_source_dir",
]
