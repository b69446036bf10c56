"""Pre-flight environment verification.

Checks that a build or release can start: the toolchain and container
runtime are available, declared inputs exist, working directories are
writable with enough free space, the signing credential loads and the
release registry is reachable. Each check reports instead of raising,
so every problem is listed at once.
"""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError

from variant_release.config import Settings
from variant_release.db import get_engine
from variant_release.matrix.schema import MatrixSchema
from variant_release.signing.credentials import SigningCredential, SigningError

logger = logging.getLogger(__name__)

MIN_DISK_SPACE_BYTES = 1_073_741_824  # 1 GB


@dataclass(frozen=True)
class EnvironmentCheck:
    """Result of a single environment check."""

    name: str
    passed: bool
    message: str
    value: str = ""

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def check_toolchain(matrix: MatrixSchema, source_dir: Path) -> EnvironmentCheck:
    """Check the toolchain executable can be found."""
    program = matrix.toolchain.command[0]
    if matrix.isolation.runtime != "none":
        return EnvironmentCheck(
            name="toolchain",
            passed=True,
            message=f"{program} runs inside image {matrix.isolation.image}",
            value="container",
        )

    found = shutil.which(program)
    if found is None and ("/" in program or os.sep in program):
        candidate = Path(program) if Path(program).is_absolute() else source_dir / program
        if candidate.is_file():
            found = str(candidate)
    if found is None:
        return EnvironmentCheck(
            name="toolchain",
            passed=False,
            message=f"Toolchain executable not found: {program}",
            value="missing",
        )
    return EnvironmentCheck(
        name="toolchain",
        passed=True,
        message=f"Toolchain {matrix.toolchain.version} at {found}",
        value=found,
    )


def check_container_runtime(matrix: MatrixSchema) -> EnvironmentCheck:
    """Check the container runtime used for isolation is installed."""
    runtime = matrix.isolation.runtime
    if runtime == "none":
        return EnvironmentCheck(
            name="container_runtime",
            passed=True,
            message="Builds run on the host",
            value="none",
        )
    found = shutil.which(runtime)
    if found is None:
        return EnvironmentCheck(
            name="container_runtime",
            passed=False,
            message=f"Container runtime not found: {runtime}",
            value="missing",
        )
    return EnvironmentCheck(
        name="container_runtime", passed=True, message=f"{runtime} at {found}", value=found
    )


def check_source_dir(source_dir: Path) -> EnvironmentCheck:
    """Check the source tree exists."""
    passed = source_dir.is_dir()
    return EnvironmentCheck(
        name="source_dir",
        passed=passed,
        message=f"Source tree {'found' if passed else 'missing'}: {source_dir}",
        value=str(source_dir),
    )


def check_lockfiles(matrix: MatrixSchema, source_dir: Path) -> EnvironmentCheck:
    """Check every declared dependency lock file exists."""
    missing = [name for name in matrix.dependencies.lockfiles if not (source_dir / name).is_file()]
    if missing:
        return EnvironmentCheck(
            name="lockfiles",
            passed=False,
            message=f"Missing dependency lock files: {', '.join(missing)}",
            value=",".join(missing),
        )
    count = len(matrix.dependencies.lockfiles)
    return EnvironmentCheck(
        name="lockfiles", passed=True, message=f"{count} lock file(s) present", value=str(count)
    )


def check_writable(name: str, path: Path) -> EnvironmentCheck:
    """Check a directory can be created and written to."""
    try:
        path.mkdir(parents=True, exist_ok=True)
        with tempfile.NamedTemporaryFile(dir=path, prefix=".write_test_"):
            pass
    except OSError as err:
        return EnvironmentCheck(
            name=name, passed=False, message=f"{path} is not writable: {err}", value=str(path)
        )
    return EnvironmentCheck(name=name, passed=True, message=f"{path} is writable", value=str(path))


def check_disk_space(path: Path, minimum: int = MIN_DISK_SPACE_BYTES) -> EnvironmentCheck:
    """Check available disk space at a path."""
    check_path = path
    while not check_path.exists() and check_path != check_path.parent:
        check_path = check_path.parent
    try:
        usage = shutil.disk_usage(str(check_path))
    except OSError as err:
        return EnvironmentCheck(
            name="disk_space", passed=False, message=f"Cannot check disk space: {err}", value="error"
        )
    free_gb = usage.free / (1024**3)
    passed = usage.free >= minimum
    if passed:
        msg = f"{free_gb:.1f} GB free (minimum {minimum / (1024**3):.1f} GB)"
    else:
        msg = f"Only {free_gb:.1f} GB free, need at least {minimum / (1024**3):.1f} GB"
    return EnvironmentCheck(name="disk_space", passed=passed, message=msg, value=f"{free_gb:.1f}GB")


def check_signing(settings: Settings) -> EnvironmentCheck:
    """Check the signing credential (if configured) loads."""
    try:
        credential = SigningCredential.from_settings(settings)
        if credential is None:
            return EnvironmentCheck(
                name="signing",
                passed=True,
                message="Signing not configured; artifacts will be unsigned",
                value="disabled",
            )
        credential.load_private_key()
    except SigningError as err:
        return EnvironmentCheck(name="signing", passed=False, message=str(err), value=err.code)
    return EnvironmentCheck(
        name="signing",
        passed=True,
        message=f"Signing key '{credential.alias}' loads",
        value=credential.alias,
    )


def check_database(settings: Settings) -> EnvironmentCheck:
    """Check the release registry database is reachable."""
    try:
        engine = get_engine(settings.db_url)
        try:
            with engine.connect() as connection:
                connection.execute(text("SELECT 1"))
        finally:
            engine.dispose()
    except (SQLAlchemyError, OSError) as err:
        return EnvironmentCheck(
            name="database", passed=False, message=f"Cannot connect: {err}", value="error"
        )
    return EnvironmentCheck(name="database", passed=True, message="Registry reachable", value="ok")


def run_environment_checks(
    settings: Settings,
    matrix: MatrixSchema | None = None,
    source_dir: Path | None = None,
) -> list[EnvironmentCheck]:
    """Run every pre-flight check.

    Args:
        settings: Application settings.
        matrix: Matrix to check toolchain and inputs for (optional).
        source_dir: Resolved source directory of the matrix.

    Returns:
        Check results in a stable order.
    """
    checks: list[EnvironmentCheck] = []
    if matrix is not None:
        source = source_dir or Path.cwd()
        checks.append(check_source_dir(source))
        checks.append(check_toolchain(matrix, source))
        checks.append(check_container_runtime(matrix))
        checks.append(check_lockfiles(matrix, source))
    checks.append(check_writable("cache_dir", settings.cache_dir))
    checks.append(check_writable("work_dir", settings.work_dir))
    if not settings.publish_url:
        checks.append(check_writable("releases_dir", settings.releases_dir))
    checks.append(check_disk_space(settings.cache_dir))
    checks.append(check_signing(settings))
    checks.append(check_database(settings))

    for check in checks:
        if not check.passed:
            logger.warning("Environment check %s failed: %s", check.name, check.message)
    return checks


def all_passed(checks: list[EnvironmentCheck]) -> bool:
    return all(check.passed for check in checks)


__all__ = [
    "MIN_DISK_SPACE_BYTES",
    "EnvironmentCheck",
    "all_passed",
    "check_container_runtime",
    "check_database",
    "check_disk_space",
    "check_lockfiles",
    "check_signing",
    "check_source_dir",
    "check_toolchain",
    "check_writable",
    "run_environment_checks",
]
