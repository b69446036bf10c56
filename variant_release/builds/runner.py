"""Toolchain runner for executing variant builds.

This module handles:
- Rendering the toolchain command and environment for a variant
- Wrapping commands in a container runtime for isolation
- Executing builds with subprocess, capturing output to log files
- Enforcing per-job deadlines with terminate/kill escalation
- Checking that declared outputs were produced
"""

from __future__ import annotations

import logging
import os
import shlex
import signal
import subprocess
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path

from variant_release.matrix.resolver import VariantSpec
from variant_release.matrix.schema import IsolationSchema, MatrixSchema

logger = logging.getLogger(__name__)

# Mount points inside build containers
CONTAINER_WORKSPACE = "/workspace"
CONTAINER_OUTPUT = "/output"
CONTAINER_CACHE_ROOT = "/cache"


class ToolchainError(Exception):
    """Raised when toolchain execution fails."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        code: str = "toolchain_error",
        log_path: Path | None = None,
    ) -> None:
        super().__init__(message)
        self.exit_code = exit_code
        self.code = code
        self.log_path = log_path


class ToolchainTimeoutError(ToolchainError, TimeoutError):
    """Raised when a toolchain command exceeds its deadline."""


class BuildFailure(ToolchainError):
    """Raised when a build exits non-zero or misses declared outputs."""


@dataclass
class ToolchainResult:
    """Result of a toolchain execution.

    Attributes:
        success: Whether the build exited zero with all outputs present.
        exit_code: Process exit code.
        output_dir: Directory the toolchain wrote outputs into.
        log_path: Path to the build log file.
        started_at: Build start time.
        finished_at: Build finish time.
        command: The command that was executed.
        outputs: Paths of the declared outputs that were found.
        missing_outputs: Declared outputs that were not produced.
        error_message: Error message if the build failed.
    """

    success: bool
    exit_code: int
    output_dir: Path
    log_path: Path
    started_at: datetime
    finished_at: datetime
    command: str
    outputs: list[Path] = field(default_factory=list)
    missing_outputs: list[str] = field(default_factory=list)
    error_message: str | None = None


def render_command(template: list[str], placeholders: dict[str, str]) -> list[str]:
    """Fill {placeholder} fields of a command template.

    Literal braces are written as {{ and }}.
    """
    return [arg.format(**placeholders) for arg in template]


def compose_environment(
    variant: VariantSpec | None,
    output_dir: str,
    layer_dirs: dict[str, str] | None = None,
    extra: dict[str, str] | None = None,
) -> dict[str, str]:
    """Compose the variables exported to a toolchain command.

    Args:
        variant: Variant being built (None for shared layer commands).
        output_dir: Output directory as seen by the command.
        layer_dirs: Cached layer directories as seen by the command.
        extra: Toolchain-level environment variables.

    Returns:
        Environment variables (without the host environment).
    """
    env: dict[str, str] = dict(extra or {})
    env["VARIANT_OUTPUT_DIR"] = output_dir
    if variant is not None:
        env["VARIANT_NAME"] = variant.name
        env["VARIANT_CHANNEL"] = variant.channel
        env["VARIANT_CRYPTO_MODE"] = variant.crypto_mode
        env["VARIANT_REQUIRED"] = "1" if variant.required else "0"
        for name, value in variant.flags:
            env[f"VARIANT_FLAG_{name.upper()}"] = value
    for layer, path in sorted((layer_dirs or {}).items()):
        env[f"{layer.upper()}_CACHE_DIR"] = path
    return env


def container_name(job_id: str) -> str:
    """Return the container name used for a job."""
    return f"varrel-{job_id}"


def wrap_isolated(
    cmd: list[str],
    isolation: IsolationSchema,
    workspace: Path,
    env: dict[str, str],
    name: str,
    output_dir: Path | None = None,
    layer_dirs: dict[str, Path] | None = None,
) -> list[str]:
    """Wrap a command to run inside a container.

    Args:
        cmd: Command to run inside the container.
        isolation: Isolation settings (runtime must not be "none").
        workspace: Host directory mounted as the working directory.
        env: Variables passed into the container.
        name: Container name, used to stop it on timeout.
        output_dir: Host output directory mounted at /output.
        layer_dirs: Host cache layer directories mounted read-only.

    Returns:
        Runtime command line.
    """
    wrapped = [
        isolation.runtime,
        "run",
        "--rm",
        "--name",
        name,
        "-v",
        f"{workspace}:{CONTAINER_WORKSPACE}",
        "-w",
        CONTAINER_WORKSPACE,
    ]
    if output_dir is not None:
        wrapped += ["-v", f"{output_dir}:{CONTAINER_OUTPUT}"]
    for layer, path in sorted((layer_dirs or {}).items()):
        wrapped += ["-v", f"{path}:{CONTAINER_CACHE_ROOT}/{layer}:ro"]
    for key, value in sorted(env.items()):
        wrapped += ["-e", f"{key}={value}"]
    wrapped += list(isolation.extra_args)
    wrapped.append(isolation.image or "")
    wrapped += cmd
    return wrapped


def stop_command(isolation: IsolationSchema, name: str, grace: int) -> list[str] | None:
    """Return the command stopping a job's container, if isolated."""
    if isolation.runtime == "none":
        return None
    return [isolation.runtime, "stop", "-t", str(grace), name]


def _signal_group(proc: subprocess.Popen[bytes], sig: int) -> None:
    try:
        os.killpg(proc.pid, sig)
    except ProcessLookupError:
        pass
    except OSError as e:
        logger.warning("Could not signal process group %d: %s", proc.pid, e)


def terminate_process(
    proc: subprocess.Popen[bytes],
    grace: float,
    stop_cmd: list[str] | None = None,
) -> bool:
    """Ask a timed-out toolchain process to stop.

    Stops the container (if any), sends SIGTERM to the process group,
    waits up to the grace period, then sends SIGKILL. Never waits longer
    than twice the grace period in total.

    Args:
        proc: Running process (started in its own session).
        grace: Seconds to wait after each escalation step.
        stop_cmd: Optional container stop command.

    Returns:
        True if the process exited.
    """
    if stop_cmd:
        try:
            subprocess.run(
                stop_cmd,
                capture_output=True,
                timeout=grace + 5,
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning("Container stop failed (%s): %s", shlex.join(stop_cmd), e)

    _signal_group(proc, signal.SIGTERM)
    try:
        proc.wait(timeout=grace)
        return True
    except subprocess.TimeoutExpired:
        logger.warning("Process %d ignored SIGTERM, killing", proc.pid)

    _signal_group(proc, signal.SIGKILL)
    try:
        proc.wait(timeout=grace)
        return True
    except subprocess.TimeoutExpired:
        logger.error("Process %d did not exit after SIGKILL", proc.pid)
        return False


def run_toolchain(
    cmd: list[str],
    cwd: Path,
    log_path: Path,
    env: dict[str, str] | None = None,
    timeout: float | None = None,
    grace: float = 30,
    stop_cmd: list[str] | None = None,
) -> tuple[int, datetime, datetime]:
    """Run a toolchain command with output captured to a log file.

    Args:
        cmd: Command to execute.
        cwd: Working directory.
        log_path: Log file (appended to).
        env: Variables added to the host environment.
        timeout: Deadline in seconds (None = no deadline).
        grace: Termination grace period in seconds.
        stop_cmd: Optional container stop command used on timeout.

    Returns:
        Tuple of (exit_code, started_at, finished_at).

    Raises:
        ToolchainTimeoutError: If the deadline passes.
        ToolchainError: If the command cannot be started.
    """
    cmd_str = shlex.join(cmd)
    logger.info("Executing toolchain: %s", cmd_str)
    logger.debug("Working directory: %s", cwd)

    if timeout is not None and timeout <= 0:
        raise ToolchainTimeoutError(
            "Job deadline passed before the toolchain started",
            exit_code=None,
            code="toolchain_timeout",
            log_path=log_path,
        )

    full_env = dict(os.environ)
    if env:
        full_env.update(env)

    log_path.parent.mkdir(parents=True, exist_ok=True)
    started_at = datetime.now(timezone.utc)

    with log_path.open("a") as log_file:
        log_file.write(f"# Command: {cmd_str}\n")
        log_file.write(f"# Started: {started_at.isoformat()}\n")
        log_file.write(f"# CWD: {cwd}\n")
        log_file.write("# " + "=" * 70 + "\n\n")
        log_file.flush()

        try:
            proc = subprocess.Popen(
                cmd,
                cwd=cwd,
                stdout=log_file,
                stderr=subprocess.STDOUT,
                env=full_env,
                start_new_session=True,
            )
        except OSError as e:
            message = f"Failed to execute toolchain: {e}"
            logger.error(message)
            raise ToolchainError(
                message, exit_code=None, code="execution_error", log_path=log_path
            ) from e

        try:
            exit_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired as e:
            message = f"Toolchain timed out after {timeout:.0f} seconds"
            logger.error("%s. See log: %s", message, log_path)
            exited = terminate_process(proc, grace, stop_cmd)
            log_file.write(f"\n# TIMEOUT after {timeout:.0f} seconds")
            log_file.write(" (terminated)\n" if exited else " (termination failed)\n")
            raise ToolchainTimeoutError(
                message, exit_code=-1, code="toolchain_timeout", log_path=log_path
            ) from e

        finished_at = datetime.now(timezone.utc)
        duration = (finished_at - started_at).total_seconds()
        log_file.write(f"\n# Finished: {finished_at.isoformat()}\n")
        log_file.write(f"# Exit code: {exit_code}\n")
        log_file.write(f"# Duration: {duration:.1f}s\n\n")

    return exit_code, started_at, finished_at


def collect_outputs(
    output_dir: Path, declared: tuple[str, ...] | list[str]
) -> tuple[list[Path], list[str]]:
    """Split declared outputs into found paths and missing names."""
    found: list[Path] = []
    missing: list[str] = []
    for name in declared:
        path = output_dir / name
        if path.is_file():
            found.append(path)
        else:
            missing.append(name)
    return found, missing


def _prepare_invocation(
    matrix: MatrixSchema,
    template: list[str],
    variant: VariantSpec | None,
    workspace: Path,
    output_dir: Path,
    job_id: str,
    layer_dirs: dict[str, Path],
) -> tuple[list[str], dict[str, str], str]:
    isolation = matrix.isolation
    isolated = isolation.runtime != "none"

    if isolated:
        seen_output = CONTAINER_OUTPUT
        seen_layers = {layer: f"{CONTAINER_CACHE_ROOT}/{layer}" for layer in layer_dirs}
    else:
        seen_output = str(output_dir)
        seen_layers = {layer: str(path) for layer, path in layer_dirs.items()}

    placeholders = {"output_dir": seen_output}
    if variant is not None:
        placeholders.update(variant.placeholders())
    else:
        placeholders.update({"variant": "", "channel": "", "crypto_mode": ""})

    cmd = render_command(template, placeholders)
    env = compose_environment(variant, seen_output, seen_layers, matrix.toolchain.env)
    name = container_name(job_id)

    if isolated:
        cmd = wrap_isolated(
            cmd,
            isolation,
            workspace=workspace,
            env=env,
            name=name,
            output_dir=output_dir,
            layer_dirs=layer_dirs,
        )
        env = {}
    return cmd, env, name


def run_layer_command(
    matrix: MatrixSchema,
    command: list[str],
    workspace: Path,
    output_dir: Path,
    log_path: Path,
    job_id: str,
    timeout: float | None = None,
    grace: float = 30,
    layer_dirs: dict[str, Path] | None = None,
) -> None:
    """Run a shared layer command (toolchain setup, dependency resolution).

    Raises:
        BuildFailure: If the command exits non-zero.
        ToolchainTimeoutError: If the deadline passes.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    cmd, env, name = _prepare_invocation(
        matrix, command, None, workspace, output_dir, job_id, layer_dirs or {}
    )
    exit_code, _, _ = run_toolchain(
        cmd,
        cwd=workspace,
        log_path=log_path,
        env=env,
        timeout=timeout,
        grace=grace,
        stop_cmd=stop_command(matrix.isolation, name, int(grace)),
    )
    if exit_code != 0:
        raise BuildFailure(
            f"Layer command failed with exit code {exit_code}",
            exit_code=exit_code,
            code="layer_failed",
            log_path=log_path,
        )


def run_variant_build(
    matrix: MatrixSchema,
    variant: VariantSpec,
    workspace: Path,
    output_dir: Path,
    log_path: Path,
    job_id: str,
    timeout: float | None = None,
    grace: float = 30,
    layer_dirs: dict[str, Path] | None = None,
) -> ToolchainResult:
    """Build one variant with the matrix toolchain.

    Args:
        matrix: Matrix schema (toolchain and isolation settings).
        variant: Variant to build.
        workspace: Job working directory.
        output_dir: Directory for declared outputs.
        log_path: Build log file.
        job_id: Job identifier (container name).
        timeout: Remaining job deadline in seconds.
        grace: Termination grace period in seconds.
        layer_dirs: Cached layer directories by layer name.

    Returns:
        ToolchainResult with execution details.

    Raises:
        ToolchainTimeoutError: If the deadline passes.
        ToolchainError: If the toolchain cannot be started.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    cmd, env, name = _prepare_invocation(
        matrix,
        matrix.toolchain.command,
        variant,
        workspace,
        output_dir,
        job_id,
        layer_dirs or {},
    )

    exit_code, started_at, finished_at = run_toolchain(
        cmd,
        cwd=workspace,
        log_path=log_path,
        env=env,
        timeout=timeout,
        grace=grace,
        stop_cmd=stop_command(matrix.isolation, name, int(grace)),
    )

    outputs, missing = collect_outputs(output_dir, variant.outputs)
    error_message: str | None = None
    if exit_code != 0:
        error_message = f"Build failed with exit code {exit_code}"
    elif missing:
        error_message = f"Build did not produce declared outputs: {', '.join(missing)}"
    if error_message:
        logger.error("%s: %s. See log: %s", variant.name, error_message, log_path)

    return ToolchainResult(
        success=error_message is None,
        exit_code=exit_code,
        output_dir=output_dir,
        log_path=log_path,
        started_at=started_at,
        finished_at=finished_at,
        command=shlex.join(cmd),
        outputs=outputs,
        missing_outputs=missing,
        error_message=error_message,
    )


__all__ = [
    "CONTAINER_CACHE_ROOT",
    "CONTAINER_OUTPUT",
    "CONTAINER_WORKSPACE",
    "BuildFailure",
    "ToolchainError",
    "ToolchainResult",
    "ToolchainTimeoutError",
    "collect_outputs",
    "compose_environment",
    "container_name",
    "render_command",
    "run_layer_command",
    "run_toolchain",
    "run_variant_build",
    "stop_command",
    "terminate_process",
    "wrap_isolated",
]
