"""Build and release pipeline.

This module wires the components together:
- Resolve the matrix and hash source and dependency inputs once per run
- Per job: shared toolchain/dependency layers, cached variant outputs,
  signing, and manifest entries for the final bytes
- Release: build every variant, then hand the barrier result to the
  publisher

Job workspaces live under <work_dir>/<run_id>/<variant>/:

    src/         copy of the source tree (when isolation.copy_source)
    build.log    toolchain output
    output/      raw toolchain outputs (cache miss only)
    artifacts/   final, possibly signed, artifacts
"""

from __future__ import annotations

import logging
import shutil
import uuid
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from variant_release.builds.cache import CacheManager
from variant_release.builds.cache_key import (
    compute_cache_key,
    compute_tree_hash,
    create_layer_inputs,
    create_variant_inputs,
    hash_lockfiles,
)
from variant_release.builds.runner import (
    BuildFailure,
    run_layer_command,
    run_variant_build,
)
from variant_release.builds.scheduler import (
    BuildJob,
    BuildScheduler,
    JobOutput,
    ScheduleResult,
)
from variant_release.config import Settings, get_settings
from variant_release.matrix.resolver import VariantSpec, resolve_matrix, select_variants
from variant_release.matrix.schema import MatrixSchema
from variant_release.releases.manifest import create_manifest_entry, validate_version
from variant_release.releases.publisher import (
    PublishError,
    PublishOutcome,
    ReleaseBlockedError,
    ReleasePublisher,
    VersionConflictError,
)
from variant_release.signing.signer import ArtifactSigner
from variant_release.types import Artifact, CacheLayer, PublishStatus

logger = logging.getLogger(__name__)


class PipelineError(Exception):
    """Raised when a job cannot assemble its artifacts."""

    def __init__(self, message: str, code: str = "pipeline_error") -> None:
        super().__init__(message)
        self.code = code


@dataclass
class ReleaseReport:
    """Outcome of a release run.

    Attributes:
        result: Terminal state of every job.
        outcome: Publication outcome, if a manifest was published or matched.
        error: Barrier-level error that prevented publication.
        run_dir: Work directory of the run.
    """

    result: ScheduleResult
    outcome: PublishOutcome | None = None
    error: PublishError | None = None
    run_dir: Path | None = None

    @property
    def published(self) -> bool:
        return self.outcome is not None

    @property
    def blocking_variants(self) -> list[str]:
        if isinstance(self.error, ReleaseBlockedError):
            return self.error.blocking_variants
        return []

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "build": self.result.to_dict(),
            "publish": self.outcome.to_dict() if self.outcome else None,
            "error": (
                {"code": self.error.code, "message": str(self.error)} if self.error else None
            ),
            "blocking_variants": self.blocking_variants,
            "run_dir": str(self.run_dir) if self.run_dir else None,
        }


def new_run_id() -> str:
    """Return a unique, time-ordered run identifier."""
    return f"{datetime.now(timezone.utc):%Y%m%dT%H%M%S}_{uuid.uuid4().hex[:8]}"


class BuildPipeline:
    """Builds the variants of one matrix.

    Args:
        matrix: Validated matrix.
        source_dir: Resolved source directory.
        settings: Application settings.
        signer: Artifact signer (default: unsigned pass-through).
        cache: Build cache (default: settings.cache_dir).
        run_id: Run identifier (default: generated).

    Raises:
        InvalidMatrixError: If the matrix does not resolve.
        CacheKeyError: If a declared lock file cannot be read.
    """

    def __init__(
        self,
        matrix: MatrixSchema,
        source_dir: Path,
        settings: Settings | None = None,
        signer: ArtifactSigner | None = None,
        cache: CacheManager | None = None,
        run_id: str | None = None,
    ) -> None:
        if settings is None:
            settings = get_settings()
        self.matrix = matrix
        self.source_dir = source_dir
        self.settings = settings
        self.signer = signer or ArtifactSigner()
        self.cache = cache or CacheManager(
            settings.cache_dir, lock_timeout=settings.cache_lock_timeout
        )
        self.run_id = run_id or new_run_id()
        self.run_dir = settings.work_dir / self.run_id

        self.variants = resolve_matrix(matrix)
        self.lock_hash = hash_lockfiles(source_dir, matrix.dependencies.lockfiles)
        self.source_hash = compute_tree_hash(source_dir, matrix.source_exclude)
        logger.info(
            "Pipeline %s: %d variants, source %s",
            self.run_id,
            len(self.variants),
            self.source_hash[:16],
        )

    def variant_key(self, variant: VariantSpec) -> str:
        """Return the outputs-layer cache key of a variant."""
        return compute_cache_key(
            create_variant_inputs(self.matrix, variant, self.lock_hash, self.source_hash)
        )

    def layer_key(self, layer: CacheLayer) -> str:
        """Return the cache key of a shared layer."""
        return compute_cache_key(create_layer_inputs(self.matrix, layer, self.lock_hash))

    def _workspace(self, job_dir: Path) -> Path:
        if not self.matrix.isolation.copy_source:
            return self.source_dir
        workspace = job_dir / "src"
        if not workspace.exists():
            shutil.copytree(
                self.source_dir,
                workspace,
                symlinks=True,
                ignore=shutil.ignore_patterns(*self.matrix.source_exclude),
            )
        return workspace

    def _ensure_layers(self, job: BuildJob, job_dir: Path) -> dict[str, Path]:
        """Produce or reuse the shared toolchain and dependency layers."""
        layer_dirs: dict[str, Path] = {}
        layers = [
            (CacheLayer.TOOLCHAIN, self.matrix.toolchain.setup_command),
            (CacheLayer.DEPENDENCIES, self.matrix.dependencies.command),
        ]
        for layer, command in layers:
            if not command:
                continue

            def produce(out: Path, layer: CacheLayer = layer, command: list[str] = command) -> None:
                run_layer_command(
                    self.matrix,
                    command,
                    workspace=self._workspace(job_dir),
                    output_dir=out,
                    log_path=job_dir / f"{layer.value}.log",
                    job_id=f"{job.job_id}-{layer.value}",
                    timeout=job.remaining(),
                    grace=self.settings.termination_grace,
                    layer_dirs=dict(layer_dirs),
                )

            entry, hit = self.cache.get_or_compute(
                self.layer_key(layer), produce, timeout=job.remaining()
            )
            logger.debug("%s: %s layer %s", job.variant.name, layer.value,
                         "reused" if hit else "built")
            layer_dirs[layer.value] = entry.path
        return layer_dirs

    def execute_job(self, job: BuildJob) -> JobOutput:
        """Build, sign and digest one variant.

        Raises:
            BuildFailure: If the toolchain fails or misses outputs.
            ToolchainTimeoutError: If the job deadline passes.
            SigningError: If a configured credential cannot sign.
            DigestError: If an artifact cannot be digested.
        """
        variant = job.variant
        job_dir = self.run_dir / variant.name
        job_dir.mkdir(parents=True, exist_ok=True)
        log_path = job_dir / "build.log"
        job.log_path = log_path

        layer_dirs = self._ensure_layers(job, job_dir)

        def produce(out: Path) -> None:
            result = run_variant_build(
                self.matrix,
                variant,
                workspace=self._workspace(job_dir),
                output_dir=job_dir / "output",
                log_path=log_path,
                job_id=job.job_id,
                timeout=job.remaining(),
                grace=self.settings.termination_grace,
                layer_dirs=layer_dirs,
            )
            if not result.success:
                code = "build_failed" if result.exit_code != 0 else "missing_outputs"
                raise BuildFailure(
                    result.error_message or "Build failed",
                    exit_code=result.exit_code,
                    code=code,
                    log_path=log_path,
                )
            for path in result.outputs:
                shutil.copy2(path, out / path.name)

        entry, hit = self.cache.get_or_compute(
            self.variant_key(variant), produce, timeout=job.remaining()
        )

        artifacts_dir = job_dir / "artifacts"
        artifacts_dir.mkdir(parents=True, exist_ok=True)
        artifacts: list[Artifact] = []
        for filename in variant.outputs:
            dest = artifacts_dir / filename
            try:
                shutil.copy2(entry.path / filename, dest)
            except OSError as e:
                raise PipelineError(
                    f"Cache entry for {variant.name} lacks {filename}: {e}",
                    code="cache_entry_incomplete",
                ) from e
            artifact = Artifact(variant=variant.name, filename=filename, path=dest)
            artifacts.append(self.signer.sign(artifact))

        entries = [create_manifest_entry(artifact) for artifact in artifacts]
        return JobOutput(artifacts=artifacts, entries=entries, cache_hit=hit, log_path=log_path)

    def build(
        self,
        selectors: Sequence[str] | None = None,
        on_job_finished: Callable[[BuildJob], None] | None = None,
    ) -> ScheduleResult:
        """Build the selected variants.

        Args:
            selectors: Variant name patterns (None = all variants).
            on_job_finished: Progress callback.

        Returns:
            ScheduleResult in resolver order.

        Raises:
            VariantSelectionError: If the selectors match nothing.
        """
        variants = select_variants(self.variants, selectors)
        scheduler = BuildScheduler(
            self.execute_job,
            max_workers=self.settings.max_concurrent_builds,
            job_timeout=self.settings.job_timeout,
            on_job_finished=on_job_finished,
        )
        return scheduler.run(variants)

    def release(
        self,
        version: str,
        publisher: ReleasePublisher,
        on_job_finished: Callable[[BuildJob], None] | None = None,
    ) -> ReleaseReport:
        """Build every variant and publish the result as a release.

        Args:
            version: Release version tag.
            publisher: Release publisher.
            on_job_finished: Progress callback.

        Returns:
            ReleaseReport; blocked releases and version conflicts are
            reported in its error field.

        Raises:
            InvalidVersionError: If the version tag is malformed.
            SinkError: If the sink fails.
        """
        validate_version(version)
        result = self.build(on_job_finished=on_job_finished)
        report = ReleaseReport(result=result, run_dir=self.run_dir)
        try:
            report.outcome = publisher.publish(self.matrix.project, version, result)
        except (ReleaseBlockedError, VersionConflictError) as e:
            logger.error("Release %s not published: %s", version, e)
            report.error = e
            if isinstance(e, VersionConflictError):
                logger.info("Artifacts kept in %s", self.run_dir)
            return report

        if report.outcome.status in (PublishStatus.PUBLISHED, PublishStatus.UNCHANGED):
            self.cleanup()
        return report

    def cleanup(self) -> None:
        """Remove the run's work directory unless configured to keep it."""
        if self.settings.keep_work_dir or not self.run_dir.exists():
            return
        shutil.rmtree(self.run_dir, ignore_errors=True)
        logger.debug("Removed work directory %s", self.run_dir)


__all__ = [
    "BuildPipeline",
    "PipelineError",
    "ReleaseReport",
    "new_run_id",
]
