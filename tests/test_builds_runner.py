"""Tests for builds/runner.py module.

Tests command composition and toolchain execution. Execution tests run
small Python scripts with the current interpreter, or mock subprocess.
"""

import subprocess
import sys
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from variant_release.builds.runner import (
    BuildFailure,
    ToolchainError,
    ToolchainTimeoutError,
    collect_outputs,
    compose_environment,
    container_name,
    render_command,
    run_layer_command,
    run_toolchain,
    run_variant_build,
    stop_command,
    terminate_process,
    wrap_isolated,
)
from variant_release.matrix.resolver import VariantSpec
from variant_release.matrix.schema import IsolationSchema

BUILD_SCRIPT = """\
import os
import sys

out = sys.argv[1]
name = os.environ["VARIANT_NAME"]
print("building", name, os.environ.get("VARIANT_FLAG_STORE", "-"))
if os.environ.get("FAIL"):
    sys.exit(3)
if not os.environ.get("SKIP_OUTPUT"):
    with open(os.path.join(out, name + ".apk"), "w") as f:
        f.write("apk for " + name)
"""


@pytest.fixture
def variant() -> VariantSpec:
    """A resolved variant."""
    return VariantSpec(
        name="play-standard",
        channel="play",
        crypto_mode="standard",
        required=True,
        flags=(("STORE", "google"),),
        outputs=("play-standard.apk",),
    )


@pytest.fixture
def workspace(tmp_path: Path) -> Path:
    """A workspace holding the build script."""
    ws = tmp_path / "ws"
    ws.mkdir()
    (ws / "build.py").write_text(BUILD_SCRIPT)
    return ws


@pytest.fixture
def script_matrix(make_matrix):
    """A matrix whose toolchain runs build.py with this interpreter."""

    def factory(**env: str):
        return make_matrix(
            toolchain={
                "command": [sys.executable, "build.py", "{output_dir}"],
                "version": "test",
                "env": env,
            }
        )

    return factory


class TestRenderCommand:
    """Tests for render_command."""

    def test_placeholders(self) -> None:
        """Should fill placeholders in every argument."""
        cmd = render_command(
            ["gradle", "assemble{variant}", "--out={output_dir}"],
            {"variant": "Play", "output_dir": "/out"},
        )
        assert cmd == ["gradle", "assemblePlay", "--out=/out"]

    def test_literal_braces(self) -> None:
        """Doubled braces stay literal."""
        assert render_command(["echo", "{{x}}"], {}) == ["echo", "{x}"]


class TestComposeEnvironment:
    """Tests for compose_environment."""

    def test_variant_environment(self, variant: VariantSpec) -> None:
        """Variant identity and flags are exported."""
        env = compose_environment(
            variant, "/out", {"dependencies": "/cache/dependencies"}, {"JAVA_OPTS": "-Xmx2g"}
        )
        assert env["VARIANT_NAME"] == "play-standard"
        assert env["VARIANT_CHANNEL"] == "play"
        assert env["VARIANT_CRYPTO_MODE"] == "standard"
        assert env["VARIANT_REQUIRED"] == "1"
        assert env["VARIANT_FLAG_STORE"] == "google"
        assert env["VARIANT_OUTPUT_DIR"] == "/out"
        assert env["DEPENDENCIES_CACHE_DIR"] == "/cache/dependencies"
        assert env["JAVA_OPTS"] == "-Xmx2g"

    def test_layer_environment(self) -> None:
        """Layer commands get no variant variables."""
        env = compose_environment(None, "/out")
        assert env == {"VARIANT_OUTPUT_DIR": "/out"}


class TestIsolation:
    """Tests for container wrapping."""

    def test_wrap_isolated(self, tmp_path: Path) -> None:
        """Should produce a named, mounted container run."""
        isolation = IsolationSchema(runtime="docker", image="android:34", extra_args=["--cpus=2"])
        cmd = wrap_isolated(
            ["gradle", "assemble"],
            isolation,
            workspace=tmp_path / "ws",
            env={"VARIANT_NAME": "play-standard"},
            name=container_name("abc123"),
            output_dir=tmp_path / "out",
            layer_dirs={"toolchain": tmp_path / "tc"},
        )

        assert cmd[:5] == ["docker", "run", "--rm", "--name", "varrel-abc123"]
        assert f"{tmp_path / 'ws'}:/workspace" in cmd
        assert f"{tmp_path / 'out'}:/output" in cmd
        assert f"{tmp_path / 'tc'}:/cache/toolchain:ro" in cmd
        assert "VARIANT_NAME=play-standard" in cmd
        assert "--cpus=2" in cmd
        assert cmd[-3:] == ["android:34", "gradle", "assemble"]

    def test_stop_command(self) -> None:
        """Container jobs are stopped by name."""
        isolation = IsolationSchema(runtime="podman", image="img")
        assert stop_command(isolation, "varrel-x", 10) == [
            "podman",
            "stop",
            "-t",
            "10",
            "varrel-x",
        ]
        assert stop_command(IsolationSchema(), "varrel-x", 10) is None


class TestCollectOutputs:
    """Tests for collect_outputs."""

    def test_found_and_missing(self, tmp_path: Path) -> None:
        """Should split declared outputs."""
        (tmp_path / "app.apk").write_text("x")
        found, missing = collect_outputs(tmp_path, ["app.apk", "symbols.zip"])
        assert found == [tmp_path / "app.apk"]
        assert missing == ["symbols.zip"]


class TestRunToolchain:
    """Tests for run_toolchain."""

    def test_success_writes_log(self, tmp_path: Path) -> None:
        """Output is captured in the log with a header."""
        log_path = tmp_path / "logs" / "build.log"
        exit_code, started, finished = run_toolchain(
            [sys.executable, "-c", "print('hello')"], cwd=tmp_path, log_path=log_path
        )

        assert exit_code == 0
        assert finished >= started
        log = log_path.read_text()
        assert "# Command:" in log
        assert "hello" in log
        assert "# Exit code: 0" in log

    def test_nonzero_exit(self, tmp_path: Path) -> None:
        """Exit codes are returned, not raised."""
        exit_code, _, _ = run_toolchain(
            [sys.executable, "-c", "import sys; sys.exit(7)"],
            cwd=tmp_path,
            log_path=tmp_path / "build.log",
        )
        assert exit_code == 7

    def test_missing_executable(self, tmp_path: Path) -> None:
        """A command that cannot start raises ToolchainError."""
        with pytest.raises(ToolchainError) as exc_info:
            run_toolchain(
                ["/nonexistent/toolchain"], cwd=tmp_path, log_path=tmp_path / "build.log"
            )
        assert exc_info.value.code == "execution_error"

    def test_timeout_terminates(self, tmp_path: Path) -> None:
        """A command exceeding the deadline is terminated."""
        log_path = tmp_path / "build.log"
        with pytest.raises(ToolchainTimeoutError) as exc_info:
            run_toolchain(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                cwd=tmp_path,
                log_path=log_path,
                timeout=0.5,
                grace=2,
            )

        assert isinstance(exc_info.value, TimeoutError)
        assert exc_info.value.code == "toolchain_timeout"
        assert "TIMEOUT" in log_path.read_text()

    def test_expired_deadline(self, tmp_path: Path) -> None:
        """A deadline already passed raises before starting."""
        with patch("variant_release.builds.runner.subprocess.Popen") as mock_popen:
            with pytest.raises(ToolchainTimeoutError):
                run_toolchain(["true"], cwd=tmp_path, log_path=tmp_path / "b.log", timeout=0)
        mock_popen.assert_not_called()

    def test_env_and_session(self, tmp_path: Path) -> None:
        """Variables are added to the host environment in a new session."""
        mock_proc = MagicMock()
        mock_proc.wait.return_value = 0
        with patch(
            "variant_release.builds.runner.subprocess.Popen", return_value=mock_proc
        ) as mock_popen:
            run_toolchain(
                ["gradle"], cwd=tmp_path, log_path=tmp_path / "b.log", env={"A": "1"}
            )

        kwargs = mock_popen.call_args.kwargs
        assert kwargs["env"]["A"] == "1"
        assert "PATH" in kwargs["env"]
        assert kwargs["start_new_session"] is True
        assert kwargs["stderr"] == subprocess.STDOUT


class TestTerminateProcess:
    """Tests for terminate_process."""

    def test_escalates_to_kill(self) -> None:
        """SIGKILL follows an ignored SIGTERM."""
        proc = MagicMock()
        proc.pid = 12345
        proc.wait.side_effect = [subprocess.TimeoutExpired("x", 1), 0]

        with patch("variant_release.builds.runner.os.killpg") as mock_killpg, patch(
            "variant_release.builds.runner.subprocess.run"
        ) as mock_run:
            exited = terminate_process(proc, grace=1, stop_cmd=["docker", "stop", "c"])

        assert exited is True
        mock_run.assert_called_once()
        assert mock_killpg.call_count == 2

    def test_reports_failure(self) -> None:
        """A process surviving SIGKILL is reported."""
        proc = MagicMock()
        proc.pid = 12345
        proc.wait.side_effect = subprocess.TimeoutExpired("x", 1)

        with patch("variant_release.builds.runner.os.killpg"):
            assert terminate_process(proc, grace=0) is False


class TestRunVariantBuild:
    """Tests for run_variant_build."""

    def test_success(self, tmp_path: Path, workspace: Path, variant, script_matrix) -> None:
        """A successful build finds its declared outputs."""
        result = run_variant_build(
            script_matrix(),
            variant,
            workspace=workspace,
            output_dir=tmp_path / "out",
            log_path=tmp_path / "build.log",
            job_id="job1",
        )

        assert result.success is True
        assert result.exit_code == 0
        assert result.outputs == [tmp_path / "out" / "play-standard.apk"]
        assert "building play-standard google" in (tmp_path / "build.log").read_text()

    def test_nonzero_exit(self, tmp_path: Path, workspace: Path, variant, script_matrix) -> None:
        """A failing toolchain is reported in the result."""
        result = run_variant_build(
            script_matrix(FAIL="1"),
            variant,
            workspace=workspace,
            output_dir=tmp_path / "out",
            log_path=tmp_path / "build.log",
            job_id="job1",
        )

        assert result.success is False
        assert result.exit_code == 3
        assert "exit code 3" in (result.error_message or "")

    def test_missing_outputs(self, tmp_path: Path, workspace: Path, variant, script_matrix) -> None:
        """Exit zero without outputs is still a failure."""
        result = run_variant_build(
            script_matrix(SKIP_OUTPUT="1"),
            variant,
            workspace=workspace,
            output_dir=tmp_path / "out",
            log_path=tmp_path / "build.log",
            job_id="job1",
        )

        assert result.success is False
        assert result.missing_outputs == ["play-standard.apk"]

    def test_isolated_build_command(self, tmp_path: Path, variant, make_matrix) -> None:
        """Container builds use container paths and pass env with -e."""
        matrix = make_matrix(
            toolchain={"command": ["gradle", "--out={output_dir}"], "version": "8.7"},
            isolation={"runtime": "docker", "image": "android:34"},
        )
        mock_proc = MagicMock()
        mock_proc.wait.return_value = 0
        with patch(
            "variant_release.builds.runner.subprocess.Popen", return_value=mock_proc
        ) as mock_popen:
            run_variant_build(
                matrix,
                variant,
                workspace=tmp_path,
                output_dir=tmp_path / "out",
                log_path=tmp_path / "build.log",
                job_id="job1",
            )

        cmd = mock_popen.call_args.args[0]
        assert cmd[0] == "docker"
        assert "varrel-job1" in cmd
        assert "VARIANT_OUTPUT_DIR=/output" in cmd
        assert cmd[-2:] == ["gradle", "--out=/output"]


class TestRunLayerCommand:
    """Tests for run_layer_command."""

    def test_layer_failure(self, tmp_path: Path, make_matrix) -> None:
        """A failing layer command raises BuildFailure."""
        with pytest.raises(BuildFailure) as exc_info:
            run_layer_command(
                make_matrix(),
                [sys.executable, "-c", "import sys; sys.exit(1)"],
                workspace=tmp_path,
                output_dir=tmp_path / "layer",
                log_path=tmp_path / "layer.log",
                job_id="job1",
            )
        assert exc_info.value.code == "layer_failed"

    def test_layer_output(self, tmp_path: Path, make_matrix) -> None:
        """Layer commands write into their output directory."""
        script = "import os, pathlib; pathlib.Path(os.environ['VARIANT_OUTPUT_DIR'], 'sdk').write_text('ok')"
        run_layer_command(
            make_matrix(),
            [sys.executable, "-c", script],
            workspace=tmp_path,
            output_dir=tmp_path / "layer",
            log_path=tmp_path / "layer.log",
            job_id="job1",
        )
        assert (tmp_path / "layer" / "sdk").read_text() == "ok"
