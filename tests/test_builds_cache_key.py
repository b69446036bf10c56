"""Tests for builds/cache_key.py module."""

from pathlib import Path

import pytest

from variant_release.builds.cache_key import (
    CACHE_KEY_SCHEMA_VERSION,
    BuildInputs,
    CacheKeyError,
    compute_cache_key,
    compute_tree_hash,
    create_layer_inputs,
    create_variant_inputs,
    hash_lockfiles,
    toolchain_identity,
)
from variant_release.matrix.resolver import resolve_matrix
from variant_release.types import CacheLayer


def _variant(matrix, name: str):
    return next(v for v in resolve_matrix(matrix) if v.name == name)


class TestComputeTreeHash:
    """Tests for compute_tree_hash."""

    def test_missing_directory(self, tmp_path: Path) -> None:
        """A missing directory hashes like an empty one."""
        empty = tmp_path / "empty"
        empty.mkdir()
        assert compute_tree_hash(tmp_path / "missing") == compute_tree_hash(empty)

    def test_content_change(self, tmp_path: Path) -> None:
        """Changing a file changes the hash."""
        (tmp_path / "main.kt").write_text("fun main() {}")
        before = compute_tree_hash(tmp_path)
        (tmp_path / "main.kt").write_text("fun main() { println() }")
        assert compute_tree_hash(tmp_path) != before

    def test_rename_changes_hash(self, tmp_path: Path) -> None:
        """Paths are part of the hash."""
        (tmp_path / "a.txt").write_text("x")
        before = compute_tree_hash(tmp_path)
        (tmp_path / "a.txt").rename(tmp_path / "b.txt")
        assert compute_tree_hash(tmp_path) != before

    def test_excluded_paths_ignored(self, tmp_path: Path) -> None:
        """Excluded components do not affect the hash."""
        (tmp_path / "main.kt").write_text("code")
        before = compute_tree_hash(tmp_path, [".git", "build"])
        (tmp_path / ".git").mkdir()
        (tmp_path / ".git" / "HEAD").write_text("ref")
        (tmp_path / "build").mkdir()
        (tmp_path / "build" / "out.apk").write_bytes(b"\x00")
        assert compute_tree_hash(tmp_path, [".git", "build"]) == before


class TestHashLockfiles:
    """Tests for hash_lockfiles."""

    def test_no_lockfiles(self, tmp_path: Path) -> None:
        """No declared lockfiles hashes to None."""
        assert hash_lockfiles(tmp_path, []) is None

    def test_order_independent(self, tmp_path: Path) -> None:
        """Declaration order does not matter."""
        (tmp_path / "a.lock").write_text("a")
        (tmp_path / "b.lock").write_text("b")
        assert hash_lockfiles(tmp_path, ["a.lock", "b.lock"]) == hash_lockfiles(
            tmp_path, ["b.lock", "a.lock"]
        )

    def test_content_change(self, tmp_path: Path) -> None:
        """Lock content changes the hash."""
        (tmp_path / "a.lock").write_text("v1")
        before = hash_lockfiles(tmp_path, ["a.lock"])
        (tmp_path / "a.lock").write_text("v2")
        assert hash_lockfiles(tmp_path, ["a.lock"]) != before

    def test_missing_lockfile(self, tmp_path: Path) -> None:
        """A missing declared lockfile raises CacheKeyError."""
        with pytest.raises(CacheKeyError) as exc_info:
            hash_lockfiles(tmp_path, ["gradle.lockfile"])
        assert exc_info.value.code == "missing_lockfile"


class TestToolchainIdentity:
    """Tests for toolchain_identity."""

    def test_host_identity(self, make_matrix) -> None:
        """Host builds do not include an image."""
        identity = toolchain_identity(make_matrix())
        assert identity["version"] == "8.7"
        assert "image" not in identity

    def test_container_identity(self, make_matrix) -> None:
        """Container builds include the image."""
        matrix = make_matrix(isolation={"runtime": "docker", "image": "android:34"})
        assert toolchain_identity(matrix)["image"] == "android:34"


class TestCreateInputs:
    """Tests for layer and variant inputs."""

    def test_layer_inputs(self, make_matrix) -> None:
        """Dependency layer inputs carry the lock hash."""
        inputs = create_layer_inputs(make_matrix(), CacheLayer.DEPENDENCIES, "abc")
        assert inputs.layer == "dependencies"
        assert inputs.dependency_lock_hash == "abc"
        assert inputs.variant_flags == {}

    def test_toolchain_layer_ignores_lock_hash(self, make_matrix) -> None:
        """The toolchain layer depends on the toolchain only."""
        matrix = make_matrix()
        a = create_layer_inputs(matrix, CacheLayer.TOOLCHAIN, "abc")
        b = create_layer_inputs(matrix, CacheLayer.TOOLCHAIN, "def")
        assert compute_cache_key(a) == compute_cache_key(b)

    def test_outputs_layer_rejected(self, make_matrix) -> None:
        """Outputs use create_variant_inputs."""
        with pytest.raises(ValueError):
            create_layer_inputs(make_matrix(), CacheLayer.OUTPUTS)

    def test_variant_inputs(self, make_matrix) -> None:
        """Variant inputs carry flags, source hash and outputs."""
        matrix = make_matrix()
        inputs = create_variant_inputs(
            matrix, _variant(matrix, "play-standard"), "lock", "src"
        )
        assert inputs.schema_version == CACHE_KEY_SCHEMA_VERSION
        assert inputs.variant_flags["flags"] == {"STORE": "google"}
        assert inputs.source_hash == "src"
        assert inputs.outputs == ["play-standard.apk"]


class TestComputeCacheKey:
    """Tests for compute_cache_key."""

    def test_format(self) -> None:
        """Keys are sha256 prefixed hex digests."""
        key = compute_cache_key(BuildInputs())
        assert key.startswith("sha256:")
        assert len(key) == len("sha256:") + 64

    def test_deterministic(self, make_matrix) -> None:
        """Identical inputs give identical keys."""
        matrix = make_matrix()
        variant = _variant(matrix, "play-standard")
        assert compute_cache_key(
            create_variant_inputs(matrix, variant, "lock", "src")
        ) == compute_cache_key(create_variant_inputs(matrix, variant, "lock", "src"))

    def test_each_input_changes_key(self, make_matrix) -> None:
        """Toolchain, lock, source and variant all affect the key."""
        matrix = make_matrix()
        variant = _variant(matrix, "play-standard")
        other_variant = _variant(matrix, "fdroid-standard")
        other_toolchain = make_matrix(toolchain={"command": ["gradle"], "version": "8.8"})

        base = compute_cache_key(create_variant_inputs(matrix, variant, "lock", "src"))
        keys = {
            compute_cache_key(create_variant_inputs(matrix, variant, "lock2", "src")),
            compute_cache_key(create_variant_inputs(matrix, variant, "lock", "src2")),
            compute_cache_key(create_variant_inputs(matrix, other_variant, "lock", "src")),
            compute_cache_key(
                create_variant_inputs(
                    other_toolchain, _variant(other_toolchain, "play-standard"), "lock", "src"
                )
            ),
        }
        assert base not in keys
        assert len(keys) == 4

    def test_layers_do_not_collide(self, make_matrix) -> None:
        """Layers with the same toolchain get different keys."""
        matrix = make_matrix()
        toolchain = compute_cache_key(create_layer_inputs(matrix, CacheLayer.TOOLCHAIN))
        deps = compute_cache_key(create_layer_inputs(matrix, CacheLayer.DEPENDENCIES))
        assert toolchain != deps
