"""Tests for tools/artifact_store.py: ArtifactStore and exclusion matching."""

from __future__ import annotations

import os
import zipfile

import pytest

from tools.artifact_store import DEFAULT_EXCLUSIONS, ArtifactStore, is_excluded
from tools.errors import ArtifactCorrupted, ArtifactExists, ArtifactNotFound


class TestIsExcluded:
    @pytest.mark.parametrize(
        "path",
        [".git/HEAD", "vendor/lib/big.php", "tests/fixtures/dump.sql", "Jenkinsfile", "web/node_modules/x.js", ".shipline/runs/shop-41/state.json"],
    )
    def test_default_exclusions_match(self, path):
        assert is_excluded(path, DEFAULT_EXCLUSIONS)

    @pytest.mark.parametrize("path", ["app/index.php", "tests/UnitTest.php", "composer.json", "vendors.txt"])
    def test_default_exclusions_keep(self, path):
        assert not is_excluded(path, DEFAULT_EXCLUSIONS)

    def test_glob_without_slash_matches_any_depth(self):
        assert is_excluded("storage/logs/app.log", ["*.log"])

    def test_trailing_double_star(self):
        assert is_excluded("build/out/main.js", ["build/**"])
        assert not is_excluded("src/build.js", ["build/**"])


class TestCreate:
    def test_excluded_content_never_enters_archive(self, tmp_path, workspace):
        store = ArtifactStore(tmp_path / "store", "shop")
        artifact = store.create(workspace, 42, exclusions=DEFAULT_EXCLUSIONS)

        with zipfile.ZipFile(artifact.path) as archive:
            names = archive.namelist()

        assert names == sorted(names)
        assert set(names) == {"app/Kernel.php", "app/index.php", "composer.json", "tests/UnitTest.php"}
        assert artifact.file_count == 4

    def test_identifier_and_metadata(self, tmp_path, workspace):
        store = ArtifactStore(tmp_path / "store", "shop")
        artifact = store.create(workspace, 42, run_id="shop-42")

        assert artifact.artifact_id == "shop-42"
        assert artifact.filename == "shop-42.zip"
        assert artifact.path.name == "shop-42.zip"
        assert artifact.run_number == 42
        assert artifact.size_bytes == artifact.path.stat().st_size
        assert len(artifact.sha256) == 64

    def test_archive_is_read_only(self, tmp_path, workspace):
        artifact = ArtifactStore(tmp_path / "store", "shop").create(workspace, 42)
        assert artifact.path.stat().st_mode & 0o222 == 0

    def test_same_content_same_bytes(self, tmp_path, workspace):
        first = ArtifactStore(tmp_path / "a", "shop").create(workspace, 42)
        # Touch every file so only modification times differ
        for path in workspace.rglob("*"):
            if path.is_file():
                os.utime(path, (1_000_000_000, 1_000_000_000))
        second = ArtifactStore(tmp_path / "b", "shop").create(workspace, 42)

        assert first.sha256 == second.sha256
        assert first.path.read_bytes() == second.path.read_bytes()

    def test_identifier_never_regenerated(self, tmp_path, workspace):
        store = ArtifactStore(tmp_path / "store", "shop")
        store.create(workspace, 42)
        with pytest.raises(ArtifactExists):
            store.create(workspace, 42)

    def test_store_inside_workspace_is_skipped(self, workspace):
        store = ArtifactStore(workspace / ".artifacts", "shop")
        store.create(workspace, 1)
        second = store.create(workspace, 2)
        with zipfile.ZipFile(second.path) as archive:
            assert not any(name.startswith(".artifacts") for name in archive.namelist())

    def test_pruned_directory_is_skipped(self, tmp_path, workspace):
        runs_dir = workspace / "state" / "runs"
        (runs_dir / "shop-41").mkdir(parents=True)
        (runs_dir / "shop-41" / "state.json").write_text("{}")
        (workspace / "state" / "keep.txt").write_text("kept\n")

        artifact = ArtifactStore(tmp_path / "store", "shop").create(workspace, 42, exclusions=(), prune=(runs_dir,))
        with zipfile.ZipFile(artifact.path) as archive:
            names = archive.namelist()

        assert "state/keep.txt" in names
        assert not any(name.startswith("state/runs") for name in names)


class TestFetch:
    def test_fetch_returns_persisted_artifact(self, tmp_path, workspace):
        store = ArtifactStore(tmp_path / "store", "shop")
        created = store.create(workspace, 42, run_id="shop-42")

        fetched = ArtifactStore(tmp_path / "store", "shop").fetch("shop-42")

        assert fetched == created

    def test_unknown_identifier(self, tmp_path):
        with pytest.raises(ArtifactNotFound):
            ArtifactStore(tmp_path / "store", "shop").fetch("shop-99")

    def test_missing_archive(self, tmp_path, workspace):
        store = ArtifactStore(tmp_path / "store", "shop")
        artifact = store.create(workspace, 42)
        artifact.path.chmod(0o644)
        artifact.path.unlink()
        with pytest.raises(ArtifactNotFound):
            store.fetch("shop-42")

    def test_modified_archive_is_rejected(self, tmp_path, workspace):
        store = ArtifactStore(tmp_path / "store", "shop")
        artifact = store.create(workspace, 42)
        artifact.path.chmod(0o644)
        with open(artifact.path, "ab") as f:
            f.write(b"tampered")
        with pytest.raises(ArtifactCorrupted):
            store.fetch("shop-42")

    def test_list_artifacts(self, tmp_path, workspace):
        store = ArtifactStore(tmp_path / "store", "shop")
        store.create(workspace, 1)
        store.create(workspace, 2)
        assert [a.artifact_id for a in store.list_artifacts()] == ["shop-1", "shop-2"]
