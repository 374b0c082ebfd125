"""Immutable build artifact storage.

Packages a workspace into ``<project>-<run-number>.zip`` once per run and
hands the same persisted file to every deployment stage. Archives are
deterministic: identical workspace content and run number produce
byte-identical zips.
"""

import fnmatch
import hashlib
import logging
import os
import stat
import tempfile
import zipfile
from datetime import datetime
from pathlib import Path

from schemas.artifact import Artifact

from .errors import ArtifactCorrupted, ArtifactExists, ArtifactNotFound

logger = logging.getLogger(__name__)

# Fixed entry timestamp so archive bytes depend only on content
ZIP_EPOCH = (1980, 1, 1, 0, 0, 0)

DEFAULT_EXCLUSIONS: tuple[str, ...] = (
    ".git",
    ".svn",
    "vendor",
    "node_modules",
    "tests/fixtures",
    "Jenkinsfile",
    "shipline.toml",
    ".shipline",
)


def is_excluded(rel_path: str, patterns: list[str] | tuple[str, ...]) -> bool:
    """Check a workspace-relative POSIX path against exclusion globs.

    A pattern matches the path itself or any of its parent directories.
    Patterns without a slash also match a bare file or directory name at
    any depth, so ``*.log`` and ``node_modules`` work anywhere.
    """
    parts = rel_path.split("/")
    candidates = ["/".join(parts[: i + 1]) for i in range(len(parts))]
    for pattern in patterns:
        pattern = pattern.rstrip("/")
        if pattern.endswith("/**"):
            pattern = pattern[:-3]
        for candidate in candidates:
            if fnmatch.fnmatchcase(candidate, pattern):
                return True
            if "/" not in pattern and fnmatch.fnmatchcase(candidate.rsplit("/", 1)[-1], pattern):
                return True
    return False


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for block in iter(lambda: f.read(65536), b""):
            digest.update(block)
    return digest.hexdigest()


class ArtifactStore:
    """Creates and retrieves versioned, read-only artifacts.

    Each artifact is stored as ``<id>.zip`` with a ``<id>.json`` manifest
    next to it. Identifiers are never reused.
    """

    def __init__(self, store_dir: Path | str, project: str) -> None:
        """Initialize artifact store.

        Args:
            store_dir: Directory holding archives and manifests
            project: Project name, the identifier prefix
        """
        self.store_dir = Path(store_dir).resolve()
        self.project = project
        self.store_dir.mkdir(parents=True, exist_ok=True)

    def artifact_id(self, run_number: int) -> str:
        return f"{self.project}-{run_number}"

    def create(
        self,
        workspace: Path | str,
        run_number: int,
        exclusions: list[str] | tuple[str, ...] = DEFAULT_EXCLUSIONS,
        run_id: str | None = None,
        prune: list[Path] | tuple[Path, ...] = (),
    ) -> Artifact:
        """Package a workspace into a new artifact.

        Exclusions are applied while walking the workspace, so excluded
        content never enters the archive.

        Args:
            workspace: Directory to package
            run_number: Build number the identifier derives from
            exclusions: Glob patterns relative to the workspace root
            run_id: Owning run (defaults to the artifact id)
            prune: Directories that never enter the archive wherever they sit,
                such as the run bookkeeping directory. The store itself is
                always pruned.

        Returns:
            The persisted Artifact

        Raises:
            ArtifactExists: An artifact with this identifier already exists
        """
        workspace = Path(workspace).resolve()
        artifact_id = self.artifact_id(run_number)
        archive_path = self.store_dir / f"{artifact_id}.zip"
        manifest_path = self.store_dir / f"{artifact_id}.json"

        if archive_path.exists() or manifest_path.exists():
            raise ArtifactExists(f"Artifact {artifact_id} already exists; artifacts are never regenerated")

        files = self._collect_files(workspace, tuple(exclusions), prune)
        logger.info("ARTIFACT: Packaging %d files into %s", len(files), archive_path.name)

        fd, tmp_name = tempfile.mkstemp(prefix=f".{artifact_id}-", suffix=".zip", dir=self.store_dir)
        os.close(fd)
        tmp_path = Path(tmp_name)
        try:
            with zipfile.ZipFile(tmp_path, "w", compression=zipfile.ZIP_DEFLATED) as archive:
                for rel_path in files:
                    source = workspace / rel_path
                    info = zipfile.ZipInfo(rel_path, date_time=ZIP_EPOCH)
                    info.compress_type = zipfile.ZIP_DEFLATED
                    mode = stat.S_IMODE(source.stat().st_mode)
                    info.external_attr = (stat.S_IFREG | mode) << 16
                    archive.writestr(info, source.read_bytes())

            if archive_path.exists():
                raise ArtifactExists(f"Artifact {artifact_id} was created concurrently")
            os.replace(tmp_path, archive_path)
        finally:
            if tmp_path.exists():
                tmp_path.unlink()

        archive_path.chmod(0o444)

        artifact = Artifact(
            artifact_id=artifact_id,
            run_id=run_id or artifact_id,
            run_number=run_number,
            path=archive_path,
            sha256=sha256_file(archive_path),
            size_bytes=archive_path.stat().st_size,
            file_count=len(files),
            created_at=datetime.now(),
            exclusions=tuple(exclusions),
        )
        manifest_path.write_text(artifact.model_dump_json(indent=2))
        logger.info("ARTIFACT: Created %s (%d bytes, sha256=%s)", artifact_id, artifact.size_bytes, artifact.sha256[:12])
        return artifact

    def fetch(self, artifact_id: str) -> Artifact:
        """Retrieve a stored artifact by identifier.

        Raises:
            ArtifactNotFound: Unknown identifier or missing archive
            ArtifactCorrupted: Archive bytes changed since creation
        """
        manifest_path = self.store_dir / f"{artifact_id}.json"
        if not manifest_path.exists():
            raise ArtifactNotFound(f"Unknown artifact: {artifact_id}")

        artifact = Artifact.model_validate_json(manifest_path.read_text())
        if not artifact.path.exists():
            raise ArtifactNotFound(f"Archive for {artifact_id} is missing: {artifact.path}")

        digest = sha256_file(artifact.path)
        if digest != artifact.sha256:
            raise ArtifactCorrupted(
                f"Artifact {artifact_id} checksum mismatch: expected {artifact.sha256}, got {digest}"
            )
        return artifact

    def list_artifacts(self) -> list[Artifact]:
        """All stored artifacts, oldest first."""
        artifacts = [
            Artifact.model_validate_json(p.read_text()) for p in self.store_dir.glob("*.json")
        ]
        return sorted(artifacts, key=lambda a: a.created_at)

    def _collect_files(
        self, workspace: Path, exclusions: tuple[str, ...], prune: list[Path] | tuple[Path, ...] = ()
    ) -> list[str]:
        """Walk the workspace, pruning excluded paths, and return sorted relative paths."""
        pruned = {self.store_dir, *(Path(p).resolve() for p in prune)}
        files: list[str] = []
        for root, dirs, names in os.walk(workspace):
            root_path = Path(root)
            rel_root = root_path.relative_to(workspace).as_posix()
            prefix = "" if rel_root == "." else f"{rel_root}/"

            kept_dirs = []
            for d in dirs:
                if (root_path / d).resolve() in pruned:
                    continue
                if is_excluded(f"{prefix}{d}", exclusions):
                    continue
                kept_dirs.append(d)
            dirs[:] = kept_dirs

            for name in names:
                rel_path = f"{prefix}{name}"
                if is_excluded(rel_path, exclusions):
                    continue
                if (root_path / name).is_file():
                    files.append(rel_path)
        return sorted(files)
