"""Artifact staging: fingerprint a source tree and bundle it for upload."""

from __future__ import annotations

import fnmatch
import hashlib
import io
import os
import tarfile
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from pushdeploy.core.config import DEFAULT_STAGE_IGNORE
from pushdeploy.core.exceptions import StagingError
from pushdeploy.deploy.models import Artifact


logger = structlog.get_logger()

FINGERPRINT_MARKER = ".pushdeploy-fingerprint"


class ArtifactStager:
    """Packages source trees into deterministic, fingerprinted bundles."""

    def __init__(self, staging_dir: Path, ignore: Optional[Sequence[str]] = None):
        self.staging_dir = Path(staging_dir)
        if ignore is None:
            ignore = DEFAULT_STAGE_IGNORE.split(",")
        self.ignore = list(ignore)
        # Bundles are shared by runs staging the same tree
        self._refs: Dict[str, int] = {}

    def _ignored(self, name: str) -> bool:
        return any(fnmatch.fnmatch(name, pattern) for pattern in self.ignore)

    def _collect(self, root: Path) -> List[Tuple[str, Path]]:
        """Return (relative posix path, absolute path) pairs, sorted."""
        files: List[Tuple[str, Path]] = []

        def _onerror(err: OSError):
            raise StagingError(f"Cannot read source tree: {err}")

        for dirpath, dirnames, filenames in os.walk(root, onerror=_onerror):
            dirnames[:] = sorted(d for d in dirnames if not self._ignored(d))
            for name in filenames:
                if self._ignored(name):
                    continue
                path = Path(dirpath) / name
                if path.is_symlink() or not path.is_file():
                    continue
                files.append((path.relative_to(root).as_posix(), path))
        files.sort(key=lambda item: item[0])
        return files

    @staticmethod
    def compute_fingerprint(files: Iterable[Tuple[str, Path]]) -> str:
        """Hash sorted relative paths and their contents."""
        sha256_hash = hashlib.sha256()
        for rel, path in files:
            sha256_hash.update(rel.encode("utf-8"))
            sha256_hash.update(b"\0")
            with open(path, "rb") as f:
                for byte_block in iter(lambda: f.read(8192), b""):
                    sha256_hash.update(byte_block)
            sha256_hash.update(b"\0")
        return sha256_hash.hexdigest()

    def bundle_path(self, fingerprint: str) -> Path:
        return self.staging_dir / f"{fingerprint}.tar.gz"

    def _write_bundle(self, files: List[Tuple[str, Path]], fingerprint: str) -> Path:
        dest = self.bundle_path(fingerprint)
        if dest.exists():
            return dest
        self.staging_dir.mkdir(parents=True, exist_ok=True)
        tmp_file = dest.with_suffix(".partial")
        try:
            with tarfile.open(tmp_file, mode="w:gz") as tar:
                for rel, path in files:
                    info = tar.gettarinfo(str(path), arcname=rel)
                    # Normalise metadata so equal trees give equal bundles
                    info.uid = info.gid = 0
                    info.uname = info.gname = ""
                    info.mtime = 0
                    with open(path, "rb") as f:
                        tar.addfile(info, f)
                marker = fingerprint.encode("ascii") + b"\n"
                info = tarfile.TarInfo(FINGERPRINT_MARKER)
                info.size = len(marker)
                tar.addfile(info, io.BytesIO(marker))
            os.replace(tmp_file, dest)
        except OSError as exc:
            tmp_file.unlink(missing_ok=True)
            raise StagingError(f"Failed to write bundle: {exc}") from exc
        return dest

    def stage(self, source: Path, revision: str) -> Artifact:
        """Fingerprint and bundle the tree at ``source``.

        Raises:
            StagingError: the tree is missing, unreadable, or has no files.
        """
        root = Path(source)
        if not root.is_dir():
            raise StagingError(f"Source tree not found: {root}")

        try:
            files = self._collect(root)
            if not files:
                raise StagingError(f"Source tree is empty: {root}")
            fingerprint = self.compute_fingerprint(files)
        except OSError as exc:
            raise StagingError(f"Cannot read source tree: {exc}") from exc

        bundle = self._write_bundle(files, fingerprint)
        self._refs[fingerprint] = self._refs.get(fingerprint, 0) + 1
        artifact = Artifact(
            fingerprint=fingerprint,
            revision=revision,
            source=str(root),
            bundle_path=str(bundle),
            file_count=len(files),
        )
        logger.info(
            "Artifact staged",
            fingerprint=artifact.short,
            revision=revision,
            files=len(files),
            bundle=str(bundle),
            size=bundle.stat().st_size,
        )
        return artifact

    def release(self, artifact: Artifact) -> None:
        """Drop the local bundle once the run no longer needs it."""
        if not artifact.bundle_path:
            return
        remaining = self._refs.get(artifact.fingerprint, 1) - 1
        if remaining > 0:
            self._refs[artifact.fingerprint] = remaining
            return
        self._refs.pop(artifact.fingerprint, None)
        path = Path(artifact.bundle_path)
        try:
            path.unlink()
            logger.debug("Staged bundle released", fingerprint=artifact.short)
        except FileNotFoundError:
            pass
