"""File-backed artifact store.

Layout:
    {root}/{context_id}/{relative_path}

Writes go through a temp file in the target directory followed by
``os.replace`` so a reader never sees a half-written artifact.
"""
from __future__ import annotations

import logging
import os
import tempfile
from pathlib import Path

logger = logging.getLogger(__name__)

# Directory (relative to {workspace}/{context_id}) captured after each step
CAPTURE_DIR = "context"


def atomic_write_text(path: Path, content: str, *, encoding: str = "utf-8") -> None:
    """Replace *path* with *content* in one rename, fsyncing the data first."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(fd, "w", encoding=encoding) as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_path, path)
    except BaseException:
        tmp_path.unlink(missing_ok=True)
        raise


def _inside(root: Path, candidate: Path) -> bool:
    try:
        candidate.resolve().relative_to(root.resolve())
    except ValueError:
        return False
    return True


class FileArtifactStore:
    """ArtifactStore implementation over a directory tree.

    ``step_id`` is accepted for interface parity and recorded in the log;
    the on-disk layout does not depend on it.
    """

    def __init__(self, root: Path | str) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def path_for(self, context_id: str, relative_path: str) -> Path:
        base = self._root / context_id
        path = base / relative_path
        if not _inside(base, path):
            raise ValueError(f"artifact path escapes context directory: {relative_path!r}")
        return path

    async def save_artifact(
        self,
        context_id: str,
        step_id: int,
        relative_path: str,
        content: str,
    ) -> None:
        path = self.path_for(context_id, relative_path)
        atomic_write_text(path, content)
        logger.debug("Saved artifact %s (step %s, %d chars)", path, step_id, len(content))

    async def read_artifact(self, context_id: str, relative_path: str) -> str | None:
        path = self.path_for(context_id, relative_path)
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    async def capture_step_artifacts(
        self,
        context_id: str,
        step_id: int,
        workspace_path: str,
    ) -> list[str]:
        """Copy ``{workspace}/{context_id}/context/*`` files into the store.

        Returns the captured relative paths. A workspace that is the store
        root itself needs no copying.
        """
        source_dir = Path(workspace_path) / context_id / CAPTURE_DIR
        if not source_dir.is_dir():
            logger.debug("No %s directory to capture for %s", source_dir, context_id)
            return []
        if source_dir.resolve() == (self._root / context_id / CAPTURE_DIR).resolve():
            return []

        captured: list[str] = []
        for source in sorted(source_dir.rglob("*")):
            if not source.is_file():
                continue
            relative = source.relative_to(Path(workspace_path) / context_id).as_posix()
            try:
                content = source.read_text(encoding="utf-8")
            except UnicodeDecodeError:
                logger.warning("Skipping %s: not valid UTF-8", source)
                continue
            await self.save_artifact(context_id, step_id, relative, content)
            captured.append(relative)
        logger.info(
            "Captured %d artifact(s) for %s step %s from %s",
            len(captured), context_id, step_id, source_dir,
        )
        return captured
