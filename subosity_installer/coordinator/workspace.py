"""Persistent installation workspace on the host.

Layout::

    {install_path}/
        data/
        logs/
        configs/
        backups/
        docker/

The whole tree is mounted into the installer container at
``/app/data``.  One delegated run owns the workspace at a time; there is no
locking, so callers must not start concurrent runs against the same path.
"""

from __future__ import annotations

import os
from pathlib import Path

from subosity_installer.constants import WORKSPACE_SUBDIRECTORIES

WORKSPACE_MODE = 0o750


class InstallWorkspace:
    """Resolved workspace paths.  ``ensure`` creates them on disk."""

    def __init__(
        self,
        root: str | Path,
        *,
        subdirectories: tuple[str, ...] = WORKSPACE_SUBDIRECTORIES,
        mode: int = WORKSPACE_MODE,
    ) -> None:
        self.root = Path(root)
        self.subdirectories = subdirectories
        self.mode = mode

    def path(self, name: str) -> Path:
        """Real path of a named subdirectory."""
        if name not in self.subdirectories:
            msg = f"unknown workspace directory '{name}'"
            raise KeyError(msg)
        return self.root / name

    @property
    def all_paths(self) -> list[Path]:
        """Root followed by every subdirectory, in creation order."""
        return [self.root, *(self.root / name for name in self.subdirectories)]

    @property
    def exists(self) -> bool:
        return self.root.is_dir()

    def ensure(self) -> None:
        """Create the tree with restrictive permissions (idempotent).

        Permissions are re-applied on existing directories since ``mkdir``
        ignores ``mode`` for paths that already exist and is subject to the
        process umask.
        """
        for path in self.all_paths:
            path.mkdir(parents=True, exist_ok=True, mode=self.mode)
            os.chmod(path, self.mode)
