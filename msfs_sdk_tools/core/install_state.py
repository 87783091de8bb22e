"""Installed release record and installation lock.

An installation root holds the extracted SDK tree plus a plain-text record
of the release identifier it was installed from. The record is written with
an atomic temp file + os.replace so an interrupted write never leaves a
truncated identifier behind.
"""

from __future__ import annotations

import os
import shutil
import sys
from pathlib import Path

import structlog

from msfs_sdk_tools.core.errors import FilesystemError

logger = structlog.get_logger()


class InstallStateStore:
    """Reads, writes and clears installation roots.

    Args:
        version_file_name: Name of the record file inside an installation root
    """

    def __init__(self, version_file_name: str = "version.txt") -> None:
        self.version_file_name = version_file_name

    def record_path(self, root: Path) -> Path:
        """Path to the record file."""
        return root / self.version_file_name

    def read(self, root: Path) -> str | None:
        """Installed release identifier, or None when nothing is installed."""
        path = self.record_path(root)
        try:
            return path.read_text(encoding="utf-8").strip()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise FilesystemError(f"Cannot read {path}: {e}", stage="install_state", path=str(path)) from e

    def write(self, root: Path, identifier: str) -> None:
        """Store the release identifier, creating the root if needed."""
        path = self.record_path(root)
        tmp_path = path.with_suffix(path.suffix + ".tmp")
        try:
            root.mkdir(parents=True, exist_ok=True)
            tmp_path.write_text(identifier, encoding="utf-8")
            os.replace(tmp_path, path)
        except OSError as e:
            raise FilesystemError(f"Cannot write {path}: {e}", stage="install_state", path=str(path)) from e
        logger.debug("install_record_written", root=str(root), identifier=identifier)

    def clear(self, root: Path) -> None:
        """Delete an installation root; a missing root is not an error."""
        if not root.exists():
            return
        try:
            shutil.rmtree(root)
        except OSError as e:
            raise FilesystemError(f"Cannot remove {root}: {e}", stage="install_state", path=str(root)) from e
        logger.info("install_root_cleared", root=str(root))


def _process_alive(pid: int) -> bool:
    """Whether a process with this id exists."""
    if pid <= 0:
        return False
    if sys.platform == "win32":
        # Signal 0 is CTRL_C_EVENT on Windows; os.kill cannot test for the owner
        return True
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


class InstallLock:
    """Exclusive marker file guarding install, update and remove flows.

    The file holds the owner's process id. A lock left behind by a process
    that no longer exists is taken over.

    Args:
        directory: Directory holding the installation roots
    """

    LOCK_FILENAME = ".install.lock"

    def __init__(self, directory: Path) -> None:
        self.path = directory / self.LOCK_FILENAME
        self._held = False

    def owner(self) -> int | None:
        """Process id recorded in the lock file, if readable."""
        try:
            return int(self.path.read_text().strip())
        except (OSError, ValueError):
            return None

    def _create(self) -> int:
        return os.open(self.path, os.O_CREAT | os.O_EXCL | os.O_WRONLY)

    def acquire(self) -> None:
        """Create the lock file.

        Raises:
            FilesystemError: Another live flow holds the lock, or it cannot be created
        """
        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            try:
                fd = self._create()
            except FileExistsError:
                owner = self.owner()
                # An unreadable owner may be a flow that has not written its id yet
                if owner is None or _process_alive(owner):
                    raise
                logger.warning("stale_install_lock_removed", path=str(self.path), pid=owner)
                self.path.unlink(missing_ok=True)
                fd = self._create()
        except FileExistsError as e:
            raise FilesystemError(
                f"Another installation is in progress (lock file {self.path})",
                stage="lock",
                path=str(self.path),
                pid=self.owner(),
            ) from e
        except OSError as e:
            raise FilesystemError(f"Cannot create lock {self.path}: {e}", stage="lock") from e
        with os.fdopen(fd, "w") as f:
            f.write(str(os.getpid()))
        self._held = True

    def release(self) -> None:
        if self._held:
            self.path.unlink(missing_ok=True)
            self._held = False

    @property
    def held(self) -> bool:
        return self._held

    def __enter__(self) -> InstallLock:
        self.acquire()
        return self

    def __exit__(self, *args: object) -> None:
        self.release()
