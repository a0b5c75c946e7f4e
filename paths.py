"""
paths.py – Data-directory resolution.

Decides where the database lives, depending on how the application was
started:

  - Portable:    a portable launcher exported PORTABLE_EXECUTABLE_DIR (or
                 PORTABLE_APP_DATA_DIR); data goes to <that dir>/data.
  - Packaged:    running as a frozen executable (PyInstaller sets
                 sys.frozen); data goes to <executable dir>/data.
  - Development: the OS-standard per-user data directory from appdirs.

The candidates are tried as an ordered list of strategies; the first one
that yields a path wins.  The winning directory is created if missing.  When
it cannot be created or written to, the per-user directory is used instead,
and if even that fails DataDirectoryError is raised; the process must not go
on to open the database.
"""

import enum
import logging
import os
import sys
from typing import Callable, List, Mapping, NamedTuple, Optional

import appdirs

from config import APP_NAME, DATA_SUBDIR, PORTABLE_ENV_VARS
from errors import DataDirectoryError

logger = logging.getLogger(APP_NAME)


class DeploymentMode(enum.Enum):
    PORTABLE = "portable"
    PACKAGED = "packaged"
    DEVELOPMENT = "development"


class Candidate(NamedTuple):
    mode: DeploymentMode
    path: str


def default_user_data_dir() -> str:
    """Return the OS-standard per-user data directory (not created)."""
    return appdirs.user_data_dir(APP_NAME, appauthor=False, roaming=True)


def is_packaged() -> bool:
    """Return True when running from a frozen (e.g. PyInstaller) executable."""
    return bool(getattr(sys, "frozen", False))


class DataDirectoryResolver:
    """
    Resolves (and creates) the data directory once per process.

    Every environmental input is injectable so the precedence rules can be
    exercised without touching the real environment.

    Parameters
    ----------
    environ : mapping, optional
        Environment variables; defaults to os.environ.
    packaged : callable, optional
        Returns whether the process runs from a packaged build.
    executable : str, optional
        Path of the running executable; defaults to sys.executable.
    user_data_dir : callable, optional
        Returns the per-user data directory.
    """

    def __init__(
        self,
        environ: Optional[Mapping[str, str]] = None,
        packaged: Optional[Callable[[], bool]] = None,
        executable: Optional[str] = None,
        user_data_dir: Optional[Callable[[], str]] = None,
    ) -> None:
        self.environ = os.environ if environ is None else environ
        self.packaged = packaged or is_packaged
        self.executable = executable or sys.executable
        self.user_data_dir = user_data_dir or default_user_data_dir

        self.mode: Optional[DeploymentMode] = None
        self.used_fallback: bool = False
        self._resolved: Optional[str] = None

    # ------------------------------------------------------------------
    # Candidate strategies, in priority order
    # ------------------------------------------------------------------

    def _from_portable_env(self) -> Optional[Candidate]:
        for name in PORTABLE_ENV_VARS:
            base = self.environ.get(name)
            if base:
                return Candidate(
                    DeploymentMode.PORTABLE,
                    os.path.join(os.path.abspath(base), DATA_SUBDIR),
                )
        return None

    def _from_packaged_executable(self) -> Optional[Candidate]:
        try:
            packaged = self.packaged()
        except Exception:
            logger.debug("Packaging state unavailable; assuming development")
            packaged = False
        if not packaged:
            return None
        exe_dir = os.path.dirname(os.path.abspath(self.executable))
        return Candidate(DeploymentMode.PACKAGED, os.path.join(exe_dir, DATA_SUBDIR))

    def _from_user_data_dir(self) -> Candidate:
        return Candidate(DeploymentMode.DEVELOPMENT, self.user_data_dir())

    def strategies(self) -> List[Callable[[], Optional[Candidate]]]:
        return [
            self._from_portable_env,
            self._from_packaged_executable,
            self._from_user_data_dir,
        ]

    def choose(self) -> Candidate:
        """Return the highest-priority candidate without touching the disk."""
        for strategy in self.strategies():
            candidate = strategy()
            if candidate is not None:
                return candidate
        # _from_user_data_dir always answers.
        raise AssertionError("no data directory strategy matched")

    # ------------------------------------------------------------------
    # Resolution with creation and fallback
    # ------------------------------------------------------------------

    @staticmethod
    def _ensure_directory(path: str) -> None:
        """Create *path* if needed and check that it is writable."""
        os.makedirs(path, exist_ok=True)
        if not os.access(path, os.W_OK):
            raise PermissionError(f"Data directory is not writable: {path}")

    def resolve(self) -> str:
        """
        Return the absolute data directory, creating it if needed.

        The first successful result is cached; later calls return it
        unchanged because the database is bound to that path.

        Raises DataDirectoryError only when the per-user fallback directory
        cannot be created either.
        """
        if self._resolved is not None:
            return self._resolved

        candidate = self.choose()
        path = os.path.abspath(candidate.path)
        self.mode = candidate.mode
        try:
            self._ensure_directory(path)
        except OSError as exc:
            logger.warning(
                "Could not create data dir %s (%s mode): %s; "
                "falling back to the user data directory",
                path, candidate.mode.value, exc,
            )
            path = os.path.abspath(self.user_data_dir())
            try:
                self._ensure_directory(path)
            except OSError as fallback_exc:
                logger.critical("Fallback data dir %s unusable: %s", path, fallback_exc)
                raise DataDirectoryError(
                    f"Cannot create data directory {path}: {fallback_exc}"
                ) from fallback_exc
            self.used_fallback = True

        logger.info("Data directory resolved to %s (%s)", path, self.mode.value)
        self._resolved = path
        return path


def resolve_data_directory(**kwargs) -> str:
    """Convenience wrapper: build a DataDirectoryResolver and resolve once."""
    return DataDirectoryResolver(**kwargs).resolve()
