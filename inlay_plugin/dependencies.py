"""Download, verify and install the renderer's binary payloads."""
from __future__ import annotations

import hashlib
import logging
import shutil
import threading
import zipfile
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Sequence, Tuple, Union
from urllib.parse import quote_plus

import requests

from version import user_agent

from .events import EventHook, SingleFlight, spawn_daemon

LOGGER = logging.getLogger("EDMCWebOverlay.Dependencies")

DEPENDENCIES_DIR_NAME = "dependencies"
DOWNLOAD_DIR_NAME = "downloads"
VERSION_FILE_NAME = "VERSION"
VERSION_PLACEHOLDER = "{VERSION}"
CHECKSUM_FAILED = "FAILED"
DOWNLOAD_CHUNK_SIZE = 64 * 1024
HASH_CHUNK_SIZE = 1024 * 1024
DOWNLOAD_TIMEOUT = 30


class InstallState(str, Enum):
    UNCHECKED = "unchecked"
    CONFIRM = "confirm"
    INSTALLING = "installing"
    COMPLETE = "complete"
    FAILED = "failed"
    HIDDEN = "hidden"


class ProgressMarker(str, Enum):
    EXTRACTING = "extracting"
    COMPLETE = "complete"
    FAILED = "failed"


Progress = Union[int, ProgressMarker]


class UnknownDependencyError(KeyError):
    """Raised when a caller asks for a dependency that was never declared."""


@dataclass(frozen=True)
class DependencyDescriptor:
    """Static description of one downloadable payload.

    ``checksum`` is the hex SHA-256 of the archive served at ``url_template``
    once ``{VERSION}`` has been substituted.
    """

    url_template: str
    directory: str
    version: str
    checksum: str

    def resolved_url(self) -> str:
        return self.url_template.replace(VERSION_PLACEHOLDER, quote_plus(self.version))

    @property
    def archive_name(self) -> str:
        return f"{self.directory}-{self.version}.zip"


DEFAULT_DEPENDENCIES: Tuple[DependencyDescriptor, ...] = (
    DependencyDescriptor(
        url_template="https://oss.yarukon.me/browsingway/cefsharp-{VERSION}.zip",
        directory="cef",
        version="134.3.9+g5dc6f2f+chromium-134.0.6998.178",
        checksum="F761372E54962FBF1F8906EE864F8B92D3A3A5B4F5EA5C34EA12340907E0B41A",
    ),
)


def sha256_file(path: Path) -> str:
    digest = hashlib.sha256()
    with path.open("rb") as fh:
        for chunk in iter(lambda: fh.read(HASH_CHUNK_SIZE), b""):
            digest.update(chunk)
    return digest.hexdigest()


class DependencyManager:
    """Checks for, and on request installs, the payloads the renderer needs.

    State changes happen on background threads; the polling side only reads
    ``state``, ``missing`` and ``progress()`` snapshots.
    """

    def __init__(
        self,
        config_dir: Path,
        *,
        dependencies: Sequence[DependencyDescriptor] = DEFAULT_DEPENDENCIES,
        dev_override_dir: Optional[Path] = None,
        session_factory: Optional[Callable[[], Any]] = None,
        run_async: Optional[Callable[[Callable[[], None], str], Any]] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._dependencies: Tuple[DependencyDescriptor, ...] = tuple(dependencies)
        self._dependency_dir = Path(config_dir) / DEPENDENCIES_DIR_NAME
        self._dev_override_dir = Path(dev_override_dir) if dev_override_dir is not None else None
        self._session_factory = session_factory or requests.Session
        self._run_async = run_async or spawn_daemon
        self._logger = logger or LOGGER
        self._lock = threading.Lock()
        self._install_guard = SingleFlight()
        self._state = InstallState.UNCHECKED
        self._missing: Tuple[DependencyDescriptor, ...] = ()
        self._progress: Dict[str, Progress] = {}
        self._closed = False
        self.dependencies_ready = EventHook("dependencies_ready", self._logger)

    # Read-only views -------------------------------------------------------

    @property
    def dependencies(self) -> Tuple[DependencyDescriptor, ...]:
        return self._dependencies

    @property
    def state(self) -> InstallState:
        return self._state

    @property
    def missing(self) -> Tuple[DependencyDescriptor, ...]:
        return self._missing

    @property
    def download_dir(self) -> Path:
        return self._dependency_dir / DOWNLOAD_DIR_NAME

    def progress(self) -> Dict[str, Progress]:
        with self._lock:
            return dict(self._progress)

    # Path resolution -------------------------------------------------------

    def managed_path(self, dependency: DependencyDescriptor) -> Path:
        return self._dependency_dir / dependency.directory

    def dependency_path(self, dependency: DependencyDescriptor) -> Path:
        if self._dev_override_dir is not None:
            local = self._dev_override_dir / dependency.directory
            if local.is_dir():
                return local
        return self.managed_path(dependency)

    def dependency_path_for(self, directory: str) -> Path:
        for dependency in self._dependencies:
            if dependency.directory == directory:
                return self.dependency_path(dependency)
        raise UnknownDependencyError(f"Unknown dependency {directory}")

    # Checking ----------------------------------------------------------------

    def is_missing(self, dependency: DependencyDescriptor) -> bool:
        version_file = self.dependency_path(dependency) / VERSION_FILE_NAME
        try:
            contents = version_file.read_text(encoding="utf-8", errors="replace")
        except OSError:
            return True
        return dependency.version not in contents

    def check_dependencies(self) -> InstallState:
        if self._install_guard.active:
            self._logger.debug("Dependency check skipped; install in progress")
            return self._state
        missing = tuple(dep for dep in self._dependencies if self.is_missing(dep))
        self._missing = missing
        if missing:
            self._state = InstallState.CONFIRM
            self._logger.info(
                "Missing renderer dependencies: %s",
                ", ".join(f"{dep.directory} {dep.version}" for dep in missing),
            )
            return self._state
        self._state = InstallState.HIDDEN
        self._logger.debug("All renderer dependencies present")
        self.dependencies_ready.emit()
        return self._state

    def reset(self) -> None:
        if self._install_guard.active:
            return
        with self._lock:
            self._progress.clear()
        self._missing = ()
        self._state = InstallState.UNCHECKED

    def close(self) -> None:
        self._closed = True
        self.dependencies_ready.clear()

    # Installing --------------------------------------------------------------

    def install(self) -> bool:
        """Start installing every missing dependency; return False if nothing to do."""

        missing = self._missing
        if not missing:
            return False
        if not self._install_guard.try_enter():
            self._logger.debug("Dependency install already in progress")
            return False
        with self._lock:
            self._progress.clear()
        self._state = InstallState.INSTALLING
        self._logger.info("Installing renderer dependencies...")
        try:
            self._run_async(lambda: self._install_all(missing), "WebOverlayDependencyInstall")
        except Exception as exc:
            self._logger.error("Failed to start dependency install: %s", exc, exc_info=exc)
            self._state = InstallState.FAILED
            self._install_guard.leave()
            return False
        return True

    def _install_all(self, missing: Sequence[DependencyDescriptor]) -> None:
        try:
            workers = [
                threading.Thread(
                    target=self._run_pipeline,
                    args=(dependency,),
                    name=f"WebOverlayDownload-{dependency.directory}",
                    daemon=True,
                )
                for dependency in missing
            ]
            for worker in workers:
                worker.start()
            for worker in workers:
                worker.join()
            failed = any(value is ProgressMarker.FAILED for value in self.progress().values())
            if not self._closed:
                self._state = InstallState.FAILED if failed else InstallState.COMPLETE
                self._logger.info("Dependency install %s.", self._state.value)
        finally:
            shutil.rmtree(self.download_dir, ignore_errors=True)
            self._install_guard.leave()

    def _run_pipeline(self, dependency: DependencyDescriptor) -> None:
        try:
            self._install_dependency(dependency)
        except Exception as exc:
            self._logger.error(
                "Failed to install %s %s: %s",
                dependency.directory,
                dependency.version,
                exc,
                exc_info=exc,
            )
            self._mark(dependency, ProgressMarker.FAILED)

    def _install_dependency(self, dependency: DependencyDescriptor) -> bool:
        self._logger.info("Downloading %s %s", dependency.directory, dependency.version)
        download_dir = self.download_dir
        download_dir.mkdir(parents=True, exist_ok=True)

        # A leftover archive may be a truncated earlier attempt.
        archive_path = download_dir / dependency.archive_name
        archive_path.unlink(missing_ok=True)

        self._download(dependency, archive_path)
        self._mark(dependency, ProgressMarker.EXTRACTING)

        try:
            downloaded_checksum = sha256_file(archive_path)
        except OSError as exc:
            self._logger.error("Failed to checksum %s: %s", archive_path, exc)
            downloaded_checksum = CHECKSUM_FAILED

        if downloaded_checksum.lower() != dependency.checksum.lower():
            self._logger.error(
                "Checksum mismatch for %s: got %s but expected %s",
                archive_path,
                downloaded_checksum,
                dependency.checksum,
            )
            self._mark(dependency, ProgressMarker.FAILED)
            archive_path.unlink(missing_ok=True)
            return False

        self._mark(dependency, ProgressMarker.COMPLETE)

        destination = self.managed_path(dependency)
        try:
            shutil.rmtree(destination)
        except FileNotFoundError:
            pass
        except OSError as exc:
            # Extraction overwrites whatever survived.
            self._logger.warning("Could not fully remove %s before extracting: %s", destination, exc)
        with zipfile.ZipFile(archive_path) as archive:
            archive.extractall(destination)
        archive_path.unlink(missing_ok=True)
        self._logger.info("Installed %s %s into %s", dependency.directory, dependency.version, destination)
        return True

    def _download(self, dependency: DependencyDescriptor, destination: Path) -> None:
        url = dependency.resolved_url()
        headers = {"User-Agent": user_agent()}
        session = self._session_factory()
        try:
            with session.get(url, stream=True, timeout=DOWNLOAD_TIMEOUT, headers=headers) as response:
                response.raise_for_status()
                total = int(response.headers.get("content-length") or 0)
                received = 0
                with destination.open("wb") as fh:
                    for chunk in response.iter_content(chunk_size=DOWNLOAD_CHUNK_SIZE):
                        if not chunk:
                            continue
                        fh.write(chunk)
                        received += len(chunk)
                        if total:
                            self._record_progress(dependency, min(100, received * 100 // total))
        finally:
            session.close()
        self._record_progress(dependency, 100)
        self._logger.debug("Downloaded %s (%d bytes) to %s", url, received, destination)

    # Progress bookkeeping -------------------------------------------------

    def _record_progress(self, dependency: DependencyDescriptor, percent: int) -> None:
        if self._closed:
            return
        percent = max(0, min(100, int(percent)))
        with self._lock:
            current = self._progress.get(dependency.directory)
            if isinstance(current, ProgressMarker):
                return
            self._progress[dependency.directory] = percent if current is None else max(current, percent)

    def _mark(self, dependency: DependencyDescriptor, marker: ProgressMarker) -> None:
        if self._closed:
            return
        with self._lock:
            self._progress[dependency.directory] = marker
