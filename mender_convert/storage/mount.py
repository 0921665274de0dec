"""Mounting of image partitions at fixed working directories.

Each partition is mounted at ``<mount root>/<name>`` where name is one of
``boot``, ``primary``, ``secondary`` or ``data``. Installers only ever see
those paths.

Unmounting:
    - Buffers are synced first
    - Normal ``umount`` is tried up to three times
    - A still-busy mount point is detached lazily (``umount -l``)
    - Mount points that are not mounted are skipped, so unmount_all() can be
      called any number of times

Mount points are removed with rmdir only, never recursively, so a directory
that is unexpectedly still mounted keeps its contents.
"""

from __future__ import annotations

import os
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Iterable, Optional

from mender_convert.domain.models import DeviceMapping, MountEntry, MountSet
from mender_convert.exceptions import ConversionError, ExternalToolError
from mender_convert.logging import LoggerFactory

from .commands import CommandRunner, run_checked_command, run_command


log = LoggerFactory.for_storage()

UNSAFE_CHARACTERS = [";", "&", "|", "$", "`", "\n", "\r", " "]


def _validate_device(device: str) -> None:
    if not isinstance(device, str) or not device.startswith("/dev/"):
        raise ValueError(f"Invalid device path: {device}")
    if any(char in device for char in UNSAFE_CHARACTERS):
        raise ValueError(f"Device path contains invalid characters: {device}")


def _validate_name(name: str) -> str:
    name = str(name)
    if not name or name in (".", "..") or "/" in name:
        raise ValueError(f"Invalid mount name: {name}")
    return name


class MountOrchestrator:
    """Mounts device mappings and tracks mount sets until unmounted."""

    def __init__(
        self,
        runner: CommandRunner = run_command,
        sleep: Callable[[float], None] = time.sleep,
        unmount_attempts: int = 3,
    ):
        self.runner = runner
        self.sleep = sleep
        self.unmount_attempts = unmount_attempts
        self.outstanding: list[MountSet] = []

    def is_mounted(self, path: Path) -> bool:
        return os.path.ismount(path)

    def mount_all(
        self,
        mapping: DeviceMapping,
        mount_root: Path,
        names: Optional[Iterable[str]] = None,
    ) -> MountSet:
        """Mount the selected partitions of ``mapping`` under ``mount_root``.

        If one mount fails, the ones already mounted are unmounted before
        the error propagates.
        """
        mount_root = Path(mount_root)
        selected = list(names) if names is not None else list(mapping.labels)
        mount_set = MountSet(root=mount_root)
        self.outstanding.append(mount_set)
        try:
            for name in selected:
                name = _validate_name(name)
                device = mapping.device(name)
                _validate_device(device)
                path = mount_root / name
                path.mkdir(parents=True, exist_ok=True)
                entry = MountEntry(name=name, device=device, path=path)
                mount_set.entries.append(entry)
                self._mount(device, path)
                entry.mounted = True
                log.debug(f"Mounted {device} at {path}")
        except BaseException:
            try:
                self.unmount_all(mount_set)
            except ConversionError as error:
                log.error(f"Could not unmount after failed mount: {error}")
            raise
        return mount_set

    def _mount(self, device: str, path: Path) -> None:
        run_checked_command(["mount", device, str(path)], runner=self.runner)

    def unmount_all(self, mount_set: MountSet) -> None:
        """Unmount every entry; safe to call repeatedly.

        Raises:
            ExternalToolError: The first mount point that could not be
                unmounted even lazily (the others are still attempted)
        """
        mounted = mount_set.mounted_entries
        if mounted:
            self.runner(["sync"], check=False, log_command=False)
        first_error: Optional[ExternalToolError] = None
        for entry in reversed(mounted):
            try:
                self._unmount(entry.path)
            except ExternalToolError as error:
                log.error(f"Failed to unmount {entry.path}: {error}")
                if first_error is None:
                    first_error = error
                continue
            entry.mounted = False
        if first_error is not None:
            raise first_error
        for entry in mount_set.entries:
            remove_mount_point(entry.path)
        self.outstanding = [entry for entry in self.outstanding if entry is not mount_set]

    def _unmount(self, path: Path) -> None:
        for attempt in range(1, self.unmount_attempts + 1):
            if not self.is_mounted(path):
                return
            result = self.runner(["umount", str(path)], check=False)
            if result.returncode == 0 or "not mounted" in (result.stderr or ""):
                log.debug(f"Unmounted {path}")
                return
            log.debug(f"Unmount attempt {attempt}/{self.unmount_attempts} of {path} failed")
            if attempt < self.unmount_attempts:
                self.sleep(1)

        log.warning(f"{path} is busy, unmounting lazily")
        run_checked_command(["umount", "-l", str(path)], runner=self.runner)

    def unmount_outstanding(self) -> None:
        """Unmount every tracked mount set, newest first."""
        first_error: Optional[ExternalToolError] = None
        for mount_set in list(reversed(self.outstanding)):
            try:
                self.unmount_all(mount_set)
            except ExternalToolError as error:
                if first_error is None:
                    first_error = error
        if first_error is not None:
            raise first_error

    @contextmanager
    def mounted(
        self,
        mapping: DeviceMapping,
        mount_root: Path,
        names: Optional[Iterable[str]] = None,
    ) -> Generator[MountSet, None, None]:
        mount_set = self.mount_all(mapping, mount_root, names)
        try:
            yield mount_set
        except BaseException:
            try:
                self.unmount_all(mount_set)
            except ConversionError as error:
                log.error(f"Unmount after failure left mounts behind: {error}")
            raise
        self.unmount_all(mount_set)


def remove_mount_point(path: Path) -> None:
    """Remove an empty, unmounted mount point directory."""
    if os.path.ismount(path):
        log.warning(f"Not removing {path}: still mounted")
        return
    try:
        path.rmdir()
    except FileNotFoundError:
        return
    except OSError as error:
        log.warning(f"Could not remove mount point {path}: {error}")
