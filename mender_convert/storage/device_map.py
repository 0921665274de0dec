"""Loop device attachment for disk images.

Loop devices are a host-wide resource shared with every other process, so
attachment retries on "busy" and "no free device" errors, and every mapping
handed out is tracked until it has been released. One loop device is
attached per partition, using ``--offset``/``--sizelimit``, which keeps the
handles in partition order without relying on partition scanning.

Usage:
    manager = DeviceMapManager()
    with manager.mapped(image.path, image.regions()) as mapping:
        format_partition(mapping.device("data"))

    # On any abort path:
    manager.release_all()
"""

from __future__ import annotations

import time
from contextlib import contextmanager
from pathlib import Path
from typing import Callable, Generator, Iterable, Optional, Union

from mender_convert.config import settings
from mender_convert.domain.models import DeviceMapping, MappedRegion
from mender_convert.exceptions import (
    ConversionError,
    ExternalToolError,
    ResourceExhaustionError,
)
from mender_convert.logging import EventLogger, LoggerFactory

from .commands import CommandRunner, run_checked_command, run_command

log = LoggerFactory.for_storage()

# losetup messages that clear up once another process lets go of a device
TRANSIENT_MARKERS = (
    "device or resource busy",
    "cannot find an unused loop device",
    "could not find any free loop device",
    "resource temporarily unavailable",
)

# losetup messages meaning the device is already detached
GONE_MARKERS = (
    "no such device or address",
    "no such device",
    "no such file or directory",
)


def is_transient(error: ExternalToolError) -> bool:
    message = f"{error.stderr} {error.stdout}".lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)


def is_gone(error: ExternalToolError) -> bool:
    message = f"{error.stderr} {error.stdout}".lower()
    return any(marker in message for marker in GONE_MARKERS)


class LoopDeviceManager:
    """Attaches and detaches loop devices with losetup."""

    def __init__(self, runner: CommandRunner = run_command):
        self.runner = runner

    def attach(
        self,
        image_path: Union[str, Path],
        offset_bytes: Optional[int] = None,
        size_bytes: Optional[int] = None,
    ) -> str:
        command = ["losetup", "--find", "--show"]
        if offset_bytes is not None:
            command += ["--offset", str(offset_bytes)]
        if size_bytes is not None:
            command += ["--sizelimit", str(size_bytes)]
        command.append(str(image_path))
        device = run_checked_command(command, runner=self.runner).strip()
        if not device.startswith("/dev/"):
            raise ExternalToolError(command, 0, stderr=f"unexpected losetup output: {device!r}")
        return device

    def detach(self, device: str) -> bool:
        """Detach ``device``; returns False if it was already gone."""
        try:
            run_checked_command(["losetup", "--detach", device], runner=self.runner)
        except ExternalToolError as error:
            if is_gone(error):
                log.debug(f"{device} already detached")
                return False
            raise
        return True


class DeviceMapManager:
    """Hands out device mappings and tracks the ones not yet released."""

    def __init__(
        self,
        loop_devices: Optional[LoopDeviceManager] = None,
        max_attempts: Optional[int] = None,
        retry_delay: Optional[float] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.loop_devices = loop_devices or LoopDeviceManager()
        if max_attempts is None:
            max_attempts = settings.get_int(
                "loop_attach_attempts", settings.DEFAULT_LOOP_ATTACH_ATTEMPTS
            )
        if retry_delay is None:
            retry_delay = float(
                settings.get_setting(
                    "loop_attach_retry_delay", settings.DEFAULT_LOOP_ATTACH_RETRY_DELAY
                )
            )
        self.max_attempts = max(1, max_attempts)
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.outstanding: list[DeviceMapping] = []

    def acquire(
        self,
        image_path: Union[str, Path],
        regions: Optional[Iterable[MappedRegion]] = None,
    ) -> DeviceMapping:
        """Attach one device per region (the whole file when no regions are given).

        If any attachment fails the devices attached so far are released
        before the error propagates.

        Raises:
            ResourceExhaustionError: No free loop device after bounded retries
            ExternalToolError: losetup failed for another reason
        """
        image_path = Path(image_path)
        region_list = list(regions) if regions else [MappedRegion(label="disk")]
        mapping = DeviceMapping(
            image_path=image_path, labels=[region.label for region in region_list]
        )
        self.outstanding.append(mapping)
        try:
            for region in region_list:
                device = self._attach_with_retry(image_path, region)
                mapping.devices.append(device)
                EventLogger.log_device_attached(log, str(image_path), device, label=region.label)
        except BaseException:
            log.warning(
                f"Attaching {image_path.name} stopped after "
                f"{len(mapping.devices)} of {len(region_list)} device(s), releasing"
            )
            try:
                self.release(mapping)
            except ConversionError as error:
                # Left in self.outstanding for release_all()
                log.error(f"Could not release partial mapping of {image_path}: {error}")
            raise
        return mapping

    def _attach_with_retry(self, image_path: Path, region: MappedRegion) -> str:
        last_error: Optional[ExternalToolError] = None
        for attempt in range(1, self.max_attempts + 1):
            try:
                return self.loop_devices.attach(
                    image_path, region.offset_bytes, region.size_bytes
                )
            except ExternalToolError as error:
                if not is_transient(error):
                    raise
                last_error = error
                log.warning(
                    f"No loop device available for {image_path.name} "
                    f"(attempt {attempt}/{self.max_attempts}): {error.stderr.strip()}"
                )
                if attempt < self.max_attempts:
                    self.sleep(self.retry_delay)
        reason = last_error.stderr.strip() if last_error else ""
        raise ResourceExhaustionError(image_path, self.max_attempts, reason=reason)

    def release(self, mapping: DeviceMapping) -> None:
        """Detach every device of ``mapping``.

        Devices that are already gone are skipped. Every device is tried even
        after a failure; the first hard failure is raised at the end and the
        mapping stays outstanding so it can be released again.
        """
        if mapping.released:
            log.debug(f"Mapping of {mapping.image_path} already released")
            return
        first_error: Optional[ExternalToolError] = None
        for device in reversed(mapping.attached_devices):
            try:
                self.loop_devices.detach(device)
            except ExternalToolError as error:
                log.error(f"Failed to detach {device}: {error}")
                if first_error is None:
                    first_error = error
                continue
            mapping.detached.add(device)
        if first_error is not None:
            raise first_error
        mapping.released = True
        self.outstanding = [entry for entry in self.outstanding if entry is not mapping]
        EventLogger.log_device_released(log, str(mapping.image_path), list(mapping.devices))

    def release_all(self) -> None:
        """Release every outstanding mapping, newest first."""
        first_error: Optional[ExternalToolError] = None
        for mapping in list(reversed(self.outstanding)):
            try:
                self.release(mapping)
            except ExternalToolError as error:
                if first_error is None:
                    first_error = error
        if first_error is not None:
            raise first_error

    @contextmanager
    def mapped(
        self,
        image_path: Union[str, Path],
        regions: Optional[Iterable[MappedRegion]] = None,
    ) -> Generator[DeviceMapping, None, None]:
        """Acquire a mapping for the duration of a block."""
        mapping = self.acquire(image_path, regions)
        try:
            yield mapping
        except BaseException:
            try:
                self.release(mapping)
            except ConversionError as error:
                log.error(f"Release after failure left devices attached: {error}")
            raise
        self.release(mapping)
