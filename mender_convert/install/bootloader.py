"""Device specific bootloader installers.

Each profile names an external installer. It is run once the partitions it
needs are mounted and receives only named paths:

    <installer> --boot-dir DIR --rootfs-dir DIR [--data-dir DIR]
                --sources DIR [--toolchain ID] --device-type NAME
"""

from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from mender_convert.config import settings
from mender_convert.devices.profiles import DeviceProfile
from mender_convert.domain.models import BOOT, DATA, PRIMARY, SECONDARY
from mender_convert.logging import LoggerFactory
from mender_convert.storage.commands import CommandRunner, run_checked_command, run_command

log = LoggerFactory.for_install()

MOUNT_FLAGS = {
    BOOT: "--boot-dir",
    PRIMARY: "--rootfs-dir",
    SECONDARY: "--rootfs-b-dir",
    DATA: "--data-dir",
}


@dataclass(frozen=True)
class InstallRequest:
    device_type: str
    sources: Path
    mounts: dict[str, Path] = field(default_factory=dict)
    toolchain: Optional[str] = None


class DeviceInstaller:
    def __init__(self, installer_dir: Optional[Path] = None, runner: CommandRunner = run_command):
        if installer_dir is None:
            installer_dir = settings.get_setting("installer_dir")
        self.installer_dir = Path(installer_dir) if installer_dir else None
        self.runner = runner

    def executable_for(self, profile: DeviceProfile) -> str:
        if self.installer_dir is None:
            return profile.bootloader_installer
        return str(self.installer_dir / profile.bootloader_installer)

    def command_for(self, profile: DeviceProfile, request: InstallRequest) -> list[str]:
        command = [self.executable_for(profile)]
        for name in profile.installer_mounts:
            if name in request.mounts:
                command.extend([MOUNT_FLAGS[name], str(request.mounts[name])])
        command.extend(["--sources", str(request.sources)])
        if request.toolchain:
            command.extend(["--toolchain", request.toolchain])
        command.extend(["--device-type", request.device_type])
        return command

    def install(self, profile: DeviceProfile, request: InstallRequest) -> str:
        """Run the profile's installer; a non-zero exit raises ExternalToolError."""
        log.info(f"Running {profile.bootloader_installer} for {request.device_type}")
        return run_checked_command(self.command_for(profile, request), runner=self.runner)
