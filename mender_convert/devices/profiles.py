"""Device profiles.

Each supported board is described once here: whether the target image gets a
separate boot partition, where the board sees its storage, and which external
installer populates its bootloader files. Callers ask the profile instead of
branching on the device type name.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from mender_convert.domain.models import BOOT, DATA, PRIMARY
from mender_convert.exceptions import UnsupportedDeviceError


class DeviceType(Enum):
    BEAGLEBONE = "beaglebone"
    RASPBERRYPI3 = "raspberrypi3"


@dataclass(frozen=True)
class DeviceProfile:
    device_type: DeviceType
    boot_partition: bool
    storage_device: str  # block device the board boots from
    bootloader_installer: str  # executable run by the install-bootloader step
    installer_mounts: tuple[str, ...]
    boot_filesystem: str = "vfat"
    default_boot_size_mb: int = 16  # used when the source image has no boot partition

    @property
    def name(self) -> str:
        return self.device_type.value

    def partition_device(self, number: int) -> str:
        """On-device node of partition ``number`` (e.g. /dev/mmcblk0p2)."""
        return f"{self.storage_device}p{number}"

    def rootfs_devices(self) -> tuple[str, str]:
        """On-device nodes of rootfs A and rootfs B."""
        first = 2 if self.boot_partition else 1
        return self.partition_device(first), self.partition_device(first + 1)

    def data_device(self) -> str:
        return self.partition_device(4 if self.boot_partition else 3)

    def mounts_for(self, available: list[str]) -> list[str]:
        """Installer mount points that exist in an image with ``available`` partitions."""
        return [name for name in self.installer_mounts if name in available]


PROFILES: dict[DeviceType, DeviceProfile] = {
    DeviceType.BEAGLEBONE: DeviceProfile(
        device_type=DeviceType.BEAGLEBONE,
        boot_partition=True,
        storage_device="/dev/mmcblk1",
        bootloader_installer="bbb-install-bootloader",
        installer_mounts=(BOOT, PRIMARY, DATA),
    ),
    DeviceType.RASPBERRYPI3: DeviceProfile(
        device_type=DeviceType.RASPBERRYPI3,
        boot_partition=True,
        storage_device="/dev/mmcblk0",
        bootloader_installer="rpi3-install-bootloader",
        installer_mounts=(BOOT, PRIMARY),
    ),
}


def supported_device_types() -> list[str]:
    return [device_type.value for device_type in DeviceType]


def get_profile(name: str | DeviceType) -> DeviceProfile:
    """Look up a profile by device type name."""
    if isinstance(name, DeviceType):
        return PROFILES[name]
    try:
        device_type = DeviceType(str(name).strip().lower())
    except ValueError:
        raise UnsupportedDeviceError(str(name), supported_device_types()) from None
    return PROFILES[device_type]
