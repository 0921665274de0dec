"""Domain model for disk image conversion.

Geometry values are in sectors unless the name says bytes. Inspection results
are immutable snapshots; they are re-read after any change to an image.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from mender_convert.exceptions import UnsupportedLayoutError


# ==============================================================================
# Partition names
# ==============================================================================

BOOT = "boot"
PRIMARY = "primary"
SECONDARY = "secondary"
DATA = "data"

TARGET_PARTITION_ORDER = (BOOT, PRIMARY, SECONDARY, DATA)


class RootfsSlot(Enum):
    """Root filesystem slot of the A/B scheme."""

    PRIMARY = PRIMARY  # rootfs A
    SECONDARY = SECONDARY  # rootfs B

    @classmethod
    def parse(cls, value: str | None) -> RootfsSlot:
        """Parse a slot name; an unset value selects the primary slot."""
        if not value:
            return cls.PRIMARY
        return cls(value.strip().lower())


# ==============================================================================
# Source image
# ==============================================================================


@dataclass(frozen=True)
class Partition:
    """A partition table entry of an inspected image."""

    number: int  # 1-based, as in /dev/loop0p1
    start: int
    size: int
    bootable: bool = False
    type_code: str = ""

    @property
    def end(self) -> int:
        """Last sector belonging to the partition."""
        return self.start + self.size - 1

    def offset_bytes(self, sector_size: int) -> int:
        return self.start * sector_size

    def size_bytes(self, sector_size: int) -> int:
        return self.size * sector_size


@dataclass(frozen=True)
class RawDiskImage:
    """Partition table snapshot of a source image.

    A single-partition image has no boot partition; its only partition holds
    the root filesystem.
    """

    path: Path
    sector_size: int
    partitions: tuple[Partition, ...]

    @property
    def partition_count(self) -> int:
        return len(self.partitions)

    @property
    def has_boot_partition(self) -> bool:
        return self.partition_count == 2

    @property
    def boot_partition(self) -> Optional[Partition]:
        return self.partitions[0] if self.has_boot_partition else None

    @property
    def rootfs_partition(self) -> Partition:
        return self.partitions[-1]

    def partition(self, number: int) -> Partition:
        for partition in self.partitions:
            if partition.number == number:
                return partition
        raise KeyError(f"{self.path} has no partition {number}")


# ==============================================================================
# Target layout
# ==============================================================================


@dataclass(frozen=True)
class TargetPartition:
    """A partition of the A/B target image."""

    name: str  # boot, primary, secondary or data
    number: int
    start: int
    size: int
    filesystem: str = "ext4"

    @property
    def end(self) -> int:
        return self.start + self.size - 1


@dataclass(frozen=True)
class PartitionLayoutPlan:
    """Planned A/B layout, all values in sectors.

    Every start and size is a multiple of ``alignment_unit``. Both rootfs
    slots share ``rootfs_size``. When ``has_boot`` is False the boot fields
    are zero and the first partition is rootfs A.
    """

    boot_start: int
    boot_size: int
    rootfs_size: int
    data_size: int
    alignment_unit: int
    total_image_size: int
    sector_size: int = 512
    has_boot: bool = True
    first_start: int = 0

    @property
    def rootfs_a_start(self) -> int:
        if self.has_boot:
            return self.boot_start + self.boot_size
        return self.first_start

    @property
    def rootfs_b_start(self) -> int:
        return self.rootfs_a_start + self.rootfs_size

    @property
    def data_start(self) -> int:
        return self.rootfs_b_start + self.rootfs_size

    @property
    def padding(self) -> int:
        """Sectors not covered by any partition (leading space included)."""
        used = self.boot_size + 2 * self.rootfs_size + self.data_size
        return self.total_image_size - used

    @property
    def total_image_bytes(self) -> int:
        return self.total_image_size * self.sector_size

    def partitions(self) -> tuple[TargetPartition, ...]:
        """Target partitions in on-disk order."""
        entries = []
        if self.has_boot:
            entries.append((BOOT, self.boot_start, self.boot_size, "vfat"))
        entries.extend(
            [
                (PRIMARY, self.rootfs_a_start, self.rootfs_size, "ext4"),
                (SECONDARY, self.rootfs_b_start, self.rootfs_size, "ext4"),
                (DATA, self.data_start, self.data_size, "ext4"),
            ]
        )
        return tuple(
            TargetPartition(name=name, number=index, start=start, size=size, filesystem=fs)
            for index, (name, start, size, fs) in enumerate(entries, start=1)
        )


@dataclass(frozen=True)
class TargetDiskImage:
    """An A/B disk image: [boot,] primary, secondary, data."""

    path: Path
    sector_size: int
    total_size: int
    partitions: tuple[TargetPartition, ...]

    @property
    def has_boot(self) -> bool:
        return any(part.name == BOOT for part in self.partitions)

    @property
    def names(self) -> list[str]:
        return [part.name for part in self.partitions]

    def partition(self, name: str) -> TargetPartition:
        for part in self.partitions:
            if part.name == name:
                return part
        raise KeyError(f"{self.path} has no {name} partition")

    def regions(self, names: list[str] | None = None) -> list[MappedRegion]:
        """Byte regions for attaching the selected partitions."""
        selected = [
            part for part in self.partitions if names is None or part.name in names
        ]
        return [
            MappedRegion(
                label=part.name,
                offset_bytes=part.start * self.sector_size,
                size_bytes=part.size * self.sector_size,
            )
            for part in selected
        ]

    @classmethod
    def from_plan(cls, plan: PartitionLayoutPlan, path: Path) -> TargetDiskImage:
        return cls(
            path=Path(path),
            sector_size=plan.sector_size,
            total_size=plan.total_image_size,
            partitions=plan.partitions(),
        )

    @classmethod
    def from_raw(cls, raw: RawDiskImage, total_size: int | None = None) -> TargetDiskImage:
        """Interpret an inspected image as an existing A/B image."""
        if raw.partition_count == 4:
            names = TARGET_PARTITION_ORDER
        elif raw.partition_count == 3:
            names = TARGET_PARTITION_ORDER[1:]
        else:
            raise UnsupportedLayoutError(raw.path, raw.partition_count, expected=(3, 4))
        partitions = tuple(
            TargetPartition(
                name=name,
                number=part.number,
                start=part.start,
                size=part.size,
                filesystem="vfat" if name == BOOT else "ext4",
            )
            for name, part in zip(names, raw.partitions)
        )
        if total_size is None:
            total_size = partitions[-1].end + 1
        return cls(
            path=raw.path,
            sector_size=raw.sector_size,
            total_size=total_size,
            partitions=partitions,
        )


# ==============================================================================
# Block devices and mounts
# ==============================================================================


@dataclass(frozen=True)
class MappedRegion:
    """Byte range of an image file to expose as one block device.

    ``offset_bytes`` None maps the whole file.
    """

    label: str
    offset_bytes: Optional[int] = None
    size_bytes: Optional[int] = None


@dataclass
class DeviceMapping:
    """Block devices attached for one image, in region order.

    ``devices`` may be shorter than ``labels`` when attachment stopped
    part-way; release handles whatever is present.
    """

    image_path: Path
    labels: list[str] = field(default_factory=list)
    devices: list[str] = field(default_factory=list)
    detached: set[str] = field(default_factory=set)
    released: bool = False

    @property
    def attached_devices(self) -> list[str]:
        return [device for device in self.devices if device not in self.detached]

    def device(self, label: str) -> str:
        for name, device in zip(self.labels, self.devices):
            if name == label:
                return device
        raise KeyError(f"No device attached for {label} of {self.image_path}")

    @property
    def is_complete(self) -> bool:
        return len(self.devices) == len(self.labels)


@dataclass
class MountEntry:
    name: str
    device: str
    path: Path
    mounted: bool = False


@dataclass
class MountSet:
    """Mount points under one working root."""

    root: Path
    entries: list[MountEntry] = field(default_factory=list)

    def path(self, name: str) -> Path:
        for entry in self.entries:
            if entry.name == name:
                return entry.path
        raise KeyError(f"{name} is not mounted under {self.root}")

    def has(self, name: str) -> bool:
        return any(entry.name == name for entry in self.entries)

    @property
    def mounted_entries(self) -> list[MountEntry]:
        return [entry for entry in self.entries if entry.mounted]


# ==============================================================================
# Artifacts
# ==============================================================================


class ValidationStatus(Enum):
    UNCHECKED = "unchecked"
    FSCK_PASSED = "fsck-passed"
    FSCK_FAILED = "fsck-failed"


@dataclass(frozen=True)
class Artifact:
    """Standalone rootfs image extracted from a target image."""

    path: Path
    device_type: str
    artifact_name: str
    validation: ValidationStatus = ValidationStatus.UNCHECKED


# ==============================================================================
# Pipeline progress
# ==============================================================================


@dataclass(frozen=True)
class ConversionStep:
    """Progress record for one pipeline step (logging only)."""

    name: str
    ordinal: int
    total: int
    requires: tuple[str, ...] = ()

    @property
    def label(self) -> str:
        return f"[{self.ordinal}/{self.total}] {self.name}"


class PipelineState(Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
