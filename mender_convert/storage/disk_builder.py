"""A/B disk image creation.

Operations:
    - build(): Allocate a sparse image and write the planned partition table
    - verify(): Re-read the table and compare it with the plan
    - populate(): Copy boot and rootfs contents from the source image
    - format(): Create filesystems on partitions without copied contents
"""
from __future__ import annotations

from pathlib import Path
from typing import Iterable, Optional, Union

from mender_convert.domain.models import (
    BOOT,
    PRIMARY,
    SECONDARY,
    PartitionLayoutPlan,
    RawDiskImage,
    TargetDiskImage,
)
from mender_convert.exceptions import InvalidSizeError, LayoutVerificationError
from mender_convert.logging import LoggerFactory

from .copy import copy_byte_range
from .device_map import DeviceMapManager
from .filesystem import FilesystemResizer
from .partition_table import PartitionTableReader, PartitionTableWriter, render_sfdisk_script

log = LoggerFactory.for_storage()


class DiskBuilder:
    def __init__(
        self,
        device_maps: DeviceMapManager,
        reader: Optional[PartitionTableReader] = None,
        writer: Optional[PartitionTableWriter] = None,
        filesystems: Optional[FilesystemResizer] = None,
    ):
        self.device_maps = device_maps
        self.reader = reader or PartitionTableReader()
        self.writer = writer or PartitionTableWriter()
        self.filesystems = filesystems or FilesystemResizer()

    def build(self, plan: PartitionLayoutPlan, output_path: Union[str, Path]) -> TargetDiskImage:
        """Create ``output_path`` with the planned partition table.

        Raises:
            LayoutVerificationError: If the written table differs from the plan
        """
        output_path = Path(output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        with open(output_path, "wb") as image:
            image.truncate(plan.total_image_bytes)
        log.info(f"Allocated {output_path.name} ({plan.total_image_bytes} bytes, sparse)")

        target = TargetDiskImage.from_plan(plan, output_path)
        self.writer.write(output_path, render_sfdisk_script(target.partitions, plan.sector_size))
        self.verify(target)
        return target

    def verify(self, target: TargetDiskImage) -> None:
        sector_size, partitions = self.reader.read(target.path)
        expected = [(part.number, part.start, part.size) for part in target.partitions]
        actual = [
            (part.number, part.start, part.size)
            for part in sorted(partitions, key=lambda part: part.number)
        ]
        if sector_size != target.sector_size or actual != expected:
            raise LayoutVerificationError(
                target.path,
                {"sector_size": target.sector_size, "partitions": expected},
                {"sector_size": sector_size, "partitions": actual},
            )
        log.debug(f"Verified {len(actual)} partitions in {target.path.name}")

    def populate(self, target: TargetDiskImage, source: RawDiskImage) -> list[str]:
        """Copy the source boot partition and rootfs into the target.

        The rootfs goes into both slots. Returns the names of the partitions
        that received contents.
        """
        copies = []
        if source.boot_partition is not None and target.has_boot:
            copies.append((source.boot_partition, BOOT))
        copies.append((source.rootfs_partition, PRIMARY))
        copies.append((source.rootfs_partition, SECONDARY))

        populated = []
        for partition, name in copies:
            destination = target.partition(name)
            length = partition.size_bytes(source.sector_size)
            capacity = destination.size * target.sector_size
            if length > capacity:
                raise InvalidSizeError(
                    f"{name} contents",
                    length,
                    f"does not fit the {capacity} byte {name} partition",
                )
            log.info(f"Copying partition {partition.number} of {source.path.name} to {name}")
            copy_byte_range(
                source.path,
                partition.offset_bytes(source.sector_size),
                target.path,
                destination.start * target.sector_size,
                length,
            )
            populated.append(name)
        return populated

    def format(self, target: TargetDiskImage, names: Optional[Iterable[str]] = None) -> None:
        """Create each selected partition's filesystem, labelled with its name."""
        selected = list(names) if names is not None else target.names
        if not selected:
            return
        with self.device_maps.mapped(target.path, target.regions(selected)) as mapping:
            for name in selected:
                part = target.partition(name)
                log.info(f"Creating {part.filesystem} filesystem on {name}")
                self.filesystems.make_filesystem(mapping.device(name), part.filesystem, name)
