"""Root filesystem shrinking for raw disk images.

Shrinking runs in two attachments of the image:

1. The rootfs partition alone: check, measure, resize and check again.
   The partition table is not touched unless both checks pass.
2. The whole image: rewrite the rootfs entry to the new size and read the
   table back to find where the last partition now ends.

The image file is then truncated right after that sector.
"""
from __future__ import annotations

import math
import os
from pathlib import Path
from typing import Optional, Union

from mender_convert.domain.models import MappedRegion, RawDiskImage
from mender_convert.exceptions import FilesystemIntegrityError
from mender_convert.logging import LoggerFactory

from .device_map import DeviceMapManager
from .filesystem import FilesystemResizer
from .layout import align_up, alignment_unit_for
from .partition_table import PartitionTableReader, PartitionTableWriter

log = LoggerFactory.for_storage()


def minimal_size_sectors(
    min_blocks: int, block_size: int, sector_size: int, alignment_unit: int
) -> int:
    """Smallest aligned sector count holding ``min_blocks`` filesystem blocks."""
    sectors = math.ceil(min_blocks * block_size / sector_size)
    return align_up(sectors, alignment_unit)


def truncate_image(path: Union[str, Path], end_sector: int, sector_size: int) -> int:
    """Cut the image file right after ``end_sector``; returns the new size in bytes."""
    size_bytes = (end_sector + 1) * sector_size
    os.truncate(path, size_bytes)
    log.debug(f"Truncated {path} to {size_bytes} bytes")
    return size_bytes


class FilesystemShrinker:
    def __init__(
        self,
        device_maps: DeviceMapManager,
        filesystems: Optional[FilesystemResizer] = None,
        reader: Optional[PartitionTableReader] = None,
        writer: Optional[PartitionTableWriter] = None,
        alignment_bytes: Optional[int] = None,
    ):
        self.device_maps = device_maps
        self.filesystems = filesystems or FilesystemResizer()
        self.reader = reader or PartitionTableReader()
        self.writer = writer or PartitionTableWriter()
        self.alignment_bytes = alignment_bytes

    def shrink(self, image: RawDiskImage, partition_number: Optional[int] = None) -> int:
        """Shrink a partition's filesystem and the image around it.

        Args:
            image: Inspected source image
            partition_number: Partition to shrink (defaults to the rootfs)

        Returns:
            New partition size in sectors

        Raises:
            FilesystemIntegrityError: If a check before or after resizing fails
        """
        if partition_number is None:
            partition = image.rootfs_partition
        else:
            partition = image.partition(partition_number)
        sector_size = image.sector_size
        unit = alignment_unit_for(sector_size, self.alignment_bytes)

        region = MappedRegion(
            label="rootfs",
            offset_bytes=partition.offset_bytes(sector_size),
            size_bytes=partition.size_bytes(sector_size),
        )
        with self.device_maps.mapped(image.path, [region]) as mapping:
            new_size = self._shrink_filesystem(
                mapping.device("rootfs"), partition.size, sector_size, unit
            )

        with self.device_maps.mapped(image.path) as mapping:
            disk = mapping.device("disk")
            if new_size != partition.size:
                self.writer.resize_partition(
                    disk, partition.number, partition.start, new_size, partition.type_code or None
                )
            _, partitions = self.reader.read(disk)
        end_sector = max(part.end for part in partitions)

        truncate_image(image.path, end_sector, sector_size)
        log.info(
            f"Shrunk partition {partition.number} of {image.path.name} "
            f"from {partition.size} to {new_size} sectors"
        )
        return new_size

    def _shrink_filesystem(
        self, device: str, current_sectors: int, sector_size: int, unit: int
    ) -> int:
        check = self.filesystems.check(device)
        if not check.passed:
            raise FilesystemIntegrityError(device, "before resize", check.returncode, check.output)

        info = self.filesystems.info(device)
        min_blocks = self.filesystems.minimum_blocks(device)
        new_size = minimal_size_sectors(min_blocks, info.block_size, sector_size, unit)
        if new_size > current_sectors:
            log.warning(
                f"Aligned minimum ({new_size} sectors) exceeds the partition "
                f"({current_sectors} sectors); keeping the current size"
            )
            new_size = current_sectors
        log.debug(
            f"{device}: {info.block_count} x {info.block_size} byte blocks, "
            f"minimum {min_blocks} blocks, target {new_size} sectors"
        )

        new_bytes = new_size * sector_size
        if info.size_bytes == new_bytes:
            log.info(f"{device} is already at its minimal aligned size")
        else:
            self.filesystems.resize(device, new_bytes)

        check = self.filesystems.check(device)
        if not check.passed:
            raise FilesystemIntegrityError(device, "after resize", check.returncode, check.output)
        return new_size
