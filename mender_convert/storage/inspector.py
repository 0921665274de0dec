"""Disk image inspection."""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Union

from mender_convert.domain.models import RawDiskImage, TargetDiskImage
from mender_convert.exceptions import ConfigurationError, UnsupportedLayoutError
from mender_convert.logging import LoggerFactory

from .partition_table import PartitionTableReader

log = LoggerFactory.for_storage()

SUPPORTED_PARTITION_COUNTS = (1, 2)


def read_image(
    path: Union[str, Path], reader: Optional[PartitionTableReader] = None
) -> RawDiskImage:
    """Read an image's partition table without judging its layout."""
    path = Path(path)
    if not path.is_file():
        raise ConfigurationError(f"Disk image not found: {path}")
    reader = reader or PartitionTableReader()
    sector_size, partitions = reader.read(path)
    image = RawDiskImage(path=path, sector_size=sector_size, partitions=tuple(partitions))
    log.debug(
        f"{path.name}: {image.partition_count} partition(s), "
        f"sector size {sector_size}: "
        + ", ".join(f"#{p.number} start={p.start} size={p.size}" for p in partitions)
    )
    return image


def inspect(path: Union[str, Path], reader: Optional[PartitionTableReader] = None) -> RawDiskImage:
    """Inspect a source image; it must have one or two partitions.

    Raises:
        ConfigurationError: If the file does not exist
        UnsupportedLayoutError: If the partition count is not 1 or 2
        ExternalToolError: If sfdisk cannot read the table
    """
    image = read_image(path, reader)
    if image.partition_count not in SUPPORTED_PARTITION_COUNTS:
        raise UnsupportedLayoutError(image.path, image.partition_count)
    return image


def inspect_target(
    path: Union[str, Path], reader: Optional[PartitionTableReader] = None
) -> TargetDiskImage:
    """Inspect an existing A/B image (three or four partitions)."""
    path = Path(path)
    image = read_image(path, reader)
    total_size = path.stat().st_size // image.sector_size
    return TargetDiskImage.from_raw(image, total_size=total_size)
