"""A/B partition layout planning.

Partitions are placed in the fixed order boot, rootfs A, rootfs B, data. Each
start and size is rounded up to the alignment unit, so the only padding in a
plan is the space before the first partition plus whatever rounding adds.
"""
from __future__ import annotations

import math
from typing import Optional

from mender_convert.config import settings
from mender_convert.domain.models import PartitionLayoutPlan
from mender_convert.exceptions import InvalidSizeError
from mender_convert.logging import LoggerFactory

log = LoggerFactory.for_storage()

MIB = 1024 * 1024


def align_up(value: int, unit: int) -> int:
    """Round ``value`` up to a multiple of ``unit``."""
    return ((value + unit - 1) // unit) * unit


def alignment_unit_for(sector_size: int, alignment_bytes: Optional[int] = None) -> int:
    """Alignment unit in sectors."""
    if alignment_bytes is None:
        alignment_bytes = settings.get_int(
            "partition_alignment_bytes", settings.DEFAULT_PARTITION_ALIGNMENT_BYTES
        )
    if alignment_bytes <= 0 or alignment_bytes % sector_size:
        raise InvalidSizeError(
            "alignment", alignment_bytes, f"must be a positive multiple of {sector_size} bytes"
        )
    return alignment_bytes // sector_size


def mb_to_sectors(size_mb: float, sector_size: int) -> int:
    return math.ceil(size_mb * MIB / sector_size)


def _require_positive(field: str, value) -> None:
    if value is None or value <= 0:
        raise InvalidSizeError(field, value)


def plan(
    boot_start: Optional[int],
    boot_size: Optional[int],
    rootfs_size: Optional[int],
    data_size_mb: float,
    sector_size: int,
    *,
    has_boot: bool = True,
    alignment_bytes: Optional[int] = None,
) -> PartitionLayoutPlan:
    """Compute the target layout.

    Args:
        boot_start: Boot partition start sector in the source image
        boot_size: Boot partition size in sectors
        rootfs_size: Shrunk rootfs size in sectors
        data_size_mb: Data partition size in MiB
        sector_size: Bytes per sector
        has_boot: False for layouts without a separate boot partition;
            boot_start and boot_size are then ignored
        alignment_bytes: Alignment in bytes (defaults to the configured value)

    Raises:
        InvalidSizeError: If an input is zero, negative or unset
    """
    _require_positive("sector size", sector_size)
    if rootfs_size is None:
        raise InvalidSizeError(
            "rootfs size", rootfs_size, "unset; shrink the root filesystem first"
        )
    _require_positive("rootfs size", rootfs_size)
    _require_positive("data partition size", data_size_mb)
    if has_boot:
        _require_positive("boot start", boot_start)
        _require_positive("boot size", boot_size)

    unit = alignment_unit_for(sector_size, alignment_bytes)
    data_size = align_up(mb_to_sectors(data_size_mb, sector_size), unit)
    aligned_rootfs = align_up(rootfs_size, unit)

    if has_boot:
        first_start = align_up(boot_start, unit)
        aligned_boot_size = align_up(boot_size, unit)
        rootfs_a_start = first_start + aligned_boot_size
    else:
        # Keep the first unit free for the partition table
        first_start = unit
        aligned_boot_size = 0
        rootfs_a_start = first_start

    total = rootfs_a_start + 2 * aligned_rootfs + data_size

    result = PartitionLayoutPlan(
        boot_start=first_start if has_boot else 0,
        boot_size=aligned_boot_size,
        rootfs_size=aligned_rootfs,
        data_size=data_size,
        alignment_unit=unit,
        total_image_size=total,
        sector_size=sector_size,
        has_boot=has_boot,
        first_start=first_start,
    )
    log.info(
        f"Planned layout: boot={result.boot_start}+{result.boot_size} "
        f"rootfs={result.rootfs_size}x2 data={result.data_size} "
        f"total={result.total_image_size} sectors (unit {unit})"
    )
    return result
