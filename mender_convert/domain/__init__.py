"""Domain models for disk image conversion."""

from __future__ import annotations

from .models import (
    BOOT,
    DATA,
    PRIMARY,
    SECONDARY,
    TARGET_PARTITION_ORDER,
    Artifact,
    ConversionStep,
    DeviceMapping,
    MappedRegion,
    MountEntry,
    MountSet,
    Partition,
    PartitionLayoutPlan,
    PipelineState,
    RawDiskImage,
    RootfsSlot,
    TargetDiskImage,
    TargetPartition,
    ValidationStatus,
)


__all__ = [
    "BOOT",
    "DATA",
    "PRIMARY",
    "SECONDARY",
    "TARGET_PARTITION_ORDER",
    "Artifact",
    "ConversionStep",
    "DeviceMapping",
    "MappedRegion",
    "MountEntry",
    "MountSet",
    "Partition",
    "PartitionLayoutPlan",
    "PipelineState",
    "RawDiskImage",
    "RootfsSlot",
    "TargetDiskImage",
    "TargetPartition",
    "ValidationStatus",
]
