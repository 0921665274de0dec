"""Root filesystem extraction from A/B disk images.

The extracted file is written under a ``.partial`` name and only renamed to
its final ``.ext4`` name after the filesystem check and the artifact name
rewrite have both succeeded. Any failure removes the partial file.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from mender_convert.domain.models import (
    DATA,
    Artifact,
    MappedRegion,
    RootfsSlot,
    TargetDiskImage,
    ValidationStatus,
)
from mender_convert.exceptions import DeviceTypeMismatchError, FilesystemIntegrityError
from mender_convert.logging import LoggerFactory
from mender_convert.storage.copy import copy_byte_range
from mender_convert.storage.device_map import DeviceMapManager
from mender_convert.storage.filesystem import FilesystemResizer
from mender_convert.storage.mount import MountOrchestrator

log = LoggerFactory.for_artifact()

# Relative to the data partition root (mounted at /data on the device)
DEVICE_TYPE_STAMP = Path("mender") / "device_type"
# Relative to a rootfs root
ARTIFACT_INFO = Path("etc") / "mender" / "artifact_info"

ROOTFS_LABEL = "rootfs"


def artifact_basename(device_type: str, name: str) -> str:
    return f"mender-{device_type}-{name}"


def parse_key_value(text: str, key: str) -> Optional[str]:
    """Value of the last ``key=value`` line in ``text``."""
    value = None
    for line in text.splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        name, _, raw = line.partition("=")
        if name.strip() == key:
            value = raw.strip()
    return value


def read_device_type_stamp(data_root: Path) -> Optional[str]:
    stamp = Path(data_root) / DEVICE_TYPE_STAMP
    if not stamp.is_file():
        return None
    return parse_key_value(stamp.read_text(encoding="utf-8"), "device_type")


def rewrite_artifact_name(info_path: Path, artifact_name: str) -> None:
    """Replace the ``artifact_name=`` line, keeping every other line."""
    info_path = Path(info_path)
    lines: list[str] = []
    if info_path.exists():
        lines = info_path.read_text(encoding="utf-8").splitlines()
    replaced = False
    for index, line in enumerate(lines):
        if line.strip().startswith("artifact_name="):
            lines[index] = f"artifact_name={artifact_name}"
            replaced = True
    if not replaced:
        lines.append(f"artifact_name={artifact_name}")
    info_path.parent.mkdir(parents=True, exist_ok=True)
    info_path.write_text("\n".join(lines) + "\n", encoding="utf-8")


class ArtifactExtractor:
    def __init__(
        self,
        device_maps: DeviceMapManager,
        mounts: MountOrchestrator,
        filesystems: Optional[FilesystemResizer] = None,
    ):
        self.device_maps = device_maps
        self.mounts = mounts
        self.filesystems = filesystems or FilesystemResizer()

    def extract(
        self,
        target: TargetDiskImage,
        slot: RootfsSlot,
        device_type: str,
        artifact_name: str,
        output_dir: Path,
        mount_root: Path,
    ) -> Artifact:
        """Extract the ``slot`` rootfs of ``target`` into a standalone file.

        Raises:
            DeviceTypeMismatchError: If the image's stamp names another device
            FilesystemIntegrityError: If the extracted filesystem fails e2fsck
        """
        self.verify_device_type(target, device_type, mount_root)

        partition = target.partition(slot.value)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)
        final_path = output_dir / f"{artifact_basename(device_type, artifact_name)}.ext4"
        partial_path = final_path.with_name(final_path.name + ".partial")

        try:
            log.info(f"Extracting {slot.value} rootfs of {target.path.name}")
            copy_byte_range(
                target.path,
                partition.start * target.sector_size,
                partial_path,
                0,
                partition.size * target.sector_size,
                truncate=True,
            )
            check = self.filesystems.check(partial_path)
            if not check.passed:
                raise FilesystemIntegrityError(
                    final_path, "extracted rootfs", check.returncode, check.output
                )
            self.set_artifact_name(partial_path, artifact_name, mount_root)
            os.replace(partial_path, final_path)
        except BaseException:
            partial_path.unlink(missing_ok=True)
            raise

        log.info(f"Extracted {final_path.name}")
        return Artifact(
            path=final_path,
            device_type=device_type,
            artifact_name=artifact_name,
            validation=ValidationStatus.FSCK_PASSED,
        )

    def verify_device_type(
        self, target: TargetDiskImage, device_type: str, mount_root: Path
    ) -> None:
        with self.device_maps.mapped(target.path, target.regions([DATA])) as mapping:
            with self.mounts.mounted(mapping, mount_root, [DATA]) as mount_set:
                stamped = read_device_type_stamp(mount_set.path(DATA))
        if stamped != device_type:
            raise DeviceTypeMismatchError(target.path, stamped, device_type)
        log.debug(f"{target.path.name} is stamped for {stamped}")

    def set_artifact_name(self, image_file: Path, artifact_name: str, mount_root: Path) -> None:
        region = MappedRegion(label=ROOTFS_LABEL)
        with self.device_maps.mapped(image_file, [region]) as mapping:
            with self.mounts.mounted(mapping, mount_root, [ROOTFS_LABEL]) as mount_set:
                rewrite_artifact_name(mount_set.path(ROOTFS_LABEL) / ARTIFACT_INFO, artifact_name)
