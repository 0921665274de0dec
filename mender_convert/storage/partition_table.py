"""Partition table reading and writing through sfdisk.

sfdisk works directly on regular image files as well as loop devices, so
neither reading nor writing a table needs the image attached.
"""
from __future__ import annotations

import json
from pathlib import Path
from typing import Iterable, Optional, Union

from mender_convert.domain.models import Partition, TargetPartition
from mender_convert.exceptions import ExternalToolError
from mender_convert.logging import LoggerFactory

from .commands import CommandRunner, run_checked_command, run_command

log = LoggerFactory.for_storage()

DEFAULT_SECTOR_SIZE = 512

# MBR partition type codes
TYPE_CODES = {
    "vfat": "c",  # W95 FAT32 (LBA)
    "ext4": "83",  # Linux
}


def parse_sfdisk_json(output: str) -> tuple[int, list[Partition]]:
    """Parse ``sfdisk --json`` output into (sector size, partitions).

    Partitions are numbered by the node name suffix after the table's device
    (``disk.img3``, ``/dev/loop1p3``) so gaps in the table keep their numbers.
    """
    data = json.loads(output)
    table = data.get("partitiontable", {})
    sector_size = int(table.get("sectorsize", DEFAULT_SECTOR_SIZE))
    device = str(table.get("device", ""))
    partitions = []
    for index, entry in enumerate(table.get("partitions", []), start=1):
        node = str(entry.get("node", ""))
        suffix = node[len(device):] if device and node.startswith(device) else node
        digits = ""
        for char in reversed(suffix):
            if not char.isdigit():
                break
            digits = char + digits
        partitions.append(
            Partition(
                number=int(digits) if digits else index,
                start=int(entry["start"]),
                size=int(entry["size"]),
                bootable=bool(entry.get("bootable", False)),
                type_code=str(entry.get("type", "")),
            )
        )
    return sector_size, partitions


def render_sfdisk_script(
    partitions: Iterable[TargetPartition],
    sector_size: int = DEFAULT_SECTOR_SIZE,
) -> str:
    """Render an sfdisk input script for an MBR table.

    Example:
        label: dos
        unit: sectors

        start=16384, size=32768, type=c, bootable
        start=49152, size=1048576, type=83
    """
    lines = ["label: dos", "unit: sectors"]
    if sector_size != DEFAULT_SECTOR_SIZE:
        lines.append(f"sector-size: {sector_size}")
    lines.append("")
    for part in partitions:
        fields = [
            f"start={part.start}",
            f"size={part.size}",
            f"type={TYPE_CODES.get(part.filesystem, '83')}",
        ]
        if part.filesystem == "vfat":
            fields.append("bootable")
        lines.append(", ".join(fields))
    return "\n".join(lines) + "\n"


class PartitionTableReader:
    """Reads partition tables with ``sfdisk --json``."""

    def __init__(self, runner: CommandRunner = run_command):
        self.runner = runner

    def read(self, target: Union[str, Path]) -> tuple[int, list[Partition]]:
        output = run_checked_command(["sfdisk", "--json", str(target)], runner=self.runner)
        try:
            return parse_sfdisk_json(output)
        except (ValueError, KeyError) as error:
            raise ExternalToolError(
                ["sfdisk", "--json", str(target)], 0, stderr=f"unparseable output: {error}"
            ) from error


class PartitionTableWriter:
    """Writes partition tables with sfdisk scripts."""

    def __init__(self, runner: CommandRunner = run_command):
        self.runner = runner

    def write(self, target: Union[str, Path], script: str) -> None:
        log.debug(f"Writing partition table to {target}")
        run_checked_command(
            ["sfdisk", "--no-reread", "--no-tell-kernel", str(target)],
            input_text=script,
            runner=self.runner,
        )

    def resize_partition(
        self,
        target: Union[str, Path],
        number: int,
        start: int,
        size: int,
        type_code: Optional[str] = None,
    ) -> None:
        """Rewrite one entry keeping its start sector."""
        entry = f"{start},{size}"
        if type_code:
            entry += f",{type_code}"
        log.debug(f"Resizing partition {number} of {target} to {size} sectors")
        run_checked_command(
            ["sfdisk", "--no-reread", "--no-tell-kernel", "-N", str(number), str(target)],
            input_text=entry + "\n",
            runner=self.runner,
        )
