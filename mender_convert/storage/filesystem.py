"""ext2/3/4 filesystem tools: e2fsck, dumpe2fs, resize2fs and mkfs."""
from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import Path
from typing import Union

from mender_convert.exceptions import ExternalToolError
from mender_convert.logging import LoggerFactory

from .commands import CommandRunner, run_checked_command, run_command

log = LoggerFactory.for_storage()

# e2fsck exit status bits: 1 = errors corrected, 2 = reboot needed,
# 4 = errors left uncorrected, 8 = operational error
E2FSCK_CLEAN_CODES = (0, 1)

_BLOCK_COUNT_RE = re.compile(r"^Block count:\s*(\d+)", re.MULTILINE)
_BLOCK_SIZE_RE = re.compile(r"^Block size:\s*(\d+)", re.MULTILINE)
_MIN_SIZE_RE = re.compile(r"Estimated minimum size of the filesystem:\s*(\d+)")


@dataclass(frozen=True)
class FilesystemInfo:
    block_count: int
    block_size: int

    @property
    def size_bytes(self) -> int:
        return self.block_count * self.block_size


@dataclass(frozen=True)
class CheckResult:
    returncode: int
    output: str = ""

    @property
    def passed(self) -> bool:
        return self.returncode in E2FSCK_CLEAN_CODES


class FilesystemResizer:
    """Checks, measures and resizes ext filesystems on a device or file."""

    def __init__(self, runner: CommandRunner = run_command):
        self.runner = runner

    def check(self, target: Union[str, Path]) -> CheckResult:
        """Force a full check, fixing what can be fixed without asking."""
        result = self.runner(["e2fsck", "-f", "-y", str(target)], check=False)
        output = (result.stdout or "") + (result.stderr or "")
        if result.returncode not in E2FSCK_CLEAN_CODES:
            log.error(f"e2fsck reported errors on {target} (exit status {result.returncode})")
        return CheckResult(returncode=result.returncode, output=output)

    def info(self, target: Union[str, Path]) -> FilesystemInfo:
        command = ["dumpe2fs", "-h", str(target)]
        output = run_checked_command(command, runner=self.runner)
        count = _BLOCK_COUNT_RE.search(output)
        size = _BLOCK_SIZE_RE.search(output)
        if not count or not size:
            raise ExternalToolError(command, 0, stderr="block count or block size missing")
        return FilesystemInfo(block_count=int(count.group(1)), block_size=int(size.group(1)))

    def minimum_blocks(self, target: Union[str, Path]) -> int:
        """Estimated minimum size of the filesystem, in filesystem blocks."""
        command = ["resize2fs", "-P", str(target)]
        output = run_checked_command(command, runner=self.runner)
        match = _MIN_SIZE_RE.search(output)
        if not match:
            raise ExternalToolError(command, 0, stderr="minimum size missing from output")
        return int(match.group(1))

    def resize(self, target: Union[str, Path], size_bytes: int) -> None:
        # resize2fs reads a bare number as filesystem blocks; K keeps the unit explicit
        size_kib = size_bytes // 1024
        run_checked_command(["resize2fs", str(target), f"{size_kib}K"], runner=self.runner)

    def make_filesystem(self, target: Union[str, Path], filesystem: str, label: str) -> None:
        if filesystem == "vfat":
            command = ["mkfs.vfat", "-n", label.upper()[:11], str(target)]
        elif filesystem in ("ext2", "ext3", "ext4"):
            command = [f"mkfs.{filesystem}", "-F", "-q", "-L", label, str(target)]
        else:
            raise ValueError(f"Unsupported filesystem: {filesystem}")
        run_checked_command(command, runner=self.runner)
