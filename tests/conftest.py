"""
Pytest configuration and shared fixtures for mender-convert tests.

Nothing here touches real block devices: every external tool goes through a
FakeRunner, loop devices through FakeLoopDevices and mounts through a
MountOrchestrator whose mount state lives in memory.
"""

import json
import re
import subprocess
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import pytest
from loguru import logger

from mender_convert.exceptions import ExternalToolError
from mender_convert.storage.device_map import DeviceMapManager
from mender_convert.storage.mount import MountOrchestrator


# ==============================================================================
# Command runner double
# ==============================================================================


class FakeRunner:
    """
    Stand-in for run_command.

    Handlers are registered per tool name (first argument). A handler is
    either a callable ``(command, input_text) -> CompletedProcess`` or a list
    of ``(returncode, stdout, stderr)`` tuples consumed in order, the last one
    repeating. Unregistered tools succeed with empty output.
    """

    def __init__(self) -> None:
        self.calls: List[List[str]] = []
        self.inputs: List[Optional[str]] = []
        self.handlers: Dict[str, Any] = {}

    def respond(self, tool: str, *results) -> None:
        self.handlers[tool] = list(results)

    def handle(self, tool: str, handler: Callable) -> None:
        self.handlers[tool] = handler

    def __call__(
        self,
        command,
        check=True,
        log_output=True,
        log_command=True,
        input_text=None,
    ) -> subprocess.CompletedProcess:
        command = [str(part) for part in command]
        self.calls.append(command)
        self.inputs.append(input_text)
        handler = self.handlers.get(command[0])
        if handler is None:
            result = subprocess.CompletedProcess(command, 0, "", "")
        elif callable(handler):
            result = handler(command, input_text)
        else:
            returncode, stdout, stderr = handler[0] if len(handler) == 1 else handler.pop(0)
            result = subprocess.CompletedProcess(command, returncode, stdout, stderr)
        if check and result.returncode != 0:
            raise ExternalToolError(command, result.returncode, result.stderr, result.stdout)
        return result

    def commands(self, tool: str) -> List[List[str]]:
        return [call for call in self.calls if call[0] == tool]


def completed_process(command, returncode=0, stdout="", stderr="") -> subprocess.CompletedProcess:
    return subprocess.CompletedProcess(command, returncode, stdout, stderr)


# ==============================================================================
# Loop device double
# ==============================================================================


class FakeLoopDevices:
    """
    In-memory loop devices.

    ``attach_errors`` is a list of exceptions (or None for success) consumed
    by successive attach calls.
    """

    def __init__(self) -> None:
        self.next_index = 0
        self.attached: Dict[str, tuple] = {}
        self.attach_errors: List[Optional[BaseException]] = []
        self.detach_errors: Dict[str, BaseException] = {}
        self.attach_calls: List[tuple] = []
        self.detach_calls: List[str] = []

    def attach(self, image_path, offset_bytes=None, size_bytes=None) -> str:
        self.attach_calls.append((Path(image_path), offset_bytes, size_bytes))
        if self.attach_errors:
            error = self.attach_errors.pop(0)
            if error is not None:
                raise error
        device = f"/dev/loop{self.next_index}"
        self.next_index += 1
        self.attached[device] = (Path(image_path), offset_bytes, size_bytes)
        return device

    def detach(self, device: str) -> bool:
        self.detach_calls.append(device)
        if device in self.detach_errors:
            raise self.detach_errors[device]
        if device not in self.attached:
            return False
        del self.attached[device]
        return True


def make_busy_error() -> ExternalToolError:
    return ExternalToolError(
        ["losetup", "--find", "--show"],
        1,
        stderr="losetup: cannot find an unused loop device: Device or resource busy",
    )


# ==============================================================================
# Mount double
# ==============================================================================


class FakeMountOrchestrator(MountOrchestrator):
    """MountOrchestrator whose mount table is a set of paths."""

    def __init__(self, runner: Optional[FakeRunner] = None, **kwargs) -> None:
        self.mounted_paths: set = set()
        self.mount_calls: List[tuple] = []
        self.fail_mount: set = set()
        runner = runner or FakeRunner()
        runner.handle("mount", self._fake_mount)
        runner.handle("umount", self._fake_umount)
        super().__init__(runner=runner, sleep=lambda _: None, **kwargs)

    def _fake_mount(self, command, input_text):
        device, path = command[1], command[2]
        self.mount_calls.append((device, path))
        if device in self.fail_mount:
            return completed_process(command, 32, stderr=f"mount: {path}: wrong fs type")
        self.mounted_paths.add(path)
        return completed_process(command)

    def _fake_umount(self, command, input_text):
        path = command[-1]
        self.mounted_paths.discard(path)
        return completed_process(command)

    def is_mounted(self, path) -> bool:
        return str(path) in self.mounted_paths


# ==============================================================================
# sfdisk output builders
# ==============================================================================


def build_sfdisk_json(device: str, partitions: List[tuple], sector_size: int = 512) -> str:
    """
    Build ``sfdisk --json`` output.

    Args:
        partitions: (start, size) or (start, size, type) tuples in table order
    """
    entries = []
    for number, part in enumerate(partitions, start=1):
        start, size = part[0], part[1]
        entry = {
            "node": f"{device}{number}",
            "start": start,
            "size": size,
            "type": part[2] if len(part) > 2 else "83",
        }
        if number == 1 and len(partitions) > 1:
            entry["bootable"] = True
        entries.append(entry)
    return json.dumps(
        {
            "partitiontable": {
                "label": "dos",
                "id": "0x1234abcd",
                "device": device,
                "unit": "sectors",
                "sectorsize": sector_size,
                "partitions": entries,
            }
        }
    )


class FakeSfdisk:
    """Stores the last written table script and reports it back as JSON.

    ``tables`` maps image paths to tables that are read but never written,
    such as a source image. ``tamper`` can rewrite the stored table on read.
    """

    def __init__(self, runner: FakeRunner) -> None:
        self.table: List[tuple] = []
        self.tables: Dict[str, List[tuple]] = {}
        self.tamper: Optional[Callable] = None
        runner.handle("sfdisk", self)

    def __call__(self, command, input_text):
        target = command[-1]
        if "--json" in command:
            table = self.tables.get(target, self.table)
            if self.tamper:
                table = self.tamper(table)
            return completed_process(command, stdout=build_sfdisk_json(target, table))
        self.table = [
            (int(start), int(size), type_code)
            for start, size, type_code in re.findall(
                r"start=(\d+), size=(\d+), type=(\w+)", input_text
            )
        ]
        return completed_process(command)


# ==============================================================================
# Fixtures
# ==============================================================================


@pytest.fixture
def runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def completed() -> Callable[..., subprocess.CompletedProcess]:
    """Factory for CompletedProcess results returned by runner handlers."""
    return completed_process


@pytest.fixture
def sfdisk_json() -> Callable[..., str]:
    return build_sfdisk_json


@pytest.fixture
def sfdisk(runner) -> FakeSfdisk:
    return FakeSfdisk(runner)


@pytest.fixture
def busy_error() -> ExternalToolError:
    """losetup failure raised while every loop device is taken."""
    return make_busy_error()


@pytest.fixture
def loop_devices() -> FakeLoopDevices:
    return FakeLoopDevices()


@pytest.fixture
def device_maps(loop_devices) -> DeviceMapManager:
    return DeviceMapManager(loop_devices, max_attempts=3, retry_delay=0, sleep=lambda _: None)


@pytest.fixture
def mounts(runner) -> FakeMountOrchestrator:
    return FakeMountOrchestrator(runner)


@pytest.fixture
def make_image(tmp_path) -> Callable[..., Path]:
    """Create a sparse file of ``size`` bytes, optionally filled at offsets."""

    def _make(name: str = "raw.img", size: int = 1024 * 1024, chunks=None) -> Path:
        path = tmp_path / name
        with open(path, "wb") as image:
            image.truncate(size)
            for offset, data in (chunks or {}).items():
                image.seek(offset)
                image.write(data)
        return path

    return _make


@pytest.fixture
def log_records():
    """Collect loguru records emitted during a test."""
    records: List[dict] = []
    handler_id = logger.add(lambda message: records.append(message.record), level="TRACE")
    yield records
    logger.remove(handler_id)
