"""External tool collaborators shared by the steps of one run."""

from __future__ import annotations

from dataclasses import dataclass

from mender_convert.artifact.extract import ArtifactExtractor
from mender_convert.artifact.packager import ArtifactPackager
from mender_convert.install.bootloader import DeviceInstaller
from mender_convert.storage.commands import CommandRunner, run_command
from mender_convert.storage.device_map import DeviceMapManager, LoopDeviceManager
from mender_convert.storage.disk_builder import DiskBuilder
from mender_convert.storage.filesystem import FilesystemResizer
from mender_convert.storage.mount import MountOrchestrator
from mender_convert.storage.partition_table import PartitionTableReader, PartitionTableWriter
from mender_convert.storage.shrink import FilesystemShrinker


@dataclass
class Collaborators:
    reader: PartitionTableReader
    device_maps: DeviceMapManager
    mounts: MountOrchestrator
    shrinker: FilesystemShrinker
    builder: DiskBuilder
    extractor: ArtifactExtractor
    installer: DeviceInstaller
    packager: ArtifactPackager

    @classmethod
    def create(cls, runner: CommandRunner = run_command) -> Collaborators:
        """Wire every collaborator to the same command runner."""
        reader = PartitionTableReader(runner)
        writer = PartitionTableWriter(runner)
        filesystems = FilesystemResizer(runner)
        device_maps = DeviceMapManager(LoopDeviceManager(runner))
        mounts = MountOrchestrator(runner)
        return cls(
            reader=reader,
            device_maps=device_maps,
            mounts=mounts,
            shrinker=FilesystemShrinker(device_maps, filesystems, reader, writer),
            builder=DiskBuilder(device_maps, reader, writer, filesystems),
            extractor=ArtifactExtractor(device_maps, mounts, filesystems),
            installer=DeviceInstaller(runner=runner),
            packager=ArtifactPackager(runner=runner),
        )
