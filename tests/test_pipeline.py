"""Tests for the pipeline package - options, controller and commands."""

from argparse import Namespace
from pathlib import Path

import pytest

from mender_convert.artifact.extract import ArtifactExtractor
from mender_convert.artifact.packager import ArtifactPackager
from mender_convert.config import settings
from mender_convert.domain.models import (
    BOOT,
    DATA,
    PRIMARY,
    SECONDARY,
    Partition,
    PipelineState,
    RawDiskImage,
    RootfsSlot,
)
from mender_convert.exceptions import (
    ConfigurationError,
    DeviceTypeMismatchError,
    ExternalToolError,
    UnsupportedDeviceError,
)
from mender_convert.install.bootloader import DeviceInstaller
from mender_convert.main import build_parser
from mender_convert.pipeline import commands
from mender_convert.pipeline.collaborators import Collaborators
from mender_convert.pipeline.context import (
    CREATE_PARTITIONS,
    DISK_IMAGE_TO_ARTIFACT,
    FROM_RAW_DISK_IMAGE,
    INSTALL_AGENT,
    INSTALL_BOOTLOADER,
    SHRINK_ROOTFS,
    ConversionOptions,
    PipelineContext,
)
from mender_convert.pipeline.controller import (
    MissingInputError,
    Pipeline,
    PipelineController,
    RunState,
    Step,
)
from mender_convert.storage.disk_builder import DiskBuilder
from mender_convert.storage.filesystem import FilesystemResizer
from mender_convert.storage.partition_table import PartitionTableReader, PartitionTableWriter

SECTOR = 512


@pytest.fixture
def raw_image(make_image):
    return make_image("raw.img", 4096)


@pytest.fixture
def client(make_image):
    return make_image("mender", 16)


def context_for(tmp_path, command, **options):
    return PipelineContext.create(
        command,
        ConversionOptions(**options),
        work_dir=tmp_path / "work",
        output_dir=tmp_path / "output",
    )


def collaborators_for(runner, device_maps, mounts, **overrides):
    values = dict(
        reader=PartitionTableReader(runner),
        device_maps=device_maps,
        mounts=mounts,
        shrinker=None,
        builder=None,
        extractor=ArtifactExtractor(device_maps, mounts, FilesystemResizer(runner)),
        installer=None,
        packager=ArtifactPackager(tool="mender-artifact", runner=runner),
    )
    values.update(overrides)
    return Collaborators(**values)


# ==============================================================================
# Options
# ==============================================================================


class TestConversionOptions:
    def test_from_parsed_arguments(self, raw_image, client):
        args = build_parser().parse_args(
            [
                FROM_RAW_DISK_IMAGE,
                "-r", str(raw_image),
                "-d", "beaglebone",
                "-g", str(client),
                "-n", "release-1",
                "-i", "192.168.10.2",
                "-p", "secondary",
                "-k",
            ]
        )

        options = ConversionOptions.from_args(args)

        assert options.raw_disk_image == raw_image
        assert options.rootfs_partition_id is RootfsSlot.SECONDARY
        assert options.keep_intermediates is True
        assert options.data_part_size_mb == 128
        assert options.tenant_token == ""

    def test_slot_defaults_to_primary(self):
        options = ConversionOptions.from_args(Namespace(rootfs_partition_id=None))

        assert options.rootfs_partition_id is RootfsSlot.PRIMARY

    def test_invalid_slot(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ConversionOptions.from_args(Namespace(rootfs_partition_id="c"))

        assert exc_info.value.options == ["--rootfs-partition-id"]

    def test_missing_options_are_named(self):
        with pytest.raises(ConfigurationError) as exc_info:
            ConversionOptions(device_type="beaglebone").validate_for(DISK_IMAGE_TO_ARTIFACT)

        assert exc_info.value.options == ["--mender-disk-image", "--artifact-name"]
        assert "--mender-disk-image" in str(exc_info.value)

    def test_unsupported_device(self, raw_image):
        options = ConversionOptions(raw_disk_image=raw_image, device_type="qemux86")

        with pytest.raises(UnsupportedDeviceError) as exc_info:
            options.validate_for(CREATE_PARTITIONS)

        assert exc_info.value.supported == ["beaglebone", "raspberrypi3"]

    def test_missing_file(self, tmp_path):
        options = ConversionOptions(raw_disk_image=tmp_path / "missing.img")

        with pytest.raises(ConfigurationError) as exc_info:
            options.validate_for(SHRINK_ROOTFS)

        assert exc_info.value.options == ["--raw-disk-image"]

    def test_data_size_must_be_positive(self, raw_image):
        options = ConversionOptions(
            raw_disk_image=raw_image, device_type="beaglebone", data_part_size_mb=0
        )

        with pytest.raises(ConfigurationError):
            options.validate_for(CREATE_PARTITIONS)

    @pytest.mark.parametrize(
        "server",
        [
            {},
            {"demo_host_ip": "192.168.10.2", "server_url": "https://hosted.mender.io"},
        ],
    )
    def test_agent_needs_exactly_one_server(self, make_image, client, server):
        options = ConversionOptions(
            mender_disk_image=make_image("disk.sdimg", 4096),
            device_type="beaglebone",
            mender_client=client,
            artifact_name="release-1",
            **server,
        )

        with pytest.raises(ConfigurationError) as exc_info:
            options.validate_for(INSTALL_AGENT)

        assert "--server-url" in exc_info.value.options

    def test_unknown_command(self):
        with pytest.raises(ConfigurationError):
            ConversionOptions().validate_for("convert-everything")


class TestPipelineContext:
    def test_output_path_uses_artifact_name(self, tmp_path, raw_image):
        ctx = context_for(
            tmp_path,
            CREATE_PARTITIONS,
            raw_disk_image=raw_image,
            device_type="beaglebone",
            artifact_name="release-1",
        )

        assert ctx.output_path(".sdimg") == tmp_path / "output" / "mender-beaglebone-release-1.sdimg"
        assert ctx.job_id.startswith(CREATE_PARTITIONS)
        assert ctx.mount_root == tmp_path / "work" / "mnt"

    def test_output_path_falls_back_to_image_name(self, tmp_path, raw_image):
        ctx = context_for(
            tmp_path, CREATE_PARTITIONS, raw_disk_image=raw_image, device_type="raspberrypi3"
        )

        assert ctx.output_path(".sdimg").name == "mender-raspberrypi3-raw.sdimg"

    def test_create_validates(self, tmp_path):
        with pytest.raises(ConfigurationError):
            context_for(tmp_path, SHRINK_ROOTFS)


# ==============================================================================
# Commands
# ==============================================================================


class TestPipelineFor:
    def test_full_conversion_runs_every_sub_pipeline(self):
        pipeline = commands.pipeline_for(FROM_RAW_DISK_IMAGE)

        names = [step.name for step in pipeline.steps]
        assert pipeline.name == FROM_RAW_DISK_IMAGE
        assert names[0] == "copy raw disk image"
        assert names[-2:] == ["extract root filesystem", "package artifact"]
        assert len(names) == (
            len(commands.PARTITION.steps)
            + len(commands.INSTALL_AGENT_PIPELINE.steps)
            + len(commands.INSTALL_BOOTLOADER_PIPELINE.steps)
            + len(commands.EXTRACT_ARTIFACT.steps)
        )

    def test_shrink_works_in_place(self):
        pipeline = commands.pipeline_for(SHRINK_ROOTFS)

        assert pipeline.steps[0].action is commands.use_raw_image_in_place

    def test_unknown_command(self):
        with pytest.raises(ConfigurationError):
            commands.pipeline_for("convert-everything")


class TestSteps:
    def test_plan_layout_for_single_partition_source(self, tmp_path, raw_image):
        ctx = context_for(
            tmp_path, CREATE_PARTITIONS, raw_disk_image=raw_image, device_type="beaglebone"
        )
        state = RunState(
            raw_image=RawDiskImage(raw_image, SECTOR, (Partition(1, 16384, 100000),)),
            rootfs_size=1048576,
        )

        commands.plan_layout(ctx, state, None)

        assert state.plan.has_boot
        assert state.plan.boot_start == 16384
        assert state.plan.boot_size == 32768  # 16 MiB default
        assert state.plan.rootfs_size == 1048576

    def test_working_copy_is_an_intermediate(self, tmp_path, raw_image):
        ctx = context_for(
            tmp_path, CREATE_PARTITIONS, raw_disk_image=raw_image, device_type="beaglebone"
        )
        state = RunState()

        commands.prepare_working_copy(ctx, state, None)

        assert state.working_image == tmp_path / "work" / "raw.img"
        assert state.working_image.read_bytes() == raw_image.read_bytes()
        assert state.intermediates == [state.working_image]

    def test_working_copy_cannot_be_the_source(self, tmp_path):
        work = tmp_path / "work"
        work.mkdir()
        source = work / "raw.img"
        source.write_bytes(b"\0" * 512)
        ctx = PipelineContext.create(
            CREATE_PARTITIONS,
            ConversionOptions(raw_disk_image=source, device_type="beaglebone"),
            work_dir=work,
            output_dir=tmp_path / "output",
        )

        with pytest.raises(ConfigurationError):
            commands.prepare_working_copy(ctx, RunState(), None)

        assert source.exists()


# ==============================================================================
# Controller
# ==============================================================================


@pytest.fixture
def shrink_context(tmp_path, raw_image):
    return context_for(tmp_path, SHRINK_ROOTFS, raw_disk_image=raw_image)


def controller_for(ctx, runner, device_maps, mounts):
    return PipelineController(ctx, collaborators_for(runner, device_maps, mounts))


class TestController:
    def test_runs_steps_in_order(self, shrink_context, runner, device_maps, mounts):
        ran = []

        def record(name):
            return lambda ctx, state, c: ran.append(name)

        pipeline = Pipeline("test", (Step("one", record("one")), Step("two", record("two"))))

        result = controller_for(shrink_context, runner, device_maps, mounts).run(pipeline)

        assert result.succeeded
        assert result.completed_steps == 2
        assert ran == ["one", "two"]

    def test_stops_at_first_failure(self, shrink_context, runner, device_maps, mounts):
        ran = []

        def fail(ctx, state, c):
            raise ExternalToolError(["resize2fs"], 1, stderr="resize2fs: bad superblock")

        pipeline = Pipeline(
            "test",
            (
                Step("one", lambda ctx, state, c: ran.append("one")),
                Step("two", fail),
                Step("three", lambda ctx, state, c: ran.append("three")),
            ),
        )

        result = controller_for(shrink_context, runner, device_maps, mounts).run(pipeline)

        assert result.state is PipelineState.FAILED
        assert result.completed_steps == 1
        assert result.failed_step.ordinal == 2
        assert result.failed_step.label == "[2/3] two"
        assert isinstance(result.error, ExternalToolError)
        assert ran == ["one"]

    def test_missing_input(self, shrink_context, runner, device_maps, mounts):
        pipeline = Pipeline("test", (Step("extract", lambda *a: None, requires=("target",)),))

        result = controller_for(shrink_context, runner, device_maps, mounts).run(pipeline)

        assert isinstance(result.error, MissingInputError)
        assert result.error.missing == ["target"]

    def test_cleanup_releases_devices_and_mounts(
        self, shrink_context, runner, device_maps, mounts, loop_devices
    ):
        def leak_and_fail(ctx, state, c):
            mapping = c.device_maps.acquire(Path("/tmp/disk.sdimg"))
            c.mounts.mount_all(mapping, ctx.mount_root)
            raise ExternalToolError(["mender-artifact"], 1)

        pipeline = Pipeline("test", (Step("leak", leak_and_fail),))

        result = controller_for(shrink_context, runner, device_maps, mounts).run(pipeline)

        assert not result.succeeded
        assert loop_devices.attached == {}
        assert mounts.mounted_paths == set()
        assert device_maps.outstanding == []
        assert not shrink_context.mount_root.exists()

    def test_interrupt_is_a_failure(self, shrink_context, runner, device_maps, mounts, loop_devices):
        def interrupted(ctx, state, c):
            c.device_maps.acquire(Path("/tmp/disk.sdimg"))
            raise KeyboardInterrupt

        pipeline = Pipeline("test", (Step("copy", interrupted),))

        result = controller_for(shrink_context, runner, device_maps, mounts).run(pipeline)

        assert result.state is PipelineState.FAILED
        assert isinstance(result.error, KeyboardInterrupt)
        assert loop_devices.attached == {}

    def test_failure_removes_outputs_and_intermediates(
        self, shrink_context, runner, device_maps, mounts, tmp_path
    ):
        output = tmp_path / "output" / "partial.sdimg"
        working = tmp_path / "work" / "raw.img"

        def produce(ctx, state, c):
            for path in (output, working):
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(b"data")
            state.outputs.append(output)
            state.intermediates.append(working)

        def fail(ctx, state, c):
            raise ConfigurationError("stop")

        pipeline = Pipeline("test", (Step("produce", produce), Step("fail", fail)))

        controller_for(shrink_context, runner, device_maps, mounts).run(pipeline)

        assert not output.exists()
        assert not working.exists()

    def test_keep_intermediates(self, tmp_path, raw_image, runner, device_maps, mounts):
        ctx = context_for(
            tmp_path, SHRINK_ROOTFS, raw_disk_image=raw_image, keep_intermediates=True
        )
        output = tmp_path / "output" / "partial.sdimg"
        working = tmp_path / "work" / "raw.img"

        def produce(ctx, state, c):
            for path in (output, working):
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(b"data")
            state.outputs.append(output)
            state.intermediates.append(working)
            raise ConfigurationError("stop")

        controller_for(ctx, runner, device_maps, mounts).run(
            Pipeline("test", (Step("produce", produce),))
        )

        assert output.exists()
        assert working.exists()

    def test_success_removes_intermediates_only(
        self, shrink_context, runner, device_maps, mounts, tmp_path
    ):
        output = tmp_path / "output" / "out.sdimg"
        working = tmp_path / "work" / "raw.img"

        def produce(ctx, state, c):
            for path in (output, working):
                path.parent.mkdir(parents=True, exist_ok=True)
                path.write_bytes(b"data")
            state.outputs.append(output)
            state.intermediates.append(working)

        result = controller_for(shrink_context, runner, device_maps, mounts).run(
            Pipeline("test", (Step("produce", produce),))
        )

        assert result.outputs == (output,)
        assert output.exists()
        assert not working.exists()

    def test_cleanup_failure_fails_the_run(
        self, shrink_context, runner, device_maps, mounts, loop_devices, tmp_path
    ):
        output = tmp_path / "output" / "out.sdimg"

        def leak(ctx, state, c):
            mapping = c.device_maps.acquire(Path("/tmp/disk.sdimg"))
            loop_devices.detach_errors[mapping.devices[0]] = ExternalToolError(
                ["losetup", "-d", mapping.devices[0]], 1, stderr="losetup: device busy"
            )
            output.parent.mkdir(parents=True, exist_ok=True)
            output.write_bytes(b"data")
            state.outputs.append(output)

        result = controller_for(shrink_context, runner, device_maps, mounts).run(
            Pipeline("test", (Step("leak", leak),))
        )

        assert result.state is PipelineState.FAILED
        assert result.completed_steps == 1
        assert isinstance(result.error, ExternalToolError)
        assert not output.exists()

    def test_interrupted_unmount_still_releases_devices(
        self, shrink_context, runner, device_maps, mounts, loop_devices, mocker
    ):
        def leak(ctx, state, c):
            mapping = c.device_maps.acquire(Path("/tmp/disk.sdimg"))
            c.mounts.mount_all(mapping, ctx.mount_root)

        mocker.patch.object(mounts, "unmount_outstanding", side_effect=KeyboardInterrupt)

        result = controller_for(shrink_context, runner, device_maps, mounts).run(
            Pipeline("test", (Step("leak", leak),))
        )

        assert result.state is PipelineState.FAILED
        assert isinstance(result.error, KeyboardInterrupt)
        assert loop_devices.attached == {}
        assert device_maps.outstanding == []

    def test_interrupted_release_still_removes_intermediates(
        self, shrink_context, runner, device_maps, mounts, mocker, tmp_path
    ):
        working = tmp_path / "work" / "raw.img"

        def produce(ctx, state, c):
            working.parent.mkdir(parents=True, exist_ok=True)
            working.write_bytes(b"data")
            state.intermediates.append(working)

        mocker.patch.object(device_maps, "release_all", side_effect=KeyboardInterrupt)

        result = controller_for(shrink_context, runner, device_maps, mounts).run(
            Pipeline("test", (Step("produce", produce),))
        )

        assert result.state is PipelineState.FAILED
        assert not working.exists()


# ==============================================================================
# Disk image to artifact
# ==============================================================================

TARGET_TABLE = [(8, 8, "c"), (16, 16), (32, 16), (48, 16)]


@pytest.fixture
def disk_image(make_image, runner, sfdisk_json, completed):
    path = make_image(
        "disk.sdimg",
        64 * SECTOR,
        {16 * SECTOR: b"A" * 16 * SECTOR, 32 * SECTOR: b"B" * 16 * SECTOR},
    )
    runner.respond("sfdisk", (0, sfdisk_json(str(path), TARGET_TABLE), ""))

    def write_artifact(command, input_text):
        Path(command[command.index("--output-path") + 1]).write_bytes(b"artifact")
        return completed(command)

    runner.handle("mender-artifact", write_artifact)
    return path


def stamp_data(ctx, device_type):
    stamp = ctx.mount_root / DATA / "mender" / "device_type"
    stamp.parent.mkdir(parents=True)
    stamp.write_text(f"device_type={device_type}\n")


def artifact_context(tmp_path, disk_image, device_type):
    return context_for(
        tmp_path,
        DISK_IMAGE_TO_ARTIFACT,
        mender_disk_image=disk_image,
        device_type=device_type,
        artifact_name="release-1",
        rootfs_partition_id=RootfsSlot.SECONDARY,
    )


class TestDiskImageToArtifact:
    def test_writes_rootfs_and_artifact(
        self, tmp_path, disk_image, runner, device_maps, mounts, loop_devices
    ):
        ctx = artifact_context(tmp_path, disk_image, "beaglebone")
        stamp_data(ctx, "beaglebone")

        result = controller_for(ctx, runner, device_maps, mounts).run(
            commands.pipeline_for(DISK_IMAGE_TO_ARTIFACT)
        )

        output = tmp_path / "output"
        assert result.succeeded, result.error
        assert result.outputs == (
            output / "mender-beaglebone-release-1.ext4",
            output / "mender-beaglebone-release-1.mender",
        )
        assert result.outputs[0].read_bytes() == b"B" * 16 * SECTOR
        package = runner.commands("mender-artifact")[0]
        assert package[package.index("--device-type") + 1] == "beaglebone"
        assert loop_devices.attached == {}

    def test_device_type_mismatch_writes_nothing(
        self, tmp_path, disk_image, runner, device_maps, mounts, loop_devices
    ):
        ctx = artifact_context(tmp_path, disk_image, "raspberrypi3")
        stamp_data(ctx, "beaglebone")

        result = controller_for(ctx, runner, device_maps, mounts).run(
            commands.pipeline_for(DISK_IMAGE_TO_ARTIFACT)
        )

        assert result.state is PipelineState.FAILED
        assert isinstance(result.error, DeviceTypeMismatchError)
        assert result.failed_step.name == "extract root filesystem"
        assert runner.commands("mender-artifact") == []
        assert not (tmp_path / "output").exists()
        assert loop_devices.attached == {}
        assert mounts.mounted_paths == set()


# ==============================================================================
# Install commands
# ==============================================================================

INSTALLER = "/opt/installers/bbb-install-bootloader"


def installer_for(runner):
    return DeviceInstaller(installer_dir=Path("/opt/installers"), runner=runner)


class TestInstallCommands:
    def test_install_agent_stamps_data_partition(
        self, tmp_path, disk_image, client, runner, device_maps, mounts, loop_devices
    ):
        ctx = context_for(
            tmp_path,
            INSTALL_AGENT,
            mender_disk_image=disk_image,
            device_type="beaglebone",
            mender_client=client,
            artifact_name="release-1",
            demo_host_ip="192.168.10.2",
        )

        result = controller_for(ctx, runner, device_maps, mounts).run(
            commands.pipeline_for(INSTALL_AGENT)
        )

        mnt = ctx.mount_root
        assert result.succeeded, result.error
        assert (mnt / DATA / "mender" / "device_type").read_text() == "device_type=beaglebone\n"
        assert (mnt / PRIMARY / "usr" / "bin" / "mender").read_bytes() == client.read_bytes()
        artifact_info = mnt / SECONDARY / "etc" / "mender" / "artifact_info"
        assert artifact_info.read_text() == "artifact_name=release-1\n"
        assert [path for _, path in mounts.mount_calls] == [
            str(mnt / name) for name in (PRIMARY, SECONDARY, DATA)
        ]
        assert loop_devices.attached == {}
        assert mounts.mounted_paths == set()
        assert device_maps.outstanding == []
        assert mounts.outstanding == []

    def test_install_bootloader_passes_mount_points(
        self, tmp_path, disk_image, runner, device_maps, mounts, loop_devices
    ):
        ctx = context_for(
            tmp_path, INSTALL_BOOTLOADER, mender_disk_image=disk_image, device_type="beaglebone"
        )
        collaborators = collaborators_for(
            runner, device_maps, mounts, installer=installer_for(runner)
        )

        result = PipelineController(ctx, collaborators).run(
            commands.pipeline_for(INSTALL_BOOTLOADER)
        )

        mnt = ctx.mount_root
        assert result.succeeded, result.error
        assert runner.commands(INSTALLER) == [
            [
                INSTALLER,
                "--boot-dir",
                str(mnt / BOOT),
                "--rootfs-dir",
                str(mnt / PRIMARY),
                "--data-dir",
                str(mnt / DATA),
                "--sources",
                str(ctx.sources_dir),
                "--device-type",
                "beaglebone",
            ]
        ]
        assert loop_devices.attached == {}
        assert mounts.mounted_paths == set()

    def test_install_bootloader_failure_releases_everything(
        self, tmp_path, disk_image, runner, device_maps, mounts, loop_devices
    ):
        runner.respond(INSTALLER, (2, "", "u-boot build failed"))
        ctx = context_for(
            tmp_path, INSTALL_BOOTLOADER, mender_disk_image=disk_image, device_type="beaglebone"
        )
        collaborators = collaborators_for(
            runner, device_maps, mounts, installer=installer_for(runner)
        )

        result = PipelineController(ctx, collaborators).run(
            commands.pipeline_for(INSTALL_BOOTLOADER)
        )

        assert result.state is PipelineState.FAILED
        assert result.error.returncode == 2
        assert result.failed_step.name == "install bootloader"
        assert loop_devices.attached == {}
        assert mounts.mounted_paths == set()
        assert disk_image.exists()


# ==============================================================================
# Partitioning and full conversion
# ==============================================================================

# boot at 8, rootfs at 16; with 4 KiB alignment the target is
# boot 8+8, rootfs A 16+16, rootfs B 32+16, data 48+2048
SOURCE_TABLE = [(8, 8, "c"), (16, 16)]
TARGET_SECTORS = 48 + 2048


class KeepSizeShrinker:
    """Leaves the root filesystem at its current size."""

    def __init__(self):
        self.images = []

    def shrink(self, image):
        self.images.append(image.path)
        return image.rootfs_partition.size


@pytest.fixture
def small_alignment(monkeypatch):
    monkeypatch.setitem(settings.settings_store.values, "partition_alignment_bytes", 4096)


@pytest.fixture
def source_image(make_image, sfdisk, tmp_path, small_alignment):
    path = make_image(
        "source.img",
        32 * SECTOR,
        {8 * SECTOR: b"b" * 8 * SECTOR, 16 * SECTOR: b"R" * 16 * SECTOR},
    )
    # The pipeline reads the table of its working copy
    sfdisk.tables[str(tmp_path / "work" / "source.img")] = SOURCE_TABLE
    return path


@pytest.fixture
def artifact_tool(runner, completed):
    def write_artifact(command, input_text):
        Path(command[command.index("--output-path") + 1]).write_bytes(b"artifact")
        return completed(command)

    runner.handle("mender-artifact", write_artifact)


def converter_for(ctx, runner, device_maps, mounts):
    collaborators = collaborators_for(
        runner,
        device_maps,
        mounts,
        shrinker=KeepSizeShrinker(),
        builder=DiskBuilder(
            device_maps,
            PartitionTableReader(runner),
            PartitionTableWriter(runner),
            FilesystemResizer(runner),
        ),
        installer=installer_for(runner),
    )
    return PipelineController(ctx, collaborators)


def conversion_context(tmp_path, command, source_image, **options):
    return context_for(
        tmp_path,
        command,
        raw_disk_image=source_image,
        device_type="beaglebone",
        artifact_name="release-1",
        data_part_size_mb=1,
        **options,
    )


def read(path, offset, length):
    with open(path, "rb") as image:
        image.seek(offset)
        return image.read(length)


class TestCreatePartitions:
    def test_builds_populates_and_formats(
        self, tmp_path, source_image, runner, device_maps, mounts, loop_devices, sfdisk
    ):
        ctx = conversion_context(tmp_path, CREATE_PARTITIONS, source_image)

        result = converter_for(ctx, runner, device_maps, mounts).run(
            commands.pipeline_for(CREATE_PARTITIONS)
        )

        output = tmp_path / "output" / "mender-beaglebone-release-1.sdimg"
        assert result.succeeded, result.error
        assert result.outputs == (output,)
        assert output.stat().st_size == TARGET_SECTORS * SECTOR
        assert sfdisk.table == [(8, 8, "c"), (16, 16, "83"), (32, 16, "83"), (48, 2048, "83")]
        assert read(output, 8 * SECTOR, 8 * SECTOR) == b"b" * 8 * SECTOR
        assert read(output, 16 * SECTOR, 16 * SECTOR) == b"R" * 16 * SECTOR
        assert read(output, 32 * SECTOR, 16 * SECTOR) == b"R" * 16 * SECTOR
        assert [command[:5] for command in runner.commands("mkfs.ext4")] == [
            ["mkfs.ext4", "-F", "-q", "-L", DATA]
        ]
        assert runner.commands("mkfs.vfat") == []
        assert not (tmp_path / "work" / "source.img").exists()
        assert source_image.read_bytes()[16 * SECTOR:] == b"R" * 16 * SECTOR
        assert loop_devices.attached == {}


class TestFromRawDiskImage:
    def test_produces_disk_image_rootfs_and_artifact(
        self,
        tmp_path,
        source_image,
        client,
        artifact_tool,
        runner,
        device_maps,
        mounts,
        loop_devices,
    ):
        ctx = conversion_context(
            tmp_path, FROM_RAW_DISK_IMAGE, source_image,
            mender_client=client, demo_host_ip="192.168.10.2",
        )

        result = converter_for(ctx, runner, device_maps, mounts).run(
            commands.pipeline_for(FROM_RAW_DISK_IMAGE)
        )

        output = tmp_path / "output"
        assert result.succeeded, result.error
        assert result.outputs == (
            output / "mender-beaglebone-release-1.sdimg",
            output / "mender-beaglebone-release-1.ext4",
            output / "mender-beaglebone-release-1.mender",
        )
        assert result.outputs[1].read_bytes() == b"R" * 16 * SECTOR
        assert len(runner.commands(INSTALLER)) == 1
        assert len(runner.commands("mender-artifact")) == 1
        assert loop_devices.attached == {}
        assert mounts.mounted_paths == set()

    def test_failed_bootloader_install_stops_later_steps(
        self,
        tmp_path,
        source_image,
        client,
        artifact_tool,
        runner,
        device_maps,
        mounts,
        loop_devices,
    ):
        runner.respond(INSTALLER, (2, "", "u-boot build failed"))
        ctx = conversion_context(
            tmp_path, FROM_RAW_DISK_IMAGE, source_image,
            mender_client=client, demo_host_ip="192.168.10.2",
        )

        result = converter_for(ctx, runner, device_maps, mounts).run(
            commands.pipeline_for(FROM_RAW_DISK_IMAGE)
        )

        assert result.state is PipelineState.FAILED
        assert isinstance(result.error, ExternalToolError)
        assert result.failed_step.name == "install bootloader"
        assert result.completed_steps == (
            len(commands.PARTITION.steps) + len(commands.INSTALL_AGENT_PIPELINE.steps) + 1
        )
        assert (ctx.mount_root / DATA / "mender" / "device_type").exists()
        assert runner.commands("mender-artifact") == []
        assert not (tmp_path / "output" / "mender-beaglebone-release-1.sdimg").exists()
        assert not (tmp_path / "output" / "mender-beaglebone-release-1.ext4").exists()
        assert not (tmp_path / "work" / "source.img").exists()
        assert loop_devices.attached == {}
        assert mounts.mounted_paths == set()
