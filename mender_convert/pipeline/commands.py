"""Steps of each conversion command.

Sub-pipelines:
    partition:          working copy -> shrink -> plan -> build -> populate -> format
    install-agent:      open image -> install client
    install-bootloader: open image -> run device installer
    extract-artifact:   open image -> extract rootfs -> package

``from-raw-disk-image`` runs the four sub-pipelines in that order. The
"open image" steps do nothing when an earlier sub-pipeline already produced
the target image.
"""

from __future__ import annotations

import shutil

from mender_convert.artifact.packager import PackageRequest
from mender_convert.domain.models import DATA, PRIMARY, SECONDARY
from mender_convert.exceptions import ConfigurationError
from mender_convert.install.agent import AgentOptions, install_agent
from mender_convert.install.bootloader import InstallRequest
from mender_convert.logging import LoggerFactory
from mender_convert.storage import inspector, layout

from .collaborators import Collaborators
from .context import (
    CREATE_PARTITIONS,
    DISK_IMAGE_TO_ARTIFACT,
    FROM_RAW_DISK_IMAGE,
    INSTALL_AGENT,
    INSTALL_BOOTLOADER,
    SHRINK_ROOTFS,
    PipelineContext,
)
from .controller import Pipeline, RunState, Step

log = LoggerFactory.for_pipeline()


# ==============================================================================
# Partition sub-pipeline
# ==============================================================================


def prepare_working_copy(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    source = ctx.options.raw_disk_image
    ctx.work_dir.mkdir(parents=True, exist_ok=True)
    working = ctx.work_dir / source.name
    if working.resolve() == source.resolve():
        raise ConfigurationError(
            f"{source} is inside the work directory; move it or change work_dir",
            options=["--raw-disk-image"],
        )
    state.intermediates.append(working)
    log.info(f"Copying {source.name} to {ctx.work_dir}")
    shutil.copyfile(source, working)
    state.working_image = working


def use_raw_image_in_place(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    state.working_image = ctx.options.raw_disk_image


def shrink_rootfs(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    image = inspector.inspect(state.working_image, c.reader)
    state.rootfs_size = c.shrinker.shrink(image)
    # Geometry changed; inspect again
    state.raw_image = inspector.inspect(state.working_image, c.reader)


def plan_layout(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    raw = state.raw_image
    profile = ctx.options.profile
    if raw.has_boot_partition:
        boot_start, boot_size = raw.boot_partition.start, raw.boot_partition.size
    else:
        boot_start = raw.rootfs_partition.start
        boot_size = layout.mb_to_sectors(profile.default_boot_size_mb, raw.sector_size)
    state.plan = layout.plan(
        boot_start,
        boot_size,
        state.rootfs_size,
        ctx.options.data_part_size_mb,
        raw.sector_size,
        has_boot=profile.boot_partition,
    )


def create_partitions(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    output = ctx.output_path(".sdimg")
    state.outputs.append(output)
    state.target = c.builder.build(state.plan, output)


def populate_partitions(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    state.populated = c.builder.populate(state.target, state.raw_image)


def format_partitions(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    empty = [name for name in state.target.names if name not in state.populated]
    c.builder.format(state.target, empty)


# ==============================================================================
# Install sub-pipelines
# ==============================================================================


def open_disk_image(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    if state.target is not None:
        log.debug(f"Using {state.target.path.name} from the previous steps")
        return
    if ctx.options.mender_disk_image is None:
        raise ConfigurationError("A disk image is required", options=["--mender-disk-image"])
    state.target = inspector.inspect_target(ctx.options.mender_disk_image, c.reader)


def agent_options(ctx: PipelineContext) -> AgentOptions:
    options = ctx.options
    return AgentOptions(
        client_binary=options.mender_client,
        device_type=options.profile.name,
        artifact_name=options.artifact_name,
        server_url=options.server_url,
        demo_host_ip=options.demo_host_ip,
        server_cert=options.server_cert,
        tenant_token=options.tenant_token,
    )


def install_client(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    target = state.target
    names = [name for name in (PRIMARY, SECONDARY, DATA) if name in target.names]
    with c.device_maps.mapped(target.path, target.regions(names)) as mapping:
        with c.mounts.mounted(mapping, ctx.mount_root, names) as mount_set:
            install_agent(mount_set, agent_options(ctx), ctx.options.profile)


def install_bootloader(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    target = state.target
    profile = ctx.options.profile
    names = profile.mounts_for(target.names)
    with c.device_maps.mapped(target.path, target.regions(names)) as mapping:
        with c.mounts.mounted(mapping, ctx.mount_root, names) as mount_set:
            request = InstallRequest(
                device_type=profile.name,
                sources=ctx.sources_dir,
                mounts={name: mount_set.path(name) for name in names},
                toolchain=ctx.options.toolchain,
            )
            c.installer.install(profile, request)


# ==============================================================================
# Artifact sub-pipeline
# ==============================================================================


def extract_rootfs(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    options = ctx.options
    state.artifact = c.extractor.extract(
        state.target,
        options.rootfs_partition_id,
        options.profile.name,
        options.artifact_name,
        ctx.output_dir,
        ctx.mount_root,
    )
    state.outputs.append(state.artifact.path)


def package_artifact(ctx: PipelineContext, state: RunState, c: Collaborators) -> None:
    artifact = state.artifact
    output = ctx.output_path(".mender")
    state.outputs.append(output)
    state.package = c.packager.package(
        PackageRequest(
            update_file=artifact.path,
            output_path=output,
            artifact_name=artifact.artifact_name,
            device_type=artifact.device_type,
        )
    )


# ==============================================================================
# Commands
# ==============================================================================

PARTITION = Pipeline(
    "partition",
    (
        Step("copy raw disk image", prepare_working_copy),
        Step("shrink root filesystem", shrink_rootfs, requires=("working_image",)),
        Step("plan partition layout", plan_layout, requires=("raw_image", "rootfs_size")),
        Step("create partitions", create_partitions, requires=("plan",)),
        Step("copy partition contents", populate_partitions, requires=("target", "raw_image")),
        Step("format empty partitions", format_partitions, requires=("target",)),
    ),
)

INSTALL_AGENT_PIPELINE = Pipeline(
    "install-agent",
    (
        Step("open disk image", open_disk_image),
        Step("install update client", install_client, requires=("target",)),
    ),
)

INSTALL_BOOTLOADER_PIPELINE = Pipeline(
    "install-bootloader",
    (
        Step("open disk image", open_disk_image),
        Step("install bootloader", install_bootloader, requires=("target",)),
    ),
)

EXTRACT_ARTIFACT = Pipeline(
    "extract-artifact",
    (
        Step("open disk image", open_disk_image),
        Step("extract root filesystem", extract_rootfs, requires=("target",)),
        Step("package artifact", package_artifact, requires=("artifact",)),
    ),
)

SHRINK = Pipeline(
    SHRINK_ROOTFS,
    (
        Step("open raw disk image", use_raw_image_in_place),
        Step("shrink root filesystem", shrink_rootfs, requires=("working_image",)),
    ),
)


def pipeline_for(command: str) -> Pipeline:
    """The pipeline a command line command runs."""
    if command == FROM_RAW_DISK_IMAGE:
        return Pipeline.concatenate(
            command,
            PARTITION,
            INSTALL_AGENT_PIPELINE,
            INSTALL_BOOTLOADER_PIPELINE,
            EXTRACT_ARTIFACT,
        )
    pipelines = {
        DISK_IMAGE_TO_ARTIFACT: EXTRACT_ARTIFACT,
        SHRINK_ROOTFS: SHRINK,
        CREATE_PARTITIONS: PARTITION,
        INSTALL_AGENT: INSTALL_AGENT_PIPELINE,
        INSTALL_BOOTLOADER: INSTALL_BOOTLOADER_PIPELINE,
    }
    try:
        return Pipeline(command, pipelines[command].steps)
    except KeyError:
        raise ConfigurationError(f"Unknown command: {command!r}") from None
