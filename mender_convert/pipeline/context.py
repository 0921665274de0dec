"""Conversion options and the per-run pipeline context."""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mender_convert.config import settings
from mender_convert.devices.profiles import DeviceProfile, get_profile
from mender_convert.domain.models import RootfsSlot
from mender_convert.exceptions import ConfigurationError

FROM_RAW_DISK_IMAGE = "from-raw-disk-image"
DISK_IMAGE_TO_ARTIFACT = "mender-disk-image-to-artifact"
SHRINK_ROOTFS = "raw-disk-image-shrink-rootfs"
CREATE_PARTITIONS = "raw-disk-image-create-partitions"
INSTALL_AGENT = "install-mender-to-mender-disk-image"
INSTALL_BOOTLOADER = "install-bootloader-to-mender-disk-image"

COMMANDS = (
    FROM_RAW_DISK_IMAGE,
    DISK_IMAGE_TO_ARTIFACT,
    SHRINK_ROOTFS,
    CREATE_PARTITIONS,
    INSTALL_AGENT,
    INSTALL_BOOTLOADER,
)

# Option attribute -> command line flag, for error messages
OPTION_FLAGS = {
    "raw_disk_image": "--raw-disk-image",
    "mender_disk_image": "--mender-disk-image",
    "device_type": "--device-type",
    "mender_client": "--mender-client",
    "artifact_name": "--artifact-name",
}

REQUIRED_OPTIONS = {
    FROM_RAW_DISK_IMAGE: ("raw_disk_image", "device_type", "mender_client", "artifact_name"),
    DISK_IMAGE_TO_ARTIFACT: ("mender_disk_image", "device_type", "artifact_name"),
    SHRINK_ROOTFS: ("raw_disk_image",),
    CREATE_PARTITIONS: ("raw_disk_image", "device_type"),
    INSTALL_AGENT: ("mender_disk_image", "device_type", "mender_client", "artifact_name"),
    INSTALL_BOOTLOADER: ("mender_disk_image", "device_type"),
}

INSTALLS_AGENT = (FROM_RAW_DISK_IMAGE, INSTALL_AGENT)


def _optional_path(value) -> Optional[Path]:
    return Path(value) if value else None


@dataclass(frozen=True)
class ConversionOptions:
    raw_disk_image: Optional[Path] = None
    mender_disk_image: Optional[Path] = None
    data_part_size_mb: int = settings.DEFAULT_DATA_PART_SIZE_MB
    device_type: Optional[str] = None
    rootfs_partition_id: RootfsSlot = RootfsSlot.PRIMARY
    demo_host_ip: Optional[str] = None
    server_cert: Optional[Path] = None
    server_url: Optional[str] = None
    tenant_token: str = ""
    mender_client: Optional[Path] = None
    toolchain: Optional[str] = None
    artifact_name: Optional[str] = None
    keep_intermediates: bool = False

    @classmethod
    def from_args(cls, args) -> ConversionOptions:
        """Build options from parsed arguments, filling gaps from settings."""
        data_size = getattr(args, "data_part_size_mb", None)
        if data_size is None:
            data_size = settings.get_int("data_part_size_mb", settings.DEFAULT_DATA_PART_SIZE_MB)
        try:
            slot = RootfsSlot.parse(getattr(args, "rootfs_partition_id", None))
        except ValueError:
            raise ConfigurationError(
                f"Invalid rootfs partition: {args.rootfs_partition_id!r} "
                "(expected primary or secondary)",
                options=["--rootfs-partition-id"],
            ) from None
        return cls(
            raw_disk_image=_optional_path(getattr(args, "raw_disk_image", None)),
            mender_disk_image=_optional_path(getattr(args, "mender_disk_image", None)),
            data_part_size_mb=data_size,
            device_type=getattr(args, "device_type", None),
            rootfs_partition_id=slot,
            demo_host_ip=getattr(args, "demo_host_ip", None),
            server_cert=_optional_path(getattr(args, "server_cert", None)),
            server_url=getattr(args, "server_url", None),
            tenant_token=getattr(args, "tenant_token", None) or "",
            mender_client=_optional_path(getattr(args, "mender_client", None)),
            toolchain=getattr(args, "toolchain", None),
            artifact_name=getattr(args, "artifact_name", None),
            keep_intermediates=bool(getattr(args, "keep", False)),
        )

    @property
    def profile(self) -> DeviceProfile:
        if not self.device_type:
            raise ConfigurationError("Device type is required", options=["--device-type"])
        return get_profile(self.device_type)

    @property
    def output_name(self) -> str:
        """``<name>`` part of output file names."""
        if self.artifact_name:
            return self.artifact_name
        for image in (self.raw_disk_image, self.mender_disk_image):
            if image is not None:
                return image.stem
        raise ConfigurationError(
            "An artifact name or a disk image is required to name outputs",
            options=["--artifact-name"],
        )

    def validate_for(self, command: str) -> None:
        """Check that ``command`` has every option it needs.

        Raises:
            ConfigurationError: For unknown commands, missing or contradictory options
            UnsupportedDeviceError: If the device type is not supported
        """
        if command not in REQUIRED_OPTIONS:
            raise ConfigurationError(
                f"Unknown command: {command!r} (expected one of: {', '.join(COMMANDS)})"
            )
        missing = [name for name in REQUIRED_OPTIONS[command] if not getattr(self, name)]
        if missing:
            flags = [OPTION_FLAGS[name] for name in missing]
            raise ConfigurationError(
                f"{command} requires {', '.join(flags)}", options=flags
            )
        if self.device_type:
            get_profile(self.device_type)
        if self.data_part_size_mb <= 0:
            raise ConfigurationError(
                f"Data partition size must be positive, got {self.data_part_size_mb}",
                options=["--data-part-size-mb"],
            )
        for name in ("raw_disk_image", "mender_disk_image", "mender_client", "server_cert"):
            path = getattr(self, name)
            if path is not None and not path.is_file():
                raise ConfigurationError(
                    f"File not found: {path}", options=[f"--{name.replace('_', '-')}"]
                )
        if command in INSTALLS_AGENT:
            if self.demo_host_ip and self.server_url:
                raise ConfigurationError(
                    "--demo-host-ip and --server-url cannot be used together",
                    options=["--demo-host-ip", "--server-url"],
                )
            if not (self.demo_host_ip or self.server_url):
                raise ConfigurationError(
                    f"{command} requires --demo-host-ip or --server-url",
                    options=["--demo-host-ip", "--server-url"],
                )


@dataclass(frozen=True)
class PipelineContext:
    """Everything a run needs that does not change while it runs."""

    command: str
    options: ConversionOptions
    work_dir: Path
    output_dir: Path
    build_log: Optional[Path] = None
    job_id: str = ""

    @classmethod
    def create(
        cls,
        command: str,
        options: ConversionOptions,
        build_log: Optional[Path] = None,
        work_dir: Optional[Path] = None,
        output_dir: Optional[Path] = None,
    ) -> PipelineContext:
        options.validate_for(command)
        return cls(
            command=command,
            options=options,
            work_dir=Path(work_dir or settings.get_path("work_dir", Path("work"))),
            output_dir=Path(output_dir or settings.get_path("output_dir", Path("output"))),
            build_log=build_log,
            job_id=f"{command}-{uuid.uuid4().hex[:8]}",
        )

    @property
    def mount_root(self) -> Path:
        return self.work_dir / "mnt"

    @property
    def sources_dir(self) -> Path:
        configured = settings.get_setting("installer_sources_dir")
        return Path(configured) if configured else self.work_dir / "sources"

    def output_path(self, suffix: str) -> Path:
        """``<output_dir>/mender-<device>-<name><suffix>``."""
        name = f"mender-{self.options.profile.name}-{self.options.output_name}{suffix}"
        return self.output_dir / name
