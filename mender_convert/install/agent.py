"""Update agent installation into mounted rootfs slots.

Files written into each rootfs slot:
    - usr/bin/mender: the client binary (mode 0755)
    - etc/mender/mender.conf: client configuration (JSON)
    - etc/mender/artifact_info: ``artifact_name=<name>``
    - etc/mender/server.crt: server certificate, when one is given
    - etc/hosts: demo server host mapping (demo mode only)
    - etc/fstab: mount of the data partition at /data
    - var/lib/mender: symlink to /data/mender

The data partition gets the device type stamp read back during extraction.
"""

from __future__ import annotations

import json
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mender_convert.artifact.extract import ARTIFACT_INFO, DEVICE_TYPE_STAMP
from mender_convert.devices.profiles import DeviceProfile
from mender_convert.domain.models import DATA, PRIMARY, SECONDARY, MountSet
from mender_convert.exceptions import ConfigurationError
from mender_convert.logging import LoggerFactory

log = LoggerFactory.for_install()

DEMO_SERVER_URL = "https://docker.mender.io"
DEMO_HOSTNAMES = ("docker.mender.io", "s3.docker.mender.io")

DEMO_POLL_INTERVALS = {
    "InventoryPollIntervalSeconds": 5,
    "UpdatePollIntervalSeconds": 5,
    "RetryPollIntervalSeconds": 30,
}
PRODUCTION_POLL_INTERVALS = {
    "InventoryPollIntervalSeconds": 28800,
    "UpdatePollIntervalSeconds": 1800,
    "RetryPollIntervalSeconds": 300,
}

CLIENT_BINARY = Path("usr") / "bin" / "mender"
MENDER_CONF = Path("etc") / "mender" / "mender.conf"
SERVER_CERT = Path("etc") / "mender" / "server.crt"
STATE_DIR = Path("var") / "lib" / "mender"
DEVICE_SERVER_CERT = "/etc/mender/server.crt"


@dataclass(frozen=True)
class AgentOptions:
    client_binary: Path
    device_type: str
    artifact_name: str
    server_url: Optional[str] = None
    demo_host_ip: Optional[str] = None
    server_cert: Optional[Path] = None
    tenant_token: str = ""

    @property
    def demo(self) -> bool:
        return self.demo_host_ip is not None

    @property
    def effective_server_url(self) -> str:
        if self.demo:
            return DEMO_SERVER_URL
        if not self.server_url:
            raise ConfigurationError(
                "A server URL or a demo host IP is required",
                options=["--server-url", "--demo-host-ip"],
            )
        return self.server_url


def render_mender_conf(options: AgentOptions, profile: DeviceProfile) -> dict:
    part_a, part_b = profile.rootfs_devices()
    config = {
        "RootfsPartA": part_a,
        "RootfsPartB": part_b,
        "ServerURL": options.effective_server_url,
        "TenantToken": options.tenant_token,
    }
    if options.server_cert is not None:
        config["ServerCertificate"] = DEVICE_SERVER_CERT
    config.update(DEMO_POLL_INTERVALS if options.demo else PRODUCTION_POLL_INTERVALS)
    return config


def _append_line(path: Path, line: str) -> None:
    existing = path.read_text(encoding="utf-8") if path.exists() else ""
    if line in existing.splitlines():
        return
    if existing and not existing.endswith("\n"):
        existing += "\n"
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(existing + line + "\n", encoding="utf-8")


def _link_state_dir(root: Path) -> None:
    state_dir = root / STATE_DIR
    if state_dir.is_symlink():
        state_dir.unlink()
    elif state_dir.is_dir():
        log.warning(f"Replacing existing {STATE_DIR} directory with a link to /data/mender")
        shutil.rmtree(state_dir)
    state_dir.parent.mkdir(parents=True, exist_ok=True)
    os.symlink("/data/mender", state_dir)


def install_rootfs(root: Path, options: AgentOptions, profile: DeviceProfile) -> None:
    """Install the client and its configuration into one mounted rootfs."""
    root = Path(root)
    binary = root / CLIENT_BINARY
    binary.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(options.client_binary, binary)
    os.chmod(binary, 0o755)

    conf = root / MENDER_CONF
    conf.parent.mkdir(parents=True, exist_ok=True)
    conf.write_text(
        json.dumps(render_mender_conf(options, profile), indent=4) + "\n", encoding="utf-8"
    )
    (root / ARTIFACT_INFO).write_text(f"artifact_name={options.artifact_name}\n", encoding="utf-8")

    if options.server_cert is not None:
        shutil.copyfile(options.server_cert, root / SERVER_CERT)

    if options.demo:
        _append_line(root / "etc" / "hosts", f"{options.demo_host_ip} {' '.join(DEMO_HOSTNAMES)}")

    _append_line(
        root / "etc" / "fstab",
        f"{profile.data_device()}   /data   auto   defaults   0   0",
    )
    (root / "data").mkdir(exist_ok=True)
    _link_state_dir(root)
    log.debug(f"Installed client into {root}")


def stamp_device_type(data_root: Path, device_type: str) -> Path:
    stamp = Path(data_root) / DEVICE_TYPE_STAMP
    stamp.parent.mkdir(parents=True, exist_ok=True)
    stamp.write_text(f"device_type={device_type}\n", encoding="utf-8")
    return stamp


def install_agent(mount_set: MountSet, options: AgentOptions, profile: DeviceProfile) -> None:
    """Install the client into every mounted rootfs slot and stamp the data partition."""
    if options.device_type != profile.name:
        raise ConfigurationError(
            f"Agent options are for {options.device_type}, profile is {profile.name}",
            options=["--device-type"],
        )
    if not Path(options.client_binary).is_file():
        raise ConfigurationError(
            f"Client binary not found: {options.client_binary}", options=["--mender-client"]
        )
    for slot in (PRIMARY, SECONDARY):
        if mount_set.has(slot):
            log.info(f"Installing client into {slot} rootfs")
            install_rootfs(mount_set.path(slot), options, profile)
    stamp = stamp_device_type(mount_set.path(DATA), options.device_type)
    log.info(f"Stamped data partition for {options.device_type} ({stamp.name})")
