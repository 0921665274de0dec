"""Artifact packaging with the external mender-artifact tool."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from mender_convert.config import settings
from mender_convert.exceptions import ExternalToolError
from mender_convert.logging import LoggerFactory
from mender_convert.storage.commands import CommandRunner, run_command

log = LoggerFactory.for_artifact()


@dataclass(frozen=True)
class PackageRequest:
    update_file: Path
    output_path: Path
    artifact_name: str
    device_type: str


class ArtifactPackager:
    def __init__(self, tool: Optional[str] = None, runner: CommandRunner = run_command):
        self.tool = tool or settings.get_setting("mender_artifact_tool", "mender-artifact")
        self.runner = runner

    def command_for(self, request: PackageRequest) -> list[str]:
        return [
            self.tool,
            "write",
            "rootfs-image",
            "--file",
            str(request.update_file),
            "--output-path",
            str(request.output_path),
            "--artifact-name",
            request.artifact_name,
            "--device-type",
            request.device_type,
        ]

    def package(self, request: PackageRequest) -> Path:
        """Write the artifact; a failed run leaves no output file behind."""
        output_path = Path(request.output_path)
        output_path.parent.mkdir(parents=True, exist_ok=True)
        command = self.command_for(request)
        log.info(f"Packaging {Path(request.update_file).name} into {output_path.name}")
        try:
            result = self.runner(command, check=False)
        except BaseException:
            output_path.unlink(missing_ok=True)
            raise
        if result.returncode != 0:
            output_path.unlink(missing_ok=True)
            raise ExternalToolError(
                command, result.returncode, stderr=result.stderr or "", stdout=result.stdout or ""
            )
        if not output_path.exists():
            raise ExternalToolError(command, 0, stderr=f"{output_path} was not written")
        return output_path
