"""Custom exceptions for disk image conversion.

Every failure a conversion command can report is a ``ConversionError`` so the
command line entry point can catch one type, run cleanup and exit with status 1.

Exception Hierarchy:
    ConversionError (base)
        ├── ConfigurationError
        │   └── UnsupportedDeviceError
        ├── ImageError
        │   ├── UnsupportedLayoutError
        │   ├── InvalidSizeError
        │   └── LayoutVerificationError
        ├── ResourceExhaustionError
        ├── FilesystemIntegrityError
        ├── DeviceTypeMismatchError
        └── ExternalToolError

Usage:
    from mender_convert.exceptions import UnsupportedLayoutError

    if image.partition_count not in (1, 2):
        raise UnsupportedLayoutError(image.path, image.partition_count)
"""

from __future__ import annotations

from typing import Iterable, Sequence


class ConversionError(Exception):
    """Base exception for all conversion failures."""


class ConfigurationError(ConversionError):
    """Required options are missing or contradict each other."""

    def __init__(self, message: str, options: Iterable[str] = ()):
        self.options = list(options)
        super().__init__(message)


class UnsupportedDeviceError(ConfigurationError):
    """Device type is outside the supported set."""

    def __init__(self, device_type: str, supported: Iterable[str]):
        self.device_type = device_type
        self.supported = sorted(supported)
        super().__init__(
            f"Unsupported device type: {device_type!r} "
            f"(supported: {', '.join(self.supported)})",
            options=["--device-type"],
        )


class ImageError(ConversionError):
    """Base exception for disk image geometry errors."""


class UnsupportedLayoutError(ImageError):
    """Source image does not have one or two partitions."""

    def __init__(self, path, partition_count: int, expected: Sequence[int] = (1, 2)):
        self.path = str(path)
        self.partition_count = partition_count
        self.expected = tuple(expected)
        expected_str = " or ".join(str(count) for count in self.expected)
        super().__init__(
            f"Unsupported partition layout in {self.path}: "
            f"{partition_count} partitions (expected {expected_str})"
        )


class InvalidSizeError(ImageError):
    """Geometry input to the layout planner is unusable."""

    def __init__(self, field: str, value, reason: str = "must be a positive number"):
        self.field = field
        self.value = value
        self.reason = reason
        super().__init__(f"Invalid {field} ({value!r}): {reason}")


class LayoutVerificationError(ImageError):
    """Partition table written to a new image does not match the plan."""

    def __init__(self, path, expected, actual):
        self.path = str(path)
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Partition table of {self.path} does not match the planned layout: "
            f"expected {expected}, found {actual}"
        )


class ResourceExhaustionError(ConversionError):
    """No free loop device could be attached after bounded retries."""

    def __init__(self, image_path, attempts: int, reason: str = ""):
        self.image_path = str(image_path)
        self.attempts = attempts
        self.reason = reason
        msg = f"No free loop device for {self.image_path} after {attempts} attempts"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class FilesystemIntegrityError(ConversionError):
    """Filesystem consistency check failed."""

    def __init__(self, target, stage: str, returncode: int | None = None, output: str = ""):
        self.target = str(target)
        self.stage = stage
        self.returncode = returncode
        self.output = output
        msg = f"Filesystem check failed on {self.target} ({stage})"
        if returncode is not None:
            msg += f", e2fsck exit status {returncode}"
        super().__init__(msg)


class DeviceTypeMismatchError(ConversionError):
    """Device type stamped in the image differs from the requested one."""

    def __init__(self, image_path, stamped: str | None, requested: str):
        self.image_path = str(image_path)
        self.stamped = stamped
        self.requested = requested
        super().__init__(
            f"Device type mismatch in {self.image_path}: image was built for "
            f"{stamped or 'an unknown device'}, requested {requested}"
        )


class ExternalToolError(ConversionError):
    """External command exited with a non-zero status."""

    def __init__(self, command: Sequence[str], returncode: int, stderr: str = "", stdout: str = ""):
        self.command = list(command)
        self.returncode = returncode
        self.stderr = stderr
        self.stdout = stdout
        message = (stderr or stdout or "").strip().splitlines()
        detail = message[-1] if message else "no output"
        super().__init__(
            f"Command failed ({' '.join(self.command)}) "
            f"with exit status {returncode}: {detail}"
        )
