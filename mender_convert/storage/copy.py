"""Byte-range copies between image files."""
from __future__ import annotations

from pathlib import Path
from typing import Union

from mender_convert.exceptions import ImageError
from mender_convert.logging import LoggerFactory, ThrottledLogger

log = LoggerFactory.for_storage().bind(tags=["storage", "progress"])

CHUNK_SIZE = 4 * 1024 * 1024


def copy_byte_range(
    source: Union[str, Path],
    source_offset: int,
    destination: Union[str, Path],
    destination_offset: int,
    length: int,
    *,
    truncate: bool = False,
) -> int:
    """Copy ``length`` bytes from ``source`` at ``source_offset``.

    The destination is opened in place (``r+b``) so the rest of an existing
    image is preserved; with ``truncate`` it is created or emptied first.

    Returns:
        Number of bytes copied

    Raises:
        ImageError: If the source ends before ``length`` bytes were read
    """
    progress = ThrottledLogger(log)
    key = f"{source}->{destination}"
    mode = "wb" if truncate else "r+b"
    copied = 0
    with open(source, "rb") as src, open(destination, mode) as dst:
        src.seek(source_offset)
        dst.seek(destination_offset)
        while copied < length:
            chunk = src.read(min(CHUNK_SIZE, length - copied))
            if not chunk:
                raise ImageError(
                    f"{source} ended after {copied} of {length} bytes "
                    f"(offset {source_offset})"
                )
            dst.write(chunk)
            copied += len(chunk)
            progress.info(
                key,
                f"Copying {Path(source).name}: {copied * 100 // max(length, 1)}%",
                bytes_copied=copied,
            )
    log.debug(f"Copied {copied} bytes from {source} to {destination}")
    return copied
