"""Rootfs extraction and artifact packaging."""

from .extract import ArtifactExtractor, artifact_basename
from .packager import ArtifactPackager, PackageRequest

__all__ = ["ArtifactExtractor", "ArtifactPackager", "PackageRequest", "artifact_basename"]
