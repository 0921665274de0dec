"""Convert raw embedded Linux disk images into Mender A/B disk images."""

from .__version__ import __version__

__all__ = ["__version__"]
