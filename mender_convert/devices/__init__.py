"""Supported device profiles."""

from .profiles import PROFILES, DeviceProfile, DeviceType, get_profile

__all__ = ["PROFILES", "DeviceProfile", "DeviceType", "get_profile"]
