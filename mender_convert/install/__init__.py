"""Agent and bootloader installation into mounted image partitions."""

from .agent import AgentOptions, install_agent
from .bootloader import DeviceInstaller, InstallRequest

__all__ = ["AgentOptions", "DeviceInstaller", "InstallRequest", "install_agent"]
