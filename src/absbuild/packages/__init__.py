"""Host platform, toolchain discovery and build output layout."""

from .cache import BuildLayout
from .platform_utils import Arch, HostPlatform, HostPlatformError, Platform, PlatformDetector
from .toolchain import ToolchainHandle, ToolchainIncomplete, ToolchainLocator, ToolchainNotFound

__all__ = [
    "Arch",
    "BuildLayout",
    "HostPlatform",
    "HostPlatformError",
    "Platform",
    "PlatformDetector",
    "ToolchainHandle",
    "ToolchainIncomplete",
    "ToolchainLocator",
    "ToolchainNotFound",
]
