"""Platform Detection Utilities.

This module models the Windows targets absbuild can build for and detects
which of them the current host can run.

Supported Platforms:
    - win32: 32-bit Windows (x86)
    - win64: 64-bit Windows (x64)

A 64-bit host can run both win32 and win64 binaries; a 32-bit host runs only
win32. The host can be overridden with the ABS_HOST_PLATFORM environment
variable, which is how non-Windows machines and tests pick a host.
"""

import os
import platform
import sys
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional

from ..errors import EXIT_TARGET, AbsBuildError


class HostPlatformError(AbsBuildError):
    """Raised when platform detection fails or platform is unsupported."""

    exit_code = EXIT_TARGET
    title = "Unsupported host"


class Arch(Enum):
    """CPU architecture of a target."""

    X86 = "x86"
    X64 = "x64"


class Platform(Enum):
    """A platform token usable in supported_targets."""

    WIN32 = "win32"
    WIN64 = "win64"

    @property
    def architecture(self) -> Arch:
        return _PLATFORM_ARCH[self]

    @classmethod
    def from_string(cls, value: str) -> "Platform":
        """Convert a project-file token to a Platform.

        Raises:
            ValueError: If the token is not a known platform
        """
        try:
            return cls(value.strip().lower())
        except ValueError:
            valid = ", ".join(p.value for p in cls)
            raise ValueError(f"Unknown platform '{value}'. Available options: {valid}") from None


_PLATFORM_ARCH = {
    Platform.WIN32: Arch.X86,
    Platform.WIN64: Arch.X64,
}

# Which targets a host of a given platform can execute.
_RUNNABLE = {
    Platform.WIN32: frozenset({Platform.WIN32}),
    Platform.WIN64: frozenset({Platform.WIN32, Platform.WIN64}),
}


@dataclass(frozen=True)
class HostPlatform:
    """The machine absbuild runs on.

    Attributes:
        native: The host's own platform
        runnable: Platforms whose binaries the host can execute
    """

    native: Platform
    runnable: FrozenSet[Platform]

    @classmethod
    def for_platform(cls, native: Platform) -> "HostPlatform":
        return cls(native=native, runnable=_RUNNABLE[native])

    def can_run(self, target: Platform) -> bool:
        """Can this host run software built for `target`?"""
        return target in self.runnable

    @property
    def tool_arch(self) -> Arch:
        """Architecture of the host-side compiler binaries (HostX64/HostX86)."""
        return self.native.architecture


class PlatformDetector:
    """Detects the current host platform for target selection."""

    ENV_OVERRIDE = "ABS_HOST_PLATFORM"

    @staticmethod
    def detect_host(override: Optional[str] = None) -> HostPlatform:
        """Detect the host platform.

        Args:
            override: Explicit platform token; falls back to ABS_HOST_PLATFORM

        Returns:
            HostPlatform for this machine

        Raises:
            HostPlatformError: If the host is not Windows and no override is set
        """
        token = override or os.environ.get(PlatformDetector.ENV_OVERRIDE)
        if token:
            try:
                return HostPlatform.for_platform(Platform.from_string(token))
            except ValueError as e:
                raise HostPlatformError(str(e)) from e

        system = platform.system().lower()
        if system != "windows":
            raise HostPlatformError(
                f"Unsupported host platform: {platform.system()} {platform.machine()}. "
                f"absbuild drives the MSVC toolchain and needs a Windows host "
                f"(set {PlatformDetector.ENV_OVERRIDE} to simulate one)."
            )

        machine = platform.machine().lower()
        # A 32-bit Python on 64-bit Windows still reports AMD64 here.
        if machine in ("amd64", "x86_64", "arm64", "aarch64") or sys.maxsize > 2**32:
            return HostPlatform.for_platform(Platform.WIN64)
        return HostPlatform.for_platform(Platform.WIN32)

    @staticmethod
    def get_platform_info() -> dict:
        """Get detailed information about the current platform."""
        return {
            "system": platform.system(),
            "machine": platform.machine(),
            "platform": platform.platform(),
            "python_version": platform.python_version(),
            "is_64bit": sys.maxsize > 2**32,
        }
