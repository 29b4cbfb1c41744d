"""MSVC Toolchain and Windows SDK discovery.

This module locates an installed Visual Studio build-tools product and the
Windows 10 SDK, and bundles the paths the build pipeline needs into a
ToolchainHandle.

Directory Structure probed:
    <vs_root>/<year>/<edition>/VC/Tools/MSVC/<a.b.c>/
    ├── bin/Host<x64|x86>/<x64|x86>/   # cl.exe, link.exe, lib.exe
    ├── include/
    ├── lib/<x64|x86>/
    └── atlmfc/{include,lib/<arch>}    # optional
    <vs_root>/<year>/<edition>/Common7/IDE/devenv.exe   # optional debugger

    <kits_root>/                        # Windows Kits/10
    ├── Include/<a.b.c.d>/{ucrt,shared,um,winrt}
    ├── Lib/<a.b.c.d>/{ucrt,um}/<arch>
    └── bin/<a.b.c.d>/<host>/mt.exe

Roots default to the Program Files locations and can be overridden with the
ABS_VS_ROOTS (os.pathsep separated) and ABS_WINDOWS_KITS_ROOT environment
variables.
"""

import logging
import os
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from ..errors import EXIT_TOOLCHAIN, AbsBuildError
from .platform_utils import Arch, HostPlatform


class ToolchainNotFound(AbsBuildError):
    """Raised when no installed toolchain supports the requested architecture."""

    exit_code = EXIT_TOOLCHAIN
    title = "Toolchain not found"


class ToolchainIncomplete(AbsBuildError):
    """Raised when a toolchain is installed but required components are missing."""

    exit_code = EXIT_TOOLCHAIN
    title = "Toolchain incomplete"

    def __init__(self, message: str, missing: Optional[List[str]] = None):
        super().__init__(message)
        self.missing = missing or []


@dataclass(frozen=True)
class ToolchainHandle:
    """Absolute paths to everything the pipeline invokes or passes to tools.

    Attributes:
        architecture: Target architecture the binaries produce code for
        msvc_version: MSVC tools version (e.g. "14.38.33130")
        sdk_version: Windows SDK version (e.g. "10.0.22621.0")
        cl: Compiler
        link: Linker
        lib: Static library archiver
        mt: Manifest tool
        debugger: devenv.exe, if installed
        include_dirs: Compiler include directories, in search order
        lib_dirs: Linker library directories, in search order
    """

    architecture: Arch
    msvc_version: str
    sdk_version: str
    cl: Path
    link: Path
    lib: Path
    mt: Path
    debugger: Optional[Path]
    include_dirs: Tuple[Path, ...]
    lib_dirs: Tuple[Path, ...]

    def describe(self) -> str:
        return f"MSVC {self.msvc_version} ({self.architecture.value}), Windows SDK {self.sdk_version}"


@dataclass(frozen=True)
class MsvcInstallation:
    year: str
    edition: str
    version: Tuple[int, ...]
    version_name: str
    product_dir: Path
    tools_dir: Path
    bin_dir: Path


def parse_version(name: str, parts: int) -> Optional[Tuple[int, ...]]:
    """Parse a dotted version directory name.

    Args:
        name: Directory name, e.g. "14.38.33130"
        parts: Exact number of components required

    Returns:
        Tuple of ints, or None if the name is not such a version
    """
    pieces = name.split(".")
    if len(pieces) != parts or not all(p.isdigit() for p in pieces):
        return None
    return tuple(int(p) for p in pieces)


def _subdirs(path: Path) -> List[Path]:
    try:
        return sorted(p for p in path.iterdir() if p.is_dir())
    except OSError:
        return []


class ToolchainLocator:
    """Discovers MSVC and the Windows SDK, caching one handle per architecture.

    The cache lives as long as the locator and is safe to use from the worker
    threads that build several targets at once.
    """

    ENV_VS_ROOTS = "ABS_VS_ROOTS"
    ENV_KITS_ROOT = "ABS_WINDOWS_KITS_ROOT"

    def __init__(
        self,
        host: HostPlatform,
        vs_roots: Optional[List[Path]] = None,
        kits_root: Optional[Path] = None,
    ):
        """Initialize the locator.

        Args:
            host: Host platform, selects the Host<arch> tool directory
            vs_roots: Visual Studio installation roots (default: env or Program Files)
            kits_root: Windows Kits 10 root (default: env or Program Files (x86))
        """
        self.host = host
        self.vs_roots = [Path(p) for p in vs_roots] if vs_roots is not None else self._default_vs_roots()
        self.kits_root = Path(kits_root) if kits_root is not None else self._default_kits_root()
        self._cache: Dict[Arch, ToolchainHandle] = {}
        self._lock = threading.Lock()

    @classmethod
    def _default_vs_roots(cls) -> List[Path]:
        override = os.environ.get(cls.ENV_VS_ROOTS)
        if override:
            return [Path(p) for p in override.split(os.pathsep) if p]

        roots = []
        for var in ("ProgramFiles(x86)", "ProgramFiles"):
            base = os.environ.get(var)
            if base:
                root = Path(base) / "Microsoft Visual Studio"
                if root not in roots:
                    roots.append(root)
        return roots

    @classmethod
    def _default_kits_root(cls) -> Path:
        override = os.environ.get(cls.ENV_KITS_ROOT)
        if override:
            return Path(override)
        base = os.environ.get("ProgramFiles(x86)", r"C:\Program Files (x86)")
        return Path(base) / "Windows Kits" / "10"

    def resolve(self, architecture: Arch) -> ToolchainHandle:
        """Find the toolchain for an architecture.

        Args:
            architecture: Target architecture

        Returns:
            ToolchainHandle, cached for subsequent calls

        Raises:
            ToolchainNotFound: If no MSVC installation targets the architecture
            ToolchainIncomplete: If required compiler, linker or SDK parts are missing
        """
        with self._lock:
            cached = self._cache.get(architecture)
            if cached is not None:
                return cached

            handle = self._probe(architecture)
            self._cache[architecture] = handle
            logging.info(f"Resolved toolchain for {architecture.value}: {handle.describe()}")
            return handle

    def _host_dir_names(self) -> List[str]:
        if self.host.tool_arch is Arch.X64:
            return ["Hostx64", "Hostx86"]
        return ["Hostx86"]

    def find_installations(self, architecture: Arch) -> List[MsvcInstallation]:
        """Enumerate MSVC installations with binaries for an architecture.

        Returns:
            Installations sorted newest first
        """
        installs = []
        for root in self.vs_roots:
            for year_dir in _subdirs(root):
                for edition_dir in _subdirs(year_dir):
                    msvc_dir = edition_dir / "VC" / "Tools" / "MSVC"
                    for version_dir in _subdirs(msvc_dir):
                        version = parse_version(version_dir.name, 3)
                        if version is None:
                            logging.debug(f"Ignoring non-version directory {version_dir}")
                            continue
                        bin_dir = self._find_bin_dir(version_dir, architecture)
                        if bin_dir is None:
                            continue
                        installs.append(
                            MsvcInstallation(
                                year=year_dir.name,
                                edition=edition_dir.name,
                                version=version,
                                version_name=version_dir.name,
                                product_dir=edition_dir,
                                tools_dir=version_dir,
                                bin_dir=bin_dir,
                            )
                        )

        installs.sort(key=lambda i: (i.version, i.year, i.edition), reverse=True)
        return installs

    def _find_bin_dir(self, tools_dir: Path, architecture: Arch) -> Optional[Path]:
        for host_dir in self._host_dir_names():
            candidate = tools_dir / "bin" / host_dir / architecture.value
            if candidate.is_dir():
                return candidate
        return None

    def find_sdk_version(self) -> Optional[str]:
        """Newest four-part version under the SDK Include directory."""
        versions = []
        for version_dir in _subdirs(self.kits_root / "Include"):
            version = parse_version(version_dir.name, 4)
            if version is not None:
                versions.append((version, version_dir.name))
        if not versions:
            return None
        return max(versions)[1]

    def _probe(self, architecture: Arch) -> ToolchainHandle:
        installs = self.find_installations(architecture)
        if not installs:
            searched = ", ".join(str(r) for r in self.vs_roots) or "(no roots)"
            raise ToolchainNotFound(
                f"No MSVC build tools for {architecture.value} were found. Searched: {searched}. "
                f"Install the 'Desktop development with C++' workload or set {self.ENV_VS_ROOTS}."
            )

        install = installs[0]
        logging.debug(
            f"Selected MSVC {install.version_name} from {install.year}/{install.edition} "
            f"({len(installs)} candidate(s))"
        )

        missing: List[str] = []
        arch = architecture.value

        def require(path: Path, what: str) -> Path:
            if not path.exists():
                missing.append(f"{what} ({path})")
            return path

        cl = require(install.bin_dir / "cl.exe", "compiler cl.exe")
        link = require(install.bin_dir / "link.exe", "linker link.exe")
        lib = require(install.bin_dir / "lib.exe", "archiver lib.exe")
        msvc_include = require(install.tools_dir / "include", "MSVC include directory")
        msvc_lib = require(install.tools_dir / "lib" / arch, "MSVC library directory")

        sdk_version = self.find_sdk_version()
        include_dirs = [msvc_include]
        lib_dirs = [msvc_lib]

        atlmfc = install.tools_dir / "atlmfc"
        if (atlmfc / "include").is_dir():
            include_dirs.append(atlmfc / "include")
        if (atlmfc / "lib" / arch).is_dir():
            lib_dirs.append(atlmfc / "lib" / arch)

        if sdk_version is None:
            missing.append(f"Windows SDK ({self.kits_root / 'Include'})")
            mt = self.kits_root / "bin" / "mt.exe"
        else:
            for part in ("ucrt", "shared", "um", "winrt"):
                include_dirs.append(
                    require(self.kits_root / "Include" / sdk_version / part, f"SDK include/{part}")
                )
            for part in ("ucrt", "um"):
                lib_dirs.append(
                    require(self.kits_root / "Lib" / sdk_version / part / arch, f"SDK lib/{part}/{arch}")
                )
            mt = require(
                self.kits_root / "bin" / sdk_version / self.host.tool_arch.value / "mt.exe",
                "manifest tool mt.exe",
            )

        if missing:
            raise ToolchainIncomplete(
                f"MSVC {install.version_name} ({install.year} {install.edition}) is missing required components:\n  "
                + "\n  ".join(missing),
                missing=missing,
            )

        debugger = install.product_dir / "Common7" / "IDE" / "devenv.exe"

        return ToolchainHandle(
            architecture=architecture,
            msvc_version=install.version_name,
            sdk_version=sdk_version or "",
            cl=cl,
            link=link,
            lib=lib,
            mt=mt,
            debugger=debugger if debugger.is_file() else None,
            include_dirs=tuple(include_dirs),
            lib_dirs=tuple(lib_dirs),
        )
