"""
Linking with link.exe and lib.exe.

Executables and DLLs go through link.exe; static libraries go through
lib.exe. Object files and library paths are passed in a response file.
The manifest is never produced by the linker (/MANIFEST:NO); it is embedded
by mt.exe afterwards.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List

from ..config.project_config import BuildMode, OutputType, ProjectConfig
from ..errors import EXIT_LINK, AbsBuildError
from ..packages.platform_utils import Arch
from ..packages.toolchain import ToolchainHandle
from .tool_runner import ToolRequest, ToolRunner, write_response_file

MACHINE_FLAGS = {
    Arch.X86: "/MACHINE:X86",
    Arch.X64: "/MACHINE:X64",
}


class LinkFailed(AbsBuildError):
    """Raised when the linker fails. Carries the diagnostics verbatim."""

    exit_code = EXIT_LINK
    title = "Linking failed"

    def __init__(self, message: str, diagnostics: str = ""):
        super().__init__(message)
        self.diagnostics = diagnostics


@dataclass
class LinkResult:
    """Result of a link operation."""

    output: Path
    tool: Path
    args: List[str]


def build_link_flags(project: ProjectConfig, mode: BuildMode, architecture: Arch) -> List[str]:
    """Linker flags that do not depend on object files or paths.

    Returns:
        Flags for link.exe, or for lib.exe when building a static library
    """
    if project.output_type is OutputType.STATIC_LIBRARY:
        return ["/nologo", MACHINE_FLAGS[architecture]]

    flags = ["/nologo", "/DEBUG", "/MANIFEST:NO", MACHINE_FLAGS[architecture]]
    if project.output_type is OutputType.GUI_APP:
        flags.append("/SUBSYSTEM:WINDOWS")
    elif project.output_type is OutputType.CONSOLE_APP:
        flags.append("/SUBSYSTEM:CONSOLE")
    else:
        flags.append("/DLL")
    if mode is BuildMode.RELEASE:
        flags.extend(["/OPT:REF", "/OPT:ICF", "/INCREMENTAL:NO"])
    return flags


class MsvcLinker:
    """Links object files into the project's artifact."""

    def __init__(self, project: ProjectConfig, toolchain: ToolchainHandle, runner: ToolRunner, work_dir: Path):
        self.project = project
        self.toolchain = toolchain
        self.runner = runner
        self.work_dir = Path(work_dir)

    @property
    def tool(self) -> Path:
        if self.project.output_type is OutputType.STATIC_LIBRARY:
            return self.toolchain.lib
        return self.toolchain.link

    def build_args(self, objects: List[Path], output: Path, flags: List[str]) -> List[str]:
        """Argument list, with paths and inputs moved into link.rsp."""
        lines = list(flags)
        if self.project.output_type is not OutputType.STATIC_LIBRARY:
            lines.extend(f"/LIBPATH:{d}" for d in self.toolchain.lib_dirs)
            lines.extend(self.project.link_libraries)
        lines.extend(str(o) for o in objects)
        lines.append(f"/OUT:{output}")
        response_file = write_response_file(self.work_dir / "link.rsp", lines)
        return [f"@{response_file}"]

    def link(self, objects: List[Path], output: Path, flags: List[str]) -> LinkResult:
        """Link objects into `output`.

        Args:
            objects: Object files, in a stable order
            output: Artifact path
            flags: Flags from build_link_flags

        Returns:
            LinkResult

        Raises:
            LinkFailed: If the linker exits non-zero
        """
        output.parent.mkdir(parents=True, exist_ok=True)
        args = self.build_args(objects, output, flags)
        response = self.runner.run(ToolRequest(program=self.tool, args=args, cwd=self.work_dir))
        if not response.success:
            raise LinkFailed(
                f"{self.tool.name} failed for {output.name} (exit code {response.returncode})",
                diagnostics=response.output,
            )
        logging.info(f"Linked {output}")
        return LinkResult(output=output, tool=self.tool, args=args)
