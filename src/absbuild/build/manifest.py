"""Application manifest selection and embedding.

A binary gets exactly one manifest:
    - UserManifest: a file shipped with the project, embedded verbatim
    - DefaultManifest: synthesized from the output type

Both are handed to mt.exe, which writes them into the binary's resources
(resource id 1 for executables, 2 for DLLs). Static libraries carry no
manifest.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from ..config.project_config import OutputType, ProjectConfig
from ..errors import EXIT_MANIFEST, AbsBuildError
from ..packages.toolchain import ToolchainHandle
from .tool_runner import ToolRequest, ToolResponse, ToolRunner

# supportedOS ids: Windows 7, 8, 8.1 and 10/11
SUPPORTED_OS_IDS = (
    "{35138b9a-5d96-4fbd-8e2d-a2440225f93a}",
    "{4a2f28e3-53b9-4441-ba9c-d69d4a4a6e38}",
    "{1f676c76-80e1-4239-95bb-83d0f6d0da78}",
    "{8e0f7a12-bfb3-4fe8-b9a5-48fd50a15a9a}",
)

COMMON_CONTROLS_DEPENDENCY = """  <dependency>
    <dependentAssembly>
      <assemblyIdentity type="win32" name="Microsoft.Windows.Common-Controls" version="6.0.0.0" processorArchitecture="*" publicKeyToken="6595b64144ccf1df" language="*"/>
    </dependentAssembly>
  </dependency>
"""


class ManifestEmbedFailed(AbsBuildError):
    """Raised when embedding fails and the failure policy makes that fatal."""

    exit_code = EXIT_MANIFEST
    title = "Manifest embedding failed"


@dataclass(frozen=True)
class UserManifest:
    """A manifest file supplied by the project."""

    path: Path

    def render(self) -> str:
        with open(self.path, "r", encoding="utf-8") as f:
            return f.read()

    def describe(self) -> str:
        return f"user manifest {self.path.name}"


@dataclass(frozen=True)
class DefaultManifest:
    """The manifest synthesized when the project ships none."""

    output_type: OutputType

    def render(self) -> str:
        os_entries = "".join(f'      <supportedOS Id="{os_id}"/>\n' for os_id in SUPPORTED_OS_IDS)
        dependency = COMMON_CONTROLS_DEPENDENCY if self.output_type is OutputType.GUI_APP else ""
        return (
            '<?xml version="1.0" encoding="UTF-8" standalone="yes"?>\n'
            '<assembly xmlns="urn:schemas-microsoft-com:asm.v1" manifestVersion="1.0">\n'
            '  <trustInfo xmlns="urn:schemas-microsoft-com:asm.v3">\n'
            "    <security>\n"
            "      <requestedPrivileges>\n"
            '        <requestedExecutionLevel level="asInvoker" uiAccess="false"/>\n'
            "      </requestedPrivileges>\n"
            "    </security>\n"
            "  </trustInfo>\n"
            '  <compatibility xmlns="urn:schemas-microsoft-com:compatibility.v1">\n'
            "    <application>\n"
            f"{os_entries}"
            "    </application>\n"
            "  </compatibility>\n"
            f"{dependency}"
            "</assembly>\n"
        )

    def describe(self) -> str:
        return f"default {self.output_type.value} manifest"


Manifest = Union[UserManifest, DefaultManifest]


def select_manifest(project: ProjectConfig) -> Optional[Manifest]:
    """Pick the manifest for a project, or None for static libraries."""
    if project.output_type is OutputType.STATIC_LIBRARY:
        return None
    user_path = project.user_manifest_path()
    if user_path is not None:
        return UserManifest(user_path)
    return DefaultManifest(project.output_type)


def resource_id(output_type: OutputType) -> int:
    return 2 if output_type is OutputType.DYNAMIC_LIBRARY else 1


@dataclass
class EmbedOutcome:
    """Result of a manifest embed attempt."""

    description: str
    error: Optional[str] = None

    @property
    def success(self) -> bool:
        return self.error is None


class ManifestEmbedder:
    """Writes a manifest to disk and embeds it with mt.exe."""

    def __init__(self, runner: ToolRunner):
        self.runner = runner

    def embed(
        self,
        manifest: Manifest,
        binary: Path,
        output_type: OutputType,
        toolchain: ToolchainHandle,
        work_dir: Path,
    ) -> EmbedOutcome:
        """Embed a manifest into a linked binary.

        Args:
            manifest: Manifest to embed
            binary: Linked executable or DLL
            output_type: Output type of the binary, selects the resource id
            toolchain: Toolchain providing mt.exe
            work_dir: Directory for the rendered manifest file

        Returns:
            EmbedOutcome with the error text when embedding failed
        """
        description = manifest.describe()
        try:
            content = manifest.render()
        except OSError as e:
            return EmbedOutcome(description, f"Unable to read {manifest.path}: {e}")

        manifest_file = work_dir / f"{binary.stem}.manifest"
        manifest_file.parent.mkdir(parents=True, exist_ok=True)
        with open(manifest_file, "w", encoding="utf-8") as f:
            f.write(content)

        request = ToolRequest(
            program=toolchain.mt,
            args=[
                "-nologo",
                "-manifest",
                str(manifest_file),
                f"-outputresource:{binary};#{resource_id(output_type)}",
            ],
            cwd=work_dir,
        )
        response: ToolResponse = self.runner.run(request)
        if not response.success:
            error = response.output or f"mt.exe exited with code {response.returncode}"
            logging.warning(f"Manifest embedding failed for {binary.name}: {error}")
            return EmbedOutcome(description, error)

        logging.debug(f"Embedded {description} into {binary.name}")
        return EmbedOutcome(description)
