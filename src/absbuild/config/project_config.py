"""
Project configuration loader for abs.json.

This module loads the declarative project description that sits at the root
of every absbuild project and validates it into an immutable ProjectConfig.

Example abs.json:
    {
        "name": "hello",
        "output_type": "gui_app",
        "cxx_options": {"rtti": false, "standard": "c++20"},
        "link_libraries": ["user32.lib", "comctl32.lib"],
        "supported_targets": ["win32", "win64"],
        "dependencies": []
    }

Usage:
    config = ProjectConfig.load(Path("."), host=PlatformDetector.detect_host())
    print(config.name, config.output_type.value)
"""

import json
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, List, Mapping, Optional, Tuple

from ..errors import EXIT_PROJECT, AbsBuildError
from ..packages.platform_utils import HostPlatform, Platform

PROJECT_FILE_NAME = "abs.json"
DEFAULT_MANIFEST_NAME = "app.manifest"


class ProjectConfigError(AbsBuildError):
    """Exception raised for project configuration errors."""

    exit_code = EXIT_PROJECT
    title = "Invalid project"


class OutputType(Enum):
    """Kind of artifact a project produces."""

    GUI_APP = "gui_app"
    CONSOLE_APP = "console_app"
    DYNAMIC_LIBRARY = "dynamic_library"
    STATIC_LIBRARY = "static_library"

    @property
    def is_executable(self) -> bool:
        return self in (OutputType.GUI_APP, OutputType.CONSOLE_APP)

    @property
    def extension(self) -> str:
        return {
            OutputType.GUI_APP: "exe",
            OutputType.CONSOLE_APP: "exe",
            OutputType.DYNAMIC_LIBRARY: "dll",
            OutputType.STATIC_LIBRARY: "lib",
        }[self]


class BuildMode(Enum):
    """Optimization/diagnostic trade-off; also names the output directory."""

    DEBUG = "debug"
    RELEASE = "release"

    @classmethod
    def from_string(cls, value: Optional[str]) -> "BuildMode":
        if value is None:
            return cls.DEBUG
        try:
            return cls(value.lower())
        except ValueError:
            raise ProjectConfigError(f"Unknown build mode '{value}'. Expected 'debug' or 'release'.") from None


class ManifestFailurePolicy(Enum):
    """What a failed manifest embed means for the build.

    WARN: log it, keep and record the artifact (degraded but usable)
    FAIL_RELEASE: fatal for release builds, a warning for debug builds
    FAIL: always fatal
    """

    WARN = "warn"
    FAIL_RELEASE = "fail_release"
    FAIL = "fail"

    def is_fatal(self, mode: BuildMode) -> bool:
        if self is ManifestFailurePolicy.FAIL:
            return True
        if self is ManifestFailurePolicy.FAIL_RELEASE:
            return mode is BuildMode.RELEASE
        return False


@dataclass(frozen=True)
class ProjectConfig:
    """Immutable in-memory form of abs.json.

    Attributes:
        name: Project (and artifact) name
        output_type: Kind of artifact to produce
        cxx_options: Open mapping of compiler option name to value
        link_libraries: Libraries passed to the linker, in order
        supported_targets: Declared targets, in declared order
        dependencies: Opaque pass-through list
        project_dir: Directory holding abs.json
        src_dir: Source directory, relative to project_dir
        assets_dir: Asset directory, relative to project_dir
        manifest: User manifest path relative to project_dir, if configured
        manifest_failure: Policy for manifest embedding failures
    """

    name: str
    output_type: OutputType
    cxx_options: Mapping[str, Any]
    link_libraries: Tuple[str, ...]
    supported_targets: Tuple[Platform, ...]
    dependencies: Tuple[Any, ...] = ()
    project_dir: Path = field(default_factory=Path.cwd)
    src_dir: str = "src"
    assets_dir: str = "assets"
    manifest: Optional[str] = None
    manifest_failure: ManifestFailurePolicy = ManifestFailurePolicy.WARN

    @property
    def src_path(self) -> Path:
        return self.project_dir / self.src_dir

    @property
    def assets_path(self) -> Path:
        return self.project_dir / self.assets_dir

    @property
    def artifact_file_name(self) -> str:
        return f"{self.name}.{self.output_type.extension}"

    def user_manifest_path(self) -> Optional[Path]:
        """Path of the user-supplied manifest, or None when there is none."""
        if self.manifest:
            return self.project_dir / self.manifest
        default = self.project_dir / DEFAULT_MANIFEST_NAME
        return default if default.is_file() else None

    @classmethod
    def from_dict(
        cls,
        data: Dict[str, Any],
        project_dir: Path,
        host: Optional[HostPlatform] = None,
        source: str = PROJECT_FILE_NAME,
    ) -> "ProjectConfig":
        """Validate a parsed abs.json document.

        Args:
            data: Parsed JSON object
            project_dir: Directory the project file came from
            host: Host platform, used when supported_targets is absent
            source: File name used in error messages

        Returns:
            ProjectConfig

        Raises:
            ProjectConfigError: If a field is missing or invalid
        """
        if not isinstance(data, dict):
            raise ProjectConfigError(f"{source} must contain a JSON object")

        name = data.get("name")
        if not isinstance(name, str) or not name.strip():
            raise ProjectConfigError(f"{source} is missing the required 'name' field")

        try:
            output_type = OutputType(data.get("output_type", OutputType.CONSOLE_APP.value))
        except ValueError:
            valid = ", ".join(t.value for t in OutputType)
            raise ProjectConfigError(
                f"{source} has unknown output_type '{data.get('output_type')}'. Available options: {valid}"
            ) from None

        cxx_options = data.get("cxx_options", {})
        if not isinstance(cxx_options, dict):
            raise ProjectConfigError(f"{source}: 'cxx_options' must be an object")

        link_libraries = data.get("link_libraries", [])
        if not isinstance(link_libraries, list) or not all(isinstance(lib, str) for lib in link_libraries):
            raise ProjectConfigError(f"{source}: 'link_libraries' must be a list of strings")

        supported_targets = cls._parse_targets(data, host, source)

        dependencies = data.get("dependencies", [])
        if not isinstance(dependencies, list):
            raise ProjectConfigError(f"{source}: 'dependencies' must be a list")

        for key in ("src_dir", "assets_dir", "manifest"):
            value = data.get(key)
            if value is not None and (not isinstance(value, str) or not value.strip()):
                raise ProjectConfigError(f"{source}: '{key}' must be a non-empty string")

        try:
            manifest_failure = ManifestFailurePolicy(data.get("manifest_failure", "warn"))
        except ValueError:
            valid = ", ".join(p.value for p in ManifestFailurePolicy)
            raise ProjectConfigError(
                f"{source} has unknown manifest_failure '{data.get('manifest_failure')}'. Available options: {valid}"
            ) from None

        return cls(
            name=name.strip(),
            output_type=output_type,
            cxx_options=MappingProxyType(dict(cxx_options)),
            link_libraries=tuple(link_libraries),
            supported_targets=supported_targets,
            dependencies=tuple(dependencies),
            project_dir=Path(project_dir),
            src_dir=data.get("src_dir", "src"),
            assets_dir=data.get("assets_dir", "assets"),
            manifest=data.get("manifest"),
            manifest_failure=manifest_failure,
        )

    @staticmethod
    def _parse_targets(
        data: Dict[str, Any],
        host: Optional[HostPlatform],
        source: str,
    ) -> Tuple[Platform, ...]:
        if "supported_targets" not in data:
            if host is None:
                raise ProjectConfigError(
                    f"{source} has no 'supported_targets' and the host platform is unknown"
                )
            return (host.native,)

        raw: List[Any] = data["supported_targets"]
        if not isinstance(raw, list):
            raise ProjectConfigError(f"{source}: 'supported_targets' must be a list")
        if not raw:
            valid = ", ".join(p.value for p in Platform)
            raise ProjectConfigError(
                f"{source} contains an empty list of supported targets. "
                f"Please add at least one and try again.\nAvailable options: {valid}."
            )

        targets = []
        for token in raw:
            if not isinstance(token, str):
                raise ProjectConfigError(f"{source}: supported target {token!r} is not a string")
            try:
                targets.append(Platform.from_string(token))
            except ValueError as e:
                raise ProjectConfigError(f"{source}: {e}") from e

        if len(set(targets)) < len(targets):
            listed = ", ".join(t.value for t in targets)
            raise ProjectConfigError(
                f"{source} contains one or more duplicates in its list of supported targets. "
                f"Please ensure that each target is unique.\nThe supported platforms listed are: {listed}"
            )
        return tuple(targets)

    @classmethod
    def load(cls, project_dir: Path, host: Optional[HostPlatform] = None) -> "ProjectConfig":
        """Load and validate abs.json from a project directory.

        Raises:
            ProjectConfigError: If the file is missing, unreadable or invalid
        """
        project_dir = Path(project_dir).resolve()
        config_path = project_dir / PROJECT_FILE_NAME
        if not config_path.is_file():
            raise ProjectConfigError(
                f"Unable to read project file in directory \"{project_dir}\": {PROJECT_FILE_NAME} not found."
            )

        try:
            with open(config_path, "r", encoding="utf-8") as f:
                data = json.load(f)
        except json.JSONDecodeError as e:
            raise ProjectConfigError(f"Failed to parse project file: {e}") from e
        except OSError as e:
            raise ProjectConfigError(f"Unable to read project file {config_path}: {e}") from e

        return cls.from_dict(data, project_dir, host=host, source=str(config_path))

    def to_dict(self) -> Dict[str, Any]:
        """Convert to the abs.json representation."""
        data: Dict[str, Any] = {
            "name": self.name,
            "cxx_options": dict(self.cxx_options),
            "output_type": self.output_type.value,
            "link_libraries": list(self.link_libraries),
            "supported_targets": [t.value for t in self.supported_targets],
            "dependencies": list(self.dependencies),
        }
        if self.src_dir != "src":
            data["src_dir"] = self.src_dir
        if self.assets_dir != "assets":
            data["assets_dir"] = self.assets_dir
        if self.manifest:
            data["manifest"] = self.manifest
        if self.manifest_failure is not ManifestFailurePolicy.WARN:
            data["manifest_failure"] = self.manifest_failure.value
        return data
