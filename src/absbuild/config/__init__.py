"""Configuration parsing modules for absbuild."""

from .project_config import (
    DEFAULT_MANIFEST_NAME,
    PROJECT_FILE_NAME,
    BuildMode,
    ManifestFailurePolicy,
    OutputType,
    ProjectConfig,
    ProjectConfigError,
)

__all__ = [
    "BuildMode",
    "DEFAULT_MANIFEST_NAME",
    "ManifestFailurePolicy",
    "OutputType",
    "PROJECT_FILE_NAME",
    "ProjectConfig",
    "ProjectConfigError",
]
