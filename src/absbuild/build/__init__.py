"""Build system components for absbuild.

This module provides target resolution, compilation, linking, manifest
embedding and orchestration for MSVC projects.
"""

from .artifact_store import ArtifactStore, BuildArtifact, BuildLockTimeout, CompilationUnit
from .compiler import CompileFailed
from .linker import LinkFailed
from .manifest import DefaultManifest, ManifestEmbedFailed, UserManifest
from .orchestrator import BuildOrchestrator, BuildOutputError, BuildReport, TargetResult
from .pipeline import BuildPipeline
from .source_scanner import SourceDirectoryError
from .target_resolver import NoCompatibleTarget, ResolvedTarget, UnknownTarget, resolve_targets
from .tool_runner import SubprocessToolRunner, ToolRequest, ToolResponse, ToolRunner

__all__ = [
    "ArtifactStore",
    "BuildArtifact",
    "BuildLockTimeout",
    "BuildOrchestrator",
    "BuildOutputError",
    "BuildPipeline",
    "BuildReport",
    "CompilationUnit",
    "CompileFailed",
    "DefaultManifest",
    "LinkFailed",
    "ManifestEmbedFailed",
    "NoCompatibleTarget",
    "ResolvedTarget",
    "SourceDirectoryError",
    "SubprocessToolRunner",
    "TargetResult",
    "ToolRequest",
    "ToolResponse",
    "ToolRunner",
    "UnknownTarget",
    "UserManifest",
    "resolve_targets",
]
