"""
Build orchestration.

Control flow of every command:
    TargetResolver -> for each (target, mode): ToolchainLocator ->
    BuildPipeline -> ArtifactStore -> optionally DebugSession

Several targets build concurrently in a thread pool bounded by the CPU
count. One target failing does not stop the others; successful artifacts
are kept and every failure is reported.
"""

import logging
import os
import subprocess
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

from ..config.project_config import BuildMode, OutputType, ProjectConfig
from ..debug.session import DebugSessionManager, SessionHandle, get_session_manager
from ..errors import EXIT_OUTPUT, AbsBuildError
from ..packages.cache import BuildLayout
from ..packages.platform_utils import HostPlatform, Platform
from ..packages.toolchain import ToolchainLocator
from .artifact_store import ArtifactStore, BuildArtifact
from .pipeline import BuildPipeline, with_strict_manifest
from .target_resolver import ResolvedTarget, resolve_runnable_target, resolve_targets
from .tool_runner import ToolRunner


class BuildOutputError(AbsBuildError):
    """Raised when reading or writing build files fails at the OS level."""

    exit_code = EXIT_OUTPUT
    title = "Build output error"


@dataclass
class TargetResult:
    """Outcome of building one target."""

    target: ResolvedTarget
    mode: BuildMode
    artifact: Optional[BuildArtifact] = None
    error: Optional[AbsBuildError] = None

    @property
    def success(self) -> bool:
        return self.error is None and self.artifact is not None


@dataclass
class BuildReport:
    """Outcome of a build command across all requested targets."""

    results: List[TargetResult] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return bool(self.results) and all(r.success for r in self.results)

    @property
    def artifacts(self) -> List[BuildArtifact]:
        return [r.artifact for r in self.results if r.artifact is not None]

    @property
    def failures(self) -> List[TargetResult]:
        return [r for r in self.results if not r.success]

    def first_error(self) -> Optional[AbsBuildError]:
        for result in self.results:
            if result.error is not None:
                return result.error
        return None


class BuildOrchestrator:
    """Runs the build, run, debug, clean and kill operations for one project."""

    def __init__(
        self,
        project: ProjectConfig,
        host: HostPlatform,
        locator: Optional[ToolchainLocator] = None,
        layout: Optional[BuildLayout] = None,
        runner: Optional[ToolRunner] = None,
        jobs: Optional[int] = None,
        show_progress: bool = True,
        strict_manifest: bool = False,
        session_manager: Optional[DebugSessionManager] = None,
    ):
        """Initialize the orchestrator.

        Args:
            project: Loaded project configuration
            host: Host platform
            locator: Toolchain locator (default: probes the standard locations)
            layout: Build output layout (default: derived from the project directory)
            runner: Tool runner passed to the pipeline
            jobs: Maximum concurrent compiles per target
            show_progress: Whether to show compile progress bars
            strict_manifest: Treat every manifest embedding failure as fatal
            session_manager: Debug session manager (default: shared per project)
        """
        self.project = with_strict_manifest(project) if strict_manifest else project
        self.host = host
        self.locator = locator or ToolchainLocator(host)
        self.layout = layout or BuildLayout(project.project_dir)
        self.store = ArtifactStore(self.layout)
        self.runner = runner
        self.jobs = jobs
        self.show_progress = show_progress
        self._session_manager = session_manager

    @property
    def session_manager(self) -> DebugSessionManager:
        if self._session_manager is None:
            self._session_manager = get_session_manager(self.layout.session_file)
        return self._session_manager

    def _pipeline(self) -> BuildPipeline:
        return BuildPipeline(
            self.project,
            self.store,
            runner=self.runner,
            jobs=self.jobs,
            show_progress=self.show_progress,
        )

    def build_target(self, target: ResolvedTarget, mode: BuildMode) -> BuildArtifact:
        """Build a single resolved target, raising on failure."""
        toolchain = self.locator.resolve(target.architecture)
        try:
            return self._pipeline().build(target, mode, toolchain)
        except OSError as e:
            raise BuildOutputError(f"Build of {target} [{mode.value}] failed on a file system error: {e}") from e

    def _build_one(self, target: ResolvedTarget, mode: BuildMode) -> TargetResult:
        try:
            return TargetResult(target, mode, artifact=self.build_target(target, mode))
        except AbsBuildError as e:
            logging.error(f"Build of {target} [{mode.value}] failed: {e}")
            return TargetResult(target, mode, error=e)

    def build(self, token: Optional[str] = None, mode: BuildMode = BuildMode.DEBUG) -> BuildReport:
        """Build every target the token resolves to.

        Args:
            token: Target token, "all", "host" or None
            mode: Build mode

        Returns:
            BuildReport with one result per target, in resolution order

        Raises:
            UnknownTarget: If the token matches no declared target
            NoCompatibleTarget: If the host default cannot be satisfied
        """
        targets = resolve_targets(self.project, self.host, token)
        logging.info(f"Building {self.project.name} for {', '.join(str(t) for t in targets)} [{mode.value}]")

        if len(targets) == 1:
            return BuildReport([self._build_one(targets[0], mode)])

        workers = min(len(targets), os.cpu_count() or 1)
        with ThreadPoolExecutor(max_workers=workers) as executor:
            results = list(executor.map(lambda t: self._build_one(t, mode), targets))
        return BuildReport(results)

    def _build_runnable(self, token: Optional[str], mode: BuildMode) -> BuildArtifact:
        target = resolve_runnable_target(self.project, self.host, token)
        return self.build_target(target, mode)

    def run(self, token: Optional[str] = None, mode: BuildMode = BuildMode.DEBUG) -> int:
        """Build and start the executable.

        Console apps run in the foreground and their exit code is returned;
        GUI apps are started detached and 0 is returned.
        """
        artifact = self._build_runnable(token, mode)
        logging.info(f"Running {artifact.binary}")
        cwd = str(Path(artifact.binary).parent)
        if self.project.output_type is OutputType.GUI_APP:
            subprocess.Popen([str(artifact.binary)], cwd=cwd)
            return 0
        return subprocess.run([str(artifact.binary)], cwd=cwd).returncode

    def debug(self, token: Optional[str] = None, mode: BuildMode = BuildMode.DEBUG) -> SessionHandle:
        """Build the executable and launch it under the debugger."""
        target = resolve_runnable_target(self.project, self.host, token)
        artifact = self.build_target(target, mode)
        toolchain = self.locator.resolve(target.architecture)
        return self.session_manager.launch(artifact, toolchain)

    def kill(self) -> int:
        """Kill the tracked debugger session.

        Raises:
            NoActiveSession: If nothing is tracked
        """
        return self.session_manager.kill()

    def clean(self, target: Optional[Platform] = None, mode: Optional[BuildMode] = None) -> List[Path]:
        """Remove build output for a target and/or mode, or everything."""
        return self.store.clean(target=target, mode=mode)
