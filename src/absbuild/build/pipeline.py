"""
Build pipeline for one (target, mode) pair.

Stages:
    1. Scan:     collect sources under the project's src_dir
    2. Compile:  reuse objects whose fingerprint matches, compile the rest
                 concurrently (the precompiled header source goes first)
    3. Link:     skipped when nothing changed and the artifact is current
    4. Manifest: embed the user or default manifest with mt.exe
    5. Assets:   copy the asset directory next to the binary

The artifact is recorded in the ArtifactStore only after linking and a
non-fatal manifest stage.
"""

import hashlib
import logging
import os
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import replace
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from tqdm import tqdm

from ..config.project_config import BuildMode, ManifestFailurePolicy, ProjectConfig
from ..packages.toolchain import ToolchainHandle
from .artifact_store import ArtifactStore, BuildArtifact, CompilationUnit
from .assets import copy_assets
from .compiler import (
    CompileFailed,
    FingerprintCalculator,
    MsvcCompiler,
    build_compile_flags,
    default_pch,
    parse_cxx_options,
    read_source_dependencies,
)
from .linker import MsvcLinker, build_link_flags
from .manifest import Manifest, ManifestEmbedder, ManifestEmbedFailed, select_manifest
from .source_scanner import SourceScanner, SourceSet
from .target_resolver import ResolvedTarget
from .tool_runner import SubprocessToolRunner, ToolRunner


def default_jobs() -> int:
    return os.cpu_count() or 1


class BuildPipeline:
    """Compiles, links and finishes one project for a target and mode."""

    def __init__(
        self,
        project: ProjectConfig,
        store: ArtifactStore,
        runner: Optional[ToolRunner] = None,
        jobs: Optional[int] = None,
        show_progress: bool = True,
    ):
        """Initialize the pipeline.

        Args:
            project: Project configuration
            store: Artifact store of the project
            runner: Tool runner (default: SubprocessToolRunner)
            jobs: Maximum concurrent compiles (default: CPU count)
            show_progress: Whether to show a compile progress bar
        """
        self.project = project
        self.store = store
        self.layout = store.layout
        self.runner = runner or SubprocessToolRunner()
        self.jobs = max(1, jobs or default_jobs())
        self.show_progress = show_progress

    def build(self, target: ResolvedTarget, mode: BuildMode, toolchain: ToolchainHandle) -> BuildArtifact:
        """Build the project for one target and mode.

        Args:
            target: Resolved target
            mode: Build mode
            toolchain: Toolchain for the target's architecture

        Returns:
            The recorded BuildArtifact

        Raises:
            SourceDirectoryError: If there is nothing to compile
            CompileFailed: If a source fails to compile
            LinkFailed: If the linker fails
            ManifestEmbedFailed: If embedding fails and the policy makes it fatal
            BuildLockTimeout: If another build holds the output subtree
        """
        with self.store.lock(target.platform, mode):
            return self._build_locked(target, mode, toolchain)

    def _build_locked(self, target: ResolvedTarget, mode: BuildMode, toolchain: ToolchainHandle) -> BuildArtifact:
        platform = target.platform
        start_time = time.time()
        sources = SourceScanner(self.project.src_path).scan()

        options = parse_cxx_options(self.project.cxx_options)
        flags = build_compile_flags(options, mode)

        target_dir = self.layout.get_target_dir(mode.value, platform.value)
        obj_dir = self.layout.get_obj_dir(mode.value, platform.value)
        self.layout.ensure_target_dirs(mode.value, platform.value)

        compiler = MsvcCompiler(
            toolchain=toolchain,
            runner=self.runner,
            flags=flags,
            src_root=sources.root,
            obj_dir=obj_dir,
            deps_dir=self.layout.get_deps_dir(mode.value, platform.value),
            work_dir=target_dir,
            pch=default_pch(obj_dir) if sources.pch_source else None,
        )
        units = self._compile_sources(compiler, sources, target, mode, toolchain)

        binary = target_dir / self.project.artifact_file_name
        manifest = select_manifest(self.project)
        link_flags = build_link_flags(self.project, mode, target.architecture)
        link_fingerprint = self._link_fingerprint(units, link_flags, manifest, toolchain)

        previous = self.store.get_artifact(platform, mode)
        relink = (
            any(not unit.reused for unit in units)
            or not binary.exists()
            or previous is None
            or previous.manifest_error is not None
            or self.store.get_link_fingerprint(platform, mode) != link_fingerprint
        )

        if relink:
            self.store.forget_artifact(platform, mode)
            linker = MsvcLinker(self.project, toolchain, self.runner, target_dir)
            linker.link([unit.object_file for unit in units], binary, link_flags)
            manifest_description, manifest_error = self._embed_manifest(manifest, binary, mode, toolchain, target_dir)
        else:
            logging.info(f"{binary.name} is up to date, skipping link")
            manifest_description, manifest_error = previous.manifest, None

        copy_assets(
            self.project.assets_path, target_dir, reserved=self.layout.reserved_names(self.project.artifact_file_name)
        )

        artifact = BuildArtifact(
            binary=binary,
            target=platform,
            mode=mode,
            manifest=manifest_description,
            manifest_error=manifest_error,
            units=units,
            relinked=relink,
        )
        self.store.record_artifact(artifact, link_fingerprint=link_fingerprint)
        logging.info(
            f"Built {binary.name} for {target} [{mode.value}] in {time.time() - start_time:.2f}s "
            f"({artifact.recompiled_count}/{len(units)} compiled)"
        )
        return artifact

    def _compile_sources(
        self,
        compiler: MsvcCompiler,
        sources: SourceSet,
        target: ResolvedTarget,
        mode: BuildMode,
        toolchain: ToolchainHandle,
    ) -> List[CompilationUnit]:
        fingerprints = FingerprintCalculator()
        identity = toolchain.describe()
        units: List[CompilationUnit] = []
        total = len(sources.all_sources())

        progress = tqdm(
            total=total,
            desc=f"Compiling {target.name} [{mode.value}]",
            unit="file",
            disable=not self.show_progress,
            leave=False,
        )
        try:
            pch_fingerprint = ""
            if sources.pch_source is not None:
                pch_unit = self._compile_unit(
                    compiler, fingerprints, sources.pch_source, target, mode, identity, create_pch=True
                )
                units.append(pch_unit)
                pch_fingerprint = pch_unit.fingerprint
                progress.update(1)

            results: Dict[Path, CompilationUnit] = {}
            failure: Optional[CompileFailed] = None
            with ThreadPoolExecutor(max_workers=self.jobs) as executor:
                futures = {
                    executor.submit(
                        self._compile_unit, compiler, fingerprints, source, target, mode, identity, False, pch_fingerprint
                    ): source
                    for source in sources.sources
                }
                for future in as_completed(futures):
                    if future.cancelled():
                        continue
                    try:
                        results[futures[future]] = future.result()
                    except CompileFailed as e:
                        if failure is None:
                            failure = e
                            for pending in futures:
                                pending.cancel()
                    progress.update(1)

            if failure is not None:
                logging.error(f"Compilation failed for {failure.source}")
                raise failure

            units.extend(results[source] for source in sources.sources)
        finally:
            progress.close()
        return units

    def _compile_unit(
        self,
        compiler: MsvcCompiler,
        fingerprints: FingerprintCalculator,
        source: Path,
        target: ResolvedTarget,
        mode: BuildMode,
        identity: str,
        create_pch: bool = False,
        pch_fingerprint: str = "",
    ) -> CompilationUnit:
        object_file = compiler.object_path(source)
        deps_file = compiler.deps_path(source)
        unit_flags = compiler.flags + compiler.pch_flags(create_pch) + [identity]

        fingerprint = fingerprints.fingerprint(
            source, unit_flags, read_source_dependencies(deps_file), extra=pch_fingerprint
        )
        stored = self.store.get_fingerprint(source, target.platform, mode)
        if stored == fingerprint and object_file.exists():
            logging.debug(f"Reusing {object_file.name}")
            return CompilationUnit(source=source, object_file=object_file, fingerprint=fingerprint, reused=True)

        compiler.compile(source, create_pch=create_pch)

        # The fresh dependency list is what the next run will read.
        fingerprint = fingerprints.fingerprint(
            source, unit_flags, read_source_dependencies(deps_file), extra=pch_fingerprint
        )
        self.store.set_fingerprint(source, target.platform, mode, fingerprint)
        return CompilationUnit(source=source, object_file=object_file, fingerprint=fingerprint, reused=False)

    def _link_fingerprint(
        self,
        units: List[CompilationUnit],
        link_flags: List[str],
        manifest: Optional[Manifest],
        toolchain: ToolchainHandle,
    ) -> str:
        h = hashlib.sha256()
        for unit in units:
            h.update(f"{unit.object_file}\0{unit.fingerprint}\0".encode("utf-8"))
        h.update("\0".join(link_flags).encode("utf-8"))
        h.update("\0".join(self.project.link_libraries).encode("utf-8"))
        h.update("\0".join(str(d) for d in toolchain.lib_dirs).encode("utf-8"))
        h.update(self.project.artifact_file_name.encode("utf-8"))
        if manifest is not None:
            try:
                h.update(manifest.render().encode("utf-8"))
            except OSError:
                h.update(b"\0unreadable-manifest\0")
        return h.hexdigest()

    def _embed_manifest(
        self,
        manifest: Optional[Manifest],
        binary: Path,
        mode: BuildMode,
        toolchain: ToolchainHandle,
        work_dir: Path,
    ) -> Tuple[str, Optional[str]]:
        if manifest is None:
            return "", None

        outcome = ManifestEmbedder(self.runner).embed(
            manifest, binary, self.project.output_type, toolchain, work_dir
        )
        if outcome.success:
            return outcome.description, None

        if self.project.manifest_failure.is_fatal(mode):
            raise ManifestEmbedFailed(
                f"Failed to embed {outcome.description} into {binary.name}:\n{outcome.error}"
            )
        logging.warning(f"Continuing without an embedded manifest for {binary.name}")
        return outcome.description, outcome.error


def with_strict_manifest(project: ProjectConfig) -> ProjectConfig:
    """Copy of the project where any manifest failure is fatal."""
    return replace(project, manifest_failure=ManifestFailurePolicy.FAIL)
