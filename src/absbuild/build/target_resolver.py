"""Target resolution.

Turns a requested target token into the concrete list of (platform,
architecture) pairs to build. Resolution is pure: it depends only on the
project's declared targets, the host platform and the token.

Rules, first match wins:
    1. token names a declared target       -> that target
    2. token == "all"                      -> every declared target, declared order
    3. token == "host" or no token         -> host native target if declared, else
                                              the first declared target the host
                                              can run, else NoCompatibleTarget
    4. anything else                       -> UnknownTarget
"""

from dataclasses import dataclass
from typing import List, Optional

from ..config.project_config import ProjectConfig, ProjectConfigError
from ..errors import EXIT_TARGET, AbsBuildError
from ..packages.platform_utils import Arch, HostPlatform, Platform

ALL_TARGETS = "all"
HOST_TARGET = "host"


class UnknownTarget(AbsBuildError):
    """Raised when a target token matches nothing the project declares."""

    exit_code = EXIT_TARGET
    title = "Unknown target"


class NoCompatibleTarget(AbsBuildError):
    """Raised when none of the declared targets can serve the request on this host."""

    exit_code = EXIT_TARGET
    title = "No compatible target"


@dataclass(frozen=True)
class ResolvedTarget:
    """A (platform, architecture) pair selected for building."""

    platform: Platform
    architecture: Arch

    @classmethod
    def of(cls, platform: Platform) -> "ResolvedTarget":
        return cls(platform=platform, architecture=platform.architecture)

    @property
    def name(self) -> str:
        return self.platform.value

    def __str__(self) -> str:
        return f"{self.platform.value} ({self.architecture.value})"


def resolve_targets(
    project: ProjectConfig,
    host: HostPlatform,
    token: Optional[str] = None,
) -> List[ResolvedTarget]:
    """Compute the targets to build.

    Args:
        project: Loaded project configuration
        host: Platform the build runs on
        token: Requested target, "all", "host" or None

    Returns:
        Non-empty list of targets, each one declared by the project

    Raises:
        UnknownTarget: If the token is neither a declared target nor a keyword
        NoCompatibleTarget: If the host default cannot be satisfied
    """
    declared = list(project.supported_targets)
    normalized = token.strip().lower() if token is not None else None

    if normalized not in (None, ALL_TARGETS, HOST_TARGET):
        for platform in declared:
            if platform.value == normalized:
                return [ResolvedTarget.of(platform)]
        valid = ", ".join([p.value for p in declared] + [ALL_TARGETS, HOST_TARGET])
        raise UnknownTarget(
            f"Target '{token}' is not supported by project '{project.name}'. Available options: {valid}"
        )

    if normalized == ALL_TARGETS:
        return [ResolvedTarget.of(p) for p in declared]

    if host.native in declared:
        return [ResolvedTarget.of(host.native)]
    for platform in declared:
        if host.can_run(platform):
            return [ResolvedTarget.of(platform)]

    listed = ", ".join(p.value for p in declared)
    raise NoCompatibleTarget(
        f"Unable to find a supported target that is compatible with the host platform "
        f"{host.native.value}.\nThe supported targets are: {listed}"
    )


def resolve_runnable_target(
    project: ProjectConfig,
    host: HostPlatform,
    token: Optional[str] = None,
) -> ResolvedTarget:
    """Resolve the single target used by `run` and `debug`.

    Raises:
        ProjectConfigError: If the project builds a library
        NoCompatibleTarget: If "all" was requested or the host cannot run the target
        UnknownTarget: As for resolve_targets
    """
    if not project.output_type.is_executable:
        raise ProjectConfigError(
            f"Project '{project.name}' builds a {project.output_type.value} and cannot be run or debugged."
        )
    if token is not None and token.strip().lower() == ALL_TARGETS:
        raise NoCompatibleTarget("Cannot run or debug 'all' targets. Pick a single target with --target.")

    target = resolve_targets(project, host, token)[0]
    if not host.can_run(target.platform):
        raise NoCompatibleTarget(
            f"The host platform {host.native.value} cannot run binaries built for {target.platform.value}."
        )
    return target
