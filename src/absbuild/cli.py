"""
Command-line interface for absbuild.

This module provides the `absbuild` CLI tool for building MSVC projects
described by an abs.json file.
"""

import argparse
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

from . import __version__
from .build.artifact_store import ArtifactStore
from .build.orchestrator import BuildOrchestrator, BuildReport
from .build.target_resolver import ALL_TARGETS, UnknownTarget
from .cli_utils import BannerFormatter, ErrorFormatter, PathValidator
from .config.project_config import BuildMode, OutputType, ProjectConfig
from .debug.session import get_session_manager
from .errors import EXIT_SUCCESS, EXIT_UNEXPECTED, AbsBuildError
from .log_utils import setup_logging
from .packages.cache import BuildLayout
from .packages.platform_utils import Platform, PlatformDetector
from .scaffold import init_project


@dataclass
class InitArgs:
    """Arguments for the init command."""

    project_dir: Path
    output_type: OutputType = OutputType.CONSOLE_APP
    name: Optional[str] = None
    verbose: bool = False


@dataclass
class BuildArgs:
    """Arguments for the build, run and debug commands."""

    project_dir: Path
    mode: BuildMode = BuildMode.DEBUG
    target: Optional[str] = None
    jobs: Optional[int] = None
    strict_manifest: bool = False
    progress: bool = True
    verbose: bool = False


@dataclass
class CleanArgs:
    """Arguments for the clean command."""

    project_dir: Path
    target: Optional[str] = None
    mode: Optional[BuildMode] = None
    verbose: bool = False


def _create_orchestrator(args: BuildArgs) -> BuildOrchestrator:
    host = PlatformDetector.detect_host()
    project = ProjectConfig.load(args.project_dir, host=host)
    layout = BuildLayout(project.project_dir)
    setup_logging(layout.log_file, args.verbose)
    return BuildOrchestrator(
        project,
        host,
        layout=layout,
        jobs=args.jobs,
        show_progress=args.progress,
        strict_manifest=args.strict_manifest,
    )


def _print_report(report: BuildReport, build_time: float) -> None:
    for result in report.results:
        label = f"{result.target} [{result.mode.value}]"
        if result.success:
            artifact = result.artifact
            assert artifact is not None
            ErrorFormatter.print_success(f"{label}: {artifact.binary}")
            print(f"  {artifact.recompiled_count}/{len(artifact.units)} source(s) compiled"
                  + ("" if artifact.relinked else ", link skipped (up to date)"))
            if artifact.manifest_error:
                ErrorFormatter.print_warning(f"{label}: manifest not embedded")
                print(artifact.manifest_error)
        else:
            error = result.error
            assert error is not None
            ErrorFormatter.print_error(f"{label}: {error.title}", ErrorFormatter.format_abs_error(error))
    print()
    print(f"Build time: {build_time:.2f}s")


def init_command(args: InitArgs) -> None:
    """Create a new project.

    Examples:
        absbuild init                         # Console app in the current directory
        absbuild init hello --output-type gui_app
    """
    setup_logging(None, args.verbose)
    try:
        config = init_project(args.project_dir, args.output_type, args.name)
        ErrorFormatter.print_success(f"Created {config.output_type.value} project '{config.name}'")
        print(f"Project file: {config.project_dir / 'abs.json'}")
        sys.exit(EXIT_SUCCESS)
    except AbsBuildError as e:
        ErrorFormatter.handle_abs_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def build_command(args: BuildArgs) -> None:
    """Build the project.

    Examples:
        absbuild build                        # Debug build for the host target
        absbuild build release --target all  # Release build for every target
        absbuild build --target win32 -j 4
    """
    try:
        orchestrator = _create_orchestrator(args)
        BannerFormatter.print_banner(f"absbuild v{__version__}\nBuilding {orchestrator.project.name} [{args.mode.value}]")

        start_time = time.time()
        report = orchestrator.build(args.target, args.mode)
        _print_report(report, time.time() - start_time)

        if report.success:
            sys.exit(EXIT_SUCCESS)
        error = report.first_error()
        sys.exit(error.exit_code if error is not None else EXIT_UNEXPECTED)
    except AbsBuildError as e:
        ErrorFormatter.handle_abs_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def run_command(args: BuildArgs) -> None:
    """Build the project and run the executable."""
    try:
        orchestrator = _create_orchestrator(args)
        returncode = orchestrator.run(args.target, args.mode)
        sys.exit(returncode)
    except AbsBuildError as e:
        ErrorFormatter.handle_abs_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def debug_command(args: BuildArgs) -> None:
    """Build the project and launch it under the Visual Studio debugger."""
    try:
        orchestrator = _create_orchestrator(args)
        session = orchestrator.debug(args.target, args.mode)
        ErrorFormatter.print_success(f"Debugger started (pid {session.pid})")
        print("Use 'absbuild kill' to close it.")
        sys.exit(EXIT_SUCCESS)
    except AbsBuildError as e:
        ErrorFormatter.handle_abs_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def clean_command(args: CleanArgs) -> None:
    """Remove build output.

    Examples:
        absbuild clean                        # Everything
        absbuild clean --mode release        # All release output
        absbuild clean --target win32        # win32 output of every mode
    """
    setup_logging(None, args.verbose)
    try:
        target = None
        if args.target and args.target.lower() != ALL_TARGETS:
            try:
                target = Platform.from_string(args.target)
            except ValueError as e:
                raise UnknownTarget(str(e)) from e

        layout = BuildLayout(args.project_dir)
        removed = ArtifactStore(layout).clean(target=target, mode=args.mode)
        if removed:
            for path in removed:
                print(f"Removed {path}")
        else:
            print("Nothing to clean")
        sys.exit(EXIT_SUCCESS)
    except AbsBuildError as e:
        ErrorFormatter.handle_abs_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, args.verbose)


def kill_command(project_dir: Path, verbose: bool = False) -> None:
    """Kill the debugger session started by `absbuild debug`."""
    setup_logging(None, verbose)
    try:
        manager = get_session_manager(BuildLayout(project_dir).session_file)
        killed = manager.kill()
        ErrorFormatter.print_success(f"Debug session closed ({killed} process(es) killed)")
        sys.exit(EXIT_SUCCESS)
    except AbsBuildError as e:
        ErrorFormatter.handle_abs_error(e)
    except KeyboardInterrupt:
        ErrorFormatter.handle_keyboard_interrupt()
    except Exception as e:
        ErrorFormatter.handle_unexpected_error(e, verbose)


def _mode(value: str) -> BuildMode:
    try:
        return BuildMode(value.lower())
    except ValueError:
        raise argparse.ArgumentTypeError(f"invalid mode '{value}' (choose from debug, release)") from None


def _output_type(value: str) -> OutputType:
    try:
        return OutputType(value)
    except ValueError:
        valid = ", ".join(t.value for t in OutputType)
        raise argparse.ArgumentTypeError(f"invalid output type '{value}' (choose from {valid})") from None


def _positive_int(value: str) -> int:
    number = int(value)
    if number < 1:
        raise argparse.ArgumentTypeError("must be at least 1")
    return number


def _add_common_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "-C",
        "--project-dir",
        type=Path,
        default=None,
        help="Project directory (default: current directory)",
    )
    parser.add_argument(
        "-v",
        "--verbose",
        action="store_true",
        help="Show verbose output",
    )


def _add_build_arguments(parser: argparse.ArgumentParser) -> None:
    parser.add_argument(
        "mode",
        nargs="?",
        type=_mode,
        default=BuildMode.DEBUG,
        help="Build mode: debug or release (default: debug)",
    )
    parser.add_argument(
        "-t",
        "--target",
        default=None,
        help="Target platform, 'all' or 'host' (default: host)",
    )
    parser.add_argument(
        "-j",
        "--jobs",
        type=_positive_int,
        default=None,
        help="Maximum parallel compiles per target (default: CPU count)",
    )
    parser.add_argument(
        "--strict-manifest",
        action="store_true",
        help="Fail the build when the manifest cannot be embedded",
    )
    parser.add_argument(
        "--no-progress",
        action="store_true",
        help="Hide the compile progress bar",
    )
    _add_common_arguments(parser)


def create_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="absbuild",
        description="absbuild - build Windows C++ projects with MSVC, no build files needed",
    )
    parser.add_argument("--version", action="version", version=f"absbuild {__version__}")
    subparsers = parser.add_subparsers(dest="command", help="Command to execute")

    init_parser = subparsers.add_parser("init", help="Create a new project")
    init_parser.add_argument(
        "directory",
        nargs="?",
        type=Path,
        default=None,
        help="Project directory (default: current directory)",
    )
    init_parser.add_argument(
        "-o",
        "--output-type",
        type=_output_type,
        default=OutputType.CONSOLE_APP,
        help="gui_app, console_app, dynamic_library or static_library (default: console_app)",
    )
    init_parser.add_argument("--name", default=None, help="Project name (default: directory name)")
    init_parser.add_argument("-v", "--verbose", action="store_true", help="Show verbose output")

    _add_build_arguments(subparsers.add_parser("build", help="Build the project"))
    _add_build_arguments(subparsers.add_parser("run", help="Build and run the executable"))
    _add_build_arguments(subparsers.add_parser("debug", help="Build and start the debugger"))

    clean_parser = subparsers.add_parser("clean", help="Remove build output")
    clean_parser.add_argument("-t", "--target", default=None, help="Only this target platform")
    clean_parser.add_argument("-m", "--mode", type=_mode, default=None, help="Only this build mode")
    _add_common_arguments(clean_parser)

    kill_parser = subparsers.add_parser("kill", help="Kill the running debugger session")
    _add_common_arguments(kill_parser)

    return parser


def main(argv: Optional[List[str]] = None) -> None:
    """absbuild - MSVC build orchestrator for Windows C++ projects."""
    parser = create_parser()
    parsed_args = parser.parse_args(argv)

    # If no command specified, show help
    if not parsed_args.command:
        parser.print_help()
        sys.exit(EXIT_SUCCESS)

    if parsed_args.command == "init":
        init_command(
            InitArgs(
                project_dir=parsed_args.directory or Path.cwd(),
                output_type=parsed_args.output_type,
                name=parsed_args.name,
                verbose=parsed_args.verbose,
            )
        )
        return

    project_dir = parsed_args.project_dir or Path.cwd()
    PathValidator.validate_project_dir(project_dir)

    if parsed_args.command in ("build", "run", "debug"):
        build_args = BuildArgs(
            project_dir=project_dir,
            mode=parsed_args.mode,
            target=parsed_args.target,
            jobs=parsed_args.jobs,
            strict_manifest=parsed_args.strict_manifest,
            progress=not parsed_args.no_progress,
            verbose=parsed_args.verbose,
        )
        if parsed_args.command == "build":
            build_command(build_args)
        elif parsed_args.command == "run":
            run_command(build_args)
        else:
            debug_command(build_args)
    elif parsed_args.command == "clean":
        clean_command(
            CleanArgs(
                project_dir=project_dir,
                target=parsed_args.target,
                mode=parsed_args.mode,
                verbose=parsed_args.verbose,
            )
        )
    elif parsed_args.command == "kill":
        kill_command(project_dir, parsed_args.verbose)


if __name__ == "__main__":
    main()
