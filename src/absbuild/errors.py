"""Base exception and exit codes for absbuild.

Every error that can reach the command layer derives from AbsBuildError and
carries the process exit code the CLI should use for it, so automation can
tell failure classes apart.
"""

EXIT_SUCCESS = 0
EXIT_UNEXPECTED = 1
EXIT_PROJECT = 2
EXIT_TARGET = 3
EXIT_TOOLCHAIN = 4
EXIT_COMPILE = 5
EXIT_LINK = 6
EXIT_DEBUG_SESSION = 7
EXIT_MANIFEST = 8
EXIT_LOCK = 9
EXIT_OUTPUT = 10
EXIT_INTERRUPTED = 130


class AbsBuildError(Exception):
    """Base class for all recoverable absbuild errors."""

    exit_code = EXIT_UNEXPECTED
    title = "Error"
