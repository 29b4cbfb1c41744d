"""External tool execution.

Every call to cl.exe, link.exe, lib.exe and mt.exe goes through a ToolRunner
so that the pipeline only ever sees a ToolResponse. Spawn failures, crashes
and timeouts come back as non-zero responses rather than exceptions, and
tests can swap in a runner that never touches a real toolchain.

Design:
    - ToolRequest describes one invocation (program, arguments, working dir)
    - ToolResponse carries exit code and captured output verbatim
    - SubprocessToolRunner wraps subprocess.run with output capture
"""

import logging
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional

SPAWN_FAILED = -1
TIMED_OUT = -2


@dataclass(frozen=True)
class ToolRequest:
    """One external tool invocation."""

    program: Path
    args: List[str] = field(default_factory=list)
    cwd: Optional[Path] = None
    timeout: Optional[float] = None

    @property
    def tool_name(self) -> str:
        return Path(self.program).name

    def command_line(self) -> List[str]:
        return [str(self.program)] + list(self.args)


@dataclass
class ToolResponse:
    """Result of a tool invocation."""

    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def output(self) -> str:
        """Combined diagnostics. MSVC tools write most of them to stdout."""
        parts = [p.rstrip() for p in (self.stdout, self.stderr) if p and p.strip()]
        return "\n".join(parts)


class ToolRunner(ABC):
    """Interface for executing external tools."""

    @abstractmethod
    def run(self, request: ToolRequest) -> ToolResponse:
        """Execute a tool and return its response.

        Implementations must not raise for tool failures; a tool that cannot
        be started or crashes is reported as a non-zero ToolResponse.
        """
        pass


class SubprocessToolRunner(ToolRunner):
    """Runs tools as child processes with captured output."""

    def __init__(self, default_timeout: Optional[float] = 600):
        """Initialize the runner.

        Args:
            default_timeout: Seconds before a tool is abandoned, None for no limit
        """
        self.default_timeout = default_timeout

    def run(self, request: ToolRequest) -> ToolResponse:
        cmd = request.command_line()
        timeout = request.timeout if request.timeout is not None else self.default_timeout
        logging.debug(f"Running: {subprocess.list2cmdline(cmd)}")

        try:
            result = subprocess.run(
                cmd,
                cwd=str(request.cwd) if request.cwd else None,
                capture_output=True,
                text=True,
                errors="replace",
                timeout=timeout,
            )
        except subprocess.TimeoutExpired:
            logging.warning(f"{request.tool_name} timed out after {timeout}s")
            return ToolResponse(TIMED_OUT, stderr=f"{request.tool_name} timed out after {timeout} seconds")
        except OSError as e:
            logging.warning(f"Failed to start {request.program}: {e}")
            return ToolResponse(SPAWN_FAILED, stderr=f"Failed to start {request.program}: {e}")

        if result.returncode != 0:
            logging.debug(f"{request.tool_name} exited with {result.returncode}")
        return ToolResponse(result.returncode, result.stdout or "", result.stderr or "")


def write_response_file(path: Path, lines: List[str]) -> Path:
    """Write arguments to a response file passed to a tool as @file.

    Response files avoid command line length limits when there are many
    include or library paths. Paths containing spaces are quoted.

    Args:
        path: Response file location
        lines: One argument per line

    Returns:
        Path to the written response file
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for line in lines:
            f.write(f'"{line}"\n' if " " in line and not line.startswith('"') else f"{line}\n")
    return path
