"""
Debugger Session Tracking

Launches a built artifact under the Visual Studio debugger and remembers the
single live session so a later `kill` can tear down the whole debugger
process tree.

Key features:
- At most one tracked session; a new launch replaces the old record
  without killing the old debugger
- The session is persisted to JSON so `absbuild kill` from another
  invocation finds it
- The process create time guards against PID reuse
- Tree kill: children first, terminate, then force-kill stragglers
"""

import json
import logging
import subprocess
import threading
import time
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Optional, Sequence

import psutil

from ..errors import EXIT_DEBUG_SESSION, AbsBuildError
from ..packages.toolchain import ToolchainHandle

if TYPE_CHECKING:
    from ..build.artifact_store import BuildArtifact

CREATE_TIME_TOLERANCE = 0.01
TERMINATE_TIMEOUT = 3

Launcher = Callable[[Sequence[str]], Any]


class NoActiveSession(AbsBuildError):
    """Raised by kill() when no debugger session is tracked."""

    exit_code = EXIT_DEBUG_SESSION
    title = "No active debug session"


class DebugLaunchFailed(AbsBuildError):
    """Raised when the debugger is missing or cannot be started."""

    exit_code = EXIT_DEBUG_SESSION
    title = "Debugger launch failed"


@dataclass
class SessionHandle:
    """A tracked debugger session.

    Attributes:
        pid: PID of the debugger process
        create_time: psutil create time of that process
        artifact: Binary being debugged
        debugger: Debugger executable
        started_at: Unix timestamp of the launch
    """

    pid: int
    create_time: float
    artifact: str
    debugger: str
    started_at: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionHandle":
        """Create SessionHandle from dictionary."""
        return cls(
            pid=int(data["pid"]),
            create_time=float(data["create_time"]),
            artifact=data.get("artifact", ""),
            debugger=data.get("debugger", ""),
            started_at=data.get("started_at", time.time()),
        )


def _default_launcher(cmd: Sequence[str]) -> subprocess.Popen:
    return subprocess.Popen(list(cmd), stdin=subprocess.DEVNULL, stdout=subprocess.DEVNULL, stderr=subprocess.DEVNULL)


def kill_process_tree(root_pid: int) -> int:
    """Kill a process and all of its descendants.

    Args:
        root_pid: PID of the tree's root

    Returns:
        Number of processes that were signalled
    """
    try:
        root = psutil.Process(root_pid)
    except psutil.NoSuchProcess:
        return 0

    try:
        children = root.children(recursive=True)
    except psutil.NoSuchProcess:
        children = []

    # Children before parents so nothing is re-parented mid-kill
    processes: List[psutil.Process] = list(reversed(children)) + [root]
    killed_count = 0
    for proc in processes:
        try:
            proc.terminate()
            killed_count += 1
            logging.debug(f"Terminated process {proc.pid}")
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logging.warning(f"Failed to terminate process {proc.pid}: {e}")

    _gone, alive = psutil.wait_procs(processes, timeout=TERMINATE_TIMEOUT)

    for proc in alive:
        try:
            proc.kill()
            logging.warning(f"Force killed stubborn process {proc.pid}")
        except psutil.NoSuchProcess:
            pass
        except psutil.AccessDenied as e:
            logging.warning(f"Failed to force kill process {proc.pid}: {e}")

    return killed_count


class DebugSessionManager:
    """Thread-safe owner of the single tracked debugger session."""

    def __init__(self, session_file: Optional[Path] = None, launcher: Optional[Launcher] = None):
        """Initialize the manager.

        Args:
            session_file: JSON file the session is persisted to, None for memory only
            launcher: Callable that starts a command and returns an object with a `pid`
        """
        self.session_file = Path(session_file) if session_file is not None else None
        self.launcher = launcher or _default_launcher
        self.lock = threading.Lock()
        self._session: Optional[SessionHandle] = None
        self._load_session()

    def _load_session(self) -> None:
        if self.session_file is None or not self.session_file.exists():
            return
        try:
            with open(self.session_file, encoding="utf-8") as f:
                self._session = SessionHandle.from_dict(json.load(f))
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logging.warning(f"Ignoring unreadable debug session file {self.session_file}: {e}")
            self._session = None

    def _save_session(self) -> None:
        if self.session_file is None:
            return
        if self._session is None:
            self.session_file.unlink(missing_ok=True)
            return
        self.session_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = self.session_file.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(self._session.to_dict(), f, indent=2)
        temp_file.replace(self.session_file)

    @property
    def current(self) -> Optional[SessionHandle]:
        with self.lock:
            return self._session

    def launch(self, artifact: "BuildArtifact", toolchain: ToolchainHandle) -> SessionHandle:
        """Start the debugger on an artifact and track the session.

        Args:
            artifact: Built executable
            toolchain: Toolchain providing the debugger

        Returns:
            SessionHandle of the new session

        Raises:
            DebugLaunchFailed: If there is no debugger or it fails to start
        """
        debugger = toolchain.debugger
        if debugger is None or not Path(debugger).is_file():
            raise DebugLaunchFailed(
                f"No debugger (devenv.exe) was found for MSVC {toolchain.msvc_version}. "
                f"Install the Visual Studio IDE to use 'absbuild debug'."
            )

        cmd = [str(debugger), "/debugexe", str(artifact.binary)]
        try:
            process = self.launcher(cmd)
        except OSError as e:
            raise DebugLaunchFailed(f"Failed to start {debugger}: {e}") from e

        try:
            create_time = psutil.Process(process.pid).create_time()
        except psutil.NoSuchProcess:
            create_time = 0.0

        handle = SessionHandle(
            pid=process.pid,
            create_time=create_time,
            artifact=str(artifact.binary),
            debugger=str(debugger),
        )
        with self.lock:
            if self._session is not None:
                logging.info(f"Replacing tracked debug session (pid {self._session.pid}) without killing it")
            self._session = handle
            self._save_session()

        logging.info(f"Debugger started: pid={handle.pid}, artifact={handle.artifact}")
        return handle

    def _is_same_process(self, handle: SessionHandle) -> bool:
        try:
            proc = psutil.Process(handle.pid)
            if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
                return False
            return abs(proc.create_time() - handle.create_time) <= CREATE_TIME_TOLERANCE
        except psutil.NoSuchProcess:
            return False

    def kill(self) -> int:
        """Terminate the tracked session's process tree.

        Returns:
            Number of processes killed; 0 if the debugger had already exited

        Raises:
            NoActiveSession: If no session is tracked
        """
        with self.lock:
            handle = self._session
            if handle is None:
                raise NoActiveSession("There is no active debug session to kill.")

            if self._is_same_process(handle):
                killed = kill_process_tree(handle.pid)
            else:
                logging.info(f"Debug session pid {handle.pid} has already exited")
                killed = 0

            self._session = None
            self._save_session()

        logging.info(f"Killed {killed} process(es) of debug session {handle.pid}")
        return killed


_managers: Dict[str, DebugSessionManager] = {}
_managers_lock = threading.Lock()


def get_session_manager(session_file: Path) -> DebugSessionManager:
    """Get the process-wide manager for a session file.

    Args:
        session_file: Persisted session location of a project

    Returns:
        The shared DebugSessionManager for that file
    """
    key = str(Path(session_file).resolve())
    with _managers_lock:
        if key not in _managers:
            _managers[key] = DebugSessionManager(Path(session_file))
        return _managers[key]
