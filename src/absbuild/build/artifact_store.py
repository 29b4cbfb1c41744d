"""
Artifact Store Module

Persists per-(target, mode) build state: source fingerprints, the link
fingerprint and the record of the last successful artifact. Also owns the
lock that serializes writers of one output subtree and the `clean` operation.

Key features:
- Atomic state.json writes (temp file + replace)
- Thread-safe operations; targets build concurrently
- Subtree lock that excludes both other threads and other processes
- Stale lock files from dead processes are reclaimed automatically
"""

import json
import logging
import os
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

import psutil

from ..config.project_config import BuildMode
from ..errors import EXIT_LOCK, AbsBuildError
from ..packages.cache import BuildLayout
from ..packages.platform_utils import Platform

DEFAULT_LOCK_TIMEOUT = 300.0
LOCK_POLL_INTERVAL = 0.1
STALE_EMPTY_LOCK_AGE = 5.0

_subtree_locks: Dict[str, threading.Lock] = {}
_locks_lock = threading.Lock()


class BuildLockTimeout(AbsBuildError):
    """Raised when an output subtree stays locked longer than the timeout."""

    exit_code = EXIT_LOCK
    title = "Build directory locked"


def get_subtree_lock(key: str) -> threading.Lock:
    """Get or create the in-process lock for an output subtree.

    Args:
        key: Absolute path of the subtree

    Returns:
        Threading lock shared by every store in this process
    """
    with _locks_lock:
        if key not in _subtree_locks:
            _subtree_locks[key] = threading.Lock()
        return _subtree_locks[key]


@dataclass
class CompilationUnit:
    """One source file's trip through the compiler.

    Attributes:
        source: Source file path
        object_file: Object file path
        fingerprint: Fingerprint the object was built from
        reused: True when the object from a previous run was kept
    """

    source: Path
    object_file: Path
    fingerprint: str
    reused: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "source": str(self.source),
            "object_file": str(self.object_file),
            "fingerprint": self.fingerprint,
            "reused": self.reused,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "CompilationUnit":
        return cls(
            source=Path(data["source"]),
            object_file=Path(data["object_file"]),
            fingerprint=data["fingerprint"],
            reused=data.get("reused", False),
        )


@dataclass
class BuildArtifact:
    """A successfully built binary.

    Attributes:
        binary: Path to the linked executable or library
        target: Platform it was built for
        mode: Build mode
        manifest: Description of the embedded manifest ("" when none applies)
        manifest_error: Diagnostic of a failed, non-fatal manifest embed
        units: Compilation units that went into the binary
        built_at: Unix timestamp of the build
        relinked: False when an up-to-date binary was kept
    """

    binary: Path
    target: Platform
    mode: BuildMode
    manifest: str = ""
    manifest_error: Optional[str] = None
    units: List[CompilationUnit] = field(default_factory=list)
    built_at: float = field(default_factory=time.time)
    relinked: bool = True

    @property
    def recompiled_count(self) -> int:
        return sum(1 for unit in self.units if not unit.reused)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "binary": str(self.binary),
            "target": self.target.value,
            "mode": self.mode.value,
            "manifest": self.manifest,
            "manifest_error": self.manifest_error,
            "units": [unit.to_dict() for unit in self.units],
            "built_at": self.built_at,
            "relinked": self.relinked,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BuildArtifact":
        """Create BuildArtifact from dictionary."""
        return cls(
            binary=Path(data["binary"]),
            target=Platform(data["target"]),
            mode=BuildMode(data["mode"]),
            manifest=data.get("manifest", ""),
            manifest_error=data.get("manifest_error"),
            units=[CompilationUnit.from_dict(u) for u in data.get("units", [])],
            built_at=data.get("built_at", 0.0),
            relinked=data.get("relinked", True),
        )


class ArtifactStore:
    """Persistent build state for every (target, mode) subtree of a project."""

    ENV_LOCK_TIMEOUT = "ABS_LOCK_TIMEOUT"

    def __init__(self, layout: BuildLayout, lock_timeout: Optional[float] = None):
        """Initialize the store.

        Args:
            layout: Build output layout of the project
            lock_timeout: Seconds to wait for a subtree lock (default: env or 300)
        """
        self.layout = layout
        self.lock_timeout = lock_timeout if lock_timeout is not None else self._default_lock_timeout()
        self._state_lock = threading.Lock()

    @classmethod
    def _default_lock_timeout(cls) -> float:
        raw = os.environ.get(cls.ENV_LOCK_TIMEOUT)
        if not raw:
            return DEFAULT_LOCK_TIMEOUT
        try:
            return float(raw)
        except ValueError:
            logging.warning(f"Ignoring invalid {cls.ENV_LOCK_TIMEOUT}={raw!r}")
            return DEFAULT_LOCK_TIMEOUT

    # State file -----------------------------------------------------------

    def _load_state(self, target: Platform, mode: BuildMode) -> Dict[str, Any]:
        state_file = self.layout.get_state_file(mode.value, target.value)
        if not state_file.exists():
            return {}
        try:
            with open(state_file, encoding="utf-8") as f:
                data = json.load(f)
            return data if isinstance(data, dict) else {}
        except KeyboardInterrupt:
            raise
        except Exception as e:
            logging.warning(f"Discarding unreadable build state {state_file}: {e}")
            return {}

    def _save_state(self, target: Platform, mode: BuildMode, state: Dict[str, Any]) -> None:
        state_file = self.layout.get_state_file(mode.value, target.value)
        state_file.parent.mkdir(parents=True, exist_ok=True)
        temp_file = state_file.with_suffix(".tmp")
        with open(temp_file, "w", encoding="utf-8") as f:
            json.dump(state, f, indent=2)
        temp_file.replace(state_file)

    @staticmethod
    def _source_key(source: Path) -> str:
        return str(Path(source).resolve())

    def get_fingerprint(self, source: Path, target: Platform, mode: BuildMode) -> Optional[str]:
        """Get the fingerprint recorded for a source's last successful compile."""
        with self._state_lock:
            state = self._load_state(target, mode)
        return state.get("fingerprints", {}).get(self._source_key(source))

    def set_fingerprint(self, source: Path, target: Platform, mode: BuildMode, fingerprint: str) -> None:
        """Record the fingerprint of a successful compile."""
        with self._state_lock:
            state = self._load_state(target, mode)
            state.setdefault("fingerprints", {})[self._source_key(source)] = fingerprint
            self._save_state(target, mode, state)

    def get_link_fingerprint(self, target: Platform, mode: BuildMode) -> Optional[str]:
        with self._state_lock:
            return self._load_state(target, mode).get("link_fingerprint")

    def record_artifact(self, artifact: BuildArtifact, link_fingerprint: Optional[str] = None) -> None:
        """Record a successful build, superseding the previous record.

        Args:
            artifact: The artifact to record
            link_fingerprint: Fingerprint of the link inputs that produced it
        """
        with self._state_lock:
            state = self._load_state(artifact.target, artifact.mode)
            state["artifact"] = artifact.to_dict()
            if link_fingerprint is not None:
                state["link_fingerprint"] = link_fingerprint
            self._save_state(artifact.target, artifact.mode, state)
        logging.info(f"Recorded artifact {artifact.binary} ({artifact.target.value}/{artifact.mode.value})")

    def forget_artifact(self, target: Platform, mode: BuildMode) -> None:
        """Drop the artifact record and link fingerprint so the next build relinks."""
        with self._state_lock:
            state = self._load_state(target, mode)
            if "artifact" not in state and "link_fingerprint" not in state:
                return
            state.pop("artifact", None)
            state.pop("link_fingerprint", None)
            self._save_state(target, mode, state)

    def get_artifact(self, target: Platform, mode: BuildMode) -> Optional[BuildArtifact]:
        """Get the last recorded artifact, or None."""
        with self._state_lock:
            data = self._load_state(target, mode).get("artifact")
        if not data:
            return None
        try:
            return BuildArtifact.from_dict(data)
        except (KeyError, ValueError) as e:
            logging.warning(f"Ignoring malformed artifact record: {e}")
            return None

    # Cleaning -------------------------------------------------------------

    def clean(self, target: Optional[Platform] = None, mode: Optional[BuildMode] = None) -> List[Path]:
        """Remove build output.

        Each (target, mode) subtree is emptied while holding its lock, so a
        build in progress is waited for rather than pulled out from under it.

        Args:
            target: Only this target (every mode unless `mode` is also given)
            mode: Only this mode (every target unless `target` is also given)

        Returns:
            Directories that existed and were removed

        Raises:
            BuildLockTimeout: If a subtree stays locked longer than the timeout
        """
        if target is None and mode is None:
            candidates = [self.layout.build_root]
        elif target is None:
            candidates = [self.layout.get_mode_dir(mode.value)]
        elif mode is None:
            candidates = [self.layout.get_target_dir(m.value, target.value) for m in BuildMode]
        else:
            candidates = [self.layout.get_target_dir(mode.value, target.value)]

        subtrees = {
            self.layout.get_target_dir(m.value, p.value): (p, m)
            for m in ([mode] if mode is not None else list(BuildMode))
            for p in ([target] if target is not None else list(Platform))
        }

        removed = []
        for path in candidates:
            if not path.exists():
                continue
            logging.info(f"Removing {path}")
            for subtree, (p, m) in subtrees.items():
                if (subtree == path or path in subtree.parents) and subtree.exists():
                    self._empty_subtree(p, m)
            self._remove_tree(path, subtrees)
            if not path.exists():
                removed.append(path)
        return removed

    def _empty_subtree(self, target: Platform, mode: BuildMode) -> None:
        subtree = self.layout.get_target_dir(mode.value, target.value)
        lock_file = self.layout.get_lock_file(mode.value, target.value)
        with self.lock(target, mode):
            for child in list(subtree.iterdir()):
                if child == lock_file:
                    continue
                if child.is_dir() and not child.is_symlink():
                    shutil.rmtree(child)
                else:
                    child.unlink()

    def _remove_tree(self, path: Path, subtrees: Dict[Path, Any]) -> None:
        if path in subtrees:
            try:
                path.rmdir()
            except OSError:
                # A new build took the subtree after it was emptied.
                logging.warning(f"Leaving {path} in place, it is in use by another build")
        elif path.is_dir() and not path.is_symlink():
            for child in list(path.iterdir()):
                self._remove_tree(child, subtrees)
            if not any(path.iterdir()):
                path.rmdir()
        else:
            path.unlink()

    # Locking --------------------------------------------------------------

    @contextmanager
    def lock(self, target: Platform, mode: BuildMode, timeout: Optional[float] = None) -> Iterator[None]:
        """Hold the exclusive lock of one output subtree.

        Args:
            target: Target platform
            mode: Build mode
            timeout: Seconds to wait, defaults to the store's lock timeout

        Raises:
            BuildLockTimeout: If the lock is not acquired in time
        """
        timeout = self.lock_timeout if timeout is None else timeout
        subtree = self.layout.get_target_dir(mode.value, target.value)
        deadline = time.monotonic() + timeout

        thread_lock = get_subtree_lock(str(subtree))
        if not thread_lock.acquire(timeout=max(timeout, 0)):
            raise BuildLockTimeout(
                f"Timed out after {timeout:.0f}s waiting for another build of {target.value}/{mode.value} in this process"
            )
        try:
            lock_file = self.layout.get_lock_file(mode.value, target.value)
            self._acquire_lock_file(lock_file, deadline, timeout)
            try:
                yield
            finally:
                lock_file.unlink(missing_ok=True)
        finally:
            thread_lock.release()

    def _acquire_lock_file(self, lock_file: Path, deadline: float, timeout: float) -> None:
        lock_file.parent.mkdir(parents=True, exist_ok=True)
        while True:
            try:
                fd = os.open(str(lock_file), os.O_CREAT | os.O_EXCL | os.O_WRONLY)
            except FileExistsError:
                owner = self._read_lock_owner(lock_file)
                if owner is None:
                    # An empty file may belong to a process that has not written its pid yet.
                    stale = self._lock_age(lock_file) > STALE_EMPTY_LOCK_AGE
                else:
                    stale = owner == os.getpid() or not psutil.pid_exists(owner)
                if stale and self._reclaim_lock_file(lock_file, owner):
                    continue
                if time.monotonic() >= deadline:
                    raise BuildLockTimeout(
                        f"Timed out after {timeout:.0f}s waiting for {lock_file.parent} "
                        f"(locked by process {self._read_lock_owner(lock_file) or owner})"
                    ) from None
                time.sleep(LOCK_POLL_INTERVAL)
                continue
            with os.fdopen(fd, "w") as f:
                f.write(str(os.getpid()))
            return

    def _reclaim_lock_file(self, lock_file: Path, owner: Optional[int]) -> bool:
        """Move a stale lock file aside, unless someone else took the lock meanwhile.

        The file is renamed to a private tombstone first, so the owner check
        and the removal apply to the same file.

        Returns:
            True when the stale file was discarded and acquisition can be retried
        """
        tombstone = lock_file.with_name(f"{lock_file.name}.{os.getpid()}.{threading.get_ident()}.stale")
        try:
            os.replace(lock_file, tombstone)
        except FileNotFoundError:
            return True

        if self._read_lock_owner(tombstone) == owner:
            logging.info(f"Removing stale lock file {lock_file} (pid {owner})")
            tombstone.unlink(missing_ok=True)
            return True

        # A live process took the lock between the owner check and the rename.
        try:
            os.link(tombstone, lock_file)
        except FileExistsError:
            logging.warning(f"Lock file {lock_file} was replaced while being restored")
        tombstone.unlink(missing_ok=True)
        return False

    @staticmethod
    def _read_lock_owner(lock_file: Path) -> Optional[int]:
        try:
            with open(lock_file) as f:
                return int(f.read().strip())
        except (OSError, ValueError):
            return None

    @staticmethod
    def _lock_age(lock_file: Path) -> float:
        try:
            return time.time() - lock_file.stat().st_mtime
        except OSError:
            return 0.0
