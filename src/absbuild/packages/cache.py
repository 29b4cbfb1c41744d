"""Build output layout for absbuild projects.

Output Structure:
    abs/                            # or $ABS_BUILD_DIR
    ├── logs/
    │   └── absbuild.log            # rotating log file
    ├── debug_session.json          # tracked debugger session
    ├── debug/
    │   └── {target}/               # win32, win64
    │       ├── obj/                # compiled objects
    │       ├── deps/               # /sourceDependencies JSON per source
    │       ├── {name}.{ext}        # linked artifact
    │       ├── app.manifest        # manifest handed to mt.exe
    │       ├── state.json          # fingerprints and artifact record
    │       └── .lock               # cross-process build lock
    └── release/
        └── {target}/

Every (mode, target) pair owns its own subtree so concurrent builds of
different pairs never write to the same files.
"""

import os
from pathlib import Path
from typing import Optional, Set


class BuildLayout:
    """Maps (mode, target) pairs onto the build output directory structure.

    The root is `<project_dir>/abs` unless the ABS_BUILD_DIR environment
    variable points elsewhere.
    """

    ENV_BUILD_DIR = "ABS_BUILD_DIR"
    DEFAULT_DIR_NAME = "abs"
    BOOKKEEPING_NAMES = ("obj", "deps", "state.json", "state.tmp", ".lock", "includes.rsp", "link.rsp", "vc.pdb")

    def __init__(self, project_dir: Optional[Path] = None, build_root: Optional[Path] = None):
        """Initialize the layout.

        Args:
            project_dir: Project directory. If None, uses current directory.
            build_root: Explicit build root, overriding the environment
        """
        if project_dir is None:
            project_dir = Path.cwd()

        self.project_dir = Path(project_dir).resolve()

        if build_root is not None:
            self.build_root = Path(build_root).resolve()
        elif os.environ.get(self.ENV_BUILD_DIR):
            self.build_root = Path(os.environ[self.ENV_BUILD_DIR]).resolve()
        else:
            self.build_root = self.project_dir / self.DEFAULT_DIR_NAME

    @property
    def logs_dir(self) -> Path:
        return self.build_root / "logs"

    @property
    def log_file(self) -> Path:
        return self.logs_dir / "absbuild.log"

    @property
    def session_file(self) -> Path:
        """File recording the tracked debugger session."""
        return self.build_root / "debug_session.json"

    def get_mode_dir(self, mode: str) -> Path:
        return self.build_root / mode

    def get_target_dir(self, mode: str, target: str) -> Path:
        """Get the subtree owned by one (mode, target) pair.

        Args:
            mode: Build mode name ('debug' or 'release')
            target: Platform token ('win32' or 'win64')

        Returns:
            Path to the pair's output directory
        """
        return self.build_root / mode / target

    def get_obj_dir(self, mode: str, target: str) -> Path:
        return self.get_target_dir(mode, target) / "obj"

    def get_deps_dir(self, mode: str, target: str) -> Path:
        return self.get_target_dir(mode, target) / "deps"

    def get_state_file(self, mode: str, target: str) -> Path:
        return self.get_target_dir(mode, target) / "state.json"

    def get_lock_file(self, mode: str, target: str) -> Path:
        return self.get_target_dir(mode, target) / ".lock"

    def reserved_names(self, artifact_file_name: str) -> Set[str]:
        """Lower-cased entry names of a target directory that belong to the build.

        Covers the bookkeeping files and what the linker writes beside the artifact.
        """
        stem = Path(artifact_file_name).stem
        names = set(self.BOOKKEEPING_NAMES) | {artifact_file_name}
        names.update(f"{stem}.{ext}" for ext in ("manifest", "pdb", "ilk", "exp", "lib"))
        return {name.lower() for name in names}

    def ensure_target_dirs(self, mode: str, target: str) -> None:
        """Create the obj and deps directories of a pair."""
        self.get_obj_dir(mode, target).mkdir(parents=True, exist_ok=True)
        self.get_deps_dir(mode, target).mkdir(parents=True, exist_ok=True)

    def __repr__(self) -> str:
        return f"BuildLayout(project_dir={self.project_dir}, build_root={self.build_root})"
