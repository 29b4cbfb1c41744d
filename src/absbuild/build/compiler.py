"""MSVC compilation.

This module turns project cxx_options and a build mode into cl.exe flags,
fingerprints compilation inputs, and compiles single sources through a
ToolRunner.

Design:
    - cxx_options is an open mapping; each known key has a registered handler
    - Unknown keys are logged and ignored
    - Include directories go through a response file (includes.rsp)
    - Each compile writes /sourceDependencies JSON, which the next run reads
      to fold header contents into the fingerprint
"""

import hashlib
import json
import logging
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional

from ..config.project_config import BuildMode, ProjectConfigError
from ..errors import EXIT_COMPILE, AbsBuildError
from ..packages.toolchain import ToolchainHandle
from .source_scanner import PCH_HEADER_NAME
from .tool_runner import ToolRequest, ToolResponse, ToolRunner, write_response_file

STANDARD_FLAGS = {
    "c++11": "/std:c++14",
    "c++14": "/std:c++14",
    "c++17": "/std:c++17",
    "c++20": "/std:c++latest",
}

PLATFORM_DEFINES = ["_WINDOWS", "WIN32", "UNICODE", "_UNICODE", "_USE_MATH_DEFINES"]

MODE_FLAGS = {
    BuildMode.DEBUG: ["/Od", "/MDd", "/RTC1", "/D_DEBUG"],
    BuildMode.RELEASE: ["/O2", "/MD", "/DNDEBUG"],
}


class CompileFailed(AbsBuildError):
    """Raised when cl.exe rejects a source. Carries the diagnostics verbatim."""

    exit_code = EXIT_COMPILE
    title = "Compilation failed"

    def __init__(self, message: str, source: Optional[Path] = None, diagnostics: str = ""):
        super().__init__(message)
        self.source = source
        self.diagnostics = diagnostics


@dataclass
class CompileOptions:
    """Compiler options resolved from cxx_options."""

    rtti: bool = False
    standard: str = "c++20"
    async_await: bool = True
    warning_level: int = 3
    definitions: Dict[str, Optional[str]] = field(default_factory=dict)
    extra_flags: List[str] = field(default_factory=list)


OptionHandler = Callable[[CompileOptions, Any], None]
_OPTION_HANDLERS: Dict[str, OptionHandler] = {}


def option_handler(name: str) -> Callable[[OptionHandler], OptionHandler]:
    """Register the handler for one cxx_options key."""

    def register(func: OptionHandler) -> OptionHandler:
        _OPTION_HANDLERS[name] = func
        return func

    return register


def _require_bool(name: str, value: Any) -> bool:
    if not isinstance(value, bool):
        raise ProjectConfigError(f"cxx_options.{name} must be true or false, got {value!r}")
    return value


@option_handler("rtti")
def _handle_rtti(options: CompileOptions, value: Any) -> None:
    options.rtti = _require_bool("rtti", value)


@option_handler("async_await")
def _handle_async_await(options: CompileOptions, value: Any) -> None:
    options.async_await = _require_bool("async_await", value)


@option_handler("standard")
def _handle_standard(options: CompileOptions, value: Any) -> None:
    if value not in STANDARD_FLAGS:
        valid = ", ".join(STANDARD_FLAGS)
        raise ProjectConfigError(f"cxx_options.standard '{value}' is not supported. Available options: {valid}")
    options.standard = value


@option_handler("warning_level")
def _handle_warning_level(options: CompileOptions, value: Any) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value <= 4:
        raise ProjectConfigError(f"cxx_options.warning_level must be an integer from 0 to 4, got {value!r}")
    options.warning_level = value


@option_handler("definitions")
def _handle_definitions(options: CompileOptions, value: Any) -> None:
    if isinstance(value, list):
        value = {name: None for name in value}
    if not isinstance(value, dict):
        raise ProjectConfigError("cxx_options.definitions must be an object or a list of names")
    for name, definition in value.items():
        options.definitions[str(name)] = None if definition is None else str(definition)


@option_handler("extra_flags")
def _handle_extra_flags(options: CompileOptions, value: Any) -> None:
    if not isinstance(value, list) or not all(isinstance(flag, str) for flag in value):
        raise ProjectConfigError("cxx_options.extra_flags must be a list of strings")
    options.extra_flags.extend(value)


def parse_cxx_options(raw: Mapping[str, Any]) -> CompileOptions:
    """Apply every cxx_options entry through its registered handler.

    Raises:
        ProjectConfigError: If a known option has an invalid value
    """
    options = CompileOptions()
    for name, value in raw.items():
        handler = _OPTION_HANDLERS.get(name)
        if handler is None:
            logging.warning(f"Ignoring unknown cxx_options entry '{name}'")
            continue
        handler(options, value)
    return options


def build_compile_flags(options: CompileOptions, mode: BuildMode) -> List[str]:
    """Flags shared by every source of a (target, mode) build."""
    flags = ["/nologo", f"/W{options.warning_level}", "/Zi", "/FS", "/EHsc", "/c"]
    flags.append("/GR" if options.rtti else "/GR-")
    if options.async_await:
        flags.append("/await")
    flags.append(STANDARD_FLAGS[options.standard])
    flags.extend(MODE_FLAGS[mode])
    flags.extend(f"/D{name}" for name in PLATFORM_DEFINES)
    for name, value in options.definitions.items():
        flags.append(f"/D{name}" if value is None else f"/D{name}={value}")
    flags.extend(options.extra_flags)
    return flags


def read_source_dependencies(deps_file: Path) -> List[Path]:
    """Headers listed by a previous compile's /sourceDependencies output.

    Returns:
        Header paths, or an empty list when the file is missing or unreadable
    """
    if not deps_file.exists():
        return []
    try:
        with open(deps_file, encoding="utf-8-sig") as f:
            data = json.load(f)
    except (OSError, ValueError) as e:
        logging.debug(f"Ignoring unreadable dependency file {deps_file}: {e}")
        return []

    # The "PCH" entry is skipped; pch inputs reach the fingerprint through the pch unit.
    payload = data.get("Data", {}) if isinstance(data, dict) else {}
    return [Path(h) for h in payload.get("Includes", [])]


class FingerprintCalculator:
    """SHA-256 fingerprints over a source, its flags and its headers.

    Header digests are memoized for the lifetime of the calculator, so a
    header shared by many sources is read once per build.
    """

    def __init__(self) -> None:
        self._header_digests: Dict[str, str] = {}
        self._lock = threading.Lock()

    def _digest_file(self, path: Path) -> str:
        key = str(path).lower()
        with self._lock:
            cached = self._header_digests.get(key)
        if cached is not None:
            return cached
        try:
            digest = hashlib.sha256(path.read_bytes()).hexdigest()
        except OSError:
            digest = "missing"
        with self._lock:
            self._header_digests[key] = digest
        return digest

    def fingerprint(
        self,
        source: Path,
        flags: Iterable[str],
        headers: Iterable[Path] = (),
        extra: str = "",
    ) -> str:
        """Fingerprint one compilation.

        Args:
            source: Source file
            flags: Complete compiler flag list
            headers: Headers the source included last time
            extra: Additional input, such as the precompiled header's fingerprint

        Returns:
            Hex digest
        """
        h = hashlib.sha256()
        h.update(Path(source).read_bytes())
        h.update(b"\0flags\0")
        h.update("\0".join(flags).encode("utf-8"))
        h.update(b"\0headers\0")
        for header in sorted({str(p) for p in headers}):
            h.update(header.encode("utf-8"))
            h.update(self._digest_file(Path(header)).encode("ascii"))
        h.update(b"\0extra\0")
        h.update(extra.encode("utf-8"))
        return h.hexdigest()


@dataclass(frozen=True)
class PrecompiledHeader:
    """Precompiled header setup for a build."""

    header_name: str
    pch_file: Path


class MsvcCompiler:
    """Compiles single sources with cl.exe."""

    def __init__(
        self,
        toolchain: ToolchainHandle,
        runner: ToolRunner,
        flags: List[str],
        src_root: Path,
        obj_dir: Path,
        deps_dir: Path,
        work_dir: Path,
        pch: Optional[PrecompiledHeader] = None,
    ):
        """Initialize the compiler.

        Args:
            toolchain: Toolchain providing cl.exe and include directories
            runner: Tool runner
            flags: Flags from build_compile_flags
            src_root: Project source directory; object paths mirror its layout
            obj_dir: Directory for object files
            deps_dir: Directory for /sourceDependencies output
            work_dir: Directory for response files and the PDB
            pch: Precompiled header setup, if the project uses one
        """
        self.toolchain = toolchain
        self.runner = runner
        self.flags = flags
        self.src_root = Path(src_root)
        self.obj_dir = Path(obj_dir)
        self.deps_dir = Path(deps_dir)
        self.work_dir = Path(work_dir)
        self.pch = pch
        self._response_file: Optional[Path] = None
        self._response_lock = threading.Lock()

    def _relative(self, source: Path) -> Path:
        try:
            return Path(source).relative_to(self.src_root)
        except ValueError:
            return Path(Path(source).name)

    def object_path(self, source: Path) -> Path:
        return self.obj_dir / self._relative(source).with_suffix(".obj")

    def deps_path(self, source: Path) -> Path:
        return self.deps_dir / self._relative(source).with_suffix(".json")

    def include_response_file(self) -> Path:
        """Write includes.rsp once per compiler instance."""
        with self._response_lock:
            if self._response_file is None:
                include_dirs = [self.src_root] + list(self.toolchain.include_dirs)
                self._response_file = write_response_file(
                    self.work_dir / "includes.rsp",
                    [f"/I{d}" for d in include_dirs],
                )
            return self._response_file

    def pch_flags(self, create: bool) -> List[str]:
        if self.pch is None:
            return []
        mode = "/Yc" if create else "/Yu"
        return [f"{mode}{self.pch.header_name}", f"/Fp{self.pch.pch_file}"]

    def build_args(self, source: Path, create_pch: bool = False) -> List[str]:
        """Full argument list for compiling one source."""
        object_file = self.object_path(source)
        return (
            list(self.flags)
            + self.pch_flags(create_pch)
            + [
                f"@{self.include_response_file()}",
                f"/Fo{object_file}",
                f"/Fd{self.work_dir / 'vc.pdb'}",
                "/sourceDependencies",
                str(self.deps_path(source)),
                str(source),
            ]
        )

    def compile(self, source: Path, create_pch: bool = False) -> Path:
        """Compile one source.

        Args:
            source: Source file
            create_pch: Compile with /Yc to produce the precompiled header

        Returns:
            Path to the object file

        Raises:
            CompileFailed: If cl.exe fails, with its diagnostics
        """
        object_file = self.object_path(source)
        object_file.parent.mkdir(parents=True, exist_ok=True)
        self.deps_path(source).parent.mkdir(parents=True, exist_ok=True)

        request = ToolRequest(
            program=self.toolchain.cl,
            args=self.build_args(source, create_pch),
            cwd=self.work_dir,
        )
        response: ToolResponse = self.runner.run(request)
        if not response.success:
            raise CompileFailed(
                f"Compilation failed for {Path(source).name} (exit code {response.returncode})",
                source=Path(source),
                diagnostics=response.output,
            )
        return object_file


def default_pch(obj_dir: Path) -> PrecompiledHeader:
    return PrecompiledHeader(header_name=PCH_HEADER_NAME, pch_file=obj_dir / "pch.pch")
