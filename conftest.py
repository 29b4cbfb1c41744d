"""
Pytest configuration for absbuild test suite.

This configuration enables the --full flag to run integration tests and
provides a fake MSVC toolchain so the build pipeline can be exercised on
any host.
"""

import json
import re
from pathlib import Path
from typing import Dict, List, Optional

import pytest

from absbuild.build.tool_runner import ToolRequest, ToolResponse, ToolRunner
from absbuild.config.project_config import ProjectConfig
from absbuild.packages.platform_utils import Arch, HostPlatform, Platform
from absbuild.packages.toolchain import ToolchainHandle

INCLUDE_RE = re.compile(r'^\s*#\s*include\s+"([^"]+)"', re.MULTILINE)


def pytest_addoption(parser):
    """Add custom command-line options."""
    parser.addoption(
        "--full",
        action="store_true",
        default=False,
        help="Run full test suite including integration tests (slow)",
    )


def pytest_configure(config):
    """Configure pytest based on command-line options."""
    if config.getoption("--full"):
        # Remove the default marker expression that excludes integration tests
        markexpr = config.getoption("-m", "")
        if markexpr == "not integration":
            config.option.markexpr = ""


def _expand_args(args: List[str]) -> List[str]:
    expanded = []
    for arg in args:
        if arg.startswith("@"):
            with open(arg[1:], encoding="utf-8") as f:
                expanded.extend(line.strip().strip('"') for line in f if line.strip())
        else:
            expanded.append(arg)
    return expanded


class FakeToolRunner(ToolRunner):
    """Stands in for cl.exe, link.exe, lib.exe and mt.exe.

    cl: writes the /Fo object and a /sourceDependencies file listing the
        quoted includes found next to the source; fails on "#error".
    link/lib: writes the /OUT file unless `link_returncode` is non-zero.
    mt: records the manifest and returns `mt_returncode`.
    """

    def __init__(self):
        self.requests: List[ToolRequest] = []
        self.compiled: List[Path] = []
        self.links: List[List[str]] = []
        self.manifests: List[str] = []
        self.link_returncode = 0
        self.mt_returncode = 0

    def run(self, request: ToolRequest) -> ToolResponse:
        self.requests.append(request)
        args = _expand_args(request.args)
        tool = request.tool_name.lower()
        if tool == "cl.exe":
            return self._cl(args)
        if tool in ("link.exe", "lib.exe"):
            return self._link(args)
        if tool == "mt.exe":
            return self._mt(args)
        return ToolResponse(1, stderr=f"unknown tool {tool}")

    def _cl(self, args: List[str]) -> ToolResponse:
        source = Path(args[-1])
        object_file = Path(next(a[3:] for a in args if a.startswith("/Fo")))
        deps_file = Path(args[args.index("/sourceDependencies") + 1])
        text = source.read_text(encoding="utf-8")
        self.compiled.append(source)

        if "#error" in text:
            return ToolResponse(2, stdout=f"{source}(1): fatal error C1189: #error:  intentional failure")

        includes = []
        for name in INCLUDE_RE.findall(text):
            header = source.parent / name
            if header.exists():
                includes.append(str(header.resolve()))

        object_file.parent.mkdir(parents=True, exist_ok=True)
        object_file.write_text(f"obj:{source.name}")
        deps_file.parent.mkdir(parents=True, exist_ok=True)
        deps_file.write_text(json.dumps({"Version": "1.2", "Data": {"Source": str(source), "Includes": includes}}))

        pch = [a[3:] for a in args if a.startswith("/Fp")]
        if pch and any(a.startswith("/Yc") for a in args):
            Path(pch[0]).write_text("pch")
        return ToolResponse(0, stdout=source.name)

    def _link(self, args: List[str]) -> ToolResponse:
        self.links.append(args)
        if self.link_returncode != 0:
            return ToolResponse(self.link_returncode, stdout="LINK : fatal error LNK1104: cannot open file 'missing.lib'")
        output = Path(next(a[5:] for a in args if a.upper().startswith("/OUT:")))
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text("binary")
        return ToolResponse(0)

    def _mt(self, args: List[str]) -> ToolResponse:
        manifest_file = Path(args[args.index("-manifest") + 1])
        self.manifests.append(manifest_file.read_text(encoding="utf-8"))
        if self.mt_returncode != 0:
            return ToolResponse(self.mt_returncode, stdout="mt.exe : general error c101008d: Failed to write the updated manifest")
        return ToolResponse(0)

    def tool_calls(self, tool: str) -> List[ToolRequest]:
        return [r for r in self.requests if r.tool_name.lower() == tool]


@pytest.fixture
def fake_runner() -> FakeToolRunner:
    return FakeToolRunner()


@pytest.fixture
def host_win64() -> HostPlatform:
    return HostPlatform.for_platform(Platform.WIN64)


@pytest.fixture
def fake_toolchain(tmp_path) -> ToolchainHandle:
    root = tmp_path / "toolchain"
    root.mkdir()
    return ToolchainHandle(
        architecture=Arch.X64,
        msvc_version="14.38.33130",
        sdk_version="10.0.22621.0",
        cl=root / "cl.exe",
        link=root / "link.exe",
        lib=root / "lib.exe",
        mt=root / "mt.exe",
        debugger=None,
        include_dirs=(root / "include",),
        lib_dirs=(root / "lib",),
    )


@pytest.fixture
def make_project(tmp_path):
    """Factory writing abs.json plus sources and returning the ProjectConfig."""

    def _make(
        sources: Optional[Dict[str, str]] = None,
        name: str = "hello",
        output_type: str = "console_app",
        targets: Optional[List[str]] = None,
        **extra,
    ) -> ProjectConfig:
        project_dir = tmp_path / "project"
        project_dir.mkdir(exist_ok=True)
        data = {
            "name": name,
            "output_type": output_type,
            "cxx_options": {},
            "link_libraries": [],
            "supported_targets": targets or ["win32", "win64"],
            "dependencies": [],
        }
        data.update(extra)
        (project_dir / "abs.json").write_text(json.dumps(data), encoding="utf-8")
        for rel, content in (sources or {"main.cpp": "int main() { return 0; }\n"}).items():
            path = project_dir / "src" / rel
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(content, encoding="utf-8")
        return ProjectConfig.load(project_dir, host=HostPlatform.for_platform(Platform.WIN64))

    return _make
