"""Unit tests for link.exe and lib.exe invocation."""

import pytest

from absbuild.build.linker import LinkFailed, MsvcLinker, build_link_flags
from absbuild.config import BuildMode
from absbuild.packages.platform_utils import Arch


class TestBuildLinkFlags:
    @pytest.mark.parametrize(
        "output_type,expected",
        [
            ("console_app", "/SUBSYSTEM:CONSOLE"),
            ("gui_app", "/SUBSYSTEM:WINDOWS"),
            ("dynamic_library", "/DLL"),
        ],
    )
    def test_output_type_flag(self, make_project, output_type, expected):
        flags = build_link_flags(make_project(output_type=output_type), BuildMode.DEBUG, Arch.X64)
        assert expected in flags
        assert "/MANIFEST:NO" in flags
        assert "/MACHINE:X64" in flags

    def test_release_optimizations(self, make_project):
        flags = build_link_flags(make_project(), BuildMode.RELEASE, Arch.X86)
        assert "/MACHINE:X86" in flags
        assert "/OPT:REF" in flags

    def test_static_library(self, make_project):
        flags = build_link_flags(make_project(output_type="static_library"), BuildMode.RELEASE, Arch.X64)
        assert flags == ["/nologo", "/MACHINE:X64"]


class TestMsvcLinker:
    def test_links_with_response_file(self, tmp_path, make_project, fake_toolchain, fake_runner):
        project = make_project(link_libraries=["user32.lib"])
        linker = MsvcLinker(project, fake_toolchain, fake_runner, tmp_path / "work")
        objects = [tmp_path / "a.obj", tmp_path / "b.obj"]
        output = tmp_path / "out" / "hello.exe"

        result = linker.link(objects, output, ["/nologo"])

        assert output.exists()
        assert result.tool == fake_toolchain.link
        lines = (tmp_path / "work" / "link.rsp").read_text(encoding="utf-8").splitlines()
        assert lines[0] == "/nologo"
        assert f"/LIBPATH:{fake_toolchain.lib_dirs[0]}" in lines
        assert "user32.lib" in lines
        assert lines[-3:] == [str(objects[0]), str(objects[1]), f"/OUT:{output}"]

    def test_static_library_uses_lib_exe(self, tmp_path, make_project, fake_toolchain, fake_runner):
        project = make_project(output_type="static_library", link_libraries=["user32.lib"])
        linker = MsvcLinker(project, fake_toolchain, fake_runner, tmp_path / "work")

        linker.link([tmp_path / "a.obj"], tmp_path / "hello.lib", ["/nologo"])

        assert fake_runner.tool_calls("lib.exe")
        lines = (tmp_path / "work" / "link.rsp").read_text(encoding="utf-8").splitlines()
        assert "user32.lib" not in lines
        assert not any(line.startswith("/LIBPATH") for line in lines)

    def test_link_failure(self, tmp_path, make_project, fake_toolchain, fake_runner):
        fake_runner.link_returncode = 1120
        linker = MsvcLinker(make_project(), fake_toolchain, fake_runner, tmp_path / "work")

        with pytest.raises(LinkFailed) as exc_info:
            linker.link([tmp_path / "a.obj"], tmp_path / "hello.exe", ["/nologo"])

        assert "LNK1104" in exc_info.value.diagnostics
        assert exc_info.value.exit_code == 6
