"""Unit tests for the absbuild command line."""

import json
from unittest.mock import MagicMock, patch

import pytest

from absbuild import cli
from absbuild.build.orchestrator import BuildOrchestrator
from absbuild.config import BuildMode, OutputType
from absbuild.packages.cache import BuildLayout


@pytest.fixture
def fake_orchestrator(make_project, host_win64, fake_runner, fake_toolchain, monkeypatch):
    """Make build commands use the fake toolchain; returns a project factory."""

    def install(**project_kwargs):
        project = make_project(**project_kwargs)
        locator = MagicMock()
        locator.resolve.return_value = fake_toolchain

        def create(args):
            return BuildOrchestrator(
                project,
                host_win64,
                locator=locator,
                layout=BuildLayout(project.project_dir, build_root=project.project_dir / "abs"),
                runner=fake_runner,
                jobs=args.jobs,
                show_progress=False,
                strict_manifest=args.strict_manifest,
            )

        monkeypatch.setattr(cli, "_create_orchestrator", create)
        return project

    return install


def run_main(argv):
    with pytest.raises(SystemExit) as exc_info:
        cli.main(argv)
    return exc_info.value.code


class TestParser:
    def test_build_defaults(self):
        args = cli.create_parser().parse_args(["build"])
        assert args.mode is BuildMode.DEBUG
        assert args.target is None
        assert args.jobs is None
        assert not args.strict_manifest

    def test_build_options(self):
        args = cli.create_parser().parse_args(
            ["build", "Release", "-t", "all", "-j", "4", "--strict-manifest", "--no-progress"]
        )
        assert args.mode is BuildMode.RELEASE
        assert args.target == "all"
        assert args.jobs == 4
        assert args.strict_manifest
        assert args.no_progress

    def test_invalid_mode(self, capsys):
        assert run_main(["build", "fast"]) == 2
        assert "invalid mode 'fast'" in capsys.readouterr().err

    def test_invalid_jobs(self):
        assert run_main(["build", "-j", "0"]) == 2

    def test_init_output_type(self):
        args = cli.create_parser().parse_args(["init", "demo", "-o", "gui_app"])
        assert args.output_type is OutputType.GUI_APP

    def test_no_command_prints_help(self, capsys):
        assert run_main([]) == 0
        assert "usage: absbuild" in capsys.readouterr().out


class TestInitCommand:
    def test_init_creates_project(self, tmp_path, capsys):
        project_dir = tmp_path / "demo"

        assert run_main(["init", str(project_dir), "--output-type", "gui_app"]) == 0

        data = json.loads((project_dir / "abs.json").read_text())
        assert data["name"] == "demo"
        assert data["output_type"] == "gui_app"
        assert (project_dir / "src" / "main.cpp").exists()
        assert "Created gui_app project 'demo'" in capsys.readouterr().out

    def test_init_twice_fails(self, tmp_path):
        assert run_main(["init", str(tmp_path)]) == 0
        assert run_main(["init", str(tmp_path)]) == 2


class TestBuildCommand:
    def test_build_success(self, fake_orchestrator, capsys):
        project = fake_orchestrator()

        assert run_main(["build", "-C", str(project.project_dir)]) == 0

        out = capsys.readouterr().out
        assert "win64 (x64) [debug]" in out
        assert "1/1 source(s) compiled" in out

    def test_build_all(self, fake_orchestrator, capsys):
        project = fake_orchestrator()

        assert run_main(["build", "release", "--target", "all", "-C", str(project.project_dir)]) == 0

        out = capsys.readouterr().out
        assert "win32 (x86) [release]" in out
        assert "win64 (x64) [release]" in out

    def test_compile_error_exit_code(self, fake_orchestrator, capsys):
        project = fake_orchestrator(sources={"main.cpp": "#error broken"})

        assert run_main(["build", "-C", str(project.project_dir)]) == 5
        assert "C1189" in capsys.readouterr().out

    def test_unknown_target_exit_code(self, fake_orchestrator):
        project = fake_orchestrator(targets=["win64"])
        assert run_main(["build", "-t", "win32", "-C", str(project.project_dir)]) == 3

    def test_manifest_warning_is_printed(self, fake_orchestrator, fake_runner, capsys):
        project = fake_orchestrator()
        fake_runner.mt_returncode = 31

        assert run_main(["build", "-C", str(project.project_dir)]) == 0
        assert "manifest not embedded" in capsys.readouterr().out

    def test_strict_manifest_exit_code(self, fake_orchestrator, fake_runner):
        project = fake_orchestrator()
        fake_runner.mt_returncode = 31

        assert run_main(["build", "--strict-manifest", "-C", str(project.project_dir)]) == 8

    def test_missing_project_file(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ABS_HOST_PLATFORM", "win64")
        assert run_main(["build", "-C", str(tmp_path)]) == 2

    def test_missing_directory(self, tmp_path):
        assert run_main(["build", "-C", str(tmp_path / "nope")]) == 2


class TestOtherCommands:
    def test_run_returns_program_exit_code(self, fake_orchestrator):
        project = fake_orchestrator()

        with patch("absbuild.build.orchestrator.subprocess.run") as mock_run:
            mock_run.return_value.returncode = 42
            assert run_main(["run", "-C", str(project.project_dir)]) == 42

    def test_run_library_fails(self, fake_orchestrator):
        project = fake_orchestrator(output_type="static_library")
        assert run_main(["run", "-C", str(project.project_dir)]) == 2

    def test_debug_without_debugger(self, fake_orchestrator, capsys):
        project = fake_orchestrator()

        assert run_main(["debug", "-C", str(project.project_dir)]) == 7
        assert "devenv.exe" in capsys.readouterr().out

    def test_kill_without_session(self, tmp_path, monkeypatch):
        monkeypatch.delenv("ABS_BUILD_DIR", raising=False)
        assert run_main(["kill", "-C", str(tmp_path)]) == 7

    def test_clean_target(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("ABS_BUILD_DIR", raising=False)
        (tmp_path / "abs" / "debug" / "win32" / "obj").mkdir(parents=True)
        (tmp_path / "abs" / "debug" / "win64" / "obj").mkdir(parents=True)

        assert run_main(["clean", "-t", "win32", "-C", str(tmp_path)]) == 0

        assert not (tmp_path / "abs" / "debug" / "win32").exists()
        assert (tmp_path / "abs" / "debug" / "win64").exists()
        assert "Removed" in capsys.readouterr().out

    def test_clean_unknown_target(self, tmp_path):
        assert run_main(["clean", "-t", "arm64", "-C", str(tmp_path)]) == 3

    def test_clean_nothing(self, tmp_path, monkeypatch, capsys):
        monkeypatch.delenv("ABS_BUILD_DIR", raising=False)
        assert run_main(["clean", "-C", str(tmp_path)]) == 0
        assert "Nothing to clean" in capsys.readouterr().out
