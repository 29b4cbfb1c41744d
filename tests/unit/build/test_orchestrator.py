"""Unit tests for multi-target orchestration, run, debug and kill."""

from unittest.mock import MagicMock, patch

import pytest

from absbuild.build import pipeline as pipeline_module
from absbuild.build.orchestrator import BuildOrchestrator, BuildOutputError
from absbuild.build.target_resolver import NoCompatibleTarget, UnknownTarget
from absbuild.config import BuildMode, ProjectConfigError
from absbuild.errors import EXIT_OUTPUT, EXIT_TOOLCHAIN
from absbuild.packages.cache import BuildLayout
from absbuild.packages.platform_utils import Arch, Platform
from absbuild.packages.toolchain import ToolchainNotFound


@pytest.fixture
def locator(fake_toolchain):
    mock = MagicMock()
    mock.resolve.return_value = fake_toolchain
    return mock


def make_orchestrator(project, host, locator, runner, **kwargs):
    layout = BuildLayout(project.project_dir, build_root=project.project_dir / "abs")
    return BuildOrchestrator(
        project, host, locator=locator, layout=layout, runner=runner, show_progress=False, **kwargs
    )


class TestBuild:
    def test_default_builds_host_target(self, make_project, host_win64, locator, fake_runner):
        orchestrator = make_orchestrator(make_project(), host_win64, locator, fake_runner)

        report = orchestrator.build()

        assert report.success
        assert [r.target.name for r in report.results] == ["win64"]
        locator.resolve.assert_called_once_with(Arch.X64)

    def test_all_builds_every_target(self, make_project, host_win64, locator, fake_runner):
        orchestrator = make_orchestrator(make_project(), host_win64, locator, fake_runner)

        report = orchestrator.build("all", BuildMode.RELEASE)

        assert report.success
        assert [r.target.name for r in report.results] == ["win32", "win64"]
        assert {a.binary.parent.name for a in report.artifacts} == {"win32", "win64"}
        assert all(a.mode is BuildMode.RELEASE for a in report.artifacts)

    def test_one_failing_target_does_not_stop_others(
        self, make_project, host_win64, locator, fake_runner, fake_toolchain
    ):
        def resolve(arch):
            if arch is Arch.X86:
                raise ToolchainNotFound("No MSVC build tools for x86 were found.")
            return fake_toolchain

        locator.resolve.side_effect = resolve
        orchestrator = make_orchestrator(make_project(), host_win64, locator, fake_runner)

        report = orchestrator.build("all")

        assert not report.success
        assert [r.target.name for r in report.failures] == ["win32"]
        assert [a.target for a in report.artifacts] == [Platform.WIN64]
        assert report.first_error().exit_code == EXIT_TOOLCHAIN

    def test_file_system_error_in_one_target_keeps_the_others(
        self, make_project, host_win64, locator, fake_runner, monkeypatch
    ):
        real_copy_assets = pipeline_module.copy_assets

        def copy_assets(assets_dir, output_dir, reserved=()):
            if output_dir.name == "win32":
                raise OSError(28, "No space left on device")
            return real_copy_assets(assets_dir, output_dir, reserved)

        monkeypatch.setattr(pipeline_module, "copy_assets", copy_assets)
        orchestrator = make_orchestrator(make_project(), host_win64, locator, fake_runner)

        report = orchestrator.build("all")

        assert [r.target.name for r in report.failures] == ["win32"]
        assert [a.target for a in report.artifacts] == [Platform.WIN64]
        error = report.first_error()
        assert isinstance(error, BuildOutputError)
        assert error.exit_code == EXIT_OUTPUT
        assert "No space left on device" in str(error)

    def test_unknown_target_raises(self, make_project, host_win64, locator, fake_runner):
        orchestrator = make_orchestrator(make_project(targets=["win64"]), host_win64, locator, fake_runner)

        with pytest.raises(UnknownTarget):
            orchestrator.build("win32")

    def test_strict_manifest_makes_mt_failure_fatal(self, make_project, host_win64, locator, fake_runner):
        fake_runner.mt_returncode = 31
        orchestrator = make_orchestrator(make_project(), host_win64, locator, fake_runner, strict_manifest=True)

        report = orchestrator.build()

        assert not report.success
        assert report.first_error().exit_code == 8

    def test_clean_after_build(self, make_project, host_win64, locator, fake_runner):
        orchestrator = make_orchestrator(make_project(), host_win64, locator, fake_runner)
        orchestrator.build("all")

        removed = orchestrator.clean(target=Platform.WIN32)

        assert [p.name for p in removed] == ["win32"]
        assert orchestrator.store.get_artifact(Platform.WIN64, BuildMode.DEBUG) is not None


class TestRunAndDebug:
    def test_run_console_app_returns_exit_code(self, make_project, host_win64, locator, fake_runner):
        orchestrator = make_orchestrator(make_project(), host_win64, locator, fake_runner)

        with patch("absbuild.build.orchestrator.subprocess.run") as mock_run:
            mock_run.return_value.returncode = 7
            assert orchestrator.run() == 7

        cmd = mock_run.call_args[0][0]
        assert cmd[0].endswith("hello.exe")

    def test_run_gui_app_is_detached(self, make_project, host_win64, locator, fake_runner):
        orchestrator = make_orchestrator(make_project(output_type="gui_app"), host_win64, locator, fake_runner)

        with patch("absbuild.build.orchestrator.subprocess.Popen") as mock_popen:
            assert orchestrator.run() == 0

        mock_popen.assert_called_once()

    def test_run_library_is_rejected(self, make_project, host_win64, locator, fake_runner):
        orchestrator = make_orchestrator(make_project(output_type="dynamic_library"), host_win64, locator, fake_runner)

        with pytest.raises(ProjectConfigError):
            orchestrator.run()
        assert fake_runner.requests == []

    def test_run_all_is_rejected(self, make_project, host_win64, locator, fake_runner):
        orchestrator = make_orchestrator(make_project(), host_win64, locator, fake_runner)

        with pytest.raises(NoCompatibleTarget):
            orchestrator.run("all")

    def test_debug_launches_session(self, make_project, host_win64, locator, fake_runner, fake_toolchain):
        sessions = MagicMock()
        orchestrator = make_orchestrator(
            make_project(), host_win64, locator, fake_runner, session_manager=sessions
        )

        handle = orchestrator.debug()

        assert handle is sessions.launch.return_value
        artifact, toolchain = sessions.launch.call_args[0]
        assert artifact.binary.name == "hello.exe"
        assert toolchain is fake_toolchain

    def test_kill_delegates_to_session_manager(self, make_project, host_win64, locator, fake_runner):
        sessions = MagicMock()
        sessions.kill.return_value = 3
        orchestrator = make_orchestrator(
            make_project(), host_win64, locator, fake_runner, session_manager=sessions
        )

        assert orchestrator.kill() == 3
