"""Unit tests for ArtifactStore state, cleaning and subtree locking."""

import os
import threading
import time
from pathlib import Path

import psutil
import pytest

from absbuild.build.artifact_store import (
    ArtifactStore,
    BuildArtifact,
    BuildLockTimeout,
    CompilationUnit,
)
from absbuild.config import BuildMode
from absbuild.packages.cache import BuildLayout
from absbuild.packages.platform_utils import Platform

WIN32 = Platform.WIN32
WIN64 = Platform.WIN64
DEBUG = BuildMode.DEBUG
RELEASE = BuildMode.RELEASE


@pytest.fixture
def store(tmp_path):
    return ArtifactStore(BuildLayout(tmp_path, build_root=tmp_path / "abs"), lock_timeout=1.0)


def make_artifact(tmp_path: Path, target=WIN64, mode=DEBUG) -> BuildArtifact:
    source = tmp_path / "src" / "main.cpp"
    return BuildArtifact(
        binary=tmp_path / "abs" / mode.value / target.value / "hello.exe",
        target=target,
        mode=mode,
        manifest="default console_app manifest",
        units=[CompilationUnit(source, tmp_path / "main.obj", "abc123", reused=False)],
    )


def populate(store: ArtifactStore) -> None:
    for mode in BuildMode:
        for target in Platform:
            store.layout.ensure_target_dirs(mode.value, target.value)


class TestFingerprints:
    def test_set_and_get(self, store, tmp_path):
        source = tmp_path / "main.cpp"
        assert store.get_fingerprint(source, WIN64, DEBUG) is None

        store.set_fingerprint(source, WIN64, DEBUG, "f1")

        assert store.get_fingerprint(source, WIN64, DEBUG) == "f1"

    def test_fingerprints_are_per_target_and_mode(self, store, tmp_path):
        source = tmp_path / "main.cpp"
        store.set_fingerprint(source, WIN64, DEBUG, "f1")

        assert store.get_fingerprint(source, WIN32, DEBUG) is None
        assert store.get_fingerprint(source, WIN64, RELEASE) is None

    def test_unreadable_state_is_discarded(self, store, tmp_path):
        state_file = store.layout.get_state_file("debug", "win64")
        state_file.parent.mkdir(parents=True)
        state_file.write_text("{ broken")

        assert store.get_fingerprint(tmp_path / "main.cpp", WIN64, DEBUG) is None

    def test_concurrent_writers_keep_every_entry(self, store, tmp_path):
        sources = [tmp_path / f"s{i}.cpp" for i in range(20)]
        threads = [
            threading.Thread(target=store.set_fingerprint, args=(s, WIN64, DEBUG, s.stem)) for s in sources
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert all(store.get_fingerprint(s, WIN64, DEBUG) == s.stem for s in sources)


class TestArtifactRecords:
    def test_record_and_get(self, store, tmp_path):
        artifact = make_artifact(tmp_path)

        store.record_artifact(artifact, link_fingerprint="link1")
        loaded = store.get_artifact(WIN64, DEBUG)

        assert loaded.binary == artifact.binary
        assert loaded.target is WIN64
        assert loaded.mode is DEBUG
        assert loaded.units[0].fingerprint == "abc123"
        assert loaded.recompiled_count == 1
        assert store.get_link_fingerprint(WIN64, DEBUG) == "link1"

    def test_record_supersedes_previous(self, store, tmp_path):
        store.record_artifact(make_artifact(tmp_path), link_fingerprint="old")
        newer = make_artifact(tmp_path)
        newer.manifest = "user manifest app.manifest"

        store.record_artifact(newer, link_fingerprint="new")

        assert store.get_artifact(WIN64, DEBUG).manifest == "user manifest app.manifest"
        assert store.get_link_fingerprint(WIN64, DEBUG) == "new"

    def test_forget_keeps_fingerprints(self, store, tmp_path):
        source = tmp_path / "main.cpp"
        store.set_fingerprint(source, WIN64, DEBUG, "f1")
        store.record_artifact(make_artifact(tmp_path), link_fingerprint="link1")

        store.forget_artifact(WIN64, DEBUG)

        assert store.get_artifact(WIN64, DEBUG) is None
        assert store.get_link_fingerprint(WIN64, DEBUG) is None
        assert store.get_fingerprint(source, WIN64, DEBUG) == "f1"

    def test_malformed_record_is_ignored(self, store, tmp_path):
        store.record_artifact(make_artifact(tmp_path))
        state_file = store.layout.get_state_file("debug", "win64")
        state_file.write_text('{"artifact": {"binary": "x.exe", "target": "win99", "mode": "debug"}}')

        assert store.get_artifact(WIN64, DEBUG) is None


class TestClean:
    def test_clean_everything(self, store):
        populate(store)

        removed = store.clean()

        assert removed == [store.layout.build_root]
        assert not store.layout.build_root.exists()

    def test_clean_target_removes_both_modes(self, store):
        populate(store)

        removed = store.clean(target=WIN32)

        assert len(removed) == 2
        assert not store.layout.get_target_dir("debug", "win32").exists()
        assert not store.layout.get_target_dir("release", "win32").exists()
        assert store.layout.get_target_dir("debug", "win64").exists()

    def test_clean_mode_removes_every_target(self, store):
        populate(store)

        store.clean(mode=RELEASE)

        assert not store.layout.get_mode_dir("release").exists()
        assert store.layout.get_target_dir("debug", "win32").exists()

    def test_clean_single_pair(self, store):
        populate(store)

        store.clean(target=WIN64, mode=DEBUG)

        assert not store.layout.get_target_dir("debug", "win64").exists()
        assert store.layout.get_target_dir("release", "win64").exists()

    def test_clean_nothing_built(self, store):
        assert store.clean() == []

    def test_clean_times_out_while_a_build_holds_the_lock(self, store):
        populate(store)
        state_file = store.layout.get_state_file("debug", "win64")
        state_file.write_text("{}")
        lock_file = store.layout.get_lock_file("debug", "win64")

        with store.lock(WIN64, DEBUG):
            with pytest.raises(BuildLockTimeout):
                ArtifactStore(store.layout, lock_timeout=0.2).clean(WIN64, DEBUG)

            assert state_file.exists()
            assert lock_file.read_text() == str(os.getpid())

    def test_clean_waits_for_running_build(self, store):
        populate(store)
        target_dir = store.layout.get_target_dir("debug", "win64")
        entered = threading.Event()
        events = []

        def build():
            with store.lock(WIN64, DEBUG):
                entered.set()
                time.sleep(0.2)
                events.append("build-done")

        thread = threading.Thread(target=build)
        thread.start()
        entered.wait()
        removed = store.clean(WIN64, DEBUG)
        events.append("cleaned")
        thread.join()

        assert events == ["build-done", "cleaned"]
        assert removed == [target_dir]
        assert not target_dir.exists()


class TestSubtreeLock:
    def test_lock_file_holds_pid_and_is_released(self, store):
        lock_file = store.layout.get_lock_file("debug", "win64")

        with store.lock(WIN64, DEBUG):
            assert lock_file.read_text() == str(os.getpid())

        assert not lock_file.exists()

    def test_stale_lock_from_dead_process_is_reclaimed(self, store):
        lock_file = store.layout.get_lock_file("debug", "win64")
        lock_file.parent.mkdir(parents=True)
        dead_pid = 999999
        while psutil.pid_exists(dead_pid):
            dead_pid += 1
        lock_file.write_text(str(dead_pid))

        with store.lock(WIN64, DEBUG, timeout=1.0):
            assert lock_file.read_text() == str(os.getpid())

    def test_stale_lock_retaken_by_live_process_is_kept(self, store, monkeypatch):
        lock_file = store.layout.get_lock_file("debug", "win64")
        lock_file.parent.mkdir(parents=True)
        dead_pid = 999999
        while psutil.pid_exists(dead_pid):
            dead_pid += 1
        lock_file.write_text(str(dead_pid))
        live_pid = os.getppid()
        real_pid_exists = psutil.pid_exists
        checked = []

        def pid_exists(pid):
            # Another process reclaims the lock right after the owner check.
            if not checked:
                checked.append(pid)
                lock_file.write_text(str(live_pid))
                return False
            return real_pid_exists(pid)

        monkeypatch.setattr("absbuild.build.artifact_store.psutil.pid_exists", pid_exists)

        with pytest.raises(BuildLockTimeout):
            with store.lock(WIN64, DEBUG, timeout=0.3):
                pass

        assert checked == [dead_pid]
        assert lock_file.read_text() == str(live_pid)
        assert list(lock_file.parent.glob("*.stale")) == []

    def test_live_foreign_lock_times_out(self, store):
        lock_file = store.layout.get_lock_file("debug", "win64")
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text(str(os.getppid()))

        with pytest.raises(BuildLockTimeout, match="locked by process"):
            with store.lock(WIN64, DEBUG, timeout=0.3):
                pass

        assert lock_file.exists()

    def test_old_empty_lock_file_is_reclaimed(self, store):
        lock_file = store.layout.get_lock_file("debug", "win64")
        lock_file.parent.mkdir(parents=True)
        lock_file.write_text("")
        old = time.time() - 60
        os.utime(lock_file, (old, old))

        with store.lock(WIN64, DEBUG, timeout=1.0):
            pass

    def test_second_thread_waits_for_first(self, store):
        events = []
        entered = threading.Event()

        def first():
            with store.lock(WIN64, DEBUG):
                entered.set()
                time.sleep(0.2)
                events.append("first-done")

        def second():
            entered.wait()
            with store.lock(WIN64, DEBUG):
                events.append("second")

        threads = [threading.Thread(target=first), threading.Thread(target=second)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert events == ["first-done", "second"]

    def test_different_subtrees_do_not_block(self, store):
        with store.lock(WIN64, DEBUG):
            with store.lock(WIN32, DEBUG, timeout=0.2):
                pass

    def test_timeout_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ABS_LOCK_TIMEOUT", "12.5")
        assert ArtifactStore(BuildLayout(tmp_path)).lock_timeout == 12.5

    def test_invalid_timeout_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("ABS_LOCK_TIMEOUT", "soon")
        assert ArtifactStore(BuildLayout(tmp_path)).lock_timeout == 300.0
