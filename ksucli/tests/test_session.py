from __future__ import annotations

import os
import threading
import time
from pathlib import Path
from typing import List

import pytest

from ksucli.config import KsuConfig
from ksucli.session import (
    MountMode,
    Privilege,
    Session,
    SessionError,
    SessionFactory,
    SessionRegistry,
)


def _write_script(path: Path, body: str) -> Path:
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text("#!/bin/sh\n" + body, encoding="utf-8")
    path.chmod(0o755)
    return path


def _su_daemon(path: Path, record: Path) -> Path:
    return _write_script(
        path,
        f'printf "%s\\n" "$@" > "{record}"\n'
        'if [ "$1" = "debug" ]; then\n'
        "    exec /bin/sh\n"
        "fi\n",
    )


def _config(tmp_path: Path, daemon: Path) -> KsuConfig:
    return KsuConfig(
        daemon_path=daemon,
        magiskboot_path=tmp_path / "magiskboot",
        cache_dir=tmp_path / "cache",
        downloads_dir=tmp_path / "Download",
        shell_timeout=10.0,
    )


def test_session_runs_jobs_and_reports_exit_codes() -> None:
    session = Session(["sh"]).open(timeout=10)
    try:
        out: List[str] = []
        err: List[str] = []
        assert session.run("echo hello; echo oops >&2", out.append, err.append) == 0
        assert out == ["hello"]
        assert err == ["oops"]

        assert session.run("false") == 1
        assert session.run("(exit 7)") == 7

        second: List[str] = []
        assert session.run("echo again", second.append) == 0
        assert second == ["again"]
    finally:
        session.close()


def test_session_keeps_shell_state_between_jobs() -> None:
    session = Session(["sh"]).open(timeout=10)
    try:
        assert session.run("KSU_VALUE=42") == 0
        out: List[str] = []
        session.run('echo "$KSU_VALUE"', out.append)
        assert out == ["42"]
    finally:
        session.close()


def test_session_delivers_output_without_trailing_newline() -> None:
    session = Session(["sh"]).open(timeout=10)
    try:
        out: List[str] = []
        assert session.run("printf partial", out.append) == 0
        assert out == ["partial"]
    finally:
        session.close()


def test_background_output_never_reaches_the_next_job() -> None:
    session = Session(["sh"]).open(timeout=10)
    try:
        first: List[str] = []
        second: List[str] = []
        assert session.run("(sleep 0.3; echo late; echo late >&2) &", first.append, first.append) == 0
        time.sleep(0.6)
        assert session.run("echo next", second.append, second.append) == 0
        assert first == []
        assert second == ["next"]
    finally:
        session.close()


def test_session_removes_job_directory_on_close() -> None:
    session = Session(["sh"]).open(timeout=10)
    workdir = session._workdir
    assert workdir is not None
    session.run("true")
    assert list(workdir.iterdir()) == []

    session.close()

    assert not workdir.exists()


def test_session_privilege_matches_uid() -> None:
    session = Session(["sh"]).open(timeout=10)
    try:
        expected = Privilege.ROOT if os.getuid() == 0 else Privilege.USER
        assert session.privilege is expected
        assert session.is_root is (expected is Privilege.ROOT)
    finally:
        session.close()


def test_session_raises_when_interpreter_exits_mid_job() -> None:
    session = Session(["sh"]).open(timeout=10)
    try:
        with pytest.raises(SessionError):
            session.run("exit 5")
        assert not session.is_alive
        with pytest.raises(SessionError):
            session.run("echo unreachable")
    finally:
        session.close()


def test_session_open_times_out_when_probe_is_not_answered() -> None:
    session = Session(["sleep", "30"])
    with pytest.raises(SessionError):
        session.open(timeout=0.5)
    assert not session.is_alive


def test_closed_session_rejects_jobs() -> None:
    session = Session(["sh"]).open(timeout=10)
    session.close()
    assert not session.is_alive
    with pytest.raises(SessionError):
        session.run("true")


def test_factory_builds_privileged_session_with_bootstrap_flags(tmp_path: Path) -> None:
    record = tmp_path / "argv.txt"
    daemon = _su_daemon(tmp_path / "bin" / "ksud", record)
    factory = SessionFactory(_config(tmp_path, daemon))

    session = factory.create_session()
    try:
        assert session.is_alive
        assert session.argv == [str(daemon), "debug", "su"]
        assert session.mount_mode is MountMode.DEFAULT
        assert record.read_text(encoding="utf-8").split() == ["debug", "su"]
    finally:
        session.close()

    global_session = factory.create_session(True)
    try:
        assert global_session.argv == [str(daemon), "debug", "su", "-g"]
        assert global_session.mount_mode is MountMode.GLOBAL
        assert record.read_text(encoding="utf-8").split() == ["debug", "su", "-g"]
    finally:
        global_session.close()


def test_factory_falls_back_when_daemon_is_missing(tmp_path: Path) -> None:
    factory = SessionFactory(_config(tmp_path, tmp_path / "missing" / "ksud"))

    session = factory.create_session()
    try:
        assert session.argv == ["sh"]
        assert session.is_alive
        out: List[str] = []
        assert session.run("echo fallback", out.append) == 0
        assert out == ["fallback"]
    finally:
        session.close()


def test_factory_falls_back_when_elevation_is_denied(tmp_path: Path) -> None:
    daemon = _write_script(tmp_path / "bin" / "ksud", 'echo "permission denied" >&2\nexit 1\n')
    factory = SessionFactory(_config(tmp_path, daemon))

    session = factory.create_session(True)
    try:
        assert session.argv == ["sh"]
        assert session.mount_mode is MountMode.GLOBAL
        assert session.is_alive
    finally:
        session.close()


def test_factory_returns_unopened_session_when_fallback_fails(tmp_path: Path) -> None:
    config = _config(tmp_path, tmp_path / "missing" / "ksud")
    config.fallback_shell = str(tmp_path / "missing" / "sh")
    session = SessionFactory(config).create_session()

    assert not session.is_alive
    with pytest.raises(SessionError):
        session.run("true")


class _StubSession:
    def __init__(self, mount_mode: MountMode) -> None:
        self.mount_mode = mount_mode
        self.closed = False

    def close(self) -> None:
        self.closed = True


class _CountingFactory:
    def __init__(self) -> None:
        self.calls: List[bool] = []
        self._lock = threading.Lock()

    def create_session(self, global_mnt: bool = False) -> _StubSession:
        with self._lock:
            self.calls.append(global_mnt)
        time.sleep(0.05)
        return _StubSession(MountMode.select(global_mnt))


def test_registry_creates_one_session_per_mode_under_contention() -> None:
    factory = _CountingFactory()
    registry = SessionRegistry(factory)  # type: ignore[arg-type]
    workers = 16
    barrier = threading.Barrier(workers)
    results: List[object] = [None] * workers

    def _acquire(index: int) -> None:
        barrier.wait()
        results[index] = registry.get_session()

    threads = [threading.Thread(target=_acquire, args=(i,)) for i in range(workers)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert factory.calls == [False]
    assert all(result is results[0] for result in results)

    global_session = registry.get_session(True)
    assert global_session is registry.get_session(True)
    assert global_session is not results[0]
    assert factory.calls == [False, True]


class _SlowDefaultFactory(_CountingFactory):
    """Default-mode creation waits until the test lets it through."""

    def __init__(self) -> None:
        super().__init__()
        self.entered = threading.Event()
        self.release = threading.Event()

    def create_session(self, global_mnt: bool = False) -> _StubSession:
        if not global_mnt:
            self.entered.set()
            self.release.wait(5)
        return super().create_session(global_mnt)


def test_registry_global_acquire_is_not_blocked_by_pending_default() -> None:
    factory = _SlowDefaultFactory()
    registry = SessionRegistry(factory)  # type: ignore[arg-type]
    defaults: List[object] = []
    waiters = [
        threading.Thread(target=lambda: defaults.append(registry.get_session()))
        for _ in range(2)
    ]
    for thread in waiters:
        thread.start()
    assert factory.entered.wait(5)

    global_session = registry.get_session(True)

    assert global_session.mount_mode is MountMode.GLOBAL
    assert defaults == []
    factory.release.set()
    for thread in waiters:
        thread.join(5)
    assert len(defaults) == 2 and defaults[0] is defaults[1]
    assert sorted(factory.calls) == [False, True]


def test_registry_close_releases_sessions() -> None:
    factory = _CountingFactory()
    registry = SessionRegistry(factory)  # type: ignore[arg-type]
    default = registry.get_session()
    global_session = registry.get_session(True)

    registry.close()

    assert default.closed and global_session.closed
