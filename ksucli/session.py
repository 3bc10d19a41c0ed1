"""Long-lived interpreter sessions used to talk to the ksud daemon.

A :class:`Session` owns one interpreter process (the daemon's ``su`` mode or a
plain ``sh``) and runs jobs on it one at a time.  Every job writes to its own
pair of FIFOs in a private per-session directory, so anything a job leaves
running in the background can never reach the output of a later job:

* the command runs in a brace group with stdin redirected from ``/dev/null``;
* the group's stdout and stderr go to the job's FIFOs, each ending with the
  per-session marker (``$?`` follows it on stdout);
* one reader thread per FIFO delivers lines until it sees the marker;
* the interpreter's own stdout only carries the marker that closes the job.
"""

from __future__ import annotations

import enum
import logging
import os
import shlex
import shutil
import subprocess
import tempfile
import threading
import uuid
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence

from ksucli.config import KsuConfig

LineSink = Callable[[str], None]

logger = logging.getLogger("ksu.session")

# Bounded wait for readers of a job that was abandoned after a timeout or crash.
ABANDONED_READER_WAIT = 1.0


class SessionError(RuntimeError):
    """Raised when an interpreter session cannot start or accept a job."""


class Privilege(str, enum.Enum):
    ROOT = "root"
    USER = "user"


class MountMode(str, enum.Enum):
    DEFAULT = "default"
    GLOBAL = "global"

    @classmethod
    def select(cls, global_mnt: bool) -> "MountMode":
        return cls.GLOBAL if global_mnt else cls.DEFAULT


def _deliver(sink: Optional[LineSink], line: str, stream: str) -> None:
    if sink is None:
        return
    try:
        sink(line)
    except Exception:
        logger.exception("%s sink failed for line %r", stream, line)


class _JobChannel:
    """One stream of one job, read from a FIFO only that job writes to."""

    def __init__(self, path: Path, stream: str, sink: Optional[LineSink], marker: str) -> None:
        self.path = path
        self.stream = stream
        self.sink = sink
        self.marker = marker
        self.status: Optional[int] = None
        self.opened = threading.Event()
        self.thread = threading.Thread(target=self._pump, daemon=True)

    def start(self) -> None:
        os.mkfifo(self.path, 0o600)
        self.thread.start()

    def _pump(self) -> None:
        try:
            # Blocks until the interpreter opens the write end.
            pipe = open(self.path, "r", encoding="utf-8", errors="replace")
        except OSError as exc:
            logger.debug("%s channel %s unavailable: %s", self.stream, self.path, exc)
            return
        with pipe:
            self.opened.set()
            while True:
                line = pipe.readline()
                if not line:
                    return
                line = line.rstrip("\n")
                index = line.find(self.marker)
                if index < 0:
                    _deliver(self.sink, line, self.stream)
                    continue
                # Output without a trailing newline shares a line with the marker.
                if index:
                    _deliver(self.sink, line[:index], self.stream)
                tail = line[index + len(self.marker):].strip()
                try:
                    self.status = int(tail) if tail else 0
                except ValueError:
                    self.status = -1
                # Closing the read end here cuts off late writers left in the background.
                return

    def release(self) -> None:
        """Wake a reader still waiting for a writer that will never come."""

        while self.thread.is_alive() and not self.opened.is_set():
            try:
                fd = os.open(self.path, os.O_WRONLY | os.O_NONBLOCK)
            except OSError:
                pass
            else:
                os.close(fd)
            self.thread.join(0.05)

    def remove(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass


class Session:
    """An interpreter process that executes shell jobs sequentially."""

    def __init__(
        self,
        argv: Sequence[str],
        *,
        mount_mode: MountMode = MountMode.DEFAULT,
        verbose: bool = False,
    ) -> None:
        self.argv = [str(part) for part in argv]
        self.mount_mode = mount_mode
        self.privilege = Privilege.USER
        self.verbose = verbose
        self._process: Optional[subprocess.Popen] = None
        self._workdir: Optional[Path] = None
        self._jobs = 0
        self._marker = f"__ksucli_{uuid.uuid4().hex}__"
        self._lock = threading.RLock()

    def __repr__(self) -> str:
        state = "alive" if self.is_alive else "closed"
        return (
            f"Session(argv={self.argv!r}, privilege={self.privilege.value}, "
            f"mount_mode={self.mount_mode.value}, {state})"
        )

    # ------------------------------------------------------------------
    @property
    def is_root(self) -> bool:
        return self.privilege is Privilege.ROOT

    @property
    def is_alive(self) -> bool:
        process = self._process
        return process is not None and process.poll() is None

    # ------------------------------------------------------------------
    def open(self, *, timeout: Optional[float] = None) -> "Session":
        """Start the interpreter and probe its uid.

        Raises :class:`SessionError` when the process cannot be spawned or
        exits before answering the probe within *timeout* seconds.
        """

        with self._lock:
            if self.is_alive:
                return self
            self._remove_workdir()
            try:
                self._workdir = Path(tempfile.mkdtemp(prefix="ksucli-"))
            except OSError as exc:
                raise SessionError(f"Unable to create job directory: {exc}") from exc
            try:
                self._process = subprocess.Popen(
                    self.argv,
                    stdin=subprocess.PIPE,
                    stdout=subprocess.PIPE,
                    stderr=subprocess.STDOUT,
                    text=True,
                    encoding="utf-8",
                    errors="replace",
                    bufsize=1,
                )
            except OSError as exc:
                self._remove_workdir()
                raise SessionError(f"Unable to start {self.argv[0]}: {exc}") from exc

            uid_lines: List[str] = []
            try:
                exit_code = self.run("id -u", uid_lines.append, timeout=timeout)
            except SessionError:
                self.close()
                raise
            if exit_code != 0:
                self.close()
                raise SessionError(f"Startup probe failed with exit code {exit_code}")
            uid = uid_lines[0].strip() if uid_lines else ""
            self.privilege = Privilege.ROOT if uid == "0" else Privilege.USER
            return self

    def run(
        self,
        command: str,
        on_stdout: Optional[LineSink] = None,
        on_stderr: Optional[LineSink] = None,
        *,
        timeout: Optional[float] = None,
    ) -> int:
        """Run *command* and return its exit code.

        Lines are handed to the sinks as they are read.  Raises
        :class:`SessionError` if the interpreter is gone or dies mid-job.
        """

        with self._lock:
            process = self._process
            if process is None or process.poll() is not None or self._workdir is None:
                raise SessionError("Session is not open")
            if self.verbose:
                logger.debug("[%s] exec: %s", self.mount_mode.value, command)

            self._jobs += 1
            prefix = self._workdir / f"job{self._jobs}"
            channels = [
                _JobChannel(prefix.with_suffix(".out"), "stdout", on_stdout, self._marker),
                _JobChannel(prefix.with_suffix(".err"), "stderr", on_stderr, self._marker),
            ]
            try:
                return self._run_job(process, command, channels, timeout)
            finally:
                for channel in channels:
                    channel.remove()

    def _run_job(
        self,
        process: subprocess.Popen,
        command: str,
        channels: List[_JobChannel],
        timeout: Optional[float],
    ) -> int:
        out, err = channels
        try:
            for channel in channels:
                channel.start()
        except OSError as exc:
            self._abandon(channels)
            raise SessionError(f"Unable to create job channel: {exc}") from exc

        marker = self._marker
        script = (
            "{\n"
            f"{{\n{command}\n}} </dev/null\n"
            f"echo {marker} $?\n"
            f"echo {marker} >&2\n"
            f"}} >{shlex.quote(str(out.path))} 2>{shlex.quote(str(err.path))}\n"
            f"echo {marker}\n"
        )
        try:
            process.stdin.write(script)
            process.stdin.flush()
        except (OSError, ValueError) as exc:
            self._terminate(process)
            self._abandon(channels)
            raise SessionError(f"Unable to submit job: {exc}") from exc

        finished = threading.Event()
        waiter = threading.Thread(
            target=self._await_marker, args=(process.stdout, finished), daemon=True
        )
        waiter.start()
        waiter.join(timeout)
        if waiter.is_alive():
            self._kill(process)
            waiter.join()
            self._close_pipes(process)
            self._abandon(channels)
            raise SessionError(f"Job did not finish within {timeout}s")
        if not finished.is_set():
            self._terminate(process)
            self._abandon(channels)
            raise SessionError("Interpreter exited while running a job")

        # Both markers were written before the closing one, so the readers end.
        for channel in channels:
            channel.release()
            channel.thread.join()
        if out.status is None:
            raise SessionError("Job finished without reporting an exit status")
        return out.status

    def _await_marker(self, pipe, finished: threading.Event) -> None:
        while True:
            line = pipe.readline()
            if not line:
                return
            if self._marker in line:
                finished.set()
                return
            logger.debug("[%s] interpreter: %s", self.mount_mode.value, line.rstrip("\n"))

    @staticmethod
    def _abandon(channels: List[_JobChannel]) -> None:
        for channel in channels:
            channel.release()
            channel.thread.join(ABANDONED_READER_WAIT)

    # ------------------------------------------------------------------
    @staticmethod
    def _kill(process: subprocess.Popen) -> None:
        if process.poll() is None:
            process.kill()
        process.wait()

    @staticmethod
    def _close_pipes(process: subprocess.Popen) -> None:
        for pipe in (process.stdin, process.stdout, process.stderr):
            if pipe is None:
                continue
            try:
                pipe.close()
            except OSError:
                pass

    def _terminate(self, process: subprocess.Popen) -> None:
        self._kill(process)
        self._close_pipes(process)

    def _remove_workdir(self) -> None:
        if self._workdir is not None:
            shutil.rmtree(self._workdir, ignore_errors=True)
            self._workdir = None

    def close(self) -> None:
        """Ask the interpreter to exit, release its pipes and job directory."""

        with self._lock:
            process = self._process
            self._process = None
            if process is not None:
                if process.poll() is None:
                    try:
                        process.stdin.write("exit\n")
                        process.stdin.close()
                    except (OSError, ValueError):
                        pass
                    try:
                        process.wait(timeout=5)
                    except subprocess.TimeoutExpired:
                        self._kill(process)
                self._close_pipes(process)
            self._remove_workdir()


class SessionFactory:
    """Build daemon ``su`` sessions, degrading to a plain shell on failure."""

    def __init__(self, config: KsuConfig) -> None:
        self.config = config

    def privileged_argv(self, mount_mode: MountMode) -> List[str]:
        argv = [str(self.config.daemon_path), "debug", "su"]
        if mount_mode is MountMode.GLOBAL:
            argv.append("-g")
        return argv

    def fallback_argv(self) -> List[str]:
        return [self.config.fallback_shell]

    def create_session(self, global_mnt: bool = False) -> Session:
        mount_mode = MountMode.select(global_mnt)
        session = Session(
            self.privileged_argv(mount_mode),
            mount_mode=mount_mode,
            verbose=self.config.debug,
        )
        try:
            return session.open(timeout=self.config.shell_timeout)
        except SessionError as exc:
            logger.error("su failed: %s", exc)

        fallback = Session(self.fallback_argv(), mount_mode=mount_mode, verbose=self.config.debug)
        try:
            fallback.open(timeout=self.config.shell_timeout)
        except SessionError as exc:
            # Jobs on an unopened session report failure instead of raising.
            logger.error("fallback shell %s failed: %s", self.config.fallback_shell, exc)
        return fallback


class SessionRegistry:
    """Process-scoped holder of the default and global-mount sessions."""

    def __init__(self, factory: SessionFactory) -> None:
        self._factory = factory
        self._sessions: Dict[MountMode, Session] = {}
        # One lock per mode: a pending elevation for one never blocks the other.
        self._locks = {mode: threading.Lock() for mode in MountMode}

    @property
    def factory(self) -> SessionFactory:
        return self._factory

    def get_session(self, global_mnt: bool = False) -> Session:
        mount_mode = MountMode.select(global_mnt)
        with self._locks[mount_mode]:
            session = self._sessions.get(mount_mode)
            if session is None:
                session = self._factory.create_session(global_mnt)
                self._sessions[mount_mode] = session
            return session

    def close(self) -> None:
        sessions = []
        for mode, lock in self._locks.items():
            with lock:
                session = self._sessions.pop(mode, None)
            if session is not None:
                sessions.append(session)
        for session in sessions:
            session.close()


__all__ = [
    "LineSink",
    "MountMode",
    "Privilege",
    "Session",
    "SessionError",
    "SessionFactory",
    "SessionRegistry",
]
