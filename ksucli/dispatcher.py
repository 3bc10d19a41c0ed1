"""Compose ksud invocations and run them on interpreter sessions."""

from __future__ import annotations

import logging
import shlex
import time
from dataclasses import dataclass
from typing import List, Optional, Sequence, Tuple

from ksucli.config import KsuConfig
from ksucli.invocation_log import InvocationLogWriter
from ksucli.session import LineSink, Session, SessionError

logger = logging.getLogger("ksu.dispatcher")

# Exit code reported when the session could not run the job at all.
SESSION_FAILURE = -1


def compose_command(*parts: object) -> str:
    """Quote every part so each one reaches the program as a single word."""

    return " ".join(shlex.quote(str(part)) for part in parts)


@dataclass(frozen=True)
class CommandResult:
    """Outcome of one job: exit code plus captured output lines."""

    exit_code: int
    stdout: Tuple[str, ...] = ()
    stderr: Tuple[str, ...] = ()

    @property
    def success(self) -> bool:
        return self.exit_code == 0

    @property
    def output(self) -> str:
        return "\n".join(self.stdout)


class CommandDispatcher:
    """Request/response adapter between callers and the ksud daemon."""

    def __init__(
        self,
        config: KsuConfig,
        *,
        invocation_log: Optional[InvocationLogWriter] = None,
    ) -> None:
        self.config = config
        self.invocation_log = invocation_log

    # ------------------------------------------------------------------
    def daemon_command(self, subcommand: str, args: Sequence[object] = ()) -> str:
        """Return ``<daemon> <subcommand words> <args>`` with every token quoted."""

        return compose_command(self.config.daemon_path, *subcommand.split(), *args)

    def run_sync(
        self,
        session: Session,
        subcommand: str,
        args: Sequence[object] = (),
    ) -> CommandResult:
        return self.run_shell(session, self.daemon_command(subcommand, args))

    def run_streaming(
        self,
        session: Session,
        subcommand: str,
        args: Sequence[object],
        on_stdout: LineSink,
        on_stderr: LineSink,
    ) -> bool:
        """Run a daemon subcommand, forwarding each output line as it arrives.

        Returns the daemon's success flag once the job has finished.  Lines
        already delivered to the sinks are not retracted on failure.
        """

        command_line = self.daemon_command(subcommand, args)
        exit_code = self._execute(session, command_line, on_stdout, on_stderr, streamed=True)
        return exit_code == 0

    def run_shell(self, session: Session, command_line: str) -> CommandResult:
        """Run an already composed command line and buffer its output."""

        stdout: List[str] = []
        stderr: List[str] = []
        exit_code = self._execute(session, command_line, stdout.append, stderr.append, streamed=False)
        return CommandResult(exit_code=exit_code, stdout=tuple(stdout), stderr=tuple(stderr))

    # ------------------------------------------------------------------
    def _execute(
        self,
        session: Session,
        command_line: str,
        on_stdout: LineSink,
        on_stderr: LineSink,
        *,
        streamed: bool,
    ) -> int:
        start = time.monotonic()
        try:
            exit_code = session.run(command_line, on_stdout, on_stderr)
        except SessionError as exc:
            logger.warning("session could not run %r: %s", command_line, exc)
            exit_code = SESSION_FAILURE
        duration_ms = (time.monotonic() - start) * 1000.0
        self._record(session, command_line, exit_code, duration_ms, streamed)
        return exit_code

    def _record(
        self,
        session: Session,
        command_line: str,
        exit_code: int,
        duration_ms: float,
        streamed: bool,
    ) -> None:
        if self.invocation_log is None:
            return
        try:
            self.invocation_log.record_invocation(
                command=command_line,
                exit_code=exit_code,
                duration_ms=duration_ms,
                streamed=streamed,
                privilege=session.privilege.value,
                mount_mode=session.mount_mode.value,
            )
        except OSError as exc:
            logger.warning("Failed to record invocation: %s", exc)


__all__ = ["CommandDispatcher", "CommandResult", "SESSION_FAILURE", "compose_command"]
