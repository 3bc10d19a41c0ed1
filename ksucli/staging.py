"""Stage caller supplied files in the scratch directory and hand them to ksud."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Callable, Iterator, Optional, Union

from ksucli.config import KsuConfig
from ksucli.dispatcher import CommandDispatcher
from ksucli.session import LineSink, SessionFactory

logger = logging.getLogger("ksu.staging")

MODULE_FILENAME = "module.zip"
LKM_FILENAME = "kernelsu.ko"
BOOT_FILENAME = "boot.img"

InputSource = Union[BinaryIO, str, "os.PathLike[str]"]
FinishCallback = Callable[[bool], None]


class StagingError(RuntimeError):
    """Raised when an input cannot be copied into the scratch directory."""


def _describe(source: Optional[InputSource]) -> str:
    if source is None:
        return "<missing>"
    if isinstance(source, (str, os.PathLike)):
        return os.fspath(source)
    return str(getattr(source, "name", None) or type(source).__name__)


@dataclass
class StagedFile:
    """Scratch copy of an input; removed once the daemon call returns."""

    source: str
    path: Path

    @property
    def exists(self) -> bool:
        return self.path.exists()

    def delete(self) -> None:
        try:
            self.path.unlink()
        except FileNotFoundError:
            pass
        except OSError as exc:
            logger.error("Failed to delete staged file %s: %s", self.path, exc)


class StagingManager:
    """Copy inputs to fixed scratch paths, run ksud on them, clean up.

    The scratch filenames are fixed per role, so only one module install and
    one boot patch may run at a time; a second call overwrites the first
    one's staged file.
    """

    def __init__(
        self,
        config: KsuConfig,
        factory: SessionFactory,
        dispatcher: CommandDispatcher,
    ) -> None:
        self.config = config
        self.factory = factory
        self.dispatcher = dispatcher

    # ------------------------------------------------------------------
    @property
    def scratch_dir(self) -> Path:
        return self.config.cache_dir

    @contextlib.contextmanager
    def stage(self, source: Optional[InputSource], filename: str) -> Iterator[StagedFile]:
        """Copy *source* to ``<scratch>/<filename>`` for the duration of the block.

        Raises :class:`StagingError` if nothing usable could be copied.  The
        staged file, complete or partial, is deleted on every exit path.
        """

        staged = StagedFile(source=_describe(source), path=self.scratch_dir.resolve() / filename)
        try:
            self._copy(source, staged.path)
            yield staged
        finally:
            staged.delete()

    def _copy(self, source: Optional[InputSource], destination: Path) -> None:
        if source is None:
            raise StagingError(f"{destination.name} not found")
        try:
            destination.parent.mkdir(parents=True, exist_ok=True)
            with contextlib.ExitStack() as stack:
                if isinstance(source, (str, os.PathLike)):
                    reader = stack.enter_context(open(source, "rb"))
                else:
                    reader = source
                with destination.open("wb") as writer:
                    shutil.copyfileobj(reader, writer)
        except (OSError, ValueError, TypeError) as exc:
            # TypeError: a text-mode stream handed in where bytes are expected.
            raise StagingError(f"Failed to copy {_describe(source)}: {exc}") from exc
        if not destination.exists() or destination.stat().st_size == 0:
            raise StagingError(f"{destination.name} not found")

    # ------------------------------------------------------------------
    def install_module(
        self,
        source: Optional[InputSource],
        on_stdout: LineSink,
        on_stderr: LineSink,
        on_finish: Optional[FinishCallback] = None,
    ) -> bool:
        success = False
        try:
            with self.stage(source, MODULE_FILENAME) as staged:
                # A dedicated session keeps this long job off the shared ones.
                session = self.factory.create_session()
                try:
                    success = self.dispatcher.run_streaming(
                        session, "module install", [staged.path], on_stdout, on_stderr
                    )
                finally:
                    session.close()
        except StagingError as exc:
            logger.error("install module %s aborted: %s", _describe(source), exc)
            on_stdout(f"- {exc}")

        logger.info("install module %s result: %s", _describe(source), success)
        if on_finish is not None:
            on_finish(success)
        return success

    def install_boot(
        self,
        boot_source: Optional[InputSource],
        lkm_source: Optional[InputSource],
        ota: bool,
        on_finish: FinishCallback,
        on_stdout: LineSink,
        on_stderr: LineSink,
    ) -> bool:
        """Patch a boot image (or the live device) with the given kernel module.

        ``on_finish`` receives ``True`` only for a successful direct install,
        i.e. when no boot image was supplied; a patched image file needs no
        reboot.
        """

        success = False
        try:
            with contextlib.ExitStack() as stack:
                lkm = stack.enter_context(self.stage(lkm_source, LKM_FILENAME))
                boot = None
                if boot_source is not None:
                    boot = stack.enter_context(self.stage(boot_source, BOOT_FILENAME))

                args = ["-m", lkm.path, "--magiskboot", self.config.magiskboot_path]
                if boot is None:
                    # no boot.img, force install to the device
                    args.append("-f")
                else:
                    args.extend(["-b", boot.path])
                if ota:
                    args.append("-u")
                args.extend(["-o", self.config.downloads_dir])

                session = self.factory.create_session()
                try:
                    success = self.dispatcher.run_streaming(
                        session, "boot-patch", args, on_stdout, on_stderr
                    )
                finally:
                    session.close()
        except StagingError as exc:
            logger.error("install boot %s aborted: %s", _describe(lkm_source), exc)
            on_stdout(f"- {exc}")
            on_finish(False)
            return False

        logger.info("install boot %s result: %s", _describe(lkm_source), success)
        on_finish(boot_source is None and success)
        return success


__all__ = [
    "BOOT_FILENAME",
    "LKM_FILENAME",
    "MODULE_FILENAME",
    "StagedFile",
    "StagingError",
    "StagingManager",
]
