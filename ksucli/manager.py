"""High level ksud operations and device status probes."""

from __future__ import annotations

import json
import logging
import time
from typing import List, Optional

from ksucli.config import KsuConfig
from ksucli.dispatcher import CommandDispatcher, CommandResult, compose_command
from ksucli.invocation_log import InvocationLogWriter
from ksucli.session import LineSink, Session, SessionFactory, SessionRegistry
from ksucli.staging import FinishCallback, InputSource, StagingManager

logger = logging.getLogger("ksu.manager")

INIT_BOOT_BLOCK = "/dev/block/by-name/init_boot"


def _parse_bool(text: str) -> bool:
    return text.strip().lower() == "true"


class KsuManager:
    """Facade used by the UI layer; every method returns a plain value."""

    def __init__(
        self,
        config: KsuConfig,
        *,
        registry: Optional[SessionRegistry] = None,
        dispatcher: Optional[CommandDispatcher] = None,
        staging: Optional[StagingManager] = None,
    ) -> None:
        self.config = config
        self.registry = registry or SessionRegistry(SessionFactory(config))
        if dispatcher is None:
            dispatcher = CommandDispatcher(config, invocation_log=self._open_invocation_log(config))
        self.dispatcher = dispatcher
        self.staging = staging or StagingManager(config, self.registry.factory, self.dispatcher)

    @staticmethod
    def _open_invocation_log(config: KsuConfig) -> Optional[InvocationLogWriter]:
        if not config.invocation_log:
            return None
        try:
            return InvocationLogWriter(config.invocation_log)
        except OSError as exc:
            logger.warning("invocation log disabled: %s", exc)
            return None

    @classmethod
    def from_env(cls) -> "KsuManager":
        return cls(KsuConfig.from_env())

    def close(self) -> None:
        self.registry.close()

    # ------------------------------------------------------------------
    def _session(self, global_mnt: bool = False) -> Session:
        return self.registry.get_session(global_mnt)

    def _ksud(self, subcommand: str, *args: object) -> CommandResult:
        return self.dispatcher.run_sync(self._session(), subcommand, args)

    def _shell(self, command_line: str, *, global_mnt: bool = False) -> CommandResult:
        return self.dispatcher.run_shell(self._session(global_mnt), command_line)

    def _getprop(self, name: str) -> str:
        result = self._shell(compose_command("getprop", name))
        return result.output.strip() if result.success else ""

    # ------------------------------------------------------------------
    # daemon setup and modules
    # ------------------------------------------------------------------
    def install(self) -> bool:
        start = time.monotonic()
        result = self._ksud("install")
        cost_ms = (time.monotonic() - start) * 1000.0
        logger.warning("install result: %s, cost: %.0fms", result.success, cost_ms)
        return result.success

    def list_modules(self) -> str:
        output = self._ksud("module", "list").output
        return output if output.strip() else "[]"

    def module_count(self) -> int:
        try:
            modules = json.loads(self.list_modules())
        except (ValueError, RecursionError):
            return 0
        return len(modules) if isinstance(modules, list) else 0

    def toggle_module(self, module_id: str, enable: bool) -> bool:
        action = "enable" if enable else "disable"
        result = self._ksud("module", action, module_id)
        logger.info("module %s %s result: %s", action, module_id, result.success)
        return result.success

    def uninstall_module(self, module_id: str) -> bool:
        result = self._ksud("module", "uninstall", module_id)
        logger.info("uninstall module %s result: %s", module_id, result.success)
        return result.success

    def install_module(
        self,
        source: Optional[InputSource],
        on_finish: Optional[FinishCallback],
        on_stdout: LineSink,
        on_stderr: LineSink,
    ) -> bool:
        return self.staging.install_module(source, on_stdout, on_stderr, on_finish)

    def install_boot(
        self,
        boot_source: Optional[InputSource],
        lkm_source: Optional[InputSource],
        ota: bool,
        on_finish: FinishCallback,
        on_stdout: LineSink,
        on_stderr: LineSink,
    ) -> bool:
        return self.staging.install_boot(
            boot_source, lkm_source, ota, on_finish, on_stdout, on_stderr
        )

    # ------------------------------------------------------------------
    # device control
    # ------------------------------------------------------------------
    def reboot(self, reason: str = "") -> bool:
        if reason == "recovery":
            # KEYCODE_POWER hides the misleading "Factory data reset" prompt
            self._shell(compose_command("/system/bin/input", "keyevent", "26"))
        extra = [reason] if reason else []
        command_line = " || ".join(
            [
                compose_command("/system/bin/svc", "power", "reboot", *extra),
                compose_command("/system/bin/reboot", *extra),
            ]
        )
        return self._shell(command_line).success

    def force_stop_app(self, package_name: str) -> bool:
        result = self._shell(compose_command("am", "force-stop", package_name))
        logger.info("force stop %s result: %s", package_name, result.exit_code)
        return result.success

    def launch_app(self, package_name: str) -> bool:
        result = self._shell(
            compose_command(
                "monkey", "-p", package_name, "-c", "android.intent.category.LAUNCHER", "1"
            )
        )
        logger.info("launch %s result: %s", package_name, result.exit_code)
        return result.success

    def restart_app(self, package_name: str) -> bool:
        self.force_stop_app(package_name)
        return self.launch_app(package_name)

    # ------------------------------------------------------------------
    # status probes
    # ------------------------------------------------------------------
    def root_available(self) -> bool:
        return self._session().is_root

    def is_ab_device(self) -> bool:
        return _parse_bool(self._getprop("ro.build.ab_update"))

    def is_init_boot(self) -> bool:
        """Whether the device boots the ramdisk from ``init_boot``.

        With root the block device is checked directly; without it the first
        API level of the product is compared to the configured threshold.
        """

        session = self._session()
        if session.is_root:
            suffix = "_a" if self.is_ab_device() else ""
            block = f"{INIT_BOOT_BLOCK}{suffix}"
            return self.dispatcher.run_shell(session, compose_command("test", "-e", block)).success
        # https://source.android.com/docs/core/architecture/partitions/generic-boot
        try:
            first_api_level = int(self._getprop("ro.product.first_api_level"))
        except ValueError:
            return False
        return first_api_level >= self.config.init_boot_api_level

    def overlay_fs_available(self) -> bool:
        command_line = compose_command("cat", "/proc/filesystems") + " | " + compose_command("grep", "overlay")
        return self._shell(command_line).success

    def has_magisk(self) -> bool:
        result = self._shell(compose_command("which", "magisk"), global_mnt=True)
        logger.info("has magisk: %s", result.success)
        return result.success

    # ------------------------------------------------------------------
    # sepolicy and app profile templates
    # ------------------------------------------------------------------
    def is_sepolicy_valid(self, rules: Optional[str]) -> bool:
        if rules is None:
            return True
        return self._ksud("sepolicy", "check", rules).success

    def get_sepolicy(self, package_name: str) -> str:
        result = self._ksud("profile", "get-sepolicy", package_name)
        logger.info("code: %s, out: %s, err: %s", result.exit_code, result.stdout, result.stderr)
        return result.output

    def set_sepolicy(self, package_name: str, rules: str) -> bool:
        result = self._ksud("profile", "set-sepolicy", package_name, rules)
        logger.info("set sepolicy result: %s", result.exit_code)
        return result.success

    def list_app_profile_templates(self) -> List[str]:
        return list(self._ksud("profile", "list-templates").stdout)

    def get_app_profile_template(self, template_id: str) -> str:
        return self._ksud("profile", "get-template", template_id).output

    def set_app_profile_template(self, template_id: str, template: str) -> bool:
        return self._ksud("profile", "set-template", template_id, template).success

    def delete_app_profile_template(self, template_id: str) -> bool:
        return self._ksud("profile", "delete-template", template_id).success


__all__ = ["KsuManager", "INIT_BOOT_BLOCK"]
