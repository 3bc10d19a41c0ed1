#!/usr/bin/env python3
"""Command line front end for the ksud client."""

from __future__ import annotations

import argparse
import logging
import sys
from typing import Callable, Dict, Optional, Sequence

from ksucli.config import KsuConfig
from ksucli.manager import KsuManager

Handler = Callable[[KsuManager, argparse.Namespace], int]


def _print_out(line: str) -> None:
    print(line, flush=True)


def _print_err(line: str) -> None:
    print(line, file=sys.stderr, flush=True)


def _status(ok: bool) -> int:
    return 0 if ok else 1


# ---------------------------------------------------------------------------
# Command handlers
# ---------------------------------------------------------------------------


def status_command(manager: KsuManager, _: argparse.Namespace) -> int:
    rows = [
        ("root", manager.root_available()),
        ("ab_device", manager.is_ab_device()),
        ("init_boot", manager.is_init_boot()),
        ("overlayfs", manager.overlay_fs_available()),
        ("magisk", manager.has_magisk()),
        ("modules", manager.module_count()),
    ]
    for name, value in rows:
        print(f"{name:10s} {value}")
    return 0


def install_command(manager: KsuManager, _: argparse.Namespace) -> int:
    return _status(manager.install())


def module_command(manager: KsuManager, args: argparse.Namespace) -> int:
    action = args.action
    if action == "list":
        print(manager.list_modules())
        return 0
    if action == "count":
        print(manager.module_count())
        return 0
    if action in ("enable", "disable"):
        return _status(manager.toggle_module(args.target, action == "enable"))
    if action == "uninstall":
        return _status(manager.uninstall_module(args.target))
    return _status(manager.install_module(args.target, None, _print_out, _print_err))


def boot_patch_command(manager: KsuManager, args: argparse.Namespace) -> int:
    outcome: Dict[str, bool] = {}

    def _finish(ready: bool) -> None:
        outcome["reboot"] = ready

    ok = manager.install_boot(args.boot, args.lkm, args.ota, _finish, _print_out, _print_err)
    if outcome.get("reboot"):
        print("- Patched the device; reboot to take effect")
    return _status(ok)


def sepolicy_command(manager: KsuManager, args: argparse.Namespace) -> int:
    if args.action == "check":
        return _status(manager.is_sepolicy_valid(args.value))
    if args.action == "get":
        print(manager.get_sepolicy(args.value))
        return 0
    if args.rules is None:
        _print_err("sepolicy set requires --rules")
        return 2
    return _status(manager.set_sepolicy(args.value, args.rules))


def template_command(manager: KsuManager, args: argparse.Namespace) -> int:
    if args.action == "list":
        for template_id in manager.list_app_profile_templates():
            print(template_id)
        return 0
    if not args.template_id:
        _print_err(f"template {args.action} requires a template id")
        return 2
    if args.action == "get":
        print(manager.get_app_profile_template(args.template_id))
        return 0
    if args.action == "delete":
        return _status(manager.delete_app_profile_template(args.template_id))
    if args.template is None:
        _print_err("template set requires --template")
        return 2
    return _status(manager.set_app_profile_template(args.template_id, args.template))


def reboot_command(manager: KsuManager, args: argparse.Namespace) -> int:
    return _status(manager.reboot(args.reason))


def app_command(manager: KsuManager, args: argparse.Namespace) -> int:
    actions = {
        "stop": manager.force_stop_app,
        "launch": manager.launch_app,
        "restart": manager.restart_app,
    }
    return _status(actions[args.action](args.package))


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="ksucli", description="Drive the ksud daemon")
    parser.add_argument("-v", "--verbose", action="store_true", help="Log session traffic")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("status", help="Show root and partition status").set_defaults(handler=status_command)
    sub.add_parser("install", help="Run ksud install").set_defaults(handler=install_command)

    module = sub.add_parser("module", help="Manage modules")
    module.add_argument("action", choices=["list", "count", "enable", "disable", "uninstall", "install"])
    module.add_argument("target", nargs="?", help="Module id, or archive path for install")
    module.set_defaults(handler=module_command)

    boot = sub.add_parser("boot-patch", help="Patch a boot image with kernelsu.ko")
    boot.add_argument("--lkm", required=True, help="Path to kernelsu.ko")
    boot.add_argument("--boot", help="Boot image to patch; omit to patch the device")
    boot.add_argument("--ota", action="store_true", help="Produce an OTA compatible image")
    boot.set_defaults(handler=boot_patch_command)

    sepolicy = sub.add_parser("sepolicy", help="Check or edit app sepolicy rules")
    sepolicy.add_argument("action", choices=["check", "get", "set"])
    sepolicy.add_argument("value", help="Rules for check, package name for get/set")
    sepolicy.add_argument("--rules", help="Rules for set")
    sepolicy.set_defaults(handler=sepolicy_command)

    template = sub.add_parser("template", help="Manage app profile templates")
    template.add_argument("action", choices=["list", "get", "set", "delete"])
    template.add_argument("template_id", nargs="?")
    template.add_argument("--template", help="Template body for set")
    template.set_defaults(handler=template_command)

    reboot = sub.add_parser("reboot", help="Reboot the device")
    reboot.add_argument("reason", nargs="?", default="", help="e.g. recovery, bootloader")
    reboot.set_defaults(handler=reboot_command)

    app = sub.add_parser("app", help="Stop, launch or restart an app")
    app.add_argument("action", choices=["stop", "launch", "restart"])
    app.add_argument("package")
    app.set_defaults(handler=app_command)
    return parser


def main(argv: Optional[Sequence[str]] = None) -> int:
    args_list = list(sys.argv[1:] if argv is None else argv)
    parser = build_parser()
    parsed = parser.parse_args(args_list)

    config = KsuConfig.from_env()
    if parsed.verbose:
        config.debug = True
    logging.basicConfig(
        level=logging.DEBUG if config.debug else logging.INFO,
        format="[%(asctime)s] %(levelname)s: %(message)s",
    )

    if parsed.command == "module" and parsed.action not in ("list", "count") and not parsed.target:
        parser.error(f"module {parsed.action} requires a target")

    manager = KsuManager(config)
    try:
        return parsed.handler(manager, parsed)
    finally:
        manager.close()


if __name__ == "__main__":
    sys.exit(main())
