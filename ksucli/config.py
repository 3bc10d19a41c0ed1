"""Environment driven configuration for the ksud client."""

from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional

DAEMON_FILENAME = "libksud.so"
MAGISKBOOT_FILENAME = "libmagiskboot.so"

DEFAULT_NATIVE_LIB_DIR = Path("/data/adb/ksu/lib")
DEFAULT_DOWNLOADS_DIR = Path("/storage/emulated/0/Download")
DEFAULT_SHELL_TIMEOUT = 20.0
# Android 13 (TIRAMISU) is the first API level launching with init_boot.
DEFAULT_INIT_BOOT_API_LEVEL = 33


def _default_cache_dir() -> Path:
    return Path.home() / ".cache" / "ksucli"


def _parse_int(value: Optional[str], default: int) -> int:
    if not value:
        return default
    try:
        parsed = int(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _parse_float(value: Optional[str], default: float) -> float:
    if not value:
        return default
    try:
        parsed = float(value)
    except ValueError:
        return default
    return parsed if parsed > 0 else default


def _parse_flag(value: Optional[str]) -> bool:
    return (value or "").strip().lower() in ("1", "true", "yes", "on")


@dataclass
class KsuConfig:
    """Paths and tunables shared by sessions, the dispatcher and staging."""

    daemon_path: Path
    magiskboot_path: Path
    cache_dir: Path
    downloads_dir: Path
    fallback_shell: str = "sh"
    shell_timeout: float = DEFAULT_SHELL_TIMEOUT
    init_boot_api_level: int = DEFAULT_INIT_BOOT_API_LEVEL
    invocation_log: Optional[Path] = None
    debug: bool = False

    # ------------------------------------------------------------------
    @classmethod
    def for_native_lib_dir(cls, native_lib_dir: Path, **overrides: object) -> "KsuConfig":
        """Build a config whose binaries live in *native_lib_dir*."""

        values = {
            "daemon_path": native_lib_dir / DAEMON_FILENAME,
            "magiskboot_path": native_lib_dir / MAGISKBOOT_FILENAME,
            "cache_dir": _default_cache_dir(),
            "downloads_dir": DEFAULT_DOWNLOADS_DIR,
        }
        values.update(overrides)
        return cls(**values)  # type: ignore[arg-type]

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "KsuConfig":
        env = os.environ if environ is None else environ
        lib_dir = Path(env.get("KSU_NATIVE_LIB_DIR") or DEFAULT_NATIVE_LIB_DIR)
        log_path = env.get("KSU_INVOCATION_LOG")
        return cls(
            daemon_path=Path(env.get("KSU_DAEMON_PATH") or lib_dir / DAEMON_FILENAME),
            magiskboot_path=Path(env.get("KSU_MAGISKBOOT_PATH") or lib_dir / MAGISKBOOT_FILENAME),
            cache_dir=Path(env.get("KSU_CACHE_DIR") or _default_cache_dir()),
            downloads_dir=Path(env.get("KSU_DOWNLOADS_DIR") or DEFAULT_DOWNLOADS_DIR),
            fallback_shell=env.get("KSU_FALLBACK_SHELL") or "sh",
            shell_timeout=_parse_float(env.get("KSU_SHELL_TIMEOUT"), DEFAULT_SHELL_TIMEOUT),
            init_boot_api_level=_parse_int(
                env.get("KSU_INIT_BOOT_API_LEVEL"), DEFAULT_INIT_BOOT_API_LEVEL
            ),
            invocation_log=Path(log_path) if log_path else None,
            debug=_parse_flag(env.get("KSU_DEBUG")),
        )


__all__ = ["KsuConfig", "DAEMON_FILENAME", "MAGISKBOOT_FILENAME"]
