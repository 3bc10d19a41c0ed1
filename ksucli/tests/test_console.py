from __future__ import annotations

from typing import List, Optional

import pytest

import ksucli.console as console


class _FakeManager:
    instances: List["_FakeManager"] = []

    def __init__(self, config) -> None:
        self.config = config
        self.closed = False
        self.calls: List[tuple] = []
        _FakeManager.instances.append(self)

    def close(self) -> None:
        self.closed = True

    def module_count(self) -> int:
        return 2

    def toggle_module(self, module_id: str, enable: bool) -> bool:
        self.calls.append(("toggle", module_id, enable))
        return module_id != "broken"

    def install_boot(self, boot, lkm, ota, on_finish, on_stdout, on_stderr) -> bool:
        self.calls.append(("boot", boot, lkm, ota))
        on_stdout("- Patching")
        on_stderr("warning: slow storage")
        on_finish(boot is None)
        return True

    def set_app_profile_template(self, template_id: str, template: Optional[str]) -> bool:
        self.calls.append(("set-template", template_id, template))
        return True


@pytest.fixture
def fake_manager(monkeypatch: pytest.MonkeyPatch):
    _FakeManager.instances.clear()
    monkeypatch.setattr(console, "KsuManager", _FakeManager)
    return _FakeManager.instances


def test_module_count_prints_value(fake_manager, capsys) -> None:
    assert console.main(["module", "count"]) == 0
    out, _ = capsys.readouterr()
    assert out.strip() == "2"
    assert fake_manager[0].closed


def test_module_toggle_maps_result_to_exit_status(fake_manager) -> None:
    assert console.main(["module", "enable", "zygisk"]) == 0
    assert console.main(["module", "disable", "broken"]) == 1
    assert fake_manager[0].calls == [("toggle", "zygisk", True)]
    assert fake_manager[1].calls == [("toggle", "broken", False)]


def test_module_action_requires_target(fake_manager) -> None:
    with pytest.raises(SystemExit):
        console.main(["module", "uninstall"])
    assert fake_manager == []


def test_boot_patch_streams_and_announces_reboot(fake_manager, capsys) -> None:
    assert console.main(["boot-patch", "--lkm", "/sdcard/kernelsu.ko", "--ota"]) == 0
    out, err = capsys.readouterr()
    assert out.splitlines() == ["- Patching", "- Patched the device; reboot to take effect"]
    assert err.splitlines() == ["warning: slow storage"]
    assert fake_manager[0].calls == [("boot", None, "/sdcard/kernelsu.ko", True)]


def test_boot_patch_with_image_does_not_announce_reboot(fake_manager, capsys) -> None:
    assert console.main(["boot-patch", "--lkm", "k.ko", "--boot", "boot.img"]) == 0
    out, _ = capsys.readouterr()
    assert out.splitlines() == ["- Patching"]


def test_template_set_requires_body(fake_manager, capsys) -> None:
    assert console.main(["template", "set", "shell"]) == 2
    assert console.main(["template", "set", "shell", "--template", "{}"]) == 0
    assert fake_manager[1].calls == [("set-template", "shell", "{}")]
