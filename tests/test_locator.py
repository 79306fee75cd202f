import stat
from types import ModuleType

import pytest

from agent_bridge.config import BridgeConfig
from agent_bridge.errors import BackendNotFound
from agent_bridge.locator import BackendLocator


def _install_fake_cli(root, subdir: str, name: str, version_line: str):
    bin_dir = root / subdir / "bin"
    bin_dir.mkdir(parents=True)
    exe = bin_dir / name
    exe.write_text(f"#!/bin/sh\necho '{version_line}'\n")
    exe.chmod(exe.stat().st_mode | stat.S_IEXEC)
    return exe


@pytest.mark.asyncio
async def test_external_dir_wins_over_path(tmp_path, monkeypatch) -> None:
    exe = _install_fake_cli(tmp_path, "claude-cli", "claude", "2.0.14 (Claude Code)")
    monkeypatch.setattr("agent_bridge.locator.shutil.which", lambda name: f"/usr/bin/{name}")
    locator = BackendLocator(BridgeConfig.load(env={}))
    locator.set_external_dir(f"  {tmp_path}  ")

    resolved = locator.find_binary("claude")
    assert resolved.path == str(exe)
    assert resolved.source == "external"

    status = await locator.provider_status("claude")
    assert status.to_dict() == {"available": True, "version": "2.0.14", "source": "external"}

    # codex is not under the external dir, so PATH is used
    assert locator.find_binary("codex").source == "path"


def test_set_external_dir_invalidates_cache(tmp_path, monkeypatch) -> None:
    calls: list[str] = []

    def which(name):
        calls.append(name)
        return None

    monkeypatch.setattr("agent_bridge.locator.shutil.which", which)
    locator = BackendLocator(BridgeConfig.load(env={}))
    assert locator.find_binary("codex") is None
    assert locator.find_binary("codex") is None
    assert calls == ["codex"]

    _install_fake_cli(tmp_path, "codex-cli", "codex", "codex-cli 0.50.0")
    locator.set_external_dir(str(tmp_path))
    assert locator.find_binary("codex").source == "external"
    with pytest.raises(BackendNotFound):
        locator.set_external_dir(None)
        locator.require_binary("codex")


@pytest.mark.asyncio
async def test_sdk_counts_as_available_claude(monkeypatch) -> None:
    monkeypatch.setattr("agent_bridge.locator.shutil.which", lambda name: None)
    monkeypatch.setattr(BackendLocator, "sdk_version", staticmethod(lambda: "0.1.4"))
    locator = BackendLocator(BridgeConfig.load(env={}))
    assert (await locator.provider_status("claude")).to_dict() == {"available": True, "version": "0.1.4", "source": "sdk"}
    assert (await locator.provider_status("codex")).source == "none"


@pytest.mark.asyncio
async def test_mock_mode_reports_mock() -> None:
    locator = BackendLocator(BridgeConfig.load(env={"AGENT_BRIDGE_MOCK": "1"}))
    assert (await locator.provider_status("codex")).to_dict() == {"available": True, "version": "mock", "source": "mock"}


def test_missing_sdk_raises_backend_not_found(monkeypatch) -> None:
    def fail(name):
        raise ImportError(f"No module named {name!r}")

    monkeypatch.setattr("agent_bridge.locator.importlib.import_module", fail)
    locator = BackendLocator(BridgeConfig.load(env={}))
    with pytest.raises(BackendNotFound, match="claude_agent_sdk"):
        locator.load_claude_sdk()


def test_invalidate_lets_a_newly_installed_sdk_load(monkeypatch) -> None:
    sdk = ModuleType("claude_agent_sdk")
    installed = False

    def import_module(name):
        if not installed:
            raise ImportError(f"No module named {name!r}")
        return sdk

    monkeypatch.setattr("agent_bridge.locator.importlib.import_module", import_module)
    locator = BackendLocator(BridgeConfig.load(env={}))
    with pytest.raises(BackendNotFound):
        locator.load_claude_sdk()

    installed = True
    locator.invalidate()
    assert locator.load_claude_sdk() is sdk
    assert locator.load_claude_sdk() is sdk
