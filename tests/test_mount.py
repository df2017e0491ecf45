"""Tests for module mounting."""

import pytest

from amplifier_module_tool_continuity import mount
from amplifier_module_tool_continuity.store import ContinuityStore


class FakeCoordinator:
    def __init__(self):
        self.mounted = {}
        self.capabilities = {}

    async def mount(self, mount_point, module, name=None):
        self.mounted[name] = (mount_point, module)

    def set_capability(self, name, value):
        self.capabilities[name] = value


@pytest.mark.asyncio
async def test_mount_registers_tools(temp_db, tmp_path):
    coordinator = FakeCoordinator()

    cleanup = await mount(coordinator, {
        "storage_path": str(temp_db),
        "bootstrap_path": str(tmp_path / "bootstrap.md"),
    })

    assert set(coordinator.mounted) == {
        "continuity_store",
        "continuity_search",
        "continuity_recent",
        "continuity_log_depth",
        "continuity_insight",
        "continuity_bootstrap",
    }
    assert all(point == "tools" for point, _ in coordinator.mounted.values())
    store = coordinator.capabilities["continuity.store"]
    assert isinstance(store, ContinuityStore)
    assert store.db_path == temp_db
    await cleanup()


@pytest.mark.asyncio
async def test_mount_reads_environment(temp_db, tmp_path, monkeypatch):
    monkeypatch.setenv("CONTINUITY_DB_PATH", str(temp_db))
    monkeypatch.setenv("BOOTSTRAP_PATH", str(tmp_path / "prelude.md"))
    coordinator = FakeCoordinator()

    await mount(coordinator)

    assert coordinator.capabilities["continuity.store"].db_path == temp_db
    _, bootstrap_tool = coordinator.mounted["continuity_bootstrap"]
    assert bootstrap_tool.bootstrap_path == str(tmp_path / "prelude.md")
