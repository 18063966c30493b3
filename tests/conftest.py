"""Shared fixtures: a throwaway SQLite store, no-op subsystems and a permissive host probe."""

from __future__ import annotations

from pathlib import Path
from typing import AsyncIterator, Dict, Iterable, Optional, Set

import pytest

from mcloud.authority import CredentialAuthority
from mcloud.config import Settings
from mcloud.services.adapters import COMPUTE, NETWORK, STORAGE, AdapterSet, NoOpAdapter
from mcloud.services.lifecycle import NodeLifecycleManager
from mcloud.services.orchestrator import BootstrapOrchestrator, BootstrapRequest
from mcloud.services.probe import HostProbe
from mcloud.services.store import ClusterStateStore
from mcloud.state_file import NodeStateFile


class FakeProbe(HostProbe):
    def __init__(
        self,
        *,
        missing_tools: Optional[Iterable[str]] = None,
        busy_ports: Optional[Iterable[int]] = None,
        missing_devices: Optional[Iterable[str]] = None,
    ) -> None:
        self.missing_tools: Set[str] = set(missing_tools or ())
        self.busy_ports: Set[int] = set(busy_ports or ())
        self.missing_devices: Set[str] = set(missing_devices or ())

    def tool_available(self, tool: str) -> bool:
        return tool not in self.missing_tools

    def port_available(self, host: str, port: int) -> bool:
        return port not in self.busy_ports

    def device_exists(self, path: str) -> bool:
        return path not in self.missing_devices


def make_settings(tmp_path: Path, **overrides: object) -> Settings:
    values: Dict[str, object] = {
        "database_url": f"sqlite+aiosqlite:///{tmp_path / 'mcloud.db'}",
        "state_path": str(tmp_path / "state.yaml"),
        "log_file": "",
        "adapter_mode": "noop",
        "maintenance_enabled": False,
        "node_hostname": "leader-1",
        "external_timeout_seconds": 5.0,
    }
    values.update(overrides)
    return Settings(**values)


def make_adapters(**kwargs: object) -> AdapterSet:
    return AdapterSet(
        compute=NoOpAdapter(COMPUTE, **kwargs),
        storage=NoOpAdapter(STORAGE, **kwargs),
        network=NoOpAdapter(NETWORK, **kwargs),
    )


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return make_settings(tmp_path)


@pytest.fixture
def adapters() -> AdapterSet:
    return make_adapters()


@pytest.fixture
def probe() -> FakeProbe:
    return FakeProbe()


@pytest.fixture
def authority(settings: Settings) -> CredentialAuthority:
    return CredentialAuthority(settings)


@pytest.fixture
async def store(settings: Settings) -> AsyncIterator[ClusterStateStore]:
    state_store = ClusterStateStore(settings)
    await state_store.open()
    try:
        yield state_store
    finally:
        await state_store.close()


@pytest.fixture
def orchestrator(
    settings: Settings,
    store: ClusterStateStore,
    authority: CredentialAuthority,
    adapters: AdapterSet,
    probe: FakeProbe,
) -> BootstrapOrchestrator:
    return BootstrapOrchestrator(
        settings,
        store,
        authority,
        adapters,
        probe=probe,
        state_file=NodeStateFile(settings.state_path),
    )


@pytest.fixture
def lifecycle(
    settings: Settings,
    store: ClusterStateStore,
    authority: CredentialAuthority,
    adapters: AdapterSet,
) -> NodeLifecycleManager:
    return NodeLifecycleManager(settings, store, authority, adapters)


@pytest.fixture
async def bootstrapped(orchestrator: BootstrapOrchestrator):
    return await orchestrator.run(BootstrapRequest(name="alpha", advertise_address="10.0.0.1:8443"))
