from __future__ import annotations

import asyncio
from pathlib import Path
from typing import Dict, List

import pytest

from mcloud.authority import CredentialAuthority, verify_certificate
from mcloud.config import Settings
from mcloud.constants import BOOTSTRAPPED_AT_KEY
from mcloud.errors import (
    AlreadyInitialized,
    ExternalOperationFailure,
    NotLeader,
    PersistenceFailedAfterExternalBootstrap,
    ValidationError,
)
from mcloud.services import store as records
from mcloud.services.adapters import COMPUTE, NETWORK, STORAGE, AdapterSet, NoOpAdapter, SubsystemConfig
from mcloud.services.orchestrator import BootstrapOrchestrator, BootstrapRequest
from mcloud.services.store import ClusterStateStore
from mcloud.state_file import NodeStateFile

from tests.conftest import FakeProbe, make_settings

REQUEST = BootstrapRequest(name="alpha", advertise_address="10.0.0.1:8443")


async def test_bootstrap_persists_cluster_and_online_leader(
    orchestrator: BootstrapOrchestrator,
    store: ClusterStateStore,
    settings: Settings,
) -> None:
    phases: List[str] = []
    result = await orchestrator.run(REQUEST, observer=lambda phase: phases.append(phase.value))

    assert result.phases == [
        "preflight",
        "credentials_generated",
        "compute_bootstrapped",
        "network_bootstrapped",
        "storage_bootstrapped",
        "persisted",
        "finalized",
    ]
    assert phases == result.phases
    assert result.leader.role == "leader"
    assert result.leader.status == "online"
    assert result.token.startswith(f"mcloud-{result.cluster_id[:8]}-")

    async with store.session() as session:
        cluster = await records.get_cluster(session)
        nodes = await records.list_nodes(session)
        ca = await records.get_ca(session, result.cluster_id)
        cert = await records.latest_node_certificate(session, result.leader.id)
        config = await records.list_config(session)
        assert await records.validate_token(session, result.token) == result.cluster_id

    assert cluster is not None and cluster.state == "active"
    assert [(node.role, node.status) for node in nodes] == [("leader", "online")]
    assert ca is not None and cert is not None
    assert verify_certificate(cert.cert_pem, ca.cert_pem)
    assert config["lxd.cluster.name"] == "alpha"
    assert config["ceph.cluster.name"] == "alpha-ceph"
    assert config["ovn.network.name"] == "alpha-ovn"
    assert BOOTSTRAPPED_AT_KEY in config

    state = NodeStateFile(settings.state_path).load()
    assert state is not None and state.flags.initialized
    assert state.cluster.id == result.cluster_id


async def test_bootstrap_order_is_compute_network_storage(
    orchestrator: BootstrapOrchestrator,
    adapters: AdapterSet,
) -> None:
    order: List[str] = []
    for adapter in adapters.all():
        original = adapter.bootstrap

        async def _tracked(config: SubsystemConfig, _name: str = adapter.name, _call=original) -> Dict[str, str]:
            order.append(_name)
            return await _call(config)

        adapter.bootstrap = _tracked  # type: ignore[method-assign]
    await orchestrator.run(REQUEST)
    assert order == [COMPUTE, NETWORK, STORAGE]


async def test_second_bootstrap_is_rejected_without_side_effects(
    orchestrator: BootstrapOrchestrator,
    adapters: AdapterSet,
    store: ClusterStateStore,
) -> None:
    await orchestrator.run(REQUEST)
    calls_before = len(adapters.compute.calls)  # type: ignore[attr-defined]

    with pytest.raises(AlreadyInitialized):
        await orchestrator.run(BootstrapRequest(name="beta", advertise_address="10.0.0.2:8443"))

    assert len(adapters.compute.calls) == calls_before  # type: ignore[attr-defined]
    async with store.session() as session:
        assert await records.count_clusters(session) == 1


async def test_concurrent_bootstraps_produce_one_cluster(
    orchestrator: BootstrapOrchestrator,
    store: ClusterStateStore,
) -> None:
    outcomes = await asyncio.gather(
        orchestrator.run(REQUEST),
        orchestrator.run(BootstrapRequest(name="beta", advertise_address="10.0.0.1:8443")),
        return_exceptions=True,
    )
    failures = [item for item in outcomes if isinstance(item, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], AlreadyInitialized)
    async with store.session() as session:
        assert await records.count_clusters(session) == 1


@pytest.mark.parametrize(
    ("name", "address"),
    [
        ("ab", "10.0.0.1:8443"),
        ("a" * 64, "10.0.0.1:8443"),
        ("Bad_Name", "10.0.0.1:8443"),
        ("alpha", "10.0.0.1"),
        ("alpha", "not-an-ip:8443"),
        ("alpha", "10.0.0.1:70000"),
    ],
)
async def test_invalid_input_fails_preflight(
    orchestrator: BootstrapOrchestrator,
    adapters: AdapterSet,
    name: str,
    address: str,
) -> None:
    with pytest.raises(ValidationError):
        await orchestrator.run(BootstrapRequest(name=name, advertise_address=address))
    assert adapters.compute.calls == []  # type: ignore[attr-defined]


async def test_missing_tools_and_devices_fail_preflight(
    settings: Settings,
    store: ClusterStateStore,
    authority: CredentialAuthority,
) -> None:
    class _NeedsTools(NoOpAdapter):
        def required_devices(self, config: SubsystemConfig):
            return (config.storage_device,)

    adapters = AdapterSet(
        compute=NoOpAdapter(COMPUTE),
        storage=_NeedsTools(STORAGE),
        network=NoOpAdapter(NETWORK),
    )
    adapters.compute.required_tools = ("lxd", "lxc")

    missing_tool = BootstrapOrchestrator(
        settings, store, authority, adapters, probe=FakeProbe(missing_tools=["lxc"])
    )
    with pytest.raises(ValidationError) as excinfo:
        await missing_tool.run(REQUEST)
    assert excinfo.value.context["missing_tools"] == ["lxc"]

    busy_port = BootstrapOrchestrator(settings, store, authority, adapters, probe=FakeProbe(busy_ports=[8443]))
    with pytest.raises(ValidationError):
        await busy_port.run(REQUEST)

    missing_device = BootstrapOrchestrator(
        settings, store, authority, adapters, probe=FakeProbe(missing_devices=[settings.storage_device])
    )
    with pytest.raises(ValidationError):
        await missing_device.run(REQUEST)
    assert adapters.compute.calls == []  # type: ignore[attr-defined]


async def test_member_cannot_bootstrap(
    tmp_path: Path,
    authority: CredentialAuthority,
    adapters: AdapterSet,
    probe: FakeProbe,
) -> None:
    member_settings = make_settings(tmp_path, node_role="member")
    member_store = ClusterStateStore(member_settings)
    await member_store.open()
    try:
        orchestrator = BootstrapOrchestrator(member_settings, member_store, authority, adapters, probe=probe)
        with pytest.raises(NotLeader):
            await orchestrator.run(REQUEST)
    finally:
        await member_store.close()


async def test_network_timeout_persists_nothing_and_retry_succeeds(
    tmp_path: Path,
    authority: CredentialAuthority,
    probe: FakeProbe,
) -> None:
    settings = make_settings(tmp_path, external_timeout_seconds=0.2)
    network = NoOpAdapter(NETWORK, delay_seconds=2.0)
    adapters = AdapterSet(compute=NoOpAdapter(COMPUTE), storage=NoOpAdapter(STORAGE), network=network)
    store = ClusterStateStore(settings)
    await store.open()
    try:
        orchestrator = BootstrapOrchestrator(settings, store, authority, adapters, probe=probe)
        with pytest.raises(ExternalOperationFailure) as excinfo:
            await orchestrator.run(REQUEST)
        assert excinfo.value.timed_out
        assert excinfo.value.subsystem == NETWORK
        assert excinfo.value.context["bootstrapped_subsystems"] == [COMPUTE]
        assert adapters.storage.calls == []  # type: ignore[attr-defined]

        async with store.session() as session:
            assert await records.count_clusters(session) == 0
            assert await records.list_config(session) == {}
        assert not NodeStateFile(settings.state_path).exists()

        network.delay_seconds = 0
        result = await orchestrator.run(REQUEST)
        assert result.phases[-1] == "finalized"
    finally:
        await store.close()


async def test_retry_accepts_port_held_by_own_compute_subsystem(
    tmp_path: Path,
    authority: CredentialAuthority,
) -> None:
    settings = make_settings(tmp_path, external_timeout_seconds=0.2)
    network = NoOpAdapter(NETWORK, delay_seconds=2.0)
    adapters = AdapterSet(compute=NoOpAdapter(COMPUTE), storage=NoOpAdapter(STORAGE), network=network)
    probe = FakeProbe()
    store = ClusterStateStore(settings)
    await store.open()
    try:
        orchestrator = BootstrapOrchestrator(settings, store, authority, adapters, probe=probe)
        with pytest.raises(ExternalOperationFailure):
            await orchestrator.run(REQUEST)

        # Compute came up during the failed attempt and now listens on the advertise port.
        probe.busy_ports.add(8443)
        network.delay_seconds = 0
        result = await orchestrator.run(REQUEST)
        assert result.phases[0] == "preflight"
        assert result.phases[-1] == "finalized"
        assert result.leader.hostname == "leader-1"
    finally:
        await store.close()


async def test_port_held_by_another_process_still_fails_preflight(
    settings: Settings,
    store: ClusterStateStore,
    authority: CredentialAuthority,
    adapters: AdapterSet,
) -> None:
    orchestrator = BootstrapOrchestrator(settings, store, authority, adapters, probe=FakeProbe(busy_ports=[8443]))
    with pytest.raises(ValidationError) as excinfo:
        await orchestrator.run(REQUEST)
    assert excinfo.value.context["field"] == "advertise_address"
    assert all(adapter.calls == [] for adapter in adapters.all())  # type: ignore[attr-defined]


async def test_persistence_failure_after_external_bootstrap(
    settings: Settings,
    store: ClusterStateStore,
    authority: CredentialAuthority,
    probe: FakeProbe,
) -> None:
    class _CompetingWriter(NoOpAdapter):
        async def bootstrap(self, config: SubsystemConfig) -> Dict[str, str]:
            outputs = await super().bootstrap(config)
            async with store.transaction() as session:
                await records.create_cluster(
                    session,
                    cluster_id="intruder",
                    name="intruder",
                    advertise_address="10.9.9.9:8443",
                )
            return outputs

    adapters = AdapterSet(
        compute=NoOpAdapter(COMPUTE),
        storage=_CompetingWriter(STORAGE),
        network=NoOpAdapter(NETWORK),
    )
    orchestrator = BootstrapOrchestrator(settings, store, authority, adapters, probe=probe)
    with pytest.raises(PersistenceFailedAfterExternalBootstrap) as excinfo:
        await orchestrator.run(REQUEST)

    assert excinfo.value.retry_safe is False
    assert excinfo.value.context["bootstrapped_subsystems"] == [COMPUTE, NETWORK, STORAGE]
    async with store.session() as session:
        cluster = await records.get_cluster(session)
        assert cluster is not None and cluster.id == "intruder"
        assert await records.list_nodes(session) == []
    assert not NodeStateFile(settings.state_path).exists()
