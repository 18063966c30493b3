from __future__ import annotations

import asyncio
from datetime import timedelta

import pytest

from mcloud.authority import node_request_message, sign_node_request, signed_at_now, verify_certificate
from mcloud.errors import (
    ClusterNotInitialized,
    DuplicateNode,
    ExternalOperationFailure,
    NodeAuthenticationFailed,
    NodeNotFound,
    OperationInProgress,
    TokenExpired,
    TokenNotFound,
    TokenUsed,
    ValidationError,
)
from mcloud.services import store as records
from mcloud.services.adapters import AdapterSet
from mcloud.services.lifecycle import JoinRequest, NodeLifecycleManager
from mcloud.services.orchestrator import BootstrapResult
from mcloud.services.store import ClusterStateStore
from mcloud.utils import utcnow


async def test_join_registers_member_and_returns_credentials(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
    store: ClusterStateStore,
    adapters: AdapterSet,
) -> None:
    result = await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2"))

    assert result.cluster_id == bootstrapped.cluster_id
    assert result.status == "joining"
    assert result.leader_address == "10.0.0.1:8443"
    assert result.phases == [
        "unjoined",
        "token_validated",
        "certificate_issued",
        "compute_joined",
        "storage_joined",
        "network_joined",
        "registered",
    ]
    assert verify_certificate(result.node_cert_pem, result.ca_cert_pem)
    assert "node-2" in adapters.storage.members  # type: ignore[attr-defined]

    async with store.session() as session:
        node = await records.get_node(session, result.node_id)
        assert node is not None and node.role == "member"
        with pytest.raises(TokenUsed):
            await records.validate_token(session, bootstrapped.token)

    online = await lifecycle.mark_online(result.node_id)
    assert online.status == "online"
    assert online.last_heartbeat is not None


async def test_same_token_redeemed_concurrently_admits_one_node(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
    store: ClusterStateStore,
) -> None:
    outcomes = await asyncio.gather(
        lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2")),
        lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-3", ip="10.0.0.3")),
        return_exceptions=True,
    )
    failures = [item for item in outcomes if isinstance(item, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], TokenUsed)
    async with store.session() as session:
        assert len(await records.list_nodes(session)) == 2


async def test_two_managers_racing_on_one_token(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
    store: ClusterStateStore,
    settings,
    authority,
    adapters: AdapterSet,
) -> None:
    rival = NodeLifecycleManager(settings, store, authority, adapters)
    outcomes = await asyncio.gather(
        lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2")),
        rival.join(JoinRequest(token=bootstrapped.token, hostname="node-3", ip="10.0.0.3")),
        return_exceptions=True,
    )
    failures = [item for item in outcomes if isinstance(item, Exception)]
    assert len(failures) == 1
    assert isinstance(failures[0], TokenUsed)
    async with store.session() as session:
        assert len(await records.list_nodes(session)) == 2


async def test_expired_and_unknown_tokens_are_rejected(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
    store: ClusterStateStore,
    adapters: AdapterSet,
) -> None:
    async with store.transaction() as session:
        await records.create_token(
            session,
            token="mcloud-deadbeef-expiredexpiredx",
            cluster_id=bootstrapped.cluster_id,
            expires_at=utcnow() - timedelta(seconds=1),
        )
    with pytest.raises(TokenExpired):
        await lifecycle.join(JoinRequest(token="mcloud-deadbeef-expiredexpiredx", hostname="node-2", ip="10.0.0.2"))
    with pytest.raises(TokenNotFound):
        await lifecycle.join(JoinRequest(token="mcloud-deadbeef-nosuchtokenxxxx", hostname="node-2", ip="10.0.0.2"))
    assert [call for call in adapters.compute.calls if call[0] == "join"] == []  # type: ignore[attr-defined]


async def test_duplicate_hostname_or_ip_is_rejected_and_token_survives(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
    store: ClusterStateStore,
) -> None:
    with pytest.raises(DuplicateNode):
        await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="leader-1", ip="10.0.0.7"))
    with pytest.raises(DuplicateNode):
        await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-7", ip="10.0.0.1"))
    async with store.session() as session:
        assert await records.validate_token(session, bootstrapped.token) == bootstrapped.cluster_id


async def test_bad_node_info_is_rejected(lifecycle: NodeLifecycleManager, bootstrapped: BootstrapResult) -> None:
    with pytest.raises(ValidationError):
        await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="", ip="10.0.0.2"))
    with pytest.raises(ValidationError):
        await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="node-2.lan"))


async def test_failed_subsystem_join_keeps_token_unused(
    settings,
    store: ClusterStateStore,
    authority,
    adapters: AdapterSet,
    bootstrapped: BootstrapResult,
) -> None:
    adapters.network.fail_on.add("join")  # type: ignore[attr-defined]
    manager = NodeLifecycleManager(settings, store, authority, adapters)
    with pytest.raises(ExternalOperationFailure):
        await manager.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2"))

    async with store.session() as session:
        assert await records.validate_token(session, bootstrapped.token) == bootstrapped.cluster_id
        assert len(await records.list_nodes(session)) == 1

    adapters.network.fail_on.clear()  # type: ignore[attr-defined]
    result = await manager.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2"))
    assert result.status == "joining"


async def test_issue_token_requires_cluster(
    lifecycle: NodeLifecycleManager,
) -> None:
    with pytest.raises(ClusterNotInitialized):
        await lifecycle.issue_token()


async def test_issued_token_admits_a_second_node(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
) -> None:
    with pytest.raises(ValidationError):
        await lifecycle.issue_token(8 * 24 * 3600)
    issued = await lifecycle.issue_token(600, issued_by="operator")
    assert issued.cluster_id == bootstrapped.cluster_id
    assert issued.token != bootstrapped.token

    await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2"))
    second = await lifecycle.join(JoinRequest(token=issued.token, hostname="node-3", ip="10.0.0.3"))
    assert second.cluster_id == bootstrapped.cluster_id


async def test_leave_removes_node_from_every_subsystem(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
    store: ClusterStateStore,
    adapters: AdapterSet,
) -> None:
    joined = await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2"))
    await lifecycle.mark_online(joined.node_id)

    result = await lifecycle.leave(joined.node_id)

    assert result.phases == [
        "online",
        "draining",
        "removed_from_compute",
        "removed_from_storage",
        "removed_from_network",
        "removed",
    ]
    for adapter in adapters.all():
        assert "node-2" not in adapter.members  # type: ignore[attr-defined]
    async with store.session() as session:
        assert await records.get_node(session, joined.node_id) is None
        assert await records.latest_node_certificate(session, joined.node_id) is None
    with pytest.raises(NodeNotFound):
        await lifecycle.leave(joined.node_id)


async def test_failed_removal_leaves_node_draining(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
    store: ClusterStateStore,
    adapters: AdapterSet,
) -> None:
    joined = await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2"))
    adapters.storage.fail_on.add("remove")  # type: ignore[attr-defined]

    with pytest.raises(ExternalOperationFailure):
        await lifecycle.leave(joined.node_id)

    async with store.session() as session:
        node = await records.get_node(session, joined.node_id)
    assert node is not None and node.draining
    with pytest.raises(OperationInProgress):
        await lifecycle.mark_online(joined.node_id)

    adapters.storage.fail_on.clear()  # type: ignore[attr-defined]
    result = await lifecycle.leave(joined.node_id)
    assert result.phases[-1] == "removed"


async def test_leader_cannot_leave(lifecycle: NodeLifecycleManager, bootstrapped: BootstrapResult) -> None:
    with pytest.raises(ValidationError):
        await lifecycle.leave(bootstrapped.leader.id)


async def test_signed_heartbeat_authenticates_node(
    lifecycle: NodeLifecycleManager,
    bootstrapped: BootstrapResult,
) -> None:
    joined = await lifecycle.join(JoinRequest(token=bootstrapped.token, hostname="node-2", ip="10.0.0.2"))
    signed_at = signed_at_now()
    signature = sign_node_request(
        key_pem=joined.node_key_pem,
        message=node_request_message(action="heartbeat", node_id=joined.node_id, signed_at=signed_at),
    )

    node = await lifecycle.authenticate_node(
        node_id=joined.node_id,
        action="heartbeat",
        signed_at=signed_at,
        signature=signature,
    )
    assert node.id == joined.node_id
    updated = await lifecycle.record_heartbeat(joined.node_id)
    assert updated.status == "online"

    with pytest.raises(NodeAuthenticationFailed):
        await lifecycle.authenticate_node(
            node_id=joined.node_id,
            action="leave",
            signed_at=signed_at,
            signature=signature,
        )
    with pytest.raises(NodeAuthenticationFailed):
        await lifecycle.authenticate_node(
            node_id=joined.node_id,
            action="heartbeat",
            signed_at=signed_at - 3600,
            signature=signature,
        )
    with pytest.raises(NodeAuthenticationFailed):
        await lifecycle.authenticate_node(
            node_id="ghost",
            action="heartbeat",
            signed_at=signed_at,
            signature=signature,
        )
