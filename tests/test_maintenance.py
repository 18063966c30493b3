from __future__ import annotations

from datetime import timedelta

from mcloud.config import Settings
from mcloud.services import store as records
from mcloud.services.maintenance import MaintenanceLoop
from mcloud.services.orchestrator import BootstrapResult
from mcloud.services.store import ClusterStateStore
from mcloud.utils import utcnow


async def test_run_once_prunes_tokens_and_flags_silent_nodes(
    settings: Settings,
    store: ClusterStateStore,
    bootstrapped: BootstrapResult,
) -> None:
    now = utcnow()
    async with store.transaction() as session:
        await records.create_token(
            session,
            token="mcloud-old-xxxxxxxxxxxxxxxx",
            cluster_id=bootstrapped.cluster_id,
            expires_at=now - timedelta(days=3),
        )
        await records.create_node(
            session,
            node_id="member-1",
            cluster_id=bootstrapped.cluster_id,
            hostname="node-2",
            ip="10.0.0.2",
            role="member",
            status="online",
        )
        await records.touch_heartbeat(session, "member-1", now=now - timedelta(hours=1))

    loop = MaintenanceLoop(settings, store)
    assert not loop.enabled
    assert await loop.run_once() == {"tokens_pruned": 1, "nodes_offline": 1}

    async with store.session() as session:
        member = await records.get_node(session, "member-1")
        leader = await records.get_node(session, bootstrapped.leader.id)
        events = await records.list_events(session, limit=10, category="node")
    assert member is not None and member.status == "offline"
    assert leader is not None and leader.status == "online"
    assert any(event.name == "node.offline" for event in events)


async def test_loop_start_and_stop(settings: Settings, store: ClusterStateStore) -> None:
    enabled = settings.model_copy(update={"maintenance_enabled": True, "maintenance_interval_seconds": 1})
    loop = MaintenanceLoop(enabled, store)
    assert loop.enabled
    await loop.start()
    await loop.stop()
