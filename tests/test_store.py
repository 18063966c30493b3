from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path

import pytest
from sqlalchemy.exc import IntegrityError

from mcloud.config import Settings
from mcloud.errors import NodeNotFound, NotLeader, TokenExpired, TokenNotFound, TokenUsed
from mcloud.services import store as records
from mcloud.services.store import ClusterStateStore
from mcloud.utils import utcnow


async def _seed_cluster(store: ClusterStateStore) -> str:
    async with store.transaction() as session:
        cluster = await records.create_cluster(
            session,
            cluster_id="cluster-1",
            name="alpha",
            advertise_address="10.0.0.1:8443",
        )
        await records.create_node(
            session,
            node_id="leader",
            cluster_id=cluster.id,
            hostname="leader-1",
            ip="10.0.0.1",
            role="leader",
            status="online",
        )
    return "cluster-1"


async def test_failed_transaction_leaves_no_trace(store: ClusterStateStore) -> None:
    with pytest.raises(RuntimeError):
        async with store.transaction() as session:
            await records.create_cluster(
                session,
                cluster_id="cluster-1",
                name="alpha",
                advertise_address="10.0.0.1:8443",
            )
            await records.set_config(session, "lxd.cluster.name", "alpha")
            raise RuntimeError("boom")

    async with store.session() as session:
        assert await records.count_clusters(session) == 0
        assert await records.list_config(session) == {}


async def test_second_cluster_row_is_refused(store: ClusterStateStore) -> None:
    await _seed_cluster(store)
    with pytest.raises(IntegrityError):
        async with store.transaction() as session:
            await records.create_cluster(
                session,
                cluster_id="cluster-2",
                name="beta",
                advertise_address="10.0.0.9:8443",
            )
    async with store.session() as session:
        assert await records.count_clusters(session) == 1


async def test_token_is_consumed_exactly_once(store: ClusterStateStore) -> None:
    cluster_id = await _seed_cluster(store)
    async with store.transaction() as session:
        await records.create_token(
            session,
            token="mcloud-cluster1-AAAAAAAAAAAAAAAA",
            cluster_id=cluster_id,
            expires_at=utcnow() + timedelta(hours=1),
        )

    async with store.transaction() as session:
        assert await records.consume_token(session, "mcloud-cluster1-AAAAAAAAAAAAAAAA", "node-a") == cluster_id

    with pytest.raises(TokenUsed):
        async with store.transaction() as session:
            await records.consume_token(session, "mcloud-cluster1-AAAAAAAAAAAAAAAA", "node-b")

    async with store.session() as session:
        with pytest.raises(TokenUsed):
            await records.validate_token(session, "mcloud-cluster1-AAAAAAAAAAAAAAAA")


async def test_expired_token_reports_expired_even_when_used(store: ClusterStateStore) -> None:
    cluster_id = await _seed_cluster(store)
    now = utcnow()
    async with store.transaction() as session:
        await records.create_token(
            session,
            token="mcloud-cluster1-BBBBBBBBBBBBBBBB",
            cluster_id=cluster_id,
            expires_at=now + timedelta(minutes=5),
        )
        await records.consume_token(session, "mcloud-cluster1-BBBBBBBBBBBBBBBB", "node-a", now=now)

    async with store.session() as session:
        with pytest.raises(TokenExpired):
            await records.validate_token(
                session,
                "mcloud-cluster1-BBBBBBBBBBBBBBBB",
                now=now + timedelta(minutes=10),
            )
        with pytest.raises(TokenNotFound):
            await records.validate_token(session, "mcloud-cluster1-unknown")


async def test_expired_token_is_not_consumed(store: ClusterStateStore) -> None:
    cluster_id = await _seed_cluster(store)
    async with store.transaction() as session:
        await records.create_token(
            session,
            token="mcloud-cluster1-CCCCCCCCCCCCCCCC",
            cluster_id=cluster_id,
            expires_at=utcnow() - timedelta(seconds=1),
        )
    with pytest.raises(TokenExpired):
        async with store.transaction() as session:
            await records.consume_token(session, "mcloud-cluster1-CCCCCCCCCCCCCCCC", "node-a")


async def test_token_is_still_redeemable_at_its_expiry_instant(store: ClusterStateStore) -> None:
    cluster_id = await _seed_cluster(store)
    now = utcnow()
    token = "mcloud-cluster1-EEEEEEEEEEEEEEEE"
    async with store.transaction() as session:
        await records.create_token(session, token=token, cluster_id=cluster_id, expires_at=now)

    async with store.session() as session:
        assert await records.validate_token(session, token, now=now) == cluster_id
    async with store.transaction() as session:
        assert await records.consume_token(session, token, "node-a", now=now) == cluster_id

    with pytest.raises(TokenUsed):
        async with store.transaction() as session:
            await records.consume_token(session, token, "node-b", now=now)


async def test_prune_expired_tokens_respects_grace(store: ClusterStateStore) -> None:
    cluster_id = await _seed_cluster(store)
    now = utcnow()
    async with store.transaction() as session:
        await records.create_token(
            session,
            token="mcloud-cluster1-old",
            cluster_id=cluster_id,
            expires_at=now - timedelta(days=2),
        )
        await records.create_token(
            session,
            token="mcloud-cluster1-recent",
            cluster_id=cluster_id,
            expires_at=now - timedelta(minutes=1),
        )
    async with store.transaction() as session:
        pruned = await records.prune_expired_tokens(session, now=now, grace=timedelta(days=1))
    assert pruned == 1


async def test_stale_members_go_offline_but_leader_does_not(store: ClusterStateStore) -> None:
    cluster_id = await _seed_cluster(store)
    old = utcnow() - timedelta(hours=1)
    async with store.transaction() as session:
        await records.create_node(
            session,
            node_id="member",
            cluster_id=cluster_id,
            hostname="node-2",
            ip="10.0.0.2",
            role="member",
            status="online",
        )
        await records.touch_heartbeat(session, "member", now=old)
        await records.touch_heartbeat(session, "leader", now=old)

    async with store.transaction() as session:
        stale = await records.mark_stale_nodes_offline(session, cutoff=utcnow() - timedelta(minutes=5))
    assert stale == ["member"]

    async with store.transaction() as session:
        node = await records.touch_heartbeat(session, "member")
    assert node.status == "online"


async def test_config_upsert(store: ClusterStateStore) -> None:
    async with store.transaction() as session:
        await records.set_config_many(session, {"ceph.enabled": "true", "ovn.enabled": "true"})
        await records.set_config(session, "ceph.enabled", "false")
    async with store.session() as session:
        assert await records.get_config(session, "ceph.enabled") == "false"
        assert await records.list_config(session) == {"ceph.enabled": "false", "ovn.enabled": "true"}


async def test_delete_missing_node(store: ClusterStateStore) -> None:
    with pytest.raises(NodeNotFound):
        async with store.transaction() as session:
            await records.delete_node(session, "ghost")


async def test_member_store_refuses_writes(settings: Settings, store: ClusterStateStore) -> None:
    member = ClusterStateStore(settings, role="member")
    await member.open()
    try:
        with pytest.raises(NotLeader):
            async with member.transaction():
                pass
        async with member.session() as session:
            assert await records.count_clusters(session) == 0
    finally:
        await member.close()


async def test_second_leader_process_cannot_open_store(
    tmp_path: Path, settings: Settings, store: ClusterStateStore
) -> None:
    assert os.path.exists(tmp_path / "mcloud.db.lock")
    rival = ClusterStateStore(settings)
    with pytest.raises(NotLeader):
        await rival.open()
    assert not rival.is_open
