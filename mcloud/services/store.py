from __future__ import annotations

import asyncio
import fcntl
import os
from contextlib import asynccontextmanager
from datetime import datetime, timedelta
from typing import AsyncIterator, Awaitable, Callable, Dict, List, Optional, TypeVar
from uuid import uuid4

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from mcloud.authority import hash_token, token_display_prefix
from mcloud.config import Settings
from mcloud.constants import ClusterState, NodeRole, NodeStatus
from mcloud.dependencies import build_engine
from mcloud.errors import NodeNotFound, NotLeader, TokenExpired, TokenNotFound, TokenUsed
from mcloud.logger import get_logger
from mcloud.models import (
    Base,
    BootstrapToken,
    CertificateAuthority,
    Cluster,
    KVEntry,
    Node,
    NodeCertificate,
)
from mcloud.services.events import list_events, record_event
from mcloud.utils import normalize_utc, utcnow

_logger = get_logger("store")

T = TypeVar("T")

__all__ = [
    "ClusterStateStore",
    "consume_token",
    "count_clusters",
    "create_ca",
    "create_cluster",
    "create_node",
    "create_node_certificate",
    "create_token",
    "delete_node",
    "find_node_conflict",
    "get_ca",
    "get_cluster",
    "get_config",
    "get_node",
    "latest_node_certificate",
    "list_config",
    "list_events",
    "list_nodes",
    "mark_stale_nodes_offline",
    "prune_expired_tokens",
    "record_event",
    "set_config",
    "set_config_many",
    "set_node_draining",
    "touch_heartbeat",
    "update_node_status",
    "validate_token",
]


def _sqlite_path(database_url: str) -> Optional[str]:
    url = make_url(database_url)
    if not url.drivername.startswith("sqlite"):
        return None
    database = url.database or ""
    if not database or database == ":memory:" or database.startswith("file:"):
        return None
    return database


class ClusterStateStore:
    """Transactional cluster record owned by the leader.

    Writes go through :meth:`transaction`, which holds an in-process writer
    lock for its whole duration. A leader store additionally holds an
    exclusive lock file next to the SQLite database so that a second leader
    process cannot open the same file for writing.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        role: Optional[str] = None,
        engine: Optional[AsyncEngine] = None,
    ) -> None:
        self._settings = settings
        self.role = (role or settings.node_role).strip().lower()
        self._engine = engine
        self._owns_engine = engine is None
        self._sessionmaker: Optional[async_sessionmaker[AsyncSession]] = None
        self._write_lock = asyncio.Lock()
        self._lock_fd: Optional[int] = None

    @property
    def is_leader(self) -> bool:
        return self.role == "leader"

    @property
    def is_open(self) -> bool:
        return self._sessionmaker is not None

    async def open(self) -> None:
        if self._sessionmaker is not None:
            return
        db_path = _sqlite_path(self._settings.database_url)
        if db_path:
            db_dir = os.path.dirname(db_path)
            if db_dir:
                os.makedirs(db_dir, exist_ok=True)
        if self.is_leader and db_path:
            self._acquire_writer_lock(f"{db_path}.lock")

        if self._engine is None:
            self._engine = build_engine(self._settings)
        self._sessionmaker = async_sessionmaker(bind=self._engine, expire_on_commit=False)

        if self.is_leader and self._settings.store_auto_create:
            await self.create_schema()
        _logger.info(
            "store.open",
            "Opened cluster state store",
            role=self.role,
            database=make_url(self._settings.database_url).render_as_string(hide_password=True),
        )

    async def close(self) -> None:
        if self._engine is not None and self._owns_engine:
            await self._engine.dispose()
            self._engine = None
        self._sessionmaker = None
        self._release_writer_lock()
        _logger.info("store.close", "Closed cluster state store", role=self.role)

    async def create_schema(self) -> None:
        engine = self._require_engine()
        async with engine.begin() as connection:
            await connection.run_sync(Base.metadata.create_all)

    def _acquire_writer_lock(self, lock_path: str) -> None:
        fd = os.open(lock_path, os.O_RDWR | os.O_CREAT, 0o600)
        try:
            fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
        except BlockingIOError as exc:
            os.close(fd)
            _logger.error(
                "store.lock.busy",
                "Another leader process holds the store lock",
                lock_path=lock_path,
            )
            raise NotLeader(
                "Another leader process already owns this state store.",
                lock_path=lock_path,
            ) from exc
        os.ftruncate(fd, 0)
        os.write(fd, str(os.getpid()).encode("ascii"))
        self._lock_fd = fd

    def _release_writer_lock(self) -> None:
        if self._lock_fd is None:
            return
        try:
            fcntl.flock(self._lock_fd, fcntl.LOCK_UN)
        finally:
            os.close(self._lock_fd)
            self._lock_fd = None

    def _require_engine(self) -> AsyncEngine:
        if self._engine is None:
            raise RuntimeError("State store is not open.")
        return self._engine

    def _require_sessionmaker(self) -> async_sessionmaker[AsyncSession]:
        if self._sessionmaker is None:
            raise RuntimeError("State store is not open.")
        return self._sessionmaker

    @asynccontextmanager
    async def session(self) -> AsyncIterator[AsyncSession]:
        sessionmaker = self._require_sessionmaker()
        async with sessionmaker() as session:
            yield session

    @asynccontextmanager
    async def transaction(self) -> AsyncIterator[AsyncSession]:
        if not self.is_leader:
            _logger.warning("store.write.rejected", "Rejected write on non-leader store", role=self.role)
            raise NotLeader("This node is not the cluster leader; writes are refused.", role=self.role)
        sessionmaker = self._require_sessionmaker()
        async with self._write_lock:
            async with sessionmaker() as session:
                try:
                    async with session.begin():
                        yield session
                except Exception as exc:
                    _logger.warning(
                        "store.rollback",
                        "Rolled back state store transaction",
                        error_type=type(exc).__name__,
                    )
                    raise

    async def with_transaction(self, fn: Callable[[AsyncSession], Awaitable[T]]) -> T:
        async with self.transaction() as session:
            return await fn(session)


async def count_clusters(session: AsyncSession) -> int:
    result = await session.execute(select(func.count()).select_from(Cluster))
    return int(result.scalar_one())


async def get_cluster(session: AsyncSession) -> Optional[Cluster]:
    result = await session.execute(select(Cluster).limit(1))
    return result.scalar_one_or_none()


async def create_cluster(
    session: AsyncSession,
    *,
    cluster_id: str,
    name: str,
    advertise_address: str,
    state: str = ClusterState.ACTIVE.value,
) -> Cluster:
    cluster = Cluster(
        id=cluster_id,
        name=name,
        state=state,
        advertise_address=advertise_address,
        singleton=1,
    )
    session.add(cluster)
    await session.flush()
    await session.refresh(cluster)
    return cluster


async def create_node(
    session: AsyncSession,
    *,
    node_id: str,
    cluster_id: str,
    hostname: str,
    ip: str,
    role: str,
    status: str,
) -> Node:
    now = utcnow()
    node = Node(
        id=node_id,
        cluster_id=cluster_id,
        hostname=hostname,
        ip=ip,
        role=role,
        status=status,
        draining=False,
        joined_at=now,
        last_heartbeat=now if status == NodeStatus.ONLINE.value else None,
    )
    session.add(node)
    await session.flush()
    await session.refresh(node)
    return node


async def get_node(session: AsyncSession, node_id: str) -> Optional[Node]:
    result = await session.execute(select(Node).where(Node.id == node_id))
    return result.scalar_one_or_none()


async def list_nodes(session: AsyncSession, *, status: Optional[str] = None) -> List[Node]:
    query = select(Node).order_by(Node.joined_at.asc(), Node.id.asc())
    if status:
        query = query.where(Node.status == status)
    result = await session.execute(query)
    return list(result.scalars().all())


async def find_node_conflict(
    session: AsyncSession,
    *,
    cluster_id: str,
    hostname: str,
    ip: str,
) -> Optional[Node]:
    result = await session.execute(
        select(Node)
        .where(Node.cluster_id == cluster_id, or_(Node.hostname == hostname, Node.ip == ip))
        .limit(1)
    )
    return result.scalar_one_or_none()


async def update_node_status(session: AsyncSession, node_id: str, status: str) -> Node:
    node = await get_node(session, node_id)
    if node is None:
        raise NodeNotFound("Node not found.", node_id=node_id)
    node.status = status
    if status == NodeStatus.ONLINE.value:
        node.last_heartbeat = utcnow()
    await session.flush()
    await session.refresh(node)
    return node


async def set_node_draining(session: AsyncSession, node_id: str, draining: bool = True) -> Node:
    node = await get_node(session, node_id)
    if node is None:
        raise NodeNotFound("Node not found.", node_id=node_id)
    node.draining = draining
    await session.flush()
    await session.refresh(node)
    return node


async def touch_heartbeat(session: AsyncSession, node_id: str, *, now: Optional[datetime] = None) -> Node:
    node = await get_node(session, node_id)
    if node is None:
        raise NodeNotFound("Node not found.", node_id=node_id)
    node.last_heartbeat = now or utcnow()
    if node.status != NodeStatus.ONLINE.value and not node.draining:
        node.status = NodeStatus.ONLINE.value
    await session.flush()
    await session.refresh(node)
    return node


async def delete_node(session: AsyncSession, node_id: str) -> None:
    await session.execute(delete(NodeCertificate).where(NodeCertificate.node_id == node_id))
    result = await session.execute(delete(Node).where(Node.id == node_id))
    if int(result.rowcount or 0) == 0:
        raise NodeNotFound("Node not found.", node_id=node_id)


async def mark_stale_nodes_offline(session: AsyncSession, *, cutoff: datetime) -> List[str]:
    result = await session.execute(
        select(Node).where(
            Node.status == NodeStatus.ONLINE.value,
            Node.role != NodeRole.LEADER.value,
            Node.last_heartbeat.is_not(None),
            Node.last_heartbeat < cutoff,
        )
    )
    stale = list(result.scalars().all())
    for node in stale:
        node.status = NodeStatus.OFFLINE.value
    if stale:
        await session.flush()
    return [node.id for node in stale]


async def create_ca(session: AsyncSession, *, cluster_id: str, cert_pem: str, key_pem: str) -> CertificateAuthority:
    authority = CertificateAuthority(
        id=uuid4().hex,
        cluster_id=cluster_id,
        cert_pem=cert_pem,
        key_pem=key_pem,
    )
    session.add(authority)
    await session.flush()
    return authority


async def get_ca(session: AsyncSession, cluster_id: Optional[str] = None) -> Optional[CertificateAuthority]:
    query = select(CertificateAuthority)
    if cluster_id:
        query = query.where(CertificateAuthority.cluster_id == cluster_id)
    result = await session.execute(query.limit(1))
    return result.scalar_one_or_none()


async def create_node_certificate(
    session: AsyncSession,
    *,
    node_id: str,
    cert_pem: str,
    fingerprint: str,
    expires_at: datetime,
) -> NodeCertificate:
    certificate = NodeCertificate(
        id=uuid4().hex,
        node_id=node_id,
        cert_pem=cert_pem,
        fingerprint=fingerprint,
        expires_at=expires_at,
    )
    session.add(certificate)
    await session.flush()
    return certificate


async def latest_node_certificate(session: AsyncSession, node_id: str) -> Optional[NodeCertificate]:
    result = await session.execute(
        select(NodeCertificate)
        .where(NodeCertificate.node_id == node_id)
        .order_by(NodeCertificate.expires_at.desc())
        .limit(1)
    )
    return result.scalar_one_or_none()


async def create_token(
    session: AsyncSession,
    *,
    token: str,
    cluster_id: str,
    expires_at: datetime,
    issued_by: Optional[str] = None,
) -> BootstrapToken:
    row = BootstrapToken(
        token_hash=hash_token(token),
        display_prefix=token_display_prefix(token),
        cluster_id=cluster_id,
        expires_at=expires_at,
        used=False,
        issued_by=issued_by,
    )
    session.add(row)
    await session.flush()
    return row


async def _get_token_row(session: AsyncSession, token: str) -> Optional[BootstrapToken]:
    result = await session.execute(
        select(BootstrapToken)
        .where(BootstrapToken.token_hash == hash_token(token))
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()


def _classify_token(row: Optional[BootstrapToken], now: datetime) -> str:
    if row is None:
        raise TokenNotFound("Bootstrap token not recognized.")
    expires_at = normalize_utc(row.expires_at)
    if expires_at is not None and now > expires_at:
        raise TokenExpired("Bootstrap token has expired.", token_prefix=row.display_prefix)
    if row.used:
        raise TokenUsed("Bootstrap token has already been used.", token_prefix=row.display_prefix)
    return row.cluster_id


async def validate_token(session: AsyncSession, token: str, now: Optional[datetime] = None) -> str:
    """Read-only token check; returns the cluster id the token belongs to."""
    current = normalize_utc(now) or utcnow()
    return _classify_token(await _get_token_row(session, token), current)


async def consume_token(
    session: AsyncSession,
    token: str,
    node_id: str,
    now: Optional[datetime] = None,
) -> str:
    """Mark the token used by ``node_id`` in a single conditional update.

    Only one caller can move a token from unused to used; every other caller
    gets the same classification :func:`validate_token` would give.
    """
    current = normalize_utc(now) or utcnow()
    token_hash = hash_token(token)
    result = await session.execute(
        update(BootstrapToken)
        .where(
            BootstrapToken.token_hash == token_hash,
            BootstrapToken.used.is_(False),
            BootstrapToken.expires_at >= current,
        )
        .values(used=True, used_at=current, used_by_node_id=node_id, updated_at=current)
        .execution_options(synchronize_session=False)
    )
    row = await _get_token_row(session, token)
    if int(result.rowcount or 0) != 1:
        _classify_token(row, current)
        raise TokenUsed("Bootstrap token has already been used.")
    if row is None:
        raise TokenNotFound("Bootstrap token not recognized.")
    return row.cluster_id


async def prune_expired_tokens(
    session: AsyncSession,
    *,
    now: Optional[datetime] = None,
    grace: timedelta = timedelta(0),
) -> int:
    cutoff = (normalize_utc(now) or utcnow()) - grace
    result = await session.execute(
        delete(BootstrapToken)
        .where(BootstrapToken.expires_at < cutoff)
        .execution_options(synchronize_session=False)
    )
    return int(result.rowcount or 0)


async def set_config(session: AsyncSession, key: str, value: str) -> None:
    await set_config_many(session, {key: value})


async def set_config_many(session: AsyncSession, updates: Dict[str, str]) -> None:
    clean = {str(key).strip(): str(value) for key, value in updates.items() if str(key).strip()}
    if not clean:
        return
    now = utcnow()
    payload = [{"key": key, "value": value, "updated_at": now} for key, value in clean.items()]
    stmt = sqlite_insert(KVEntry).values(payload)
    stmt = stmt.on_conflict_do_update(
        index_elements=[KVEntry.key],
        set_={"value": stmt.excluded.value, "updated_at": stmt.excluded.updated_at},
    )
    await session.execute(stmt)


async def get_config(session: AsyncSession, key: str) -> Optional[str]:
    result = await session.execute(select(KVEntry.value).where(KVEntry.key == key))
    return result.scalar_one_or_none()


async def list_config(session: AsyncSession) -> Dict[str, str]:
    result = await session.execute(select(KVEntry).order_by(KVEntry.key.asc()))
    return {row.key: row.value for row in result.scalars().all()}
