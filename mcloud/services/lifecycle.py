from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any, Dict, List, Optional, Set
from uuid import uuid4

from sqlalchemy.exc import IntegrityError

from mcloud.authority import (
    CAMaterial,
    CredentialAuthority,
    hash_token,
    node_request_message,
    token_display_prefix,
    verify_node_signature,
)
from mcloud.config import Settings
from mcloud.constants import NodeRole, NodeStatus
from mcloud.errors import (
    ClusterNotInitialized,
    DuplicateNode,
    MCloudError,
    NodeAuthenticationFailed,
    NodeNotFound,
    OperationInProgress,
    TokenError,
    TokenUsed,
    ValidationError,
)
from mcloud.logger import get_logger
from mcloud.metrics import record_pipeline_run, record_token_redemption
from mcloud.models import Node
from mcloud.services import store as records
from mcloud.services.adapters import AdapterSet, SubsystemConfig, invoke
from mcloud.services.pipeline import (
    JOIN_SEQUENCE,
    LEAVE_SEQUENCE,
    JoinPhase,
    LeavePhase,
    PhaseObserver,
    PhaseTracker,
)
from mcloud.services.store import ClusterStateStore
from mcloud.utils import is_ip_address, utcnow

_logger = get_logger("lifecycle")

MAX_HOSTNAME_LENGTH = 253
MAX_TOKEN_TTL_SECONDS = 7 * 24 * 3600


@dataclass(frozen=True)
class JoinRequest:
    token: str
    hostname: str
    ip: str


@dataclass(frozen=True)
class JoinResult:
    node_id: str
    cluster_id: str
    cluster_name: str
    status: str
    node_cert_pem: str
    node_key_pem: str
    ca_cert_pem: str
    leader_address: str
    subsystem_outputs: Dict[str, str] = field(default_factory=dict)
    phases: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "cluster_id": self.cluster_id,
            "cluster_name": self.cluster_name,
            "status": self.status,
            "node_cert_pem": self.node_cert_pem,
            "node_key_pem": self.node_key_pem,
            "ca_cert_pem": self.ca_cert_pem,
            "leader_address": self.leader_address,
            "subsystem_outputs": dict(self.subsystem_outputs),
            "phases": list(self.phases),
        }


@dataclass(frozen=True)
class LeaveResult:
    node_id: str
    hostname: str
    phases: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"node_id": self.node_id, "hostname": self.hostname, "phases": list(self.phases)}


@dataclass(frozen=True)
class IssuedToken:
    token: str
    cluster_id: str
    expires_at: datetime


class NodeLifecycleManager:
    """Join, heartbeat and leave state machines for cluster members."""

    def __init__(
        self,
        settings: Settings,
        store: ClusterStateStore,
        authority: CredentialAuthority,
        adapters: AdapterSet,
    ) -> None:
        self._settings = settings
        self._store = store
        self._authority = authority
        self._adapters = adapters
        self._claims: Set[str] = set()
        self._leaving: Set[str] = set()

    def _subsystem_config(self, cluster_name: str, leader_address: str, hostname: str, ip: str) -> SubsystemConfig:
        return SubsystemConfig(
            cluster_name=cluster_name,
            hostname=hostname,
            address=ip,
            port=self._settings.control_plane_port,
            storage_device=self._settings.storage_device,
            leader_address=leader_address,
        )

    async def join(self, request: JoinRequest, observer: Optional[PhaseObserver] = None) -> JoinResult:
        hostname = request.hostname.strip()
        ip = request.ip.strip()
        if not hostname or len(hostname) > MAX_HOSTNAME_LENGTH:
            raise ValidationError("Node hostname is required.", field="hostname")
        if not is_ip_address(ip):
            raise ValidationError(f"Node address is not an IP address: {ip}", field="ip")
        if not request.token.strip():
            raise ValidationError("Bootstrap token is required.", field="token")

        token_hash = hash_token(request.token)
        # Check-and-claim has no await in between, so it is atomic on the event loop.
        if token_hash in self._claims:
            record_token_redemption(result="in_flight")
            _logger.warning(
                "node.join.reject",
                "Token is already being redeemed",
                token_prefix=token_display_prefix(request.token),
                hostname=hostname,
            )
            raise TokenUsed("Bootstrap token is already being redeemed.")
        self._claims.add(token_hash)

        started = perf_counter()
        try:
            async with _logger.operation(
                "node.join",
                "Joining node",
                hostname=hostname,
                ip=ip,
                token_prefix=token_display_prefix(request.token),
            ):
                result = await self._join(request.token.strip(), hostname, ip, observer)
        except MCloudError as exc:
            record_pipeline_run(kind="join", result=exc.code, duration_seconds=perf_counter() - started)
            raise
        finally:
            self._claims.discard(token_hash)
        record_pipeline_run(kind="join", result="ok", duration_seconds=perf_counter() - started)
        return result

    async def _join(
        self,
        token: str,
        hostname: str,
        ip: str,
        observer: Optional[PhaseObserver],
    ) -> JoinResult:
        tracker: PhaseTracker[JoinPhase] = PhaseTracker(JOIN_SEQUENCE, observer=observer)

        async with self._store.session() as session:
            try:
                cluster_id = await records.validate_token(session, token)
            except TokenError as exc:
                record_token_redemption(result=exc.code)
                raise
            cluster = await records.get_cluster(session)
            ca_row = await records.get_ca(session, cluster_id)
            conflict = await records.find_node_conflict(session, cluster_id=cluster_id, hostname=hostname, ip=ip)
        if cluster is None or ca_row is None:
            raise ClusterNotInitialized("Cluster record is incomplete.", cluster_id=cluster_id)
        if conflict is not None:
            raise DuplicateNode(
                "A node with this hostname or address is already registered.",
                hostname=hostname,
                ip=ip,
                existing_node_id=conflict.id,
            )
        tracker.advance(JoinPhase.TOKEN_VALIDATED)

        node_id = str(uuid4())
        ca = CAMaterial(cert_pem=ca_row.cert_pem, key_pem=ca_row.key_pem)
        issued = self._authority.issue_node_certificate(ca, ip, common_name=node_id)
        tracker.advance(JoinPhase.CERTIFICATE_ISSUED)

        config = self._subsystem_config(cluster.name, cluster.advertise_address, hostname, ip)
        outputs: Dict[str, str] = {}
        steps = (
            (self._adapters.compute, JoinPhase.COMPUTE_JOINED),
            (self._adapters.storage, JoinPhase.STORAGE_JOINED),
            (self._adapters.network, JoinPhase.NETWORK_JOINED),
        )
        joined: List[str] = []
        for adapter, phase in steps:
            outputs.update(
                await invoke(
                    adapter,
                    "join",
                    adapter.join(token, config),
                    timeout_seconds=self._settings.external_timeout_seconds,
                    node_id=node_id,
                    hostname=hostname,
                )
            )
            joined.append(adapter.name)
            tracker.advance(phase)

        try:
            async with self._store.transaction() as session:
                await records.consume_token(session, token, node_id)
                await records.create_node(
                    session,
                    node_id=node_id,
                    cluster_id=cluster_id,
                    hostname=hostname,
                    ip=ip,
                    role=NodeRole.MEMBER.value,
                    status=NodeStatus.JOINING.value,
                )
                await records.create_node_certificate(
                    session,
                    node_id=node_id,
                    cert_pem=issued.cert_pem,
                    fingerprint=issued.fingerprint,
                    expires_at=issued.expires_at,
                )
                await records.record_event(
                    session,
                    "node",
                    "node.join",
                    fields={
                        "node_id": node_id,
                        "hostname": hostname,
                        "ip": ip,
                        "token_prefix": token_display_prefix(token),
                    },
                )
        except TokenError as exc:
            record_token_redemption(result=exc.code)
            _logger.warning(
                "node.join.orphaned",
                "Subsystems admitted the host but registration was refused",
                hostname=hostname,
                subsystems=",".join(joined),
                error=exc.code,
            )
            raise
        except IntegrityError as exc:
            raise DuplicateNode(
                "A node with this hostname or address is already registered.",
                hostname=hostname,
                ip=ip,
            ) from exc
        record_token_redemption(result="ok")
        tracker.advance(JoinPhase.REGISTERED)

        return JoinResult(
            node_id=node_id,
            cluster_id=cluster_id,
            cluster_name=cluster.name,
            status=NodeStatus.JOINING.value,
            node_cert_pem=issued.cert_pem,
            node_key_pem=issued.key_pem,
            ca_cert_pem=ca_row.cert_pem,
            leader_address=cluster.advertise_address,
            subsystem_outputs=outputs,
            phases=[phase.value for phase in tracker.history],
        )

    async def mark_online(self, node_id: str) -> Node:
        async with self._store.transaction() as session:
            node = await records.get_node(session, node_id)
            if node is None:
                raise NodeNotFound("Node not found.", node_id=node_id)
            if node.draining:
                raise OperationInProgress("Node is leaving the cluster.", node_id=node_id)
            node = await records.update_node_status(session, node_id, NodeStatus.ONLINE.value)
            await records.record_event(session, "node", "node.online", fields={"node_id": node_id})
        _logger.info("node.online", "Node marked online", node_id=node_id, phase=JoinPhase.ONLINE.value)
        return node

    async def record_heartbeat(self, node_id: str) -> Node:
        async with self._store.transaction() as session:
            previous = await records.get_node(session, node_id)
            if previous is None:
                raise NodeNotFound("Node not found.", node_id=node_id)
            was_online = previous.status == NodeStatus.ONLINE.value
            node = await records.touch_heartbeat(session, node_id)
            if not was_online and node.status == NodeStatus.ONLINE.value:
                await records.record_event(session, "node", "node.online", fields={"node_id": node_id})
        _logger.debug("node.heartbeat", "Recorded heartbeat", node_id=node_id, status=node.status)
        return node

    async def issue_token(
        self,
        ttl_seconds: Optional[int] = None,
        *,
        issued_by: Optional[str] = None,
    ) -> IssuedToken:
        ttl = ttl_seconds if ttl_seconds is not None else self._settings.bootstrap_token_ttl_seconds
        if ttl <= 0 or ttl > MAX_TOKEN_TTL_SECONDS:
            raise ValidationError(
                f"Token TTL must be between 1 and {MAX_TOKEN_TTL_SECONDS} seconds.",
                field="ttl_seconds",
            )
        async with self._store.transaction() as session:
            cluster = await records.get_cluster(session)
            if cluster is None:
                raise ClusterNotInitialized("Cluster is not initialized.")
            token = self._authority.generate_bootstrap_token(cluster.id)
            expires_at = utcnow() + timedelta(seconds=ttl)
            await records.create_token(
                session,
                token=token,
                cluster_id=cluster.id,
                expires_at=expires_at,
                issued_by=issued_by,
            )
            await records.record_event(
                session,
                "token",
                "token.issue",
                fields={"token_prefix": token_display_prefix(token), "ttl_seconds": ttl, "issued_by": issued_by},
            )
        _logger.info("token.issue", "Issued bootstrap token", cluster_id=cluster.id, ttl_seconds=ttl)
        return IssuedToken(token=token, cluster_id=cluster.id, expires_at=expires_at)

    async def leave(self, node_id: str, observer: Optional[PhaseObserver] = None) -> LeaveResult:
        if node_id in self._leaving:
            raise OperationInProgress("Node is already leaving the cluster.", node_id=node_id)
        self._leaving.add(node_id)
        started = perf_counter()
        try:
            async with _logger.operation("node.leave", "Removing node", node_id=node_id):
                result = await self._leave(node_id, observer)
        except MCloudError as exc:
            record_pipeline_run(kind="leave", result=exc.code, duration_seconds=perf_counter() - started)
            raise
        finally:
            self._leaving.discard(node_id)
        record_pipeline_run(kind="leave", result="ok", duration_seconds=perf_counter() - started)
        return result

    async def _leave(self, node_id: str, observer: Optional[PhaseObserver]) -> LeaveResult:
        tracker: PhaseTracker[LeavePhase] = PhaseTracker(LEAVE_SEQUENCE, observer=observer)
        async with self._store.session() as session:
            node = await records.get_node(session, node_id)
            cluster = await records.get_cluster(session)
        if node is None or cluster is None:
            raise NodeNotFound("Node not found.", node_id=node_id)
        if node.role == NodeRole.LEADER.value:
            raise ValidationError("The leader node cannot leave the cluster.", node_id=node_id)

        async with self._store.transaction() as session:
            await records.set_node_draining(session, node_id, True)
            await records.record_event(session, "node", "node.drain", fields={"node_id": node_id})
        tracker.advance(LeavePhase.DRAINING)

        config = self._subsystem_config(cluster.name, cluster.advertise_address, node.hostname, node.ip)
        # Follows LEAVE_SEQUENCE (compute, storage, network), not the reverse of the join order.
        steps = (
            (self._adapters.compute, LeavePhase.REMOVED_FROM_COMPUTE),
            (self._adapters.storage, LeavePhase.REMOVED_FROM_STORAGE),
            (self._adapters.network, LeavePhase.REMOVED_FROM_NETWORK),
        )
        for adapter, phase in steps:
            await invoke(
                adapter,
                "remove",
                adapter.remove(config),
                timeout_seconds=self._settings.external_timeout_seconds,
                node_id=node_id,
                hostname=node.hostname,
            )
            tracker.advance(phase)

        async with self._store.transaction() as session:
            await records.delete_node(session, node_id)
            await records.record_event(
                session,
                "node",
                "node.leave",
                fields={"node_id": node_id, "hostname": node.hostname},
            )
        tracker.advance(LeavePhase.REMOVED)
        return LeaveResult(
            node_id=node_id,
            hostname=node.hostname,
            phases=[phase.value for phase in tracker.history],
        )

    async def authenticate_node(
        self,
        *,
        node_id: str,
        action: str,
        signed_at: int,
        signature: str,
    ) -> Node:
        skew = abs(int(utcnow().timestamp()) - int(signed_at))
        if skew > self._settings.request_signature_max_skew_seconds:
            raise NodeAuthenticationFailed("Request signature timestamp is outside the allowed window.")
        async with self._store.session() as session:
            node = await records.get_node(session, node_id)
            if node is None:
                raise NodeAuthenticationFailed("Unknown node or invalid signature.")
            certificate = await records.latest_node_certificate(session, node_id)
            ca_row = await records.get_ca(session, node.cluster_id)
        if certificate is None or ca_row is None:
            raise NodeAuthenticationFailed("Unknown node or invalid signature.")
        message = node_request_message(action=action, node_id=node_id, signed_at=int(signed_at))
        if not verify_node_signature(
            cert_pem=certificate.cert_pem,
            ca_cert_pem=ca_row.cert_pem,
            message=message,
            signature_b64=signature,
        ):
            _logger.warning("node.auth.reject", "Rejected node request signature", node_id=node_id, action=action)
            raise NodeAuthenticationFailed("Unknown node or invalid signature.")
        return node
