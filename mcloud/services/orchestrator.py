from __future__ import annotations

import asyncio
import socket
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from time import perf_counter
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from mcloud.authority import CAMaterial, CredentialAuthority, IssuedCertificate, token_display_prefix
from mcloud.config import Settings
from mcloud.constants import (
    BOOTSTRAPPED_AT_KEY,
    CLUSTER_NAME_MAX_LENGTH,
    CLUSTER_NAME_MIN_LENGTH,
    ClusterState,
    NodeRole,
    NodeStatus,
)
from mcloud.errors import (
    AlreadyInitialized,
    ExternalOperationFailure,
    MCloudError,
    NotLeader,
    PersistenceFailedAfterExternalBootstrap,
    ValidationError,
)
from mcloud.logger import Operation, get_logger
from mcloud.metrics import record_pipeline_run
from mcloud.services import store as records
from mcloud.services.adapters import AdapterSet, SubsystemConfig, invoke
from mcloud.services.pipeline import BOOTSTRAP_SEQUENCE, BootstrapPhase, PhaseObserver, PhaseTracker
from mcloud.services.probe import HostProbe
from mcloud.services.store import ClusterStateStore
from mcloud.state_file import NodeStateFile, StateFileError
from mcloud.utils import is_label, parse_advertise_address, utcnow

_logger = get_logger("orchestrator")


@dataclass(frozen=True)
class BootstrapRequest:
    name: str
    advertise_address: str
    hostname: str = ""


@dataclass(frozen=True)
class NodeInfo:
    id: str
    hostname: str
    ip: str
    role: str
    status: str


@dataclass(frozen=True)
class BootstrapResult:
    cluster_id: str
    cluster_name: str
    token: str
    token_expires_at: datetime
    leader: NodeInfo
    phases: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cluster_id": self.cluster_id,
            "cluster_name": self.cluster_name,
            "token": self.token,
            "token_expires_at": self.token_expires_at.isoformat(),
            "leader": {
                "id": self.leader.id,
                "hostname": self.leader.hostname,
                "ip": self.leader.ip,
                "role": self.leader.role,
                "status": self.leader.status,
            },
            "phases": list(self.phases),
        }


@dataclass(frozen=True)
class _Credentials:
    cluster_id: str
    leader_id: str
    ca: CAMaterial
    leader_cert: IssuedCertificate
    token: str
    token_expires_at: datetime


class BootstrapOrchestrator:
    """Drives a host from "no cluster" to "cluster with an online leader".

    Phases run strictly in order. Nothing external happens before preflight
    passes, and nothing is persisted until every subsystem has bootstrapped.
    """

    def __init__(
        self,
        settings: Settings,
        store: ClusterStateStore,
        authority: CredentialAuthority,
        adapters: AdapterSet,
        *,
        probe: Optional[HostProbe] = None,
        state_file: Optional[NodeStateFile] = None,
    ) -> None:
        self._settings = settings
        self._store = store
        self._authority = authority
        self._adapters = adapters
        self._probe = probe or HostProbe()
        self._state_file = state_file or NodeStateFile(settings.state_path)
        self._lock = asyncio.Lock()

    async def run(
        self,
        request: BootstrapRequest,
        observer: Optional[PhaseObserver] = None,
    ) -> BootstrapResult:
        started = perf_counter()
        # Serialized runs: a second attempt sees the first one's cluster row in its preflight.
        async with self._lock:
            async with _logger.operation(
                "cluster.bootstrap",
                "Bootstrapping cluster",
                cluster_name=request.name,
                advertise_address=request.advertise_address,
            ) as op:
                try:
                    result = await self._run(request, op, observer)
                except MCloudError as exc:
                    record_pipeline_run(
                        kind="bootstrap",
                        result=exc.code,
                        duration_seconds=perf_counter() - started,
                    )
                    raise
        record_pipeline_run(kind="bootstrap", result="ok", duration_seconds=perf_counter() - started)
        return result

    async def _run(
        self,
        request: BootstrapRequest,
        op: Operation,
        observer: Optional[PhaseObserver],
    ) -> BootstrapResult:
        def _on_phase(phase: Any) -> None:
            op.phase(phase.value, "Bootstrap phase reached")
            if observer is not None:
                observer(phase)

        tracker: PhaseTracker[BootstrapPhase] = PhaseTracker(BOOTSTRAP_SEQUENCE, observer=_on_phase)
        _on_phase(tracker.current)

        name, host, port, hostname = await self._preflight(request)
        op.step("preflight", "Preflight checks passed", hostname=hostname)

        credentials = self._generate_credentials(host)
        tracker.advance(BootstrapPhase.CREDENTIALS_GENERATED)

        config = SubsystemConfig(
            cluster_name=name,
            hostname=hostname,
            address=host,
            port=port,
            storage_device=self._settings.storage_device,
            leader_address=request.advertise_address.strip(),
        )
        kv, completed = await self._bootstrap_subsystems(config, tracker, op)

        leader = await self._persist(
            name=name,
            advertise_address=request.advertise_address.strip(),
            hostname=hostname,
            host=host,
            credentials=credentials,
            kv=kv,
            completed=completed,
        )
        tracker.advance(BootstrapPhase.PERSISTED)

        self._write_state_file(name, request.advertise_address.strip(), credentials, leader)
        tracker.advance(BootstrapPhase.FINALIZED)

        return BootstrapResult(
            cluster_id=credentials.cluster_id,
            cluster_name=name,
            token=credentials.token,
            token_expires_at=credentials.token_expires_at,
            leader=leader,
            phases=[phase.value for phase in tracker.history],
        )

    async def _preflight(self, request: BootstrapRequest) -> Tuple[str, str, int, str]:
        if not self._store.is_leader:
            raise NotLeader("Only the leader node can bootstrap a cluster.", role=self._store.role)

        name = request.name.strip()
        if not CLUSTER_NAME_MIN_LENGTH <= len(name) <= CLUSTER_NAME_MAX_LENGTH:
            raise ValidationError(
                f"Cluster name must be {CLUSTER_NAME_MIN_LENGTH}-{CLUSTER_NAME_MAX_LENGTH} characters.",
                field="name",
            )
        if not is_label(name):
            raise ValidationError(
                "Cluster name must contain only lowercase letters, digits and inner hyphens.",
                field="name",
            )
        try:
            host, port = parse_advertise_address(request.advertise_address)
        except ValueError as exc:
            raise ValidationError(str(exc), field="advertise_address") from exc

        try:
            initialized = self._state_file.is_initialized()
        except StateFileError as exc:
            raise ValidationError(str(exc), field="state_file") from exc
        if initialized:
            raise AlreadyInitialized("This node is already initialized.", state_path=self._state_file.path)

        async with self._store.session() as session:
            if await records.count_clusters(session) > 0:
                raise AlreadyInitialized("A cluster already exists.")

        missing_tools = [tool for tool in self._adapters.required_tools() if not self._probe.tool_available(tool)]
        if missing_tools:
            raise ValidationError("Required tools are not installed.", missing_tools=missing_tools)
        hostname = request.hostname.strip() or self._settings.node_hostname.strip() or socket.gethostname()
        probe_config = SubsystemConfig(
            cluster_name=name,
            hostname=hostname,
            address=host,
            port=port,
            storage_device=self._settings.storage_device,
        )
        if not self._probe.port_available(host, port):
            # A previous attempt that got past compute leaves LXD listening on the advertise port.
            compute = self._adapters.compute
            held = await invoke(
                compute,
                "holds_endpoint",
                compute.holds_endpoint(probe_config),
                timeout_seconds=self._settings.external_timeout_seconds,
                cluster_name=name,
            )
            if not held:
                raise ValidationError(f"Advertise port {port} is already in use.", field="advertise_address")
            _logger.info(
                "bootstrap.port.reused",
                "Advertise port held by this host's compute subsystem",
                port=port,
                hostname=hostname,
            )
        for adapter in self._adapters.all():
            for device in adapter.required_devices(probe_config):
                if not self._probe.device_exists(device):
                    raise ValidationError(f"Storage device {device} does not exist.", field="storage_device")
        return name, host, port, hostname

    def _generate_credentials(self, host: str) -> _Credentials:
        cluster_id = str(uuid4())
        leader_id = str(uuid4())
        ca = self._authority.create_ca()
        leader_cert = self._authority.issue_node_certificate(ca, host, common_name=leader_id)
        token = self._authority.generate_bootstrap_token(cluster_id)
        return _Credentials(
            cluster_id=cluster_id,
            leader_id=leader_id,
            ca=ca,
            leader_cert=leader_cert,
            token=token,
            token_expires_at=utcnow() + timedelta(seconds=self._settings.bootstrap_token_ttl_seconds),
        )

    async def _bootstrap_subsystems(
        self,
        config: SubsystemConfig,
        tracker: PhaseTracker[BootstrapPhase],
        op: Operation,
    ) -> Tuple[Dict[str, str], List[str]]:
        steps = (
            (self._adapters.compute, BootstrapPhase.COMPUTE_BOOTSTRAPPED),
            (self._adapters.network, BootstrapPhase.NETWORK_BOOTSTRAPPED),
            (self._adapters.storage, BootstrapPhase.STORAGE_BOOTSTRAPPED),
        )
        kv: Dict[str, str] = {}
        completed: List[str] = []
        for adapter, phase in steps:
            try:
                outputs = await invoke(
                    adapter,
                    "bootstrap",
                    adapter.bootstrap(config),
                    timeout_seconds=self._settings.external_timeout_seconds,
                    cluster_name=config.cluster_name,
                )
            except ExternalOperationFailure as exc:
                exc.context["bootstrapped_subsystems"] = list(completed)
                _logger.error(
                    "bootstrap.external.failed",
                    "Subsystem bootstrap failed; nothing was persisted",
                    subsystem=adapter.name,
                    completed=",".join(completed) or "-",
                    timed_out=exc.timed_out,
                )
                raise
            kv.update(outputs)
            completed.append(adapter.name)
            op.child("subsystems", adapter.name, "Subsystem bootstrapped", outputs=len(outputs))
            tracker.advance(phase)
        return kv, completed

    async def _persist(
        self,
        *,
        name: str,
        advertise_address: str,
        hostname: str,
        host: str,
        credentials: _Credentials,
        kv: Dict[str, str],
        completed: List[str],
    ) -> NodeInfo:
        entries = dict(kv)
        entries[BOOTSTRAPPED_AT_KEY] = utcnow().isoformat()
        try:
            async with self._store.transaction() as session:
                await records.create_cluster(
                    session,
                    cluster_id=credentials.cluster_id,
                    name=name,
                    advertise_address=advertise_address,
                    state=ClusterState.ACTIVE.value,
                )
                node = await records.create_node(
                    session,
                    node_id=credentials.leader_id,
                    cluster_id=credentials.cluster_id,
                    hostname=hostname,
                    ip=host,
                    role=NodeRole.LEADER.value,
                    status=NodeStatus.ONLINE.value,
                )
                await records.create_ca(
                    session,
                    cluster_id=credentials.cluster_id,
                    cert_pem=credentials.ca.cert_pem,
                    key_pem=credentials.ca.key_pem,
                )
                await records.create_node_certificate(
                    session,
                    node_id=node.id,
                    cert_pem=credentials.leader_cert.cert_pem,
                    fingerprint=credentials.leader_cert.fingerprint,
                    expires_at=credentials.leader_cert.expires_at,
                )
                await records.create_token(
                    session,
                    token=credentials.token,
                    cluster_id=credentials.cluster_id,
                    expires_at=credentials.token_expires_at,
                    issued_by="bootstrap",
                )
                await records.set_config_many(session, entries)
                await records.record_event(
                    session,
                    "cluster",
                    "cluster.init",
                    fields={
                        "cluster_id": credentials.cluster_id,
                        "cluster_name": name,
                        "node_id": node.id,
                        "token_prefix": token_display_prefix(credentials.token),
                    },
                )
        except Exception as exc:
            _logger.critical(
                "bootstrap.persist.failed",
                "Subsystems are bootstrapped but the cluster record could not be saved",
                cluster_id=credentials.cluster_id,
                cluster_name=name,
                subsystems=",".join(completed),
                error_type=type(exc).__name__,
                error=str(exc),
            )
            raise PersistenceFailedAfterExternalBootstrap(
                "External subsystems were bootstrapped but the cluster record could not be saved; "
                "manual reconciliation is required before retrying.",
                cluster_id=credentials.cluster_id,
                cluster_name=name,
                bootstrapped_subsystems=list(completed),
            ) from exc

        _logger.info(
            "bootstrap.persisted",
            "Cluster record committed",
            cluster_id=credentials.cluster_id,
            leader_id=credentials.leader_id,
            kv_entries=len(entries),
        )
        return NodeInfo(
            id=credentials.leader_id,
            hostname=hostname,
            ip=host,
            role=NodeRole.LEADER.value,
            status=NodeStatus.ONLINE.value,
        )

    def _write_state_file(
        self,
        name: str,
        advertise_address: str,
        credentials: _Credentials,
        leader: NodeInfo,
    ) -> None:
        try:
            self._state_file.initialize(
                node_id=leader.id,
                hostname=leader.hostname,
                ip=leader.ip,
                role=leader.role,
                status=leader.status,
                cluster_id=credentials.cluster_id,
                cluster_name=name,
                advertise_addr=advertise_address,
            )
        except (StateFileError, OSError) as exc:
            # The cluster is durable in the store; the local file can be rewritten later.
            _logger.warning(
                "bootstrap.state_file.failed",
                "Could not write node state file",
                path=self._state_file.path,
                error=str(exc),
            )
