from __future__ import annotations

from collections import Counter
from typing import Any, Callable, Dict, Union

from fastapi import APIRouter, Depends
from fastapi.encoders import jsonable_encoder
from fastapi.responses import JSONResponse

from mcloud.control_plane import ControlPlane
from mcloud.dependencies import get_control_plane, get_lifecycle, get_operations, get_orchestrator, get_store
from mcloud.logger import get_logger
from mcloud.schemas.cluster import (
    ClusterInitOut,
    ClusterInitRequest,
    ClusterStatusOut,
    JoinOut,
    JoinRequestIn,
    LeaveOut,
    NodeSignedRequest,
    OperationOut,
    TokenCreate,
    TokenOut,
)
from mcloud.schemas.nodes import NodeOut
from mcloud.services import store as records
from mcloud.services.lifecycle import JoinRequest, NodeLifecycleManager
from mcloud.services.operations import OperationRecord, OperationRunner
from mcloud.services.orchestrator import BootstrapOrchestrator, BootstrapRequest
from mcloud.services.store import ClusterStateStore

router = APIRouter(prefix="/cluster", tags=["cluster"])
_logger = get_logger("api.cluster")

_ACCEPTED = {202: {"model": OperationOut}}


def accepted(record: OperationRecord) -> JSONResponse:
    return JSONResponse(
        status_code=202,
        content=jsonable_encoder(OperationOut.model_validate(record.to_dict())),
    )


async def dispatch(
    operations: OperationRunner,
    kind: str,
    factory: Callable[..., Any],
    *,
    wait: bool,
) -> Union[Dict[str, Any], JSONResponse]:
    record = operations.submit(kind, factory)
    if not wait:
        _logger.info("operation.accepted", "Running in background", kind=kind, operation_id=record.id)
        return accepted(record)
    return await operations.wait(record)


@router.post("/init", response_model=ClusterInitOut, responses=_ACCEPTED)
async def init_cluster(
    payload: ClusterInitRequest,
    wait: bool = True,
    orchestrator: BootstrapOrchestrator = Depends(get_orchestrator),
    operations: OperationRunner = Depends(get_operations),
) -> Any:
    request = BootstrapRequest(
        name=payload.name,
        advertise_address=payload.advertise_address,
        hostname=payload.hostname,
    )

    async def _pipeline(observer: Any) -> Dict[str, Any]:
        result = await orchestrator.run(request, observer=observer)
        return result.to_dict()

    outcome = await dispatch(operations, "bootstrap", _pipeline, wait=wait)
    if isinstance(outcome, JSONResponse):
        return outcome
    return ClusterInitOut.model_validate(outcome)


@router.post("/join", response_model=JoinOut, responses=_ACCEPTED)
async def join_cluster(
    payload: JoinRequestIn,
    wait: bool = True,
    lifecycle: NodeLifecycleManager = Depends(get_lifecycle),
    operations: OperationRunner = Depends(get_operations),
) -> Any:
    request = JoinRequest(token=payload.token, hostname=payload.node_info.hostname, ip=payload.node_info.ip)

    async def _pipeline(observer: Any) -> Dict[str, Any]:
        result = await lifecycle.join(request, observer=observer)
        return result.to_dict()

    outcome = await dispatch(operations, "join", _pipeline, wait=wait)
    if isinstance(outcome, JSONResponse):
        return outcome
    return JoinOut.model_validate(outcome)


@router.post("/tokens", response_model=TokenOut, status_code=201)
async def create_token(
    payload: TokenCreate,
    lifecycle: NodeLifecycleManager = Depends(get_lifecycle),
) -> TokenOut:
    issued = await lifecycle.issue_token(payload.ttl_seconds, issued_by="operator")
    return TokenOut(token=issued.token, cluster_id=issued.cluster_id, expires_at=issued.expires_at)


@router.post("/heartbeat", response_model=NodeOut)
async def heartbeat(
    payload: NodeSignedRequest,
    lifecycle: NodeLifecycleManager = Depends(get_lifecycle),
) -> NodeOut:
    await lifecycle.authenticate_node(
        node_id=payload.node_id,
        action="heartbeat",
        signed_at=payload.signed_at,
        signature=payload.signature,
    )
    node = await lifecycle.record_heartbeat(payload.node_id)
    return NodeOut.model_validate(node)


@router.post("/leave", response_model=LeaveOut, responses=_ACCEPTED)
async def leave_cluster(
    payload: NodeSignedRequest,
    wait: bool = True,
    lifecycle: NodeLifecycleManager = Depends(get_lifecycle),
    operations: OperationRunner = Depends(get_operations),
) -> Any:
    await lifecycle.authenticate_node(
        node_id=payload.node_id,
        action="leave",
        signed_at=payload.signed_at,
        signature=payload.signature,
    )

    async def _pipeline(observer: Any) -> Dict[str, Any]:
        result = await lifecycle.leave(payload.node_id, observer=observer)
        return result.to_dict()

    outcome = await dispatch(operations, "leave", _pipeline, wait=wait)
    if isinstance(outcome, JSONResponse):
        return outcome
    return LeaveOut.model_validate(outcome)


@router.get("", response_model=ClusterStatusOut)
async def cluster_status(
    include_subsystems: bool = False,
    control_plane: ControlPlane = Depends(get_control_plane),
) -> ClusterStatusOut:
    async with control_plane.store.session() as session:
        cluster = await records.get_cluster(session)
        nodes = await records.list_nodes(session)
    subsystems: Dict[str, str] = {}
    if include_subsystems:
        for adapter in control_plane.adapters.all():
            subsystems[adapter.name] = await adapter.status()
    if cluster is None:
        return ClusterStatusOut(initialized=False, role=control_plane.store.role, subsystems=subsystems)
    return ClusterStatusOut(
        initialized=True,
        role=control_plane.store.role,
        cluster_id=cluster.id,
        name=cluster.name,
        state=cluster.state,
        advertise_address=cluster.advertise_address,
        node_count=len(nodes),
        nodes_by_status=dict(Counter(node.status for node in nodes)),
        subsystems=subsystems,
    )


@router.get("/config", response_model=Dict[str, str])
async def cluster_config(store: ClusterStateStore = Depends(get_store)) -> Dict[str, str]:
    async with store.session() as session:
        return await records.list_config(session)
