from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Depends

from mcloud.dependencies import get_lifecycle, get_operations, get_store
from mcloud.errors import NodeNotFound
from mcloud.routes.cluster import dispatch
from mcloud.schemas.cluster import LeaveOut, OperationOut
from mcloud.schemas.nodes import NodeCertificateOut, NodeDetailOut, NodeOut
from mcloud.services import store as records
from mcloud.services.lifecycle import NodeLifecycleManager
from mcloud.services.operations import OperationRunner
from mcloud.services.store import ClusterStateStore

router = APIRouter(prefix="/nodes", tags=["nodes"])


@router.get("", response_model=List[NodeOut])
async def list_nodes(
    status: Optional[str] = None,
    store: ClusterStateStore = Depends(get_store),
) -> List[NodeOut]:
    async with store.session() as session:
        nodes = await records.list_nodes(session, status=status)
    return [NodeOut.model_validate(node) for node in nodes]


@router.get("/{node_id}", response_model=NodeDetailOut)
async def get_node(
    node_id: str,
    store: ClusterStateStore = Depends(get_store),
) -> NodeDetailOut:
    async with store.session() as session:
        node = await records.get_node(session, node_id)
        if node is None:
            raise NodeNotFound("Node not found.", node_id=node_id)
        certificate = await records.latest_node_certificate(session, node_id)
    detail = NodeDetailOut.model_validate(node)
    if certificate is not None:
        detail = detail.model_copy(update={"certificate": NodeCertificateOut.model_validate(certificate)})
    return detail


@router.post("/{node_id}/online", response_model=NodeOut)
async def mark_online(
    node_id: str,
    lifecycle: NodeLifecycleManager = Depends(get_lifecycle),
) -> NodeOut:
    node = await lifecycle.mark_online(node_id)
    return NodeOut.model_validate(node)


@router.delete("/{node_id}", response_model=LeaveOut, responses={202: {"model": OperationOut}})
async def remove_node(
    node_id: str,
    wait: bool = True,
    lifecycle: NodeLifecycleManager = Depends(get_lifecycle),
    operations: OperationRunner = Depends(get_operations),
) -> Any:
    async def _pipeline(observer: Any) -> Dict[str, Any]:
        result = await lifecycle.leave(node_id, observer=observer)
        return result.to_dict()

    outcome = await dispatch(operations, "leave", _pipeline, wait=wait)
    if isinstance(outcome, dict):
        return LeaveOut.model_validate(outcome)
    return outcome
