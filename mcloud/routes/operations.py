from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException

from mcloud.dependencies import get_operations
from mcloud.schemas.cluster import OperationOut
from mcloud.services.operations import OperationRunner

router = APIRouter(prefix="/operations", tags=["operations"])


@router.get("/{operation_id}", response_model=OperationOut)
async def get_operation(
    operation_id: str,
    operations: OperationRunner = Depends(get_operations),
) -> OperationOut:
    record = operations.get(operation_id)
    if record is None:
        raise HTTPException(status_code=404, detail="Operation not found")
    return OperationOut.model_validate(record.to_dict())
