from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict


class NodeOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    cluster_id: str
    hostname: str
    ip: str
    role: str
    status: str
    draining: bool
    joined_at: datetime
    last_heartbeat: Optional[datetime]
    created_at: datetime
    updated_at: datetime


class NodeCertificateOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    fingerprint: str
    expires_at: datetime


class NodeDetailOut(NodeOut):
    certificate: Optional[NodeCertificateOut] = None
