from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class ClusterInitRequest(BaseModel):
    name: str = Field(min_length=1, max_length=128)
    advertise_address: str = Field(min_length=1, max_length=128)
    hostname: str = ""


class LeaderOut(BaseModel):
    id: str
    hostname: str
    ip: str
    role: str
    status: str


class ClusterInitOut(BaseModel):
    cluster_id: str
    cluster_name: str
    token: str
    token_expires_at: datetime
    leader: LeaderOut
    phases: List[str] = Field(default_factory=list)


class NodeInfoIn(BaseModel):
    hostname: str = Field(min_length=1, max_length=253)
    ip: str = Field(min_length=1, max_length=64)


class JoinRequestIn(BaseModel):
    token: str = Field(min_length=1, max_length=256)
    node_info: NodeInfoIn


class JoinOut(BaseModel):
    node_id: str
    cluster_id: str
    cluster_name: str
    status: str
    node_cert_pem: str
    node_key_pem: str
    ca_cert_pem: str
    leader_address: str
    subsystem_outputs: Dict[str, str] = Field(default_factory=dict)
    phases: List[str] = Field(default_factory=list)


class TokenCreate(BaseModel):
    ttl_seconds: Optional[int] = Field(default=None, ge=1)


class TokenOut(BaseModel):
    token: str
    cluster_id: str
    expires_at: datetime


class NodeSignedRequest(BaseModel):
    node_id: str
    signed_at: int
    signature: str


class LeaveOut(BaseModel):
    node_id: str
    hostname: str
    phases: List[str] = Field(default_factory=list)


class ClusterStatusOut(BaseModel):
    initialized: bool
    role: str
    cluster_id: Optional[str] = None
    name: Optional[str] = None
    state: Optional[str] = None
    advertise_address: Optional[str] = None
    node_count: int = 0
    nodes_by_status: Dict[str, int] = Field(default_factory=dict)
    subsystems: Dict[str, str] = Field(default_factory=dict)


class OperationOut(BaseModel):
    id: str
    kind: str
    status: str
    phase: Optional[str] = None
    created_at: datetime
    finished_at: Optional[datetime] = None
    result: Optional[Dict[str, Any]] = None
    error: Optional[Dict[str, Any]] = None
