from __future__ import annotations

import os
import tempfile
from datetime import datetime
from typing import Optional

import yaml
from pydantic import BaseModel, Field, ValidationError

from mcloud.constants import STATE_FILE_VERSION
from mcloud.logger import get_logger
from mcloud.utils import utcnow

_logger = get_logger("state_file")


class StateFileError(RuntimeError):
    pass


class NodeIdentity(BaseModel):
    id: str
    hostname: str
    ip: str
    role: str
    status: str
    initialized_at: datetime


class ClusterIdentity(BaseModel):
    id: str
    name: str
    advertise_addr: str


class StateFlags(BaseModel):
    initialized: bool = False


class NodeState(BaseModel):
    version: str = STATE_FILE_VERSION
    node: NodeIdentity
    cluster: ClusterIdentity
    flags: StateFlags = Field(default_factory=StateFlags)


class NodeStateFile:
    """Local record of which cluster this host belongs to.

    ``initialize`` refuses to overwrite a file whose ``initialized`` flag is
    set; clearing it takes an explicit :meth:`reset`.
    """

    def __init__(self, path: str) -> None:
        self.path = path

    def exists(self) -> bool:
        return os.path.isfile(self.path)

    def load(self) -> Optional[NodeState]:
        if not self.exists():
            return None
        try:
            with open(self.path, "r", encoding="utf-8") as handle:
                raw = yaml.safe_load(handle) or {}
        except yaml.YAMLError as exc:
            raise StateFileError(f"state file {self.path} is not valid YAML") from exc
        if not isinstance(raw, dict):
            raise StateFileError(f"state file {self.path} is not a mapping")
        try:
            return NodeState.model_validate(raw)
        except ValidationError as exc:
            raise StateFileError(f"state file {self.path} is malformed: {exc.error_count()} errors") from exc

    def is_initialized(self) -> bool:
        state = self.load()
        return bool(state and state.flags.initialized)

    def initialize(
        self,
        *,
        node_id: str,
        hostname: str,
        ip: str,
        role: str,
        status: str,
        cluster_id: str,
        cluster_name: str,
        advertise_addr: str,
    ) -> NodeState:
        if self.is_initialized():
            raise StateFileError("node already initialized")
        state = NodeState(
            node=NodeIdentity(
                id=node_id,
                hostname=hostname,
                ip=ip,
                role=role,
                status=status,
                initialized_at=utcnow(),
            ),
            cluster=ClusterIdentity(id=cluster_id, name=cluster_name, advertise_addr=advertise_addr),
            flags=StateFlags(initialized=True),
        )
        self._write(state)
        _logger.info("state_file.initialize", "Wrote node state file", path=self.path, node_id=node_id)
        return state

    def update_status(self, status: str) -> NodeState:
        state = self.load()
        if state is None:
            raise StateFileError("node state file does not exist")
        state.node.status = status
        self._write(state)
        _logger.info("state_file.status", "Updated node status", path=self.path, status=status)
        return state

    def reset(self) -> bool:
        if not self.exists():
            return False
        os.remove(self.path)
        _logger.warning("state_file.reset", "Removed node state file", path=self.path)
        return True

    def _write(self, state: NodeState) -> None:
        directory = os.path.dirname(os.path.abspath(self.path))
        os.makedirs(directory, exist_ok=True)
        payload = yaml.safe_dump(state.model_dump(mode="json"), sort_keys=False)
        fd, tmp_path = tempfile.mkstemp(prefix=".state-", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(payload)
            os.chmod(tmp_path, 0o600)
            os.replace(tmp_path, self.path)
        except OSError:
            if os.path.exists(tmp_path):
                os.remove(tmp_path)
            raise
