from __future__ import annotations

from enum import Enum

APP_NAME = "mcloud"
ORGANIZATION_NAME = "MCloud"
ROOT_CA_COMMON_NAME = "MCloud Cluster CA"
TOKEN_PREFIX = "mcloud"
STATE_FILE_VERSION = "1.0.0"

CLUSTER_NAME_MIN_LENGTH = 3
CLUSTER_NAME_MAX_LENGTH = 63

BOOTSTRAPPED_AT_KEY = "cluster.bootstrapped_at"


class ClusterState(str, Enum):
    INIT = "init"
    ACTIVE = "active"
    DEGRADED = "degraded"


class NodeRole(str, Enum):
    LEADER = "leader"
    MEMBER = "member"


class NodeStatus(str, Enum):
    JOINING = "joining"
    ONLINE = "online"
    OFFLINE = "offline"
