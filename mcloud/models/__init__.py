from mcloud.models.base import Base
from mcloud.models.bootstrap_token import BootstrapToken
from mcloud.models.certificate_authority import CertificateAuthority
from mcloud.models.cluster import Cluster
from mcloud.models.event import Event
from mcloud.models.kv_entry import KVEntry
from mcloud.models.node import Node
from mcloud.models.node_certificate import NodeCertificate

__all__ = [
    "Base",
    "BootstrapToken",
    "CertificateAuthority",
    "Cluster",
    "Event",
    "KVEntry",
    "Node",
    "NodeCertificate",
]
