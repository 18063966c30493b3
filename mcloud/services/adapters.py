from __future__ import annotations

import asyncio
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Awaitable, Dict, Iterable, List, Optional, Set, Tuple, TypeVar

from mcloud.config import Settings
from mcloud.errors import ExternalOperationFailure
from mcloud.logger import get_logger
from mcloud.metrics import record_external_operation
from mcloud.services.commands import CommandError, CommandTimeoutError

_logger = get_logger("adapters")

T = TypeVar("T")

COMPUTE = "compute"
STORAGE = "storage"
NETWORK = "network"


@dataclass(frozen=True)
class SubsystemConfig:
    cluster_name: str
    hostname: str
    address: str
    port: int = 8443
    storage_device: str = "/dev/sdb"
    leader_address: str = ""
    extra: Dict[str, str] = field(default_factory=dict)

    @property
    def endpoint(self) -> str:
        host = f"[{self.address}]" if ":" in self.address else self.address
        return f"{host}:{self.port}"


def ceph_pool_name(cluster_name: str) -> str:
    return f"{cluster_name}-ceph"


def ovn_network_name(cluster_name: str) -> str:
    return f"{cluster_name}-ovn"


def bootstrap_outputs(subsystem: str, config: SubsystemConfig) -> Dict[str, str]:
    """Cluster configuration entries a subsystem contributes once bootstrapped."""
    if subsystem == COMPUTE:
        return {
            "lxd.cluster.name": config.cluster_name,
            "lxd.cluster.address": config.endpoint,
        }
    if subsystem == STORAGE:
        return {
            "ceph.enabled": "true",
            "ceph.cluster.name": ceph_pool_name(config.cluster_name),
        }
    if subsystem == NETWORK:
        return {
            "ovn.enabled": "true",
            "ovn.network.name": ovn_network_name(config.cluster_name),
        }
    return {}


def listed_members(listing: str) -> Set[str]:
    """Member names from the first column of a ``cluster list`` table, plain or boxed."""
    names: Set[str] = set()
    for line in listing.splitlines():
        cells = line.replace("|", " ").split()
        if not cells or set(cells[0]) <= set("+-="):
            continue
        if cells[0].upper() == "NAME":
            continue
        names.add(cells[0])
    return names


class SubsystemAdapter(ABC):
    """Uniform async surface over one externally-owned subsystem.

    Every call is idempotent: bootstrapping an already bootstrapped
    subsystem, admitting an existing member or removing an absent one
    all succeed without changing anything.
    """

    name: str = ""
    required_tools: Tuple[str, ...] = ()

    def required_devices(self, config: SubsystemConfig) -> Tuple[str, ...]:
        del config
        return ()

    async def holds_endpoint(self, config: SubsystemConfig) -> bool:
        """True when this subsystem already listens on ``config.endpoint`` for this host."""
        del config
        return False

    @abstractmethod
    async def bootstrap(self, config: SubsystemConfig) -> Dict[str, str]:
        ...

    @abstractmethod
    async def join(self, token: str, config: SubsystemConfig) -> Dict[str, str]:
        ...

    @abstractmethod
    async def remove(self, config: SubsystemConfig) -> None:
        ...

    @abstractmethod
    async def status(self) -> str:
        ...


@dataclass(frozen=True)
class AdapterSet:
    compute: SubsystemAdapter
    storage: SubsystemAdapter
    network: SubsystemAdapter

    def all(self) -> Tuple[SubsystemAdapter, ...]:
        return (self.compute, self.storage, self.network)

    def required_tools(self) -> List[str]:
        tools: List[str] = []
        for adapter in self.all():
            for tool in adapter.required_tools:
                if tool not in tools:
                    tools.append(tool)
        return tools


class NoOpAdapter(SubsystemAdapter):
    """In-memory stand-in for a subsystem, used in development and tests."""

    def __init__(
        self,
        name: str,
        *,
        delay_seconds: float = 0.0,
        fail_on: Optional[Iterable[str]] = None,
    ) -> None:
        self.name = name
        self.required_tools = ()
        self.delay_seconds = delay_seconds
        self.fail_on: Set[str] = set(fail_on or ())
        self.calls: List[Tuple[str, str]] = []
        self.bootstrapped_as: Optional[str] = None
        self.members: Dict[str, str] = {}

    async def _simulate(self, action: str, target: str) -> None:
        self.calls.append((action, target))
        if self.delay_seconds > 0:
            await asyncio.sleep(self.delay_seconds)
        if action in self.fail_on:
            raise CommandError(f"{self.name}.{action}", "simulated failure")

    async def bootstrap(self, config: SubsystemConfig) -> Dict[str, str]:
        await self._simulate("bootstrap", config.hostname)
        if self.bootstrapped_as is None:
            self.bootstrapped_as = config.cluster_name
            self.members[config.hostname] = config.address
        return bootstrap_outputs(self.name, config)

    async def join(self, token: str, config: SubsystemConfig) -> Dict[str, str]:
        await self._simulate("join", config.hostname)
        self.members[config.hostname] = config.address
        return {f"{self.name}.join_token": f"noop-{self.name}-{config.hostname}"}

    async def remove(self, config: SubsystemConfig) -> None:
        await self._simulate("remove", config.hostname)
        self.members.pop(config.hostname, None)

    async def holds_endpoint(self, config: SubsystemConfig) -> bool:
        return self.bootstrapped_as is not None and config.hostname in self.members

    async def status(self) -> str:
        if self.bootstrapped_as is None:
            return "uninitialized"
        return f"clustered ({len(self.members)} members)"


def build_adapters(settings: Settings) -> AdapterSet:
    if settings.adapter_mode == "noop":
        _logger.warning("adapters.noop", "Using no-op subsystem adapters", app_env=settings.app_env)
        return AdapterSet(
            compute=NoOpAdapter(COMPUTE),
            storage=NoOpAdapter(STORAGE),
            network=NoOpAdapter(NETWORK),
        )

    from mcloud.services.lxd import LXDAdapter
    from mcloud.services.microceph import MicroCephAdapter
    from mcloud.services.microovn import MicroOVNAdapter

    return AdapterSet(
        compute=LXDAdapter(settings),
        storage=MicroCephAdapter(settings),
        network=MicroOVNAdapter(settings),
    )


async def invoke(
    adapter: SubsystemAdapter,
    action: str,
    call: Awaitable[T],
    *,
    timeout_seconds: float,
    **fields: Any,
) -> T:
    """Await one adapter call under a deadline; any failure surfaces as ``ExternalOperationFailure``."""
    try:
        result = await asyncio.wait_for(call, timeout=timeout_seconds)
    except TimeoutError as exc:
        record_external_operation(subsystem=adapter.name, action=action, result="timeout")
        _logger.error(
            "adapter.timeout",
            "Subsystem call timed out",
            subsystem=adapter.name,
            action=action,
            timeout_seconds=timeout_seconds,
            **fields,
        )
        raise ExternalOperationFailure(
            f"{adapter.name} {action} timed out after {timeout_seconds}s",
            subsystem=adapter.name,
            action=action,
            timed_out=True,
        ) from exc
    except CommandError as exc:
        timed_out = isinstance(exc, CommandTimeoutError)
        record_external_operation(
            subsystem=adapter.name,
            action=action,
            result="timeout" if timed_out else "error",
        )
        _logger.error(
            "adapter.fail",
            "Subsystem call failed",
            subsystem=adapter.name,
            action=action,
            error=exc.detail,
            **fields,
        )
        raise ExternalOperationFailure(
            f"{adapter.name} {action} failed: {exc.detail}",
            subsystem=adapter.name,
            action=action,
            timed_out=timed_out,
        ) from exc
    except ExternalOperationFailure:
        raise
    except Exception as exc:
        record_external_operation(subsystem=adapter.name, action=action, result="error")
        _logger.exception(
            "adapter.fail",
            "Subsystem call failed unexpectedly",
            subsystem=adapter.name,
            action=action,
            error_type=type(exc).__name__,
            **fields,
        )
        raise ExternalOperationFailure(
            f"{adapter.name} {action} failed: {exc}",
            subsystem=adapter.name,
            action=action,
            timed_out=False,
        ) from exc
    record_external_operation(subsystem=adapter.name, action=action, result="ok")
    return result
