from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from mcloud.authority import CredentialAuthority
from mcloud.config import Settings
from mcloud.services.adapters import AdapterSet, build_adapters
from mcloud.services.lifecycle import NodeLifecycleManager
from mcloud.services.maintenance import MaintenanceLoop
from mcloud.services.operations import OperationRunner
from mcloud.services.orchestrator import BootstrapOrchestrator
from mcloud.services.probe import HostProbe
from mcloud.services.store import ClusterStateStore
from mcloud.state_file import NodeStateFile


@dataclass
class ControlPlane:
    settings: Settings
    store: ClusterStateStore
    authority: CredentialAuthority
    adapters: AdapterSet
    orchestrator: BootstrapOrchestrator
    lifecycle: NodeLifecycleManager
    operations: OperationRunner
    maintenance: MaintenanceLoop
    state_file: NodeStateFile

    async def start(self) -> None:
        await self.store.open()
        await self.maintenance.start()

    async def stop(self) -> None:
        await self.maintenance.stop()
        await self.operations.shutdown()
        await self.store.close()


def build_control_plane(
    settings: Settings,
    *,
    adapters: Optional[AdapterSet] = None,
    probe: Optional[HostProbe] = None,
) -> ControlPlane:
    """Wire every component once; the adapter variant is chosen here and nowhere else."""
    store = ClusterStateStore(settings)
    authority = CredentialAuthority(settings)
    adapter_set = adapters or build_adapters(settings)
    state_file = NodeStateFile(settings.state_path)
    return ControlPlane(
        settings=settings,
        store=store,
        authority=authority,
        adapters=adapter_set,
        orchestrator=BootstrapOrchestrator(
            settings,
            store,
            authority,
            adapter_set,
            probe=probe,
            state_file=state_file,
        ),
        lifecycle=NodeLifecycleManager(settings, store, authority, adapter_set),
        operations=OperationRunner(),
        maintenance=MaintenanceLoop(settings, store),
        state_file=state_file,
    )
