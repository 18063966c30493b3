from __future__ import annotations

from typing import Dict, Tuple

from mcloud.config import Settings
from mcloud.logger import get_logger
from mcloud.services.adapters import (
    STORAGE,
    SubsystemAdapter,
    SubsystemConfig,
    bootstrap_outputs,
    listed_members,
    ceph_pool_name,
)
from mcloud.services.commands import run_checked, run_probe

_logger = get_logger("microceph")

JOIN_TOKEN_KEY = "storage.join_token"


class MicroCephAdapter(SubsystemAdapter):
    name = STORAGE

    def __init__(self, settings: Settings) -> None:
        self._microceph = settings.microceph_command
        self._lxc = settings.lxc_command
        self._timeout = settings.external_timeout_seconds
        self.required_tools = (self._microceph,)

    def required_devices(self, config: SubsystemConfig) -> Tuple[str, ...]:
        return (config.storage_device,)

    async def _cluster_listing(self) -> str:
        code, out, _ = await run_probe((self._microceph, "cluster", "list"))
        return out if code == 0 else ""

    async def _is_member(self, hostname: str) -> bool:
        return hostname in listed_members(await self._cluster_listing())

    async def _pool_registered(self, pool: str) -> bool:
        code, _, _ = await run_probe((self._lxc, "storage", "show", f"ceph-{pool}"))
        return code == 0

    async def bootstrap(self, config: SubsystemConfig) -> Dict[str, str]:
        pool = ceph_pool_name(config.cluster_name)
        async with _logger.operation("microceph.bootstrap", "Bootstrapping MicroCeph", host=config.hostname) as op:
            if await self._is_member(config.hostname):
                op.step("microceph.exists", "MicroCeph already bootstrapped on this host")
            else:
                await run_checked(
                    (self._microceph, "cluster", "bootstrap"),
                    action="microceph.bootstrap",
                    timeout_seconds=self._timeout,
                )
                await run_checked(
                    (self._microceph, "disk", "add", config.storage_device),
                    action="microceph.disk.add",
                    timeout_seconds=self._timeout,
                )
                op.step("microceph.disk", "Added storage device", device=config.storage_device)
            if not await self._pool_registered(pool):
                await run_checked(
                    (self._lxc, "storage", "create", f"ceph-{pool}", "ceph", f"source={pool}"),
                    action="microceph.lxd.register",
                    timeout_seconds=self._timeout,
                )
                op.step("microceph.lxd", "Registered Ceph pool with LXD", pool=pool)
        return bootstrap_outputs(STORAGE, config)

    async def join(self, token: str, config: SubsystemConfig) -> Dict[str, str]:
        del token
        if await self._is_member(config.hostname):
            _logger.info("microceph.join.exists", "Host already a MicroCeph member", host=config.hostname)
            return {}
        join_token = await run_checked(
            (self._microceph, "cluster", "add", config.hostname),
            action="microceph.cluster.add",
            timeout_seconds=self._timeout,
        )
        return {JOIN_TOKEN_KEY: join_token.strip()}

    async def remove(self, config: SubsystemConfig) -> None:
        if not await self._is_member(config.hostname):
            _logger.info("microceph.remove.absent", "Host is not a MicroCeph member", host=config.hostname)
            return
        await run_checked(
            (self._microceph, "cluster", "remove", config.hostname, "--force"),
            action="microceph.cluster.remove",
            timeout_seconds=self._timeout,
        )

    async def status(self) -> str:
        code, out, _ = await run_probe((self._microceph, "status"))
        if code != 0:
            return "unavailable"
        return out.splitlines()[0] if out else "ready"


async def join_local(settings: Settings, config: SubsystemConfig, outputs: Dict[str, str]) -> bool:
    join_token = outputs.get(JOIN_TOKEN_KEY)
    if not join_token:
        return False
    await run_checked(
        (settings.microceph_command, "cluster", "join", join_token),
        action="microceph.join",
        timeout_seconds=settings.external_timeout_seconds,
    )
    await run_checked(
        (settings.microceph_command, "disk", "add", config.storage_device),
        action="microceph.disk.add",
        timeout_seconds=settings.external_timeout_seconds,
    )
    return True
