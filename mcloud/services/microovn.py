from __future__ import annotations

from typing import Dict

from mcloud.config import Settings
from mcloud.logger import get_logger
from mcloud.services.adapters import (
    NETWORK,
    SubsystemAdapter,
    SubsystemConfig,
    bootstrap_outputs,
    listed_members,
    ovn_network_name,
)
from mcloud.services.commands import run_checked, run_probe

_logger = get_logger("microovn")

JOIN_TOKEN_KEY = "network.join_token"


class MicroOVNAdapter(SubsystemAdapter):
    name = NETWORK

    def __init__(self, settings: Settings) -> None:
        self._microovn = settings.microovn_command
        self._lxc = settings.lxc_command
        self._timeout = settings.external_timeout_seconds
        self.required_tools = (self._microovn,)

    async def _cluster_listing(self) -> str:
        code, out, _ = await run_probe((self._microovn, "cluster", "list"))
        return out if code == 0 else ""

    async def _is_member(self, hostname: str) -> bool:
        return hostname in listed_members(await self._cluster_listing())

    async def bootstrap(self, config: SubsystemConfig) -> Dict[str, str]:
        network = ovn_network_name(config.cluster_name)
        async with _logger.operation("microovn.bootstrap", "Bootstrapping MicroOVN", host=config.hostname) as op:
            if await self._is_member(config.hostname):
                op.step("microovn.exists", "MicroOVN already bootstrapped on this host")
            else:
                await run_checked(
                    (self._microovn, "cluster", "bootstrap"),
                    action="microovn.bootstrap",
                    timeout_seconds=self._timeout,
                )
                op.step("microovn.init", "Bootstrapped MicroOVN")
            code, _, _ = await run_probe((self._lxc, "network", "show", network))
            if code != 0:
                await run_checked(
                    (self._lxc, "network", "create", network, "--type=ovn"),
                    action="microovn.lxd.register",
                    timeout_seconds=self._timeout,
                )
                op.step("microovn.lxd", "Registered OVN network with LXD", network=network)
        return bootstrap_outputs(NETWORK, config)

    async def join(self, token: str, config: SubsystemConfig) -> Dict[str, str]:
        del token
        if await self._is_member(config.hostname):
            _logger.info("microovn.join.exists", "Host already a MicroOVN member", host=config.hostname)
            return {}
        join_token = await run_checked(
            (self._microovn, "cluster", "add", config.hostname),
            action="microovn.cluster.add",
            timeout_seconds=self._timeout,
        )
        return {JOIN_TOKEN_KEY: join_token.strip()}

    async def remove(self, config: SubsystemConfig) -> None:
        if not await self._is_member(config.hostname):
            _logger.info("microovn.remove.absent", "Host is not a MicroOVN member", host=config.hostname)
            return
        await run_checked(
            (self._microovn, "cluster", "remove", config.hostname),
            action="microovn.cluster.remove",
            timeout_seconds=self._timeout,
        )

    async def status(self) -> str:
        code, out, _ = await run_probe((self._microovn, "status"))
        if code != 0:
            return "unavailable"
        return out.splitlines()[0] if out else "ready"


async def join_local(settings: Settings, config: SubsystemConfig, outputs: Dict[str, str]) -> bool:
    join_token = outputs.get(JOIN_TOKEN_KEY)
    if not join_token:
        return False
    await run_checked(
        (settings.microovn_command, "cluster", "join", join_token),
        action="microovn.join",
        timeout_seconds=settings.external_timeout_seconds,
    )
    return True
