from __future__ import annotations

import json
from typing import Any, Dict, List, Optional

import yaml

from mcloud.config import Settings
from mcloud.logger import get_logger
from mcloud.services.adapters import COMPUTE, SubsystemAdapter, SubsystemConfig, bootstrap_outputs
from mcloud.services.commands import run_checked, run_probe

_logger = get_logger("lxd")

JOIN_TOKEN_KEY = "compute.join_token"


def preseed(config: SubsystemConfig, *, join_token: Optional[str] = None) -> str:
    """Render the ``lxd init --preseed`` document for a new or joining member."""
    cluster: Dict[str, Any] = {
        "enabled": True,
        "server_name": config.hostname,
    }
    if join_token:
        cluster["cluster_token"] = join_token
    else:
        cluster["cluster_address"] = config.endpoint
    document: Dict[str, Any] = {
        "config": {"core.https_address": config.endpoint},
        "cluster": cluster,
    }
    return yaml.safe_dump(document, sort_keys=False)


class LXDAdapter(SubsystemAdapter):
    name = COMPUTE

    def __init__(self, settings: Settings) -> None:
        self._lxd = settings.lxd_command
        self._lxc = settings.lxc_command
        self._timeout = settings.external_timeout_seconds
        self.required_tools = (self._lxd, self._lxc)

    async def _members(self) -> Optional[List[Dict[str, Any]]]:
        code, out, _ = await run_probe((self._lxc, "cluster", "list", "--format=json"))
        if code != 0:
            return None
        payload = json.loads(out or "[]")
        if not isinstance(payload, list):
            return []
        return [row for row in payload if isinstance(row, dict)]

    async def _has_member(self, hostname: str) -> bool:
        members = await self._members()
        return bool(members) and any(row.get("server_name") == hostname for row in members or [])

    async def holds_endpoint(self, config: SubsystemConfig) -> bool:
        return await self._has_member(config.hostname)

    async def bootstrap(self, config: SubsystemConfig) -> Dict[str, str]:
        async with _logger.operation("lxd.bootstrap", "Bootstrapping LXD cluster", host=config.hostname) as op:
            if await self._has_member(config.hostname):
                op.step("lxd.exists", "LXD already clustered on this host")
            else:
                await run_checked(
                    (self._lxd, "init", "--preseed"),
                    action="lxd.init",
                    input_text=preseed(config),
                    timeout_seconds=self._timeout,
                )
                op.step("lxd.init", "Initialized LXD cluster", address=config.endpoint)
        return bootstrap_outputs(COMPUTE, config)

    async def join(self, token: str, config: SubsystemConfig) -> Dict[str, str]:
        del token
        if await self._has_member(config.hostname):
            _logger.info("lxd.join.exists", "Host already an LXD cluster member", host=config.hostname)
            return {}
        # A stale pending join token for the same name makes `cluster add` fail.
        await run_probe((self._lxc, "cluster", "revoke-token", config.hostname))
        join_token = await run_checked(
            (self._lxc, "cluster", "add", config.hostname, "--quiet"),
            action="lxd.cluster.add",
            timeout_seconds=self._timeout,
        )
        return {JOIN_TOKEN_KEY: join_token.strip()}

    async def remove(self, config: SubsystemConfig) -> None:
        if not await self._has_member(config.hostname):
            _logger.info("lxd.remove.absent", "Host is not an LXD cluster member", host=config.hostname)
            return
        await run_checked(
            (self._lxc, "cluster", "remove", config.hostname, "--force", "--yes"),
            action="lxd.cluster.remove",
            timeout_seconds=self._timeout,
        )

    async def status(self) -> str:
        members = await self._members()
        if members is None:
            return "unavailable"
        return f"clustered ({len(members)} members)"


async def join_local(settings: Settings, config: SubsystemConfig, outputs: Dict[str, str]) -> bool:
    """Member side: apply the join token the leader obtained for this host."""
    join_token = outputs.get(JOIN_TOKEN_KEY)
    if not join_token:
        return False
    await run_checked(
        (settings.lxd_command, "init", "--preseed"),
        action="lxd.join",
        input_text=preseed(config, join_token=join_token),
        timeout_seconds=settings.external_timeout_seconds,
    )
    return True
