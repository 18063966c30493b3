from __future__ import annotations

import asyncio
from datetime import timedelta
from typing import Dict, List

from mcloud.config import Settings
from mcloud.logger import get_logger
from mcloud.services import store as records
from mcloud.services.store import ClusterStateStore
from mcloud.utils import utcnow

_logger = get_logger("maintenance")


class MaintenanceLoop:
    """Periodic leader housekeeping: token garbage collection and stale heartbeat detection."""

    def __init__(self, settings: Settings, store: ClusterStateStore) -> None:
        self._settings = settings
        self._store = store
        self._stop = asyncio.Event()
        self._tasks: List["asyncio.Task[None]"] = []

    @property
    def enabled(self) -> bool:
        return bool(self._settings.maintenance_enabled and self._store.is_leader)

    async def start(self) -> None:
        if not self.enabled:
            _logger.info("maintenance.disabled", "Maintenance loop is disabled", role=self._store.role)
            return
        self._stop.clear()
        self._tasks.append(asyncio.create_task(self._loop()))
        _logger.info(
            "maintenance.start",
            "Started maintenance loop",
            interval_seconds=self._settings.maintenance_interval_seconds,
        )

    async def stop(self) -> None:
        self._stop.set()
        if not self._tasks:
            return
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()
        _logger.info("maintenance.stop", "Stopped maintenance loop")

    async def run_once(self) -> Dict[str, int]:
        now = utcnow()
        grace = timedelta(seconds=self._settings.expired_token_retention_seconds)
        cutoff = now - timedelta(seconds=self._settings.node_heartbeat_timeout_seconds)
        async with self._store.transaction() as session:
            pruned = await records.prune_expired_tokens(session, now=now, grace=grace)
            stale = await records.mark_stale_nodes_offline(session, cutoff=cutoff)
            for node_id in stale:
                await records.record_event(
                    session,
                    "node",
                    "node.offline",
                    level="warning",
                    fields={"node_id": node_id, "cutoff": cutoff.isoformat()},
                )
        if pruned:
            _logger.info("maintenance.tokens.pruned", "Pruned expired bootstrap tokens", count=pruned)
        for node_id in stale:
            _logger.warning("maintenance.node.offline", "Node missed its heartbeat window", node_id=node_id)
        return {"tokens_pruned": pruned, "nodes_offline": len(stale)}

    async def _loop(self) -> None:
        interval = self._settings.maintenance_interval_seconds
        while not self._stop.is_set():
            try:
                await self.run_once()
            except Exception:
                _logger.exception("maintenance.error", "Maintenance pass failed")
            try:
                await asyncio.wait_for(self._stop.wait(), timeout=interval)
            except TimeoutError:
                continue
