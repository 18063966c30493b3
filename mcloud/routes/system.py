from __future__ import annotations

from datetime import datetime, timezone
from typing import Dict

from fastapi import APIRouter, Depends, HTTPException
from fastapi.responses import Response

from mcloud.config import Settings
from mcloud.control_plane import ControlPlane
from mcloud.dependencies import get_control_plane
from mcloud.logger import get_logger
from mcloud.metrics import metrics_content_type, render_metrics

router = APIRouter()
_logger = get_logger("api.system")


def _settings(control_plane: ControlPlane = Depends(get_control_plane)) -> Settings:
    return control_plane.settings


@router.get("/health", tags=["system"])
async def health(control_plane: ControlPlane = Depends(get_control_plane)) -> Dict[str, str]:
    now = datetime.now(timezone.utc).isoformat()
    status = "ok" if control_plane.store.is_open else "starting"
    _logger.debug("health.check", "Health check", status=status)
    return {"status": status, "role": control_plane.store.role, "time": now}


@router.get("/version", tags=["system"])
async def version(settings: Settings = Depends(_settings)) -> Dict[str, str]:
    return {
        "app": settings.app_name,
        "version": settings.app_version,
        "env": settings.app_env,
        "role": settings.node_role,
        "adapter_mode": settings.adapter_mode,
    }


@router.get("/metrics", include_in_schema=False)
async def metrics(settings: Settings = Depends(_settings)) -> Response:
    if not settings.metrics_enabled:
        raise HTTPException(status_code=404, detail="Metrics are disabled.")
    return Response(content=render_metrics(), media_type=metrics_content_type())
