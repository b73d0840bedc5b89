"""Periodic sync status and manual trigger."""

from datetime import datetime, timezone
from typing import Any, Dict

from fastapi import APIRouter, Depends, status

from guardian.dependencies import get_sync
from guardian.services.subscription_sync import SubscriptionSyncService

router = APIRouter(prefix="/api", tags=["Sync"])


@router.get("/sync-status")
async def sync_status(sync: SubscriptionSyncService = Depends(get_sync)) -> Dict[str, Any]:
    return {
        "ok": True,
        "sync": sync.status(),
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }


@router.post("/sync-status", status_code=status.HTTP_202_ACCEPTED)
async def trigger_sync(sync: SubscriptionSyncService = Depends(get_sync)) -> Dict[str, Any]:
    """
    Start a sync cycle in the background.

    A cycle that is already running is not interrupted; the triggered one
    is dropped by the sync's own single-flight check.
    """
    sync.trigger()
    return {
        "ok": True,
        "message": "Sync triggered",
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
