import logging
from typing import List, Optional

import anyio
from fastapi import APIRouter, Depends, HTTPException, Query

from askrelay.api.deps import get_history_repo
from askrelay.config import get_settings
from askrelay.models.domain import HistoryEntry, MessageResponse
from askrelay.services.history import HistorySink

router = APIRouter(prefix="/history", tags=["history"])
settings = get_settings()


@router.get("", response_model=List[HistoryEntry])
async def list_history(
    limit: Optional[int] = Query(None, ge=1, le=100),
    repo: HistorySink = Depends(get_history_repo),
):
    """Most recent question/answer pairs, newest first."""
    try:
        return await anyio.to_thread.run_sync(
            repo.list_recent, limit or settings.history_default_limit
        )
    except Exception as e:
        logging.error(f"History error: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to fetch history")


@router.delete("", response_model=MessageResponse)
async def clear_history(repo: HistorySink = Depends(get_history_repo)):
    """Deletes every stored question/answer pair."""
    try:
        await anyio.to_thread.run_sync(repo.clear)
    except Exception as e:
        logging.error(f"Error clearing history: {e}", exc_info=True)
        raise HTTPException(status_code=500, detail="Failed to clear history")
    return MessageResponse(message="History cleared successfully")
