import logging

from fastapi import APIRouter, Depends, status
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.background import BackgroundTask

from askrelay.api.deps import get_history_writer, get_upstream_client
from askrelay.models.domain import AskRequest, ErrorResponse
from askrelay.services.errors import UpstreamError
from askrelay.services.history import HistoryWriter
from askrelay.services.relay import CLIENT_ERROR_MESSAGE, RelaySession
from askrelay.services.upstream import UpstreamClient

router = APIRouter(tags=["ask"])

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


@router.post(
    "/ask",
    responses={
        200: {"content": {"text/event-stream": {}}},
        400: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def ask(
    body: AskRequest,
    upstream: UpstreamClient = Depends(get_upstream_client),
    writer: HistoryWriter = Depends(get_history_writer),
):
    """
    Streams the model's answer to *question* as server-sent events:
    ``{"token": ...}`` frames, then ``[DONE]``. Failures before the stream
    starts come back as a JSON error instead.
    """
    # Raises ValidationError (-> 400) before anything is opened
    session = RelaySession(body.question, upstream, writer)
    logging.info(f"User asked: '{session.question[:50]}...'")

    try:
        await session.open()
    except UpstreamError as e:
        logging.error(f"Upstream request failed before streaming: {e}")
        return JSONResponse(
            status_code=status.HTTP_502_BAD_GATEWAY,
            content={"error": CLIENT_ERROR_MESSAGE},
        )

    return StreamingResponse(
        session.events(),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
        # covers the case where the body iterator is never started
        background=BackgroundTask(session.aclose),
    )
