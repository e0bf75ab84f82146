"""Queue endpoints."""

from __future__ import annotations

from fastapi import APIRouter, Depends, Response, status

from admission.api.dependencies import get_context, get_queue, require_service
from admission.domain.models import (
    AuthorizationContext,
    EnqueueRequest,
    EnqueueResponse,
    IdempotentReplayResponse,
    QueueItemView,
    QueueStats,
    ReprioritizeRequest,
)
from admission.services.queue import RequestQueue

router = APIRouter(prefix="/v1/queue", tags=["queue"])


@router.post(
    "",
    response_model=EnqueueResponse | IdempotentReplayResponse,
    status_code=status.HTTP_201_CREATED,
)
async def enqueue(
    body: EnqueueRequest,
    response: Response,
    context: AuthorizationContext = Depends(get_context),
    queue: RequestQueue = Depends(get_queue),
):
    result = await queue.enqueue(context, body)
    if isinstance(result, IdempotentReplayResponse):
        response.status_code = status.HTTP_200_OK
    return result


@router.get("/stats", response_model=QueueStats)
async def queue_stats(
    _: AuthorizationContext = Depends(require_service),
    queue: RequestQueue = Depends(get_queue),
):
    return await queue.stats()


@router.get("/{item_id}", response_model=QueueItemView)
async def get_item(
    item_id: int,
    context: AuthorizationContext = Depends(get_context),
    queue: RequestQueue = Depends(get_queue),
):
    item = await queue.get(context, item_id)
    view = QueueItemView.model_validate(item)
    view.position = await queue.position(item.id)
    return view


@router.post("/{item_id}/cancel", response_model=QueueItemView)
async def cancel_item(
    item_id: int,
    context: AuthorizationContext = Depends(get_context),
    queue: RequestQueue = Depends(get_queue),
):
    return QueueItemView.model_validate(await queue.cancel(context, item_id))


@router.patch("/{item_id}/priority", response_model=QueueItemView)
async def reprioritize_item(
    item_id: int,
    body: ReprioritizeRequest,
    context: AuthorizationContext = Depends(get_context),
    queue: RequestQueue = Depends(get_queue),
):
    return QueueItemView.model_validate(await queue.reprioritize(context, item_id, body.priority))
