"""
Batch endpoints.
"""
from fastapi import APIRouter, Depends

from repurpose.auth import get_current_user_id
from repurpose.orchestration.factory import Orchestrator, get_orchestrator

from ..schemas import BatchResponse

router = APIRouter(prefix="/batches", tags=["Batches"])


@router.get(
    "/{batch_id}",
    response_model=BatchResponse,
    summary="Batch Status",
    description="Aggregate progress and per-item results of a batch task.",
)
async def get_batch(
    batch_id: str,
    user_id: str = Depends(get_current_user_id),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> BatchResponse:
    batch = orchestrator.coordinator.get_batch(batch_id)
    orchestrator.dispatcher.get_owned_project(user_id, batch.project_id)

    return BatchResponse.from_batch(batch)
