"""
Provider webhook endpoint.

Acknowledged with 200 whenever the request is well-formed and authentic,
including callbacks for jobs this service does not know (`matched=false`),
so providers stop redelivering them.
"""
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request

from repurpose.orchestration.factory import Orchestrator, get_orchestrator

from ..schemas import WebhookAckResponse

router = APIRouter(prefix="/webhooks", tags=["Webhooks"])


@router.post(
    "/{provider}",
    response_model=WebhookAckResponse,
    summary="Provider Callback",
)
async def provider_callback(
    provider: str,
    request: Request,
    token: Optional[str] = Query(default=None),
    orchestrator: Orchestrator = Depends(get_orchestrator),
) -> WebhookAckResponse:
    raw_body = await request.body()
    token = token or request.headers.get("X-Webhook-Token")

    ack = orchestrator.receiver.handle_callback(provider, raw_body, token)

    return WebhookAckResponse(**ack.to_dict())
