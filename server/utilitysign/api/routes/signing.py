from fastapi import APIRouter, Depends, HTTPException, status

from utilitysign.api.dependencies.services import get_orchestrator
from utilitysign.api.errors import SigningRequestFailed
from utilitysign.schemas.common import ErrorResponse
from utilitysign.schemas.signing import (
    SigningActionResponse,
    SigningSessionRead,
    StartSessionRequest,
    StartSessionResponse,
)
from utilitysign.services.signing_orchestrator import ApplyResult, EventDisposition, SigningOrchestrator

router = APIRouter(prefix="/signing", tags=["signing"])

ERROR_RESPONSES = {code: {"model": ErrorResponse} for code in (400, 409, 422, 429, 502, 503)}


def _action_response(result: ApplyResult) -> SigningActionResponse:
    if result.disposition is EventDisposition.GATEWAY_FAILED:
        raise SigningRequestFailed(result.error)
    if result.disposition is EventDisposition.UNKNOWN_SESSION:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Signing session not found")
    return SigningActionResponse(
        disposition=result.disposition.value,
        reason=result.reason,
        session=SigningSessionRead.model_validate(result.session) if result.session else None,
    )


@router.post(
    "",
    response_model=StartSessionResponse,
    status_code=status.HTTP_201_CREATED,
    responses=ERROR_RESPONSES,
)
async def start_signing_session(
    payload: StartSessionRequest,
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> StartSessionResponse:
    result = await orchestrator.start_session(
        payload.order_ref,
        payload.document_ref,
        payload.signer.model_dump(),
        payload.extra_claims,
        idempotency_key=payload.idempotency_key,
    )
    if not result.success:
        raise SigningRequestFailed(result.error, correlation_id=result.correlation_id)
    return StartSessionResponse(
        reused=result.reused,
        correlation_id=result.correlation_id,
        session=SigningSessionRead.model_validate(result.session),
    )


@router.get("/{order_ref}", response_model=SigningSessionRead)
async def get_signing_session(
    order_ref: str,
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> SigningSessionRead:
    session = await orchestrator.get_session(order_ref)
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Signing session not found")
    return SigningSessionRead.model_validate(session)


@router.post("/{order_ref}/complete", response_model=SigningActionResponse, responses=ERROR_RESPONSES)
async def trigger_signing_completion(
    order_ref: str,
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> SigningActionResponse:
    return _action_response(await orchestrator.trigger_completion(order_ref))


@router.post("/identity/{session_id}/cancel", response_model=SigningActionResponse, responses=ERROR_RESPONSES)
async def cancel_identity_session(
    session_id: str,
    orchestrator: SigningOrchestrator = Depends(get_orchestrator),
) -> SigningActionResponse:
    return _action_response(await orchestrator.cancel_session(session_id))
