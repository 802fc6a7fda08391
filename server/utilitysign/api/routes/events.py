from fastapi import APIRouter, Depends, HTTPException, status

from utilitysign.api.dependencies.services import get_outbox_dispatcher
from utilitysign.services.notifications import OutboxDispatcher


router = APIRouter(prefix="/events", tags=["events"])


@router.post("/dispatch")
async def dispatch_events_endpoint(
    dispatcher: OutboxDispatcher | None = Depends(get_outbox_dispatcher),
) -> dict[str, int]:
    if dispatcher is None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Notification outbox is not enabled")
    dispatched = await dispatcher.dispatch_once()
    return {"dispatched": dispatched}
