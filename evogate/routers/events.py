from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from evogate.database import get_db
from evogate.errors import InstanceClosedError, InstanceNotFoundError, InvalidTransitionError, SessionStoreUnavailableError
from evogate.gateway import Gateway, get_gateway
from evogate.logging_config import bind_logger, get_logger
from evogate.schemas.events import DeliveryResultOut, DispatchResponse, TransportEventRequest
from evogate.services.event_service import EventKind, TransportEvent, build_routed_event
from evogate.services.instance_service import apply_connection_update, get_instance
from evogate.services.state_machine import InstanceState

logger = get_logger("events")

router = APIRouter()


def _track_connection(db: Session, instance: str, data) -> None:
    state = data.get("state") if isinstance(data, dict) else None
    if not state:
        return
    try:
        apply_connection_update(db, instance, state)
        db.commit()
    except (ValueError, InvalidTransitionError) as e:
        db.rollback()
        logger.warning(f"Ignoring connection update for {instance}: {e}")


@router.post("/events/{instance}", response_model=DispatchResponse)
async def receive_event(
    instance: str,
    request: TransportEventRequest,
    db: Session = Depends(get_db),
    gateway: Gateway = Depends(get_gateway),
):
    """Entry point of the transport feed: route one event to every sink."""
    try:
        owner = get_instance(db, instance)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))
    if owner.state == InstanceState.EXPIRED.value:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=f"Instance {instance} is expired")

    try:
        routed = build_routed_event(TransportEvent(instance, request.event, request.data))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))

    log = bind_logger("events", instance=instance, event_id=routed.event_id)
    log.info(f"Received {routed.kind.value}", context={"remote_jid": routed.remote_jid, "from_me": routed.from_me})

    if routed.kind == EventKind.CONNECTION_UPDATE:
        _track_connection(db, instance, request.data)

    try:
        results = await gateway.dispatcher.dispatch(instance, routed)
    except InstanceClosedError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except SessionStoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    return DispatchResponse(
        success=all(result.ok for result in results),
        event_id=routed.event_id,
        event=routed.kind.value,
        remote_jid=routed.remote_jid,
        results=[
            DeliveryResultOut(
                sink=result.sink,
                ok=result.ok,
                detail=result.detail,
                attempts=result.attempts,
                elapsed_ms=round(result.elapsed_ms, 1),
            )
            for result in results
        ],
    )
