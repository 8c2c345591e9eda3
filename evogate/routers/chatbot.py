from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status

from evogate.errors import InvalidTransitionError, SessionStoreUnavailableError
from evogate.gateway import Gateway, get_gateway
from evogate.routers.instances import require_admin_token
from evogate.schemas.chatbot import ChangeStatusRequest, SessionOut
from evogate.services.state_machine import SessionStatus

router = APIRouter()


@router.get("/chatbot/{instance}/{kind}/sessions", response_model=list[SessionOut])
def list_sessions(
    instance: str,
    kind: str,
    status_filter: Optional[SessionStatus] = Query(default=None, alias="status"),
    remote_jid: Optional[str] = None,
    gateway: Gateway = Depends(get_gateway),
):
    try:
        records = gateway.store.list_sessions(instance, kind=kind, status=status_filter, remote_jid=remote_jid)
    except SessionStoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))
    return [SessionOut.from_record(record) for record in records]


@router.post(
    "/chatbot/{instance}/{kind}/status",
    response_model=SessionOut,
    dependencies=[Depends(require_admin_token)],
)
async def change_session_status(
    instance: str,
    kind: str,
    payload: ChangeStatusRequest,
    gateway: Gateway = Depends(get_gateway),
):
    """Pause, resume or close the open session of one participant."""
    config = gateway.settings_repo.chatbot(instance, kind)
    try:
        record = await gateway.coordinator.change_status(
            instance, payload.remote_jid, kind, SessionStatus(payload.status), config=config
        )
    except InvalidTransitionError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except SessionStoreUnavailableError as e:
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if record is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No open session for this participant")
    return SessionOut.from_record(record)
