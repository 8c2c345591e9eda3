from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Response, status
from sqlalchemy.orm import Session

from evogate.database import get_db
from evogate.errors import InstanceNotFoundError
from evogate.gateway import Gateway, get_gateway
from evogate.models import ChatbotSetting, SinkConfig
from evogate.schemas.chatbot import ChatbotSettingIn, ChatbotSettingOut
from evogate.schemas.instance import InstanceCreate, InstanceOut, SinkConfigIn, SinkConfigOut
from evogate.services.instance_service import (
    delete_instance,
    get_instance,
    list_instances,
    provision_instance,
    upsert_chatbot_setting,
    upsert_sink_config,
)

router = APIRouter()


def require_admin_token(
    x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token"),
    gateway: Gateway = Depends(get_gateway),
) -> None:
    expected = gateway.settings.admin_token
    if not expected:
        return
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid admin token")


def _instance_or_404(db: Session, name: str):
    try:
        return get_instance(db, name)
    except InstanceNotFoundError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))


@router.post("/instances", response_model=InstanceOut, dependencies=[Depends(require_admin_token)])
def create_instance(
    payload: InstanceCreate,
    response: Response,
    db: Session = Depends(get_db),
    gateway: Gateway = Depends(get_gateway),
):
    instance, created = provision_instance(db, payload.name, payload.transport)
    db.commit()
    if created:
        gateway.reopen_instance(payload.name)
        response.status_code = status.HTTP_201_CREATED
    return instance


@router.get("/instances", response_model=list[InstanceOut])
def get_instances(db: Session = Depends(get_db)):
    return list_instances(db)


@router.get("/instances/{name}", response_model=InstanceOut)
def get_instance_detail(name: str, db: Session = Depends(get_db)):
    return _instance_or_404(db, name)


@router.delete("/instances/{name}", status_code=status.HTTP_204_NO_CONTENT, dependencies=[Depends(require_admin_token)])
async def remove_instance(name: str, db: Session = Depends(get_db), gateway: Gateway = Depends(get_gateway)):
    _instance_or_404(db, name)
    await gateway.close_instance(name)
    delete_instance(db, name)
    db.commit()
    return Response(status_code=status.HTTP_204_NO_CONTENT)


@router.get("/instances/{name}/sinks", response_model=list[SinkConfigOut])
def get_sinks(name: str, db: Session = Depends(get_db)):
    instance = _instance_or_404(db, name)
    return db.query(SinkConfig).filter(SinkConfig.instance_id == instance.id).order_by(SinkConfig.kind).all()


@router.put("/instances/{name}/sinks/{kind}", response_model=SinkConfigOut, dependencies=[Depends(require_admin_token)])
def put_sink(name: str, kind: str, payload: SinkConfigIn, db: Session = Depends(get_db)):
    _instance_or_404(db, name)
    try:
        row = upsert_sink_config(db, name, kind, **payload.model_dump(exclude_none=True))
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    db.commit()
    return row


@router.get("/instances/{name}/chatbots", response_model=list[ChatbotSettingOut])
def get_chatbots(name: str, db: Session = Depends(get_db)):
    instance = _instance_or_404(db, name)
    return (
        db.query(ChatbotSetting)
        .filter(ChatbotSetting.instance_id == instance.id)
        .order_by(ChatbotSetting.kind)
        .all()
    )


@router.put(
    "/instances/{name}/chatbots/{kind}",
    response_model=ChatbotSettingOut,
    dependencies=[Depends(require_admin_token)],
)
def put_chatbot(name: str, kind: str, payload: ChatbotSettingIn, db: Session = Depends(get_db)):
    _instance_or_404(db, name)
    try:
        row = upsert_chatbot_setting(db, name, kind, **payload.model_dump(exclude_none=True))
    except ValueError as e:
        db.rollback()
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    db.commit()
    return row
