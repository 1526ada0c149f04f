from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from sqlmodel import Session, select
from ..auth import require_admin_access
from ..db import get_session
from ..models import ContractWebhookLog, ProcessingStatus
from ..utils import load_json, sa_to_dict

router = APIRouter()

def _serialize_log(entry: ContractWebhookLog, include_payload: bool = False):
    data = sa_to_dict(entry)
    raw = data.pop("raw_payload_json")
    processed = data.pop("processed_data_json")
    headers = data.pop("request_headers_json")
    data["processed_data"] = load_json(processed)
    if include_payload:
        data["raw_payload"] = load_json(raw, {})
        data["request_headers"] = load_json(headers, {})
    return data

@router.get("")
def list_webhook_logs(
    status: Optional[ProcessingStatus] = None,
    zapsign_open_id: Optional[int] = None,
    limit: int = Query(default=50, ge=1, le=500),
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    query = select(ContractWebhookLog)
    if status:
        query = query.where(ContractWebhookLog.processing_status == status)
    if zapsign_open_id is not None:
        query = query.where(ContractWebhookLog.zapsign_open_id == zapsign_open_id)
    entries = session.exec(query.order_by(ContractWebhookLog.id.desc()).limit(limit)).all()
    return [_serialize_log(e) for e in entries]

@router.get("/{log_id}")
def get_webhook_log(
    log_id: int,
    session: Session = Depends(get_session),
    ctx=Depends(require_admin_access),
):
    entry = session.get(ContractWebhookLog, log_id)
    if not entry:
        raise HTTPException(404, "webhook log not found")
    return _serialize_log(entry, include_payload=True)
