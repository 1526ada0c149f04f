from datetime import datetime
from typing import Optional
from fastapi import APIRouter, Depends, HTTPException, Response
from sqlmodel import Session, select
from ..auth import AccessContext, resolve_access_context, scoped_workspace_id
from ..db import get_session
from ..models import Client, Contract, ContractHistory, ContractSigner, ContractStatus
from ..schemas import ClientLink
from ..utils import canonical_json, load_json, sa_to_dict, utcnow

router = APIRouter()

def _serialize_contract(contract: Contract):
    data = sa_to_dict(contract)
    data["metadata"] = load_json(data.pop("metadata_json"), {})
    return data

def _serialize_history(entry: ContractHistory):
    data = sa_to_dict(entry)
    data["old_values"] = load_json(data.pop("old_values_json"))
    data["new_values"] = load_json(data.pop("new_values_json"), {})
    return data

def _get_contract(session: Session, contract_id: int, ctx: AccessContext) -> Contract:
    contract = session.get(Contract, contract_id)
    if not contract or contract.is_deleted:
        raise HTTPException(404, "contract not found")
    if ctx.role != "admin" and contract.workspace_id != ctx.workspace_id:
        raise HTTPException(404, "contract not found")
    return contract

def _record(session: Session, contract: Contract, event_type: str, description: str, before: dict, ctx: AccessContext):
    session.add(ContractHistory(
        contract_id=contract.id,
        workspace_id=contract.workspace_id,
        event_type=event_type,
        event_description=description,
        old_values_json=canonical_json(before),
        new_values_json=canonical_json(sa_to_dict(contract)),
        performed_by=ctx.actor,
    ))

@router.get("")
def list_contracts(
    workspace_id: Optional[int] = None,
    search: Optional[str] = None,
    status: Optional[ContractStatus] = None,
    client_id: Optional[int] = None,
    contract_type: Optional[str] = None,
    signed_after: Optional[datetime] = None,
    signed_before: Optional[datetime] = None,
    created_after: Optional[datetime] = None,
    created_before: Optional[datetime] = None,
    unlinked: bool = False,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    scope = scoped_workspace_id(ctx, workspace_id)
    query = select(Contract).where(Contract.is_deleted == False)  # noqa: E712
    if scope is not None:
        query = query.where(Contract.workspace_id == scope)
    if search:
        query = query.where(Contract.contract_name.ilike(f"%{search}%"))
    if status:
        query = query.where(Contract.status == status)
    if client_id is not None:
        query = query.where(Contract.client_id == client_id)
    if contract_type:
        query = query.where(Contract.contract_type.ilike(f"%{contract_type}%"))
    if signed_after:
        query = query.where(Contract.signed_at >= signed_after)
    if signed_before:
        query = query.where(Contract.signed_at <= signed_before)
    if created_after:
        query = query.where(Contract.created_at >= created_after)
    if created_before:
        query = query.where(Contract.created_at <= created_before)
    if unlinked:
        query = query.where(Contract.client_id == None)  # noqa: E711
    contracts = session.exec(query.order_by(Contract.created_at.desc(), Contract.id.desc())).all()
    return [_serialize_contract(c) for c in contracts]

@router.get("/{contract_id}")
def get_contract(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    contract = _get_contract(session, contract_id, ctx)
    signers = session.exec(
        select(ContractSigner).where(ContractSigner.contract_id == contract.id).order_by(ContractSigner.id)
    ).all()
    client = session.get(Client, contract.client_id) if contract.client_id else None
    data = _serialize_contract(contract)
    data["signers"] = [sa_to_dict(s) for s in signers]
    data["client"] = {"id": client.id, "name": client.name, "email": client.email} if client else None
    return data

@router.get("/{contract_id}/history")
def get_contract_history(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    contract = _get_contract(session, contract_id, ctx)
    entries = session.exec(
        select(ContractHistory).where(ContractHistory.contract_id == contract.id).order_by(ContractHistory.id)
    ).all()
    return [_serialize_history(e) for e in entries]

@router.post("/{contract_id}/link-client")
def link_client(
    contract_id: int,
    payload: ClientLink,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    contract = _get_contract(session, contract_id, ctx)
    client = session.get(Client, payload.client_id)
    if not client or client.is_deleted or client.workspace_id != contract.workspace_id:
        raise HTTPException(400, "client not found in this workspace")
    before = sa_to_dict(contract)
    contract.client_id = client.id
    contract.matched_by = payload.matched_by
    contract.matching_confidence = payload.matching_confidence
    contract.updated_at = utcnow()
    session.add(contract)
    _record(session, contract, "client_linked", f"Client {client.name} linked", before, ctx)
    session.commit()
    session.refresh(contract)
    return _serialize_contract(contract)

@router.delete("/{contract_id}", status_code=204)
def delete_contract(
    contract_id: int,
    session: Session = Depends(get_session),
    ctx: AccessContext = Depends(resolve_access_context),
):
    contract = _get_contract(session, contract_id, ctx)
    before = sa_to_dict(contract)
    contract.is_deleted = True
    contract.deleted_at = utcnow()
    session.add(contract)
    _record(session, contract, "deleted", "Contract deleted", before, ctx)
    session.commit()
    return Response(status_code=204)
