"""ZapSign webhook ingestion.

A delivery moves through five stages, each a function below taking an
explicit ``Session``:

1. ``record_delivery``   - persist the raw call as a ``ContractWebhookLog``
2. ``resolve_workspace`` - map ``created_by.email`` to the creator's active workspace
3. ``upsert_contract`` / ``upsert_signers`` - insert-or-update keyed by provider ids
4. ``match_client``      - link the contract to an existing CRM client
5. ``append_history`` / ``finalize_delivery`` - audit row and terminal log status

``process_delivery`` runs them in order. Contracts and signers are written with
``INSERT ... ON CONFLICT DO UPDATE`` on ``zapsign_open_id`` / ``zapsign_token``,
so concurrent or repeated deliveries of one envelope converge on the same rows.
Every exit path leaves the log row in ``processed`` or ``error``.
"""
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from pydantic import ValidationError
from sqlalchemy import func, null
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlmodel import Session, select

from .config import WEBHOOK_EXECUTION_MODE
from .matching import ClientMatch, match_client
from .models import (
    Contract,
    ContractHistory,
    ContractSigner,
    ContractStatus,
    ContractWebhookLog,
    MatchType,
    ProcessingStatus,
    Profile,
    SignerStatus,
)
from .schemas import ZapSignSigner, ZapSignWebhookPayload
from .utils import canonical_json, digits_only, normalize_email, sa_to_dict, utcnow

logger = logging.getLogger(__name__)

CONTRACT_STATUS_ALIASES = {
    "pending": ContractStatus.pending,
    "signed": ContractStatus.signed,
    "refused": ContractStatus.rejected,
    "rejected": ContractStatus.rejected,
    "expired": ContractStatus.expired,
}

SIGNER_STATUS_ALIASES = {
    "pending": SignerStatus.pending,
    "signed": SignerStatus.signed,
    "refused": SignerStatus.rejected,
    "rejected": SignerStatus.rejected,
}


class WebhookError(Exception):
    status_code = 500
    error = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        super().__init__(message or self.error)
        self.message = message or self.error


class InvalidPayloadError(WebhookError):
    status_code = 400
    error = "Invalid payload"

    def __init__(self, message: Optional[str] = None, error: Optional[str] = None):
        super().__init__(message)
        if error:
            self.error = error


class WorkspaceNotFoundError(WebhookError):
    status_code = 400
    error = "Could not determine workspace"


class WorkspaceMismatchError(WebhookError):
    status_code = 409
    error = "Contract belongs to another workspace"


@dataclass
class DeliveryRequest:
    body: bytes
    url: Optional[str] = None
    user_agent: Optional[str] = None
    source_ip: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class SignerResult:
    token: Optional[str]
    ok: bool
    signer_id: Optional[int] = None
    error: Optional[str] = None


@dataclass
class DeliveryOutcome:
    contract_id: int
    workspace_id: int
    signers: List[SignerResult]
    match: Optional[ClientMatch] = None

    @property
    def client_linked(self) -> bool:
        return self.match is not None


def contract_status(value: Optional[str]) -> ContractStatus:
    return CONTRACT_STATUS_ALIASES.get((value or "").strip().lower(), ContractStatus.pending)


def signer_status(value: Optional[str]) -> SignerStatus:
    return SIGNER_STATUS_ALIASES.get((value or "").strip().lower(), SignerStatus.pending)


def _insert_for(session: Session):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return pg_insert
    if dialect == "sqlite":
        return sqlite_insert
    raise RuntimeError(f"upserts are not supported on {dialect}")


def _signed_at_update(table, excluded, signed: bool, reported: bool):
    # only a signed row carries a signing time; a reported one replaces the stored value
    if not signed:
        return null()
    if reported:
        return excluded.signed_at
    return func.coalesce(table.c.signed_at, excluded.signed_at)


# ---------- stage 1: durable log ----------

def decode_body(body: bytes) -> Optional[Dict[str, Any]]:
    try:
        data = json.loads(body or b"")
    except (ValueError, UnicodeDecodeError):
        return None
    return data if isinstance(data, dict) else None


def record_delivery(session: Session, request: DeliveryRequest, raw: Optional[Dict[str, Any]]) -> Optional[ContractWebhookLog]:
    if raw is None:
        stored = {"_raw_body": request.body.decode("utf-8", errors="replace")}
        raw = {}
    else:
        stored = raw
    open_id = raw.get("open_id")
    token = raw.get("token")
    try:
        entry = ContractWebhookLog(
            event_type=str(raw.get("event_type") or raw.get("status") or "unknown"),
            zapsign_open_id=open_id if isinstance(open_id, int) else None,
            zapsign_token=token if isinstance(token, str) else None,
            raw_payload_json=canonical_json(stored),
            processing_status=ProcessingStatus.received,
            webhook_url=request.url,
            execution_mode=WEBHOOK_EXECUTION_MODE,
            user_agent=request.user_agent,
            source_ip=request.source_ip,
            request_headers_json=canonical_json(request.headers),
        )
        session.add(entry)
        session.commit()
        session.refresh(entry)

        entry.processing_status = ProcessingStatus.processing
        entry.processing_attempts += 1
        session.add(entry)
        session.commit()
        session.refresh(entry)
    except Exception:
        # keep going without an audit row
        session.rollback()
        logger.exception("failed to record webhook delivery for open_id=%s", open_id)
        return None
    return entry


def parse_payload(raw: Optional[Dict[str, Any]]) -> ZapSignWebhookPayload:
    if raw is None:
        raise InvalidPayloadError("Request body is not a JSON object", error="Invalid JSON")
    try:
        return ZapSignWebhookPayload.model_validate(raw)
    except ValidationError as exc:
        raise InvalidPayloadError(str(exc)) from exc


# ---------- stage 2: tenant resolution ----------

def resolve_workspace(session: Session, creator_email: Optional[str]) -> int:
    email = normalize_email(creator_email)
    if not email:
        raise WorkspaceNotFoundError("Payload has no created_by.email")
    profile = session.exec(select(Profile).where(func.lower(Profile.email) == email)).first()
    if not profile or not profile.current_workspace_id:
        raise WorkspaceNotFoundError(f"No active workspace for {email}")
    return profile.current_workspace_id


# ---------- stage 3: contract + signer upsert ----------

def find_contract(session: Session, open_id: int) -> Optional[Contract]:
    return session.exec(
        select(Contract)
        .where(Contract.zapsign_open_id == open_id)
        .execution_options(populate_existing=True)
    ).first()


def upsert_contract(session: Session, payload: ZapSignWebhookPayload, workspace_id: int) -> Contract:
    now = utcnow()
    status = contract_status(payload.status)
    signed = status == ContractStatus.signed
    signed_at = (payload.signed_at or now) if signed else None
    values = {
        "workspace_id": workspace_id,
        "contract_name": payload.name or f"Contract {payload.open_id}",
        "zapsign_open_id": payload.open_id,
        "zapsign_token": payload.token,
        "status": status,
        "original_file_url": payload.original_file.url if payload.original_file else None,
        "signed_file_url": payload.signed_file.url if payload.signed_file else None,
        "zapsign_created_at": payload.created_at or now,
        "zapsign_updated_at": payload.updated_at or now,
        "signed_at": signed_at,
        "created_by_email": normalize_email(payload.creator_email),
        "metadata_json": canonical_json(payload.model_dump(mode="json")),
        "created_at": now,
        "updated_at": now,
    }
    insert = _insert_for(session)
    table = Contract.__table__
    stmt = insert(table).values(**values)
    stmt = stmt.on_conflict_do_update(
        index_elements=["zapsign_open_id"],
        set_={
            "contract_name": stmt.excluded.contract_name,
            "zapsign_token": stmt.excluded.zapsign_token,
            "status": stmt.excluded.status,
            "original_file_url": func.coalesce(stmt.excluded.original_file_url, table.c.original_file_url),
            "signed_file_url": func.coalesce(stmt.excluded.signed_file_url, table.c.signed_file_url),
            "zapsign_created_at": func.coalesce(table.c.zapsign_created_at, stmt.excluded.zapsign_created_at),
            "zapsign_updated_at": stmt.excluded.zapsign_updated_at,
            "signed_at": _signed_at_update(table, stmt.excluded, signed, payload.signed_at is not None),
            "metadata_json": stmt.excluded.metadata_json,
            "updated_at": stmt.excluded.updated_at,
        },
        where=table.c.workspace_id == stmt.excluded.workspace_id,
    )
    session.exec(stmt)
    contract = find_contract(session, payload.open_id)
    if contract is None:
        raise RuntimeError(f"contract {payload.open_id} missing after upsert")
    if contract.workspace_id != workspace_id:
        raise WorkspaceMismatchError(
            f"Envelope {payload.open_id} is owned by workspace {contract.workspace_id}"
        )
    return contract


def upsert_signer(session: Session, contract: Contract, raw: Dict[str, Any]) -> ContractSigner:
    signer = ZapSignSigner.model_validate(raw)
    now = utcnow()
    status = signer_status(signer.status)
    signed = status == SignerStatus.signed
    values = {
        "contract_id": contract.id,
        "workspace_id": contract.workspace_id,
        "zapsign_token": signer.token,
        "external_id": signer.external_id,
        "name": signer.name,
        "email": normalize_email(signer.email),
        "phone_country": signer.phone_country,
        "phone_number": signer.phone,
        "cpf": digits_only(signer.cpf),
        "cnpj": digits_only(signer.cnpj),
        "status": status,
        "sign_url": signer.sign_url,
        "times_viewed": signer.times_viewed,
        "last_view_at": signer.last_view_at,
        "signed_at": (signer.signed_at or now) if signed else None,
        "signature_image_url": signer.signature_image,
        "document_photo_url": signer.document_photo_url,
        "selfie_photo_url": signer.selfie_photo_url,
        "ip_address": signer.ip_address,
        "geo_latitude": signer.geo_latitude,
        "geo_longitude": signer.geo_longitude,
        "created_at": now,
        "updated_at": now,
    }
    insert = _insert_for(session)
    table = ContractSigner.__table__
    stmt = insert(table).values(**values)
    replaced = (
        "external_id", "name", "email", "phone_country", "phone_number", "cpf", "cnpj",
        "status", "sign_url", "times_viewed", "last_view_at", "ip_address",
        "geo_latitude", "geo_longitude", "updated_at",
    )
    kept = ("signature_image_url", "document_photo_url", "selfie_photo_url")
    set_ = {name: stmt.excluded[name] for name in replaced}
    set_.update({name: func.coalesce(table.c[name], stmt.excluded[name]) for name in kept})
    set_["signed_at"] = _signed_at_update(table, stmt.excluded, signed, signer.signed_at is not None)
    stmt = stmt.on_conflict_do_update(
        index_elements=["zapsign_token"],
        set_=set_,
        where=table.c.contract_id == stmt.excluded.contract_id,
    )
    session.exec(stmt)
    row = session.exec(
        select(ContractSigner)
        .where(ContractSigner.zapsign_token == signer.token)
        .execution_options(populate_existing=True)
    ).one()
    if row.contract_id != contract.id:
        raise ValueError(f"signer token {signer.token} belongs to contract {row.contract_id}")
    return row


def upsert_signers(session: Session, contract: Contract, raw_signers: List[Dict[str, Any]]) -> List[SignerResult]:
    results = []
    for index, raw in enumerate(raw_signers):
        token = raw.get("token") if isinstance(raw.get("token"), str) else None
        try:
            with session.begin_nested():
                signer = upsert_signer(session, contract, raw)
        except Exception as exc:
            logger.warning(
                "skipping signer #%s (token=%s) of contract %s: %s", index, token, contract.id, exc
            )
            results.append(SignerResult(token=token, ok=False, error=str(exc)))
            continue
        results.append(SignerResult(token=signer.zapsign_token, ok=True, signer_id=signer.id))
    return results


# ---------- stage 4: client identity matching ----------

def primary_signer(raw_signers: List[Dict[str, Any]]) -> Optional[ZapSignSigner]:
    if not raw_signers:
        return None
    try:
        return ZapSignSigner.model_validate(raw_signers[0])
    except ValidationError:
        logger.warning("primary signer is malformed; skipping client matching")
        return None


def link_matched_client(session: Session, contract: Contract, signer: Optional[ZapSignSigner]) -> Optional[ClientMatch]:
    if signer is None:
        return None
    if contract.matched_by == MatchType.manual and contract.client_id:
        logger.info("contract %s is linked manually; keeping client %s", contract.id, contract.client_id)
        return None
    match = match_client(session, contract.workspace_id, signer)
    if match is None:
        logger.info("no client match for contract %s", contract.id)
        if contract.client_id is not None:
            logger.info("clearing stale %s link to client %s", contract.matched_by, contract.client_id)
            contract.client_id = None
            contract.matched_by = None
            contract.matching_confidence = None
            contract.updated_at = utcnow()
            session.add(contract)
        return None
    contract.client_id = match.client_id
    contract.matched_by = match.match_type
    contract.matching_confidence = match.confidence
    contract.updated_at = utcnow()
    session.add(contract)
    return match


# ---------- stage 5: audit + finalize ----------

def append_history(
    session: Session,
    contract: Contract,
    before: Optional[dict],
    request: DeliveryRequest,
    signer: Optional[ZapSignSigner] = None,
) -> ContractHistory:
    status = contract.status.value
    entry = ContractHistory(
        contract_id=contract.id,
        workspace_id=contract.workspace_id,
        event_type="signed" if contract.status == ContractStatus.signed else "updated",
        event_description=f"Contract {status} via webhook",
        old_values_json=canonical_json(before) if before else None,
        new_values_json=canonical_json(sa_to_dict(contract)),
        signer_name=signer.name if signer else None,
        signer_email=normalize_email(signer.email) if signer else None,
        ip_address=request.source_ip,
        user_agent=request.user_agent,
        performed_by="webhook",
    )
    session.add(entry)
    return entry


def finalize_delivery(session: Session, log_id: Optional[int], outcome: DeliveryOutcome):
    if log_id is None:
        return
    entry = session.get(ContractWebhookLog, log_id)
    if entry is None:
        return
    entry.processing_status = ProcessingStatus.processed
    entry.processed_at = utcnow()
    entry.contract_id = outcome.contract_id
    entry.workspace_id = outcome.workspace_id
    entry.error_message = None
    entry.processed_data_json = canonical_json({
        "contract_id": outcome.contract_id,
        "signers_processed": sum(1 for r in outcome.signers if r.ok),
        "signers_failed": [r.token for r in outcome.signers if not r.ok],
        "client_linked": outcome.client_linked,
        "matched_by": outcome.match.match_type.value if outcome.match else None,
    })
    session.add(entry)


def fail_delivery(session: Session, log_id: Optional[int], exc: Exception, workspace_id: Optional[int] = None):
    if log_id is None:
        return
    try:
        entry = session.get(ContractWebhookLog, log_id)
        if entry is None:
            return
        entry.processing_status = ProcessingStatus.error
        entry.error_message = getattr(exc, "message", None) or str(exc) or exc.__class__.__name__
        entry.processed_at = utcnow()
        if workspace_id is not None:
            entry.workspace_id = workspace_id
        session.add(entry)
        session.commit()
    except Exception:
        session.rollback()
        logger.exception("could not mark webhook log %s as failed", log_id)


# ---------- orchestration ----------

def process_delivery(session: Session, request: DeliveryRequest) -> DeliveryOutcome:
    raw = decode_body(request.body)
    entry = record_delivery(session, request, raw)
    log_id = entry.id if entry else None
    workspace_id = None
    try:
        payload = parse_payload(raw)
        workspace_id = resolve_workspace(session, payload.creator_email)
        logger.info("webhook open_id=%s status=%s workspace=%s", payload.open_id, payload.status, workspace_id)

        existing = find_contract(session, payload.open_id)
        before = sa_to_dict(existing) if existing else None
        contract = upsert_contract(session, payload, workspace_id)
        results = upsert_signers(session, contract, payload.signers)
        session.commit()

        signer = primary_signer(payload.signers)
        match = link_matched_client(session, contract, signer)
        session.commit()
        session.refresh(contract)

        outcome = DeliveryOutcome(
            contract_id=contract.id,
            workspace_id=workspace_id,
            signers=results,
            match=match,
        )
        append_history(session, contract, before, request, signer)
        finalize_delivery(session, log_id, outcome)
        session.commit()
    except Exception as exc:
        session.rollback()
        if isinstance(exc, WebhookError):
            logger.warning("webhook rejected (log %s): %s", log_id, exc.message)
        else:
            logger.exception("webhook processing failed (log %s)", log_id)
        fail_delivery(session, log_id, exc, workspace_id)
        raise
    logger.info(
        "webhook processed: contract=%s signers=%s client_linked=%s",
        outcome.contract_id, len(outcome.signers), outcome.client_linked,
    )
    return outcome
