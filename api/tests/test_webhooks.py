import json
import logging
from datetime import datetime, timezone

from sqlmodel import Session, select

from conftest import WEBHOOK_URL, make_payload, make_signer
from contracts_api.models import (
    Contract,
    ContractHistory,
    ContractSigner,
    ContractStatus,
    ContractWebhookLog,
    MatchType,
    ProcessingStatus,
    SignerStatus,
)


def post_webhook(client, payload):
    return client.post(WEBHOOK_URL, json=payload, headers={"User-Agent": "ZapSign-Webhook/1.0"})


def test_redelivery_updates_rows_in_place(client, test_engine, workspace):
    payload = make_payload(status="pending", signers=[make_signer(status="pending", signed_at=None)])
    first = post_webhook(client, payload)
    assert first.status_code == 200
    body = first.json()
    assert body["success"] is True
    contract_id = body["contract_id"]

    signed = make_payload()
    second = post_webhook(client, signed)
    assert second.status_code == 200
    assert second.json()["contract_id"] == contract_id

    with Session(test_engine) as session:
        contracts = session.exec(select(Contract)).all()
        assert len(contracts) == 1
        assert contracts[0].zapsign_open_id == 42
        assert contracts[0].status == ContractStatus.signed
        assert contracts[0].signed_at is not None

        signers = session.exec(select(ContractSigner)).all()
        assert len(signers) == 1
        assert signers[0].zapsign_token == "S1"
        assert signers[0].status == SignerStatus.signed
        assert signers[0].contract_id == contract_id

        logs = session.exec(select(ContractWebhookLog)).all()
        assert len(logs) == 2
        assert all(log.processing_status == ProcessingStatus.processed for log in logs)

        history = session.exec(select(ContractHistory).order_by(ContractHistory.id)).all()
        assert [h.event_type for h in history] == ["updated", "signed"]
        assert history[0].old_values_json is None
        assert json.loads(history[1].old_values_json)["status"] == "pending"


def test_reopened_envelope_drops_signed_timestamps(client, test_engine, workspace):
    assert post_webhook(client, make_payload()).status_code == 200
    reopened = make_payload(status="pending", signers=[make_signer(status="pending", signed_at=None)])
    assert post_webhook(client, reopened).status_code == 200

    with Session(test_engine) as session:
        contract = session.exec(select(Contract)).one()
        assert contract.status == ContractStatus.pending
        assert contract.signed_at is None
        signer = session.exec(select(ContractSigner)).one()
        assert signer.status == SignerStatus.pending
        assert signer.signed_at is None


def test_redelivered_signing_time_replaces_stored_one(client, test_engine, workspace):
    assert post_webhook(client, make_payload()).status_code == 200
    corrected = make_payload(
        signed_at="2024-05-01T00:00:00Z",
        signers=[make_signer(signed_at="2024-05-01T00:00:00Z")],
    )
    assert post_webhook(client, corrected).status_code == 200

    with Session(test_engine) as session:
        expected = datetime(2024, 5, 1, tzinfo=timezone.utc)
        assert session.exec(select(Contract)).one().signed_at == expected
        assert session.exec(select(ContractSigner)).one().signed_at == expected


def test_identical_redelivery_is_idempotent(client, test_engine, workspace):
    payload = make_payload()
    for _ in range(3):
        assert post_webhook(client, payload).status_code == 200

    with Session(test_engine) as session:
        assert len(session.exec(select(Contract)).all()) == 1
        assert len(session.exec(select(ContractSigner)).all()) == 1
        assert len(session.exec(select(ContractWebhookLog)).all()) == 3
        assert len(session.exec(select(ContractHistory)).all()) == 3


def test_log_entry_records_request_metadata(client, test_engine, workspace):
    response = client.post(
        WEBHOOK_URL,
        json=make_payload(),
        headers={"User-Agent": "ZapSign-Webhook/1.0", "X-Forwarded-For": "34.1.2.3, 10.0.0.1"},
    )
    assert response.status_code == 200

    with Session(test_engine) as session:
        log = session.exec(select(ContractWebhookLog)).one()
        assert log.event_type == "signed"
        assert log.zapsign_open_id == 42
        assert log.zapsign_token == "T1"
        assert log.user_agent == "ZapSign-Webhook/1.0"
        assert log.source_ip == "34.1.2.3"
        assert log.webhook_url.endswith(WEBHOOK_URL)
        assert log.processing_attempts == 1
        assert log.processed_at is not None
        assert log.workspace_id == workspace.id
        assert json.loads(log.raw_payload_json)["open_id"] == 42
        processed = json.loads(log.processed_data_json)
        assert processed["contract_id"] == log.contract_id
        assert processed["signers_processed"] == 1
        assert processed["signers_failed"] == []


def test_unknown_creator_is_rejected_without_writes(client, test_engine, workspace):
    response = post_webhook(client, make_payload(creator="stranger@nowhere.com"))
    assert response.status_code == 400
    assert response.json()["error"] == "Could not determine workspace"

    with Session(test_engine) as session:
        assert session.exec(select(Contract)).all() == []
        assert session.exec(select(ContractSigner)).all() == []
        assert session.exec(select(ContractHistory)).all() == []
        log = session.exec(select(ContractWebhookLog)).one()
        assert log.processing_status == ProcessingStatus.error
        assert "stranger@nowhere.com" in log.error_message


def test_missing_creator_is_rejected(client, workspace):
    payload = make_payload()
    del payload["created_by"]
    response = post_webhook(client, payload)
    assert response.status_code == 400
    assert response.json()["error"] == "Could not determine workspace"


def test_envelope_owned_by_other_workspace_is_not_hijacked(client, test_engine, workspace, other_workspace):
    assert post_webhook(client, make_payload()).status_code == 200
    response = post_webhook(client, make_payload(creator="partner@costa.com", name="Hijack"))
    assert response.status_code == 409

    with Session(test_engine) as session:
        contract = session.exec(select(Contract)).one()
        assert contract.workspace_id == workspace.id
        assert contract.contract_name == "Contrato X"
        failed = session.exec(
            select(ContractWebhookLog).where(ContractWebhookLog.processing_status == ProcessingStatus.error)
        ).one()
        assert failed.workspace_id == other_workspace.id


def test_malformed_signer_does_not_abort_delivery(client, test_engine, workspace):
    signers = [
        make_signer("S1"),
        {"name": "No Token", "email": "notoken@x.com"},
    ]
    response = post_webhook(client, make_payload(signers=signers))
    assert response.status_code == 200

    with Session(test_engine) as session:
        stored = session.exec(select(ContractSigner)).all()
        assert [s.zapsign_token for s in stored] == ["S1"]
        log = session.exec(select(ContractWebhookLog)).one()
        assert log.processing_status == ProcessingStatus.processed
        processed = json.loads(log.processed_data_json)
        assert processed["signers_processed"] == 1
        assert processed["signers_failed"] == [None]


def test_malformed_primary_signer_still_persists_the_rest(client, test_engine, workspace):
    signers = [{"name": "Broken", "times_viewed": "lots"}, make_signer("S2")]
    response = post_webhook(client, make_payload(signers=signers))
    assert response.status_code == 200
    assert response.json()["client_linked"] is False

    with Session(test_engine) as session:
        assert [s.zapsign_token for s in session.exec(select(ContractSigner)).all()] == ["S2"]


def test_signer_token_of_another_contract_is_skipped(client, test_engine, workspace):
    assert post_webhook(client, make_payload(open_id=1, token="A")).status_code == 200
    response = post_webhook(client, make_payload(open_id=2, token="B"))
    assert response.status_code == 200

    with Session(test_engine) as session:
        first = session.exec(select(Contract).where(Contract.zapsign_open_id == 1)).one()
        signer = session.exec(select(ContractSigner)).one()
        assert signer.contract_id == first.id


def test_signer_fields_are_normalized(client, test_engine, workspace):
    signer = make_signer(cpf="123.456.789-01", email="  Ana@X.com ", status="refused")
    assert post_webhook(client, make_payload(status="refused", signers=[signer])).status_code == 200

    with Session(test_engine) as session:
        stored = session.exec(select(ContractSigner)).one()
        assert stored.cpf == "12345678901"
        assert stored.email == "ana@x.com"
        assert stored.status == SignerStatus.rejected
        assert stored.geo_latitude == -23.55
        contract = session.exec(select(Contract)).one()
        assert contract.status == ContractStatus.rejected


def test_unmatched_signer_leaves_contract_unlinked(client, test_engine, workspace, add_client):
    add_client(workspace.id, "Roberto Carlos", email="roberto@y.com", document_number="99999999999")
    signer = make_signer(cpf="", cnpj="", email="nobody@x.com", name="Zélia Quintanilha")
    response = post_webhook(client, make_payload(signers=[signer]))
    assert response.status_code == 200
    assert response.json()["client_linked"] is False

    with Session(test_engine) as session:
        contract = session.exec(select(Contract)).one()
        assert contract.client_id is None
        assert contract.matched_by is None


def test_document_match_links_client(client, test_engine, workspace, add_client):
    ana = add_client(workspace.id, "Ana Souza", email="other@x.com", document_number="12345678901")
    response = post_webhook(client, make_payload())
    assert response.status_code == 200
    assert response.json()["client_linked"] is True

    with Session(test_engine) as session:
        contract = session.exec(select(Contract)).one()
        assert contract.client_id == ana.id
        assert contract.matched_by == MatchType.document_number
        assert contract.matching_confidence == 1.0


def test_non_json_body_is_logged_and_rejected(client, test_engine, workspace):
    response = client.post(WEBHOOK_URL, content=b"not json", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid JSON"

    with Session(test_engine) as session:
        log = session.exec(select(ContractWebhookLog)).one()
        assert log.processing_status == ProcessingStatus.error
        assert json.loads(log.raw_payload_json) == {"_raw_body": "not json"}


def test_payload_without_open_id_is_rejected(client, test_engine, workspace):
    payload = make_payload()
    del payload["open_id"]
    response = post_webhook(client, payload)
    assert response.status_code == 400
    assert response.json()["error"] == "Invalid payload"


def test_unexpected_failure_returns_500_and_marks_log(client, test_engine, workspace, monkeypatch):
    from contracts_api import pipeline

    def broken_history(*args, **kwargs):
        raise RuntimeError("history store unavailable")

    monkeypatch.setattr(pipeline, "append_history", broken_history)
    response = post_webhook(client, make_payload())
    assert response.status_code == 500
    assert response.json() == {"error": "Internal server error", "message": "history store unavailable"}

    with Session(test_engine) as session:
        log = session.exec(select(ContractWebhookLog)).one()
        assert log.processing_status == ProcessingStatus.error
        assert log.error_message == "history store unavailable"
        # the contract upsert is committed before the audit stage
        assert len(session.exec(select(Contract)).all()) == 1


def test_log_write_failure_does_not_block_processing(client, test_engine, workspace, caplog):
    ContractWebhookLog.__table__.drop(test_engine)

    with caplog.at_level(logging.ERROR, logger="contracts_api.pipeline"):
        response = post_webhook(client, make_payload())
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert "failed to record webhook delivery for open_id=42" in caplog.text

    with Session(test_engine) as session:
        contract = session.exec(select(Contract)).one()
        assert contract.zapsign_open_id == 42
        assert len(session.exec(select(ContractSigner)).all()) == 1
        assert [h.event_type for h in session.exec(select(ContractHistory)).all()] == ["signed"]


def test_preflight_returns_cors_headers(client):
    response = client.options(WEBHOOK_URL)
    assert response.status_code == 200
    assert response.headers["access-control-allow-origin"] == "*"
    assert "content-type" in response.headers["access-control-allow-headers"]
    assert response.content == b""


def test_soft_deleted_contract_is_not_resurrected(client, test_engine, workspace):
    contract_id = post_webhook(client, make_payload()).json()["contract_id"]
    deleted = client.delete(f"/api/contracts/{contract_id}", headers={"X-Access-Token": "ws-token-silva"})
    assert deleted.status_code == 204

    assert post_webhook(client, make_payload()).status_code == 200
    with Session(test_engine) as session:
        contract = session.get(Contract, contract_id)
        assert contract.is_deleted is True
