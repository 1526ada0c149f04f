import os

import pytest
from fastapi.testclient import TestClient
from sqlmodel import SQLModel, Session, create_engine

os.environ.setdefault("DATABASE_URL", "sqlite:///./test.db")
os.environ.setdefault("ADMIN_ACCESS_TOKEN", "admin-test-token")

from contracts_api.main import app  # noqa: E402
from contracts_api import db as db_module  # noqa: E402
from contracts_api.db import get_session  # noqa: E402
from contracts_api.models import Client, Profile, Workspace  # noqa: E402

ADMIN_HEADERS = {"X-Access-Token": os.environ["ADMIN_ACCESS_TOKEN"]}
OWNER_EMAIL = "owner@tenant.com"
WEBHOOK_URL = "/api/webhooks/zapsign"


@pytest.fixture(scope="session")
def test_engine(tmp_path_factory):
    db_path = tmp_path_factory.mktemp("data") / "test.db"
    engine = create_engine(
        f"sqlite:///{db_path}",
        connect_args={"check_same_thread": False},
    )
    return engine


@pytest.fixture
def setup_db(test_engine):
    SQLModel.metadata.drop_all(test_engine)
    SQLModel.metadata.create_all(test_engine)
    yield
    SQLModel.metadata.drop_all(test_engine)


@pytest.fixture
def session(test_engine, setup_db):
    with Session(test_engine) as session:
        yield session


@pytest.fixture
def client(test_engine, setup_db):
    db_module.engine = test_engine

    def override_session():
        with Session(test_engine) as session:
            yield session

    app.dependency_overrides[get_session] = override_session
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture
def workspace(session):
    ws = Workspace(name="Silva Advogados", access_token="ws-token-silva")
    session.add(ws)
    session.commit()
    session.refresh(ws)
    session.add(Profile(email=OWNER_EMAIL, name="Owner", current_workspace_id=ws.id))
    session.commit()
    return ws


@pytest.fixture
def other_workspace(session):
    ws = Workspace(name="Costa & Lima", access_token="ws-token-costa")
    session.add(ws)
    session.commit()
    session.refresh(ws)
    session.add(Profile(email="partner@costa.com", name="Partner", current_workspace_id=ws.id))
    session.commit()
    return ws


@pytest.fixture
def add_client(session):
    def _add(workspace_id, name, email=None, document_number=None, **extra):
        record = Client(
            workspace_id=workspace_id,
            name=name,
            email=email,
            document_number=document_number,
            **extra,
        )
        session.add(record)
        session.commit()
        session.refresh(record)
        return record

    return _add


def make_signer(token="S1", **overrides):
    signer = {
        "token": token,
        "external_id": "",
        "name": "Ana",
        "email": "ana@x.com",
        "phone_country": "55",
        "phone": "11999990000",
        "cpf": "12345678901",
        "cnpj": "",
        "status": "signed",
        "sign_url": f"https://app.zapsign.com.br/verificar/{token}",
        "times_viewed": 2,
        "last_view_at": "2024-03-01T12:00:00.000000Z",
        "signed_at": "2024-03-01T12:05:00.000000Z",
        "ip_address": "200.1.2.3",
        "geo_latitude": "-23.55",
        "geo_longitude": "-46.63",
    }
    signer.update(overrides)
    return signer


def make_payload(open_id=42, token="T1", status="signed", signers=None, creator=OWNER_EMAIL, **overrides):
    payload = {
        "open_id": open_id,
        "token": token,
        "status": status,
        "name": "Contrato X",
        "created_at": "2024-03-01T11:00:00.000000Z",
        "updated_at": "2024-03-01T12:05:00.000000Z",
        "signed_at": "2024-03-01T12:05:00.000000Z" if status == "signed" else None,
        "original_file": {"url": "https://files.example.com/original.pdf"},
        "signed_file": {"url": "https://files.example.com/signed.pdf"},
        "signers": [make_signer()] if signers is None else signers,
        "created_by": {"email": creator},
        "extra_info": {"process_number": "0001234-56.2024.8.26.0100"},
    }
    payload.update(overrides)
    return payload
