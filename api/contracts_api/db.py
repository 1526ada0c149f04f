import logging
from sqlmodel import SQLModel, create_engine, Session
from sqlalchemy import text, inspect
from .config import DATABASE_URL

logger = logging.getLogger(__name__)

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, echo=False, pool_pre_ping=True, connect_args=_connect_args)

def init_db():
    from .models import Workspace, Profile, Client, Contract, ContractSigner, ContractHistory, ContractWebhookLog
    SQLModel.metadata.create_all(engine)
    _ensure_unique_index("contract", "zapsign_open_id", "uq_contract_zapsign_open_id")
    _ensure_unique_index("contract_signer", "zapsign_token", "uq_contract_signer_zapsign_token")

def get_session():
    with Session(engine) as session:
        yield session

def _ensure_unique_index(table: str, column: str, index_name: str):
    # Upserts need a unique index on the conflict column; tables created
    # before the constraint existed only have a plain index.
    inspector = inspect(engine)
    try:
        indexes = inspector.get_indexes(table)
        constraints = inspector.get_unique_constraints(table)
    except Exception:
        return
    for idx in indexes:
        if idx.get("unique") and idx.get("column_names") == [column]:
            return
    if any(c.get("column_names") == [column] for c in constraints):
        return
    with engine.begin() as conn:
        duplicates = conn.execute(
            text(f"SELECT {column} FROM {table} GROUP BY {column} HAVING COUNT(*) > 1")
        ).fetchall()
        if duplicates:
            values = ", ".join(str(row[0]) for row in duplicates if row[0] is not None)
            logger.warning(
                "duplicate %s.%s values detected; resolve before enforcing uniqueness: %s",
                table, column, values,
            )
            return
        conn.execute(text(f"CREATE UNIQUE INDEX IF NOT EXISTS {index_name} ON {table}({column})"))
