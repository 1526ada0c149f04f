from enum import Enum
from typing import Optional
from datetime import datetime
from sqlalchemy.types import DateTime, TypeDecorator
from sqlmodel import SQLModel, Field as ORMField

from .utils import as_utc, utcnow


class UTCDateTime(TypeDecorator):
    """Timezone-aware timestamp column that always round-trips in UTC.

    SQLite stores no offset, so rows read back from it are tagged as UTC here.
    """

    impl = DateTime
    cache_ok = True

    def __init__(self):
        super().__init__(timezone=True)

    def process_bind_param(self, value, dialect):
        return as_utc(value)

    def process_result_value(self, value, dialect):
        return as_utc(value)


class ContractStatus(str, Enum):
    pending = "pending"
    signed = "signed"
    rejected = "rejected"
    expired = "expired"


class SignerStatus(str, Enum):
    pending = "pending"
    signed = "signed"
    rejected = "rejected"


class ProcessingStatus(str, Enum):
    received = "received"
    processing = "processing"
    processed = "processed"
    error = "error"


class MatchType(str, Enum):
    document_number = "document_number"
    email = "email"
    name = "name"
    manual = "manual"


class Workspace(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    name: str
    access_token: Optional[str] = ORMField(default=None, unique=True, index=True)
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)

class Profile(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    email: str = ORMField(unique=True, index=True)
    name: str = ""
    current_workspace_id: Optional[int] = ORMField(default=None, foreign_key="workspace.id")

class Client(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    workspace_id: int = ORMField(foreign_key="workspace.id", index=True)
    client_type: str = "individual"  # individual|company
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    document_number: Optional[str] = ORMField(default=None, index=True)  # CPF/CNPJ digits
    is_deleted: bool = False
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)

class Contract(SQLModel, table=True):
    id: Optional[int] = ORMField(default=None, primary_key=True)
    workspace_id: int = ORMField(foreign_key="workspace.id", index=True)
    client_id: Optional[int] = ORMField(default=None, foreign_key="client.id")
    matched_by: Optional[MatchType] = None
    matching_confidence: Optional[float] = None
    contract_name: str
    contract_code: Optional[str] = None
    contract_type: Optional[str] = None
    contract_value: Optional[float] = None
    zapsign_open_id: int = ORMField(unique=True, index=True)
    zapsign_token: str
    status: ContractStatus = ContractStatus.pending
    original_file_url: Optional[str] = None
    signed_file_url: Optional[str] = None
    zapsign_created_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    zapsign_updated_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    signed_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    created_by_email: Optional[str] = None
    metadata_json: str = "{}"
    notes: Optional[str] = None
    is_deleted: bool = False
    deleted_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)

class ContractSigner(SQLModel, table=True):
    __tablename__ = "contract_signer"

    id: Optional[int] = ORMField(default=None, primary_key=True)
    contract_id: int = ORMField(foreign_key="contract.id", index=True)
    workspace_id: int = ORMField(foreign_key="workspace.id")
    zapsign_token: str = ORMField(unique=True, index=True)
    external_id: Optional[str] = None
    name: str = ""
    email: Optional[str] = None
    phone_country: Optional[str] = None
    phone_number: Optional[str] = None
    cpf: Optional[str] = None
    cnpj: Optional[str] = None
    status: SignerStatus = SignerStatus.pending
    sign_url: Optional[str] = None
    times_viewed: int = 0
    last_view_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    signed_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
    signature_image_url: Optional[str] = None
    document_photo_url: Optional[str] = None
    selfie_photo_url: Optional[str] = None
    ip_address: Optional[str] = None
    geo_latitude: Optional[float] = None
    geo_longitude: Optional[float] = None
    created_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)
    updated_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)

class ContractHistory(SQLModel, table=True):
    __tablename__ = "contract_history"

    id: Optional[int] = ORMField(default=None, primary_key=True)
    contract_id: int = ORMField(foreign_key="contract.id", index=True)
    workspace_id: int
    event_type: str  # signed|updated|client_linked|deleted
    event_description: str = ""
    old_values_json: Optional[str] = None
    new_values_json: str = "{}"
    signer_name: Optional[str] = None
    signer_email: Optional[str] = None
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None
    performed_by: str = "webhook"  # webhook|admin|workspace:<id>
    event_timestamp: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)

class ContractWebhookLog(SQLModel, table=True):
    __tablename__ = "contract_webhook_log"

    id: Optional[int] = ORMField(default=None, primary_key=True)
    workspace_id: Optional[int] = None
    contract_id: Optional[int] = None
    event_type: str = "unknown"
    zapsign_open_id: Optional[int] = ORMField(default=None, index=True)
    zapsign_token: Optional[str] = None
    raw_payload_json: str = "{}"
    processed_data_json: Optional[str] = None
    processing_status: ProcessingStatus = ProcessingStatus.received
    error_message: Optional[str] = None
    processing_attempts: int = 0
    webhook_url: Optional[str] = None
    execution_mode: str = "production"
    user_agent: Optional[str] = None
    source_ip: Optional[str] = None
    request_headers_json: str = "{}"
    received_at: datetime = ORMField(default_factory=utcnow, sa_type=UTCDateTime)
    processed_at: Optional[datetime] = ORMField(default=None, sa_type=UTCDateTime)
