from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, field_validator
from typing import Any, Dict, List, Optional

from .models import MatchType
from .utils import as_utc


def _blank_to_none(value):
    if isinstance(value, str) and not value.strip():
        return None
    return value


class ZapSignFile(BaseModel):
    url: Optional[str] = None

class ZapSignCreator(BaseModel):
    email: Optional[str] = None

class ZapSignSigner(BaseModel):
    model_config = ConfigDict(extra="allow")

    token: str = Field(min_length=1)
    external_id: Optional[str] = None
    name: str = ""
    email: Optional[str] = None
    phone_country: Optional[str] = None
    phone: Optional[str] = None
    cpf: Optional[str] = None
    cnpj: Optional[str] = None
    status: str = "pending"
    sign_url: Optional[str] = None
    times_viewed: int = 0
    last_view_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    ip_address: Optional[str] = None
    geo_latitude: Optional[float] = None
    geo_longitude: Optional[float] = None
    signature_image: Optional[str] = None
    document_photo_url: Optional[str] = None
    selfie_photo_url: Optional[str] = None

    @field_validator(
        "external_id", "email", "phone_country", "phone", "cpf", "cnpj", "sign_url",
        "last_view_at", "signed_at", "ip_address", "geo_latitude", "geo_longitude",
        mode="before",
    )
    @classmethod
    def _empty_strings(cls, value):
        return _blank_to_none(value)

    @field_validator("external_id", "phone", "cpf", "cnpj", mode="before")
    @classmethod
    def _numbers_as_text(cls, value):
        if isinstance(value, int):
            return str(value)
        return value

    @field_validator("times_viewed", mode="before")
    @classmethod
    def _missing_views(cls, value):
        return value or 0

    @field_validator("last_view_at", "signed_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

class ZapSignWebhookPayload(BaseModel):
    """Envelope-level view of a ZapSign callback.

    Signers stay raw here and are validated one at a time, so a single bad
    signer does not reject the whole delivery.
    """

    model_config = ConfigDict(extra="allow")

    open_id: int
    token: str = Field(min_length=1)
    status: str = "pending"
    name: str = ""
    event_type: Optional[str] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None
    signed_at: Optional[datetime] = None
    original_file: Optional[ZapSignFile] = None
    signed_file: Optional[ZapSignFile] = None
    signers: List[Dict[str, Any]] = Field(default_factory=list)
    created_by: Optional[ZapSignCreator] = None
    extra_info: Optional[Dict[str, Any]] = None

    @field_validator("created_at", "updated_at", "signed_at", mode="before")
    @classmethod
    def _empty_timestamps(cls, value):
        return _blank_to_none(value)

    @field_validator("created_at", "updated_at", "signed_at")
    @classmethod
    def _utc(cls, value):
        return as_utc(value)

    @field_validator("original_file", "signed_file", mode="before")
    @classmethod
    def _file_url(cls, value):
        # the provider sends either {"url": ...} or the bare URL
        if isinstance(value, str):
            return {"url": value or None}
        return value

    @field_validator("signers", mode="before")
    @classmethod
    def _signers_list(cls, value):
        if value is None:
            return []
        if isinstance(value, list):
            return [item if isinstance(item, dict) else {"_invalid": item} for item in value]
        return value

    @property
    def creator_email(self) -> Optional[str]:
        return self.created_by.email if self.created_by else None

class ClientLink(BaseModel):
    client_id: int
    matched_by: MatchType = MatchType.manual
    matching_confidence: float = Field(default=1.0, ge=0.0, le=1.0)
