import json, re, unicodedata
from datetime import datetime, timezone
from enum import Enum
from sqlalchemy.inspection import inspect as sa_inspect

def _json_default(value):
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    return str(value)

def canonical_json(obj) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=_json_default)

def load_json(raw: str | None, default=None):
    if not raw:
        return default
    try:
        return json.loads(raw)
    except json.JSONDecodeError:
        return default

def sa_to_dict(obj) -> dict:
    if obj is None:
        return {}
    mapper = sa_inspect(obj).mapper
    data = {}
    for col in mapper.columns:
        value = getattr(obj, col.key)
        if isinstance(value, Enum):
            value = value.value
        data[col.key] = value
    return data

def digits_only(value) -> str | None:
    if value is None:
        return None
    digits = re.sub(r"\D", "", str(value))
    return digits or None

def normalize_email(value: str | None) -> str | None:
    if not value:
        return None
    cleaned = value.strip().lower()
    return cleaned or None

def fold_name(value: str | None) -> str:
    # "José  da Silva" -> "jose da silva"
    if not value:
        return ""
    decomposed = unicodedata.normalize("NFKD", value)
    stripped = "".join(ch for ch in decomposed if not unicodedata.combining(ch))
    return " ".join(stripped.lower().split())

def utcnow() -> datetime:
    return datetime.now(timezone.utc)

def as_utc(value: datetime | None) -> datetime | None:
    # naive values are already UTC
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
