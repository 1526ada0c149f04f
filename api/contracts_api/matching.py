"""Client identity matching for contracts arriving through the webhook.

Each ``find_client_by_*`` lookup is scoped to one workspace and returns every
candidate it finds as a :class:`ClientMatch`. :func:`match_client` walks the
strategies in priority order (tax document, email, name) and keeps the best
candidate of the first strategy that finds anything.
"""
import logging
from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Callable, List, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from .config import NAME_MATCH_THRESHOLD
from .models import Client, MatchType
from .schemas import ZapSignSigner
from .utils import digits_only, fold_name, normalize_email

logger = logging.getLogger(__name__)

DOCUMENT_CONFIDENCE = 1.0
EMAIL_CONFIDENCE = 0.9
NAME_CONFIDENCE_FLOOR = 0.5
NAME_CONFIDENCE_CEILING = 0.7


@dataclass(frozen=True)
class ClientMatch:
    client_id: int
    match_type: MatchType
    confidence: float


def _active_clients(workspace_id: int):
    return select(Client).where(Client.workspace_id == workspace_id, Client.is_deleted == False)  # noqa: E712


def find_client_by_document(session: Session, workspace_id: int, document: Optional[str]) -> List[ClientMatch]:
    digits = digits_only(document)
    if not digits:
        return []
    clients = session.exec(_active_clients(workspace_id).where(Client.document_number == digits)).all()
    return [ClientMatch(c.id, MatchType.document_number, DOCUMENT_CONFIDENCE) for c in clients]


def find_client_by_email(session: Session, workspace_id: int, email: Optional[str]) -> List[ClientMatch]:
    email = normalize_email(email)
    if not email:
        return []
    clients = session.exec(
        _active_clients(workspace_id).where(func.lower(func.trim(Client.email)) == email)
    ).all()
    return [ClientMatch(c.id, MatchType.email, EMAIL_CONFIDENCE) for c in clients]


def name_confidence(ratio: float, threshold: float = NAME_MATCH_THRESHOLD) -> float:
    """Scale a similarity ratio at or above ``threshold`` into the name tier."""
    if threshold >= 1.0:
        return NAME_CONFIDENCE_CEILING
    span = NAME_CONFIDENCE_CEILING - NAME_CONFIDENCE_FLOOR
    scaled = NAME_CONFIDENCE_FLOOR + span * (ratio - threshold) / (1.0 - threshold)
    return round(min(NAME_CONFIDENCE_CEILING, max(NAME_CONFIDENCE_FLOOR, scaled)), 4)


def find_client_by_name(
    session: Session,
    workspace_id: int,
    name: Optional[str],
    threshold: float = NAME_MATCH_THRESHOLD,
) -> List[ClientMatch]:
    target = fold_name(name)
    if not target:
        return []
    matches = []
    for client in session.exec(_active_clients(workspace_id)).all():
        ratio = SequenceMatcher(None, target, fold_name(client.name)).ratio()
        if ratio >= threshold:
            matches.append(ClientMatch(client.id, MatchType.name, name_confidence(ratio, threshold)))
    return matches


def best_candidate(candidates: List[ClientMatch]) -> Optional[ClientMatch]:
    if not candidates:
        return None
    # highest confidence, then oldest client
    return sorted(candidates, key=lambda m: (-m.confidence, m.client_id))[0]


def _strategies(signer: ZapSignSigner) -> List[Tuple[str, Callable, Optional[str]]]:
    return [
        ("cpf", find_client_by_document, signer.cpf),
        ("cnpj", find_client_by_document, signer.cnpj),
        ("email", find_client_by_email, signer.email),
        ("name", find_client_by_name, signer.name),
    ]


def match_client(session: Session, workspace_id: int, signer: ZapSignSigner) -> Optional[ClientMatch]:
    for label, lookup, value in _strategies(signer):
        if not value:
            continue
        try:
            with session.begin_nested():
                candidates = lookup(session, workspace_id, value)
        except Exception:
            logger.warning("client lookup by %s failed for workspace %s", label, workspace_id, exc_info=True)
            continue
        match = best_candidate(candidates)
        if match:
            logger.info(
                "matched client %s by %s (confidence %.2f)", match.client_id, match.match_type.value, match.confidence
            )
            return match
    return None
