from typing import Optional
from fastapi import Depends, Header, HTTPException, Query, status
from pydantic import BaseModel
from sqlmodel import Session, select

from .config import ADMIN_ACCESS_TOKEN
from .db import get_session
from .models import Workspace


class AccessContext(BaseModel):
    role: str
    workspace_id: Optional[int] = None

    @property
    def actor(self) -> str:
        return "admin" if self.role == "admin" else f"workspace:{self.workspace_id}"


def resolve_access_context(
    x_access_token: Optional[str] = Header(default=None, alias="X-Access-Token"),
    token: Optional[str] = Query(default=None),
    session: Session = Depends(get_session),
) -> AccessContext:
    candidate = x_access_token or token
    if not candidate:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing access token")
    if ADMIN_ACCESS_TOKEN and candidate == ADMIN_ACCESS_TOKEN:
        return AccessContext(role="admin")
    workspace = session.exec(select(Workspace).where(Workspace.access_token == candidate)).first()
    if workspace:
        return AccessContext(role="workspace", workspace_id=workspace.id)
    raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Invalid access token")


def require_admin_access(context: AccessContext = Depends(resolve_access_context)) -> AccessContext:
    if context.role != "admin":
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return context


def scoped_workspace_id(context: AccessContext, workspace_id: Optional[int] = None) -> Optional[int]:
    """Workspace a request may see; ``None`` means every workspace (admin only)."""
    if context.role == "admin":
        return workspace_id
    if workspace_id is not None and workspace_id != context.workspace_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Access denied for this workspace")
    return context.workspace_id
