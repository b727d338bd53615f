import uuid
from dataclasses import dataclass

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.orm import Session

from metahub.auth.security import decode_access_token
from metahub.persistence.database import get_db
from metahub.persistence.models import MemberRole, WorkspaceMember

bearer_scheme = HTTPBearer(auto_error=False)


@dataclass(frozen=True)
class WorkspaceContext:
    workspace_id: uuid.UUID
    user_id: str
    role: MemberRole

    @property
    def is_admin(self) -> bool:
        return self.role in (MemberRole.owner, MemberRole.admin)


def get_current_user(
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
) -> dict:
    if not credentials:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Missing token")
    try:
        return decode_access_token(credentials.credentials)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Invalid token") from None


def get_workspace_context(
    x_workspace_id: str | None = Header(default=None),
    user: dict = Depends(get_current_user),
    db: Session = Depends(get_db),
) -> WorkspaceContext:
    """Resolve the caller's membership in the workspace named by ``X-Workspace-ID``."""
    if not x_workspace_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="X-Workspace-ID header required")
    try:
        workspace_id = uuid.UUID(x_workspace_id)
    except ValueError:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="Invalid workspace id") from None

    member = (
        db.query(WorkspaceMember)
        .filter(WorkspaceMember.workspace_id == workspace_id, WorkspaceMember.user_id == user["sub"])
        .first()
    )
    if member is None:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Not a member of this workspace")
    return WorkspaceContext(workspace_id=workspace_id, user_id=member.user_id, role=MemberRole(member.role))


def require_admin(ctx: WorkspaceContext = Depends(get_workspace_context)) -> WorkspaceContext:
    """Owners and admins only."""
    if not ctx.is_admin:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Admin access required")
    return ctx
