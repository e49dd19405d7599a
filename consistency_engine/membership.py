"""
Workspace membership helpers.
"""

from dataclasses import dataclass
from typing import Optional

from sqlalchemy.orm import Session

from .db.models import MemberStatus, User, Workspace, WorkspaceMember
from .errors import ForbiddenError, NotFoundError, ValidationError


@dataclass(frozen=True)
class Actor:
    """Identity of the caller performing an operation"""
    user_id: str
    name: str

    @classmethod
    def from_user(cls, user: User) -> "Actor":
        return cls(user_id=user.id, name=user.name or user.email)


def validate_actor(actor: Optional[Actor]) -> Actor:
    if actor is None or not actor.user_id:
        raise ValidationError("Actor identity is required")
    return actor


def get_workspace_member(db: Session, workspace_id: str, user_id: str) -> Optional[WorkspaceMember]:
    return (
        db.query(WorkspaceMember)
        .filter(
            WorkspaceMember.workspace_id == workspace_id,
            WorkspaceMember.user_id == user_id,
        )
        .first()
    )


def has_workspace_access(db: Session, workspace_id: str, user_id: str) -> bool:
    member = get_workspace_member(db, workspace_id, user_id)
    return member is not None and member.status != MemberStatus.REMOVED


def require_workspace_access(db: Session, workspace_id: str, actor: Actor) -> None:
    """Fail closed: no membership means no data and no mutation."""
    validate_actor(actor)
    if not workspace_id:
        raise ValidationError("Workspace ID is required")
    if not has_workspace_access(db, workspace_id, actor.user_id):
        raise ForbiddenError(
            "Access denied to this workspace",
            {"workspace_id": workspace_id},
        )


def get_workspace_or_404(db: Session, workspace_id: str) -> Workspace:
    workspace = db.query(Workspace).filter(Workspace.id == workspace_id).first()
    if not workspace:
        raise NotFoundError("Workspace not found", {"workspace_id": workspace_id})
    return workspace
