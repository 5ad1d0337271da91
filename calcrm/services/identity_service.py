from __future__ import annotations

from dataclasses import dataclass

from sqlalchemy import select
from sqlalchemy.orm import Session

from calcrm.models.profile import Profile
from calcrm.schemas.request_identity import RequestIdentity


class Unauthenticated(Exception):
    """No resolvable caller identity."""

    code = "UNAUTHENTICATED"

    def __init__(self, message: str = "Please sign in again.") -> None:
        super().__init__(message)
        self.message = message

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


@dataclass(frozen=True)
class Principal:
    user_id: str
    display_name: str
    email: str | None = None
    role: str | None = None


def display_name_for(profile: Profile) -> str:
    name = (profile.full_name or "").strip()
    if name:
        return name
    return (profile.email or "").split("@", 1)[0] or profile.id


def attach_internal_user_context(
    db: Session,
    *,
    identity: RequestIdentity,
) -> RequestIdentity:
    """
    Best-effort mapping from trusted identity claims to the local profile row.
    Subject (auth provider user id) wins over email when both are present.
    """
    profile = None
    subject = (identity.subject or "").strip()
    if subject:
        profile = db.get(Profile, subject)

    email = (identity.email or "").strip().lower()
    if profile is None and email:
        profile = db.execute(select(Profile).where(Profile.email == email)).scalar_one_or_none()

    if profile is None or not profile.is_active:
        return identity

    return identity.model_copy(
        update={
            "user_id": profile.id,
            "email": profile.email,
            "display_name": display_name_for(profile),
            "role": profile.role,
        }
    )


def resolve_principal(db: Session, identity: RequestIdentity | None) -> Principal:
    if identity is None:
        raise Unauthenticated()
    if not identity.user_id:
        identity = attach_internal_user_context(db, identity=identity)
    if not identity.user_id:
        raise Unauthenticated()
    return Principal(
        user_id=identity.user_id,
        display_name=identity.display_name or identity.user_id,
        email=identity.email,
        role=identity.role,
    )
