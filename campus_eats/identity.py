from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from campus_eats.db import get_db
from campus_eats.models import UserAccount, UserAlias


@dataclass(frozen=True)
class Principal:
    user_id: int
    email: str
    identifiers: frozenset[str]

    def owns_identifier(self, identifier: str) -> bool:
        return normalize_identifier(identifier) in self.identifiers


def normalize_identifier(identifier: str) -> str:
    return (identifier or "").strip().lower()


def verified_identifiers(db: Session, user: UserAccount) -> frozenset[str]:
    aliases = db.query(UserAlias.identifier).filter(UserAlias.user_id == user.id).all()
    values = {normalize_identifier(user.email)}
    values.update(normalize_identifier(alias) for (alias,) in aliases)
    return frozenset(values)


def load_principal(db: Session, user_id: int) -> Optional[Principal]:
    user = db.get(UserAccount, user_id)
    if not user:
        return None
    return Principal(user_id=user.id, email=user.email, identifiers=verified_identifiers(db, user))


def resolve_account(db: Session, identifier: str) -> Optional[UserAccount]:
    """Find the registered account owning ``identifier`` (email or alias)."""
    value = normalize_identifier(identifier)
    if not value:
        return None
    user = db.query(UserAccount).filter(UserAccount.email == value).first()
    if user:
        return user
    alias = db.query(UserAlias).filter(UserAlias.identifier == value).first()
    if alias:
        return db.get(UserAccount, alias.user_id)
    return None


def get_principal(
    x_user_id: Optional[int] = Header(default=None),
    db: Session = Depends(get_db),
) -> Principal:
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="missing X-User-Id header")
    principal = load_principal(db, x_user_id)
    if principal is None:
        raise HTTPException(status_code=401, detail="unknown user")
    return principal
