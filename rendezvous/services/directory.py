from __future__ import annotations

from dataclasses import dataclass, asdict
from typing import Dict, Iterable, Optional, Protocol

from sqlalchemy import select
from sqlalchemy.orm import Session

from rendezvous.models.service import Service
from rendezvous.models.user import User


@dataclass
class UserSummary:
    id: str
    username: str
    verification_tier: int
    avatar_url: Optional[str] = None

    def public(self) -> dict:
        return {
            "id": self.id,
            "username": self.username,
            "verificationTier": self.verification_tier,
            "avatarUrl": self.avatar_url,
        }


@dataclass
class ServiceSummary:
    id: str
    title: str
    owner_id: str

    def as_dict(self) -> dict:
        return asdict(self)


class UserDirectory(Protocol):
    def get_user(self, db: Session, user_id: str) -> Optional[UserSummary]: ...

    def get_users(self, db: Session, user_ids: Iterable[str]) -> Dict[str, UserSummary]: ...


class ServiceCatalog(Protocol):
    def get_service(self, db: Session, service_id: str) -> Optional[ServiceSummary]: ...


def _summary(user: User) -> UserSummary:
    return UserSummary(
        id=user.id,
        username=user.username,
        verification_tier=user.verification_tier,
        avatar_url=user.avatar_url,
    )


class SqlUserDirectory:
    """Reads the identity service's `users` table living in the same database."""

    def get_user(self, db: Session, user_id: str) -> Optional[UserSummary]:
        user = db.get(User, user_id)
        return _summary(user) if user else None

    def get_users(self, db: Session, user_ids: Iterable[str]) -> Dict[str, UserSummary]:
        ids = set(user_ids)
        if not ids:
            return {}
        rows = db.execute(select(User).where(User.id.in_(ids))).scalars().all()
        return {u.id: _summary(u) for u in rows}


class SqlServiceCatalog:
    def get_service(self, db: Session, service_id: str) -> Optional[ServiceSummary]:
        service = db.get(Service, service_id)
        if not service:
            return None
        return ServiceSummary(id=service.id, title=service.title, owner_id=service.owner_id)


_USER_DIRECTORY = SqlUserDirectory()
_SERVICE_CATALOG = SqlServiceCatalog()


# --- FastAPI dependencies ---
def get_user_directory() -> UserDirectory:
    return _USER_DIRECTORY


def get_service_catalog() -> ServiceCatalog:
    return _SERVICE_CATALOG


def unknown_user(user_id: str) -> dict:
    # counterpart rows whose profile vanished upstream still render
    return {"id": user_id, "username": None, "verificationTier": None, "avatarUrl": None}
