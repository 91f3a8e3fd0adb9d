from sqlalchemy import (
    Column,
    Integer,
    String,
    DateTime,
    Enum,
    CheckConstraint,
    UniqueConstraint,
)
from sqlalchemy.sql import func

from rendezvous.core.db import Base
from rendezvous.schemas.enums import ConnectionStatus, ConnectionType


def pair_low_high(a: str, b: str) -> tuple[str, str]:
    return (a, b) if a < b else (b, a)


class Connection(Base):
    __tablename__ = "user_connections"

    id = Column(Integer, primary_key=True, index=True)
    from_user_id = Column(String(64), nullable=False, index=True)
    to_user_id = Column(String(64), nullable=False, index=True)

    # sorted copy of (from, to); the unique key makes a->b and b->a collide
    user_low = Column(String(64), nullable=False)
    user_high = Column(String(64), nullable=False)

    connection_type = Column(
        Enum(ConnectionType, name="connection_type_enum", native_enum=False),
        nullable=False,
        default=ConnectionType.contact_request,
    )
    message = Column(String, nullable=False, default="")
    status = Column(
        Enum(ConnectionStatus, name="connection_status_enum", native_enum=False),
        nullable=False,
        default=ConnectionStatus.pending,
    )

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("user_low", "user_high", name="uq_user_connections_pair"),
        CheckConstraint("from_user_id <> to_user_id", name="ck_user_connections_not_self"),
    )

    def other_user(self, user_id: str) -> str:
        return self.to_user_id if self.from_user_id == user_id else self.from_user_id


class BlockedUser(Base):
    __tablename__ = "blocked_users"

    id = Column(Integer, primary_key=True, index=True)
    blocker_id = Column(String(64), nullable=False, index=True)
    blocked_id = Column(String(64), nullable=False, index=True)
    reason = Column(String, nullable=True)
    created_at = Column(DateTime, server_default=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("blocker_id", "blocked_id", name="uq_blocked_users_pair"),
    )
