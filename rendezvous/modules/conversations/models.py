from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    ForeignKey,
    JSON,
    CheckConstraint,
    UniqueConstraint,
    Index,
)
from sqlalchemy.sql import func

from rendezvous.core.db import Base


class Conversation(Base):
    __tablename__ = "conversations"

    id = Column(Integer, primary_key=True, index=True)

    # always stored sorted: participant_1 < participant_2
    participant_1 = Column(String(64), nullable=False, index=True)
    participant_2 = Column(String(64), nullable=False, index=True)

    last_message = Column(Text, nullable=True)
    last_message_time = Column(DateTime, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
    updated_at = Column(DateTime, server_default=func.now(), onupdate=func.now(), nullable=False)

    __table_args__ = (
        UniqueConstraint("participant_1", "participant_2", name="uq_conversations_pair"),
        CheckConstraint("participant_1 < participant_2", name="ck_conversations_sorted_pair"),
    )

    def has_member(self, user_id: str) -> bool:
        return user_id in (self.participant_1, self.participant_2)

    def other_participant(self, user_id: str) -> str:
        return self.participant_2 if self.participant_1 == user_id else self.participant_1


class Message(Base):
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, index=True)
    conversation_id = Column(Integer, ForeignKey("conversations.id"), nullable=False)
    sender_id = Column(String(64), nullable=False)
    content = Column(Text, nullable=False)
    message_type = Column(String(32), nullable=False, default="text")
    # "metadata" is reserved on declarative classes
    meta = Column("metadata", JSON, nullable=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_messages_conversation_created", "conversation_id", "created_at"),
    )
