from sqlalchemy import Column, String, Integer, Float, DateTime, func
from rendezvous.core.db import Base


# Owned by the identity/profile service. This core only reads it to validate
# ids and to denormalize counterpart summaries.
class User(Base):
    __tablename__ = "users"

    id = Column(String(64), primary_key=True)
    username = Column(String, nullable=False)

    verification_tier = Column(Integer, nullable=False, default=0)
    reputation_score = Column(Float, nullable=False, default=0.0)
    avatar_url = Column(String, nullable=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
