from sqlalchemy import Column, String, DateTime, func
from rendezvous.core.db import Base


# Owned by the service catalog; read-only here.
class Service(Base):
    __tablename__ = "services"

    id = Column(String(64), primary_key=True)
    title = Column(String, nullable=False)
    owner_id = Column(String(64), nullable=False, index=True)

    created_at = Column(DateTime, server_default=func.now(), nullable=False)
