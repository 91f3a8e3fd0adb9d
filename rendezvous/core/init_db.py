from loguru import logger
from rendezvous.core.db import engine, Base

# Import all models so SQLAlchemy registers them
from rendezvous.models.user import User  # noqa: F401
from rendezvous.models.service import Service  # noqa: F401
from rendezvous.modules.connections.models import Connection, BlockedUser  # noqa: F401
from rendezvous.modules.conversations.models import Conversation, Message  # noqa: F401
from rendezvous.modules.notifications.models import Notification  # noqa: F401


def init_db(bind=None):
    logger.info("Creating database tables")
    Base.metadata.create_all(bind=bind or engine)
    logger.info("Database tables created")
