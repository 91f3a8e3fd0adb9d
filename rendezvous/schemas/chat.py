from typing import Any, Dict, Optional
from pydantic import Field

from rendezvous.core.config import MESSAGE_MAX_LENGTH
from rendezvous.schemas.base import CamelSchema
from rendezvous.schemas.connections import USER_ID_REGEX
from rendezvous.schemas.enums import MessageType


class ConversationIn(CamelSchema):
    other_user_id: str = Field(..., pattern=USER_ID_REGEX)


class SendMessageIn(CamelSchema):
    conversation_id: int = Field(..., ge=1)
    content: str = Field(..., min_length=1, max_length=MESSAGE_MAX_LENGTH)
    message_type: MessageType = MessageType.text
    metadata: Optional[Dict[str, Any]] = None
