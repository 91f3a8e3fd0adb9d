from typing import Optional
from pydantic import Field

from rendezvous.core.auth import USER_ID_PATTERN
from rendezvous.core.config import INQUIRY_MESSAGE_MAX_LENGTH, REQUEST_MESSAGE_MAX_LENGTH
from rendezvous.schemas.base import CamelSchema
from rendezvous.schemas.enums import ConnectionType, RespondAction

USER_ID_REGEX = USER_ID_PATTERN.pattern


class ContactRequestIn(CamelSchema):
    to_user_id: str = Field(..., pattern=USER_ID_REGEX)
    message: Optional[str] = Field(default="", max_length=REQUEST_MESSAGE_MAX_LENGTH)
    connection_type: ConnectionType = ConnectionType.contact_request


class ContactRequestOut(CamelSchema):
    success: bool = True
    connection_id: int
    message: str = "Contact request sent successfully"


class RespondIn(CamelSchema):
    connection_id: int = Field(..., ge=1)
    action: RespondAction


class ServiceInquiryIn(CamelSchema):
    to_user_id: str = Field(..., pattern=USER_ID_REGEX)
    service_id: str = Field(..., min_length=1, max_length=64)
    message: str = Field(..., min_length=1, max_length=INQUIRY_MESSAGE_MAX_LENGTH)


class ServiceInquiryOut(CamelSchema):
    success: bool = True
    conversation_id: int
    message: str = "Service inquiry sent successfully"


class BlockUserIn(CamelSchema):
    user_id: str = Field(..., pattern=USER_ID_REGEX)
    reason: Optional[str] = Field(default=None, max_length=500)
