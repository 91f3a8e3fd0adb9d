from enum import Enum


class ConnectionType(str, Enum):
    contact_request = "contact_request"
    service_inquiry = "service_inquiry"
    video_call = "video_call"


class ConnectionStatus(str, Enum):
    pending = "pending"
    accepted = "accepted"
    rejected = "rejected"

    @property
    def is_terminal(self) -> bool:
        return not CONNECTION_TRANSITIONS[self]

    def can_transition(self, target: "ConnectionStatus", *, forced_by_block: bool = False) -> bool:
        allowed = CONNECTION_TRANSITIONS[self]
        if forced_by_block:
            allowed = allowed | BLOCK_TRANSITIONS[self]
        return target in allowed


# accepted/rejected are terminal for the request/respond flow
CONNECTION_TRANSITIONS = {
    ConnectionStatus.pending: frozenset({ConnectionStatus.accepted, ConnectionStatus.rejected}),
    ConnectionStatus.accepted: frozenset(),
    ConnectionStatus.rejected: frozenset(),
}

# a block may additionally force accepted -> rejected
BLOCK_TRANSITIONS = {
    ConnectionStatus.pending: frozenset({ConnectionStatus.rejected}),
    ConnectionStatus.accepted: frozenset({ConnectionStatus.rejected}),
    ConnectionStatus.rejected: frozenset(),
}


class RespondAction(str, Enum):
    accept = "accept"
    reject = "reject"

    @property
    def resulting_status(self) -> ConnectionStatus:
        if self is RespondAction.accept:
            return ConnectionStatus.accepted
        return ConnectionStatus.rejected


class MessageType(str, Enum):
    text = "text"
    service_inquiry = "service_inquiry"
    system = "system"
    image = "image"
    video = "video"
    file = "file"
    location = "location"
    contact = "contact"


class NotificationType(str, Enum):
    contact_request = "contact_request"
    contact_response = "contact_response"
    service_inquiry = "service_inquiry"


class CallType(str, Enum):
    audio = "audio"
    video = "video"
