from typing import Any, Dict, Optional


class RendezvousError(Exception):
    """
    Base for every typed failure raised by the connection and messaging core.

    Routes never build HTTP errors for these by hand; the handler registered
    in main.py maps `status_code` + `code` to the response.
    """

    status_code = 500
    code = "error"

    def __init__(self, message: str, **details: Any):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {"error": self.code, "message": self.message}
        if self.details:
            body["details"] = self.details
        return body


class NotFound(RendezvousError):
    status_code = 404
    code = "not_found"

    def __init__(self, resource: str, message: Optional[str] = None, **details: Any):
        super().__init__(message or f"{resource.capitalize()} not found", resource=resource, **details)
        self.resource = resource


class UserNotFound(NotFound):
    def __init__(self, message: str = "One or both users not found", **details: Any):
        super().__init__("user", message, **details)


class AlreadyConnected(RendezvousError):
    status_code = 409
    code = "already_connected"

    def __init__(self, message: str = "A connection already exists between these users", **details: Any):
        super().__init__(message, **details)


class Blocked(RendezvousError):
    status_code = 403
    code = "blocked"

    def __init__(self, message: str = "Cannot interact with this user due to blocking", **details: Any):
        super().__init__(message, **details)


class ServiceMismatch(RendezvousError):
    status_code = 400
    code = "service_mismatch"

    def __init__(self, message: str = "Service does not belong to the specified user", **details: Any):
        super().__init__(message, **details)


class SelfBlock(RendezvousError):
    status_code = 400
    code = "self_block"

    def __init__(self, message: str = "Cannot block yourself", **details: Any):
        super().__init__(message, **details)


class ValidationError(RendezvousError):
    status_code = 400
    code = "validation_error"


class PersistenceFailure(RendezvousError):
    status_code = 503
    code = "persistence_failure"

    def __init__(self, message: str = "Temporary storage failure, please retry", **details: Any):
        super().__init__(message, **details)
