"""
Failure taxonomy shared by every endpoint.

Each error is an HTTPException whose detail is {"code": ..., "message": ...}
so clients can tell "no permission" apart from "wait for payment".
"""
from typing import Optional

from fastapi import HTTPException


class MarketError(HTTPException):
    status_code = 500
    code = "internal_error"
    default_message = "Internal server error"

    def __init__(self, message: Optional[str] = None):
        self.message = message or self.default_message
        super().__init__(status_code=self.status_code, detail={"code": self.code, "message": self.message})


class Unauthenticated(MarketError):
    status_code = 401
    code = "unauthenticated"
    default_message = "Unauthorized"


class Forbidden(MarketError):
    status_code = 403
    code = "forbidden"
    default_message = "Forbidden"


class ChatNotYetAvailable(MarketError):
    status_code = 403
    code = "chat_not_available"
    default_message = "Chat is available after payment is confirmed"


class NotFound(MarketError):
    status_code = 404
    code = "not_found"
    default_message = "Not found"


class Conflict(MarketError):
    status_code = 409
    code = "conflict"
    default_message = "Conflict"


class InvalidState(MarketError):
    status_code = 409
    code = "invalid_state"
    default_message = "Invalid order status"


class InvalidAction(MarketError):
    status_code = 400
    code = "invalid_action"
    default_message = "Invalid action"


class ValidationFailed(MarketError):
    status_code = 422
    code = "validation_error"
    default_message = "Invalid input"
