from __future__ import annotations
from enum import Enum


class ErrorKind(str, Enum):
    # pipeline
    NOT_FOUND = "not_found"
    VERIFICATION_FAILED = "verification_failed"
    STORE_ERROR = "store_error"

    # marketplace transport / availability
    API_UNAVAILABLE = "api_unavailable"
    RATE_LIMITED = "rate_limited"
    NETWORK_ERROR = "network_error"
    TIMEOUT = "timeout"

    # marketplace auth / request problems (need a human)
    INVALID_REQUEST = "invalid_request"
    INVALID_TOKEN = "invalid_token"
    TOKEN_EXPIRED = "token_expired"
    INSUFFICIENT_PERMISSIONS = "insufficient_permissions"

    # listing state
    LISTING_NOT_FOUND = "listing_not_found"
    LISTING_ALREADY_ENDED = "listing_already_ended"
    LISTING_CANNOT_BE_ENDED = "listing_cannot_be_ended"

    INTERNAL_ERROR = "internal_error"
    UNKNOWN_ERROR = "unknown_error"


class StoreError(Exception):
    """Raised by record store implementations when a read or write fails."""


class JobStateError(Exception):
    def __init__(self, code: str, message: str):
        super().__init__(message)
        self.code = code
        self.message = message
