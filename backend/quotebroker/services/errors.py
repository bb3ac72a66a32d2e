"""
Typed failures raised by the token, symbol, quote and streaming services.

Every error carries a stable code so HTTP and WebSocket callers can tell
"credentials need operator attention" apart from "provider is unhappy" and
from "no data".
"""
import enum
from typing import Optional


class ErrorCode(str, enum.Enum):
    TOKEN_MISSING = "TOKEN_MISSING"
    TOKEN_INVALID = "TOKEN_INVALID"
    TOKEN_EXPIRED = "TOKEN_EXPIRED"
    IDENTITY_NOT_FOUND = "IDENTITY_NOT_FOUND"
    PROVIDER_API_ERROR = "PROVIDER_API_ERROR"
    QUESTRADE_API_ERROR = "PROVIDER_API_ERROR"  # alias, same member
    SYMBOL_NOT_FOUND = "SYMBOL_NOT_FOUND"
    UPSTREAM_HANDSHAKE_TIMEOUT = "UPSTREAM_HANDSHAKE_TIMEOUT"
    UPSTREAM_DISCONNECTED = "UPSTREAM_DISCONNECTED"


USER_MESSAGES = {
    ErrorCode.TOKEN_MISSING: "No valid authentication token found. Please add your Questrade refresh token.",
    ErrorCode.TOKEN_INVALID: "Your authentication token is invalid. Please update your refresh token.",
    ErrorCode.TOKEN_EXPIRED: "Your refresh token has expired. Please get a new one from Questrade.",
    ErrorCode.IDENTITY_NOT_FOUND: "Person not found. Please check the person name.",
    ErrorCode.PROVIDER_API_ERROR: "Questrade API returned an error. Please try again.",
    ErrorCode.SYMBOL_NOT_FOUND: "Symbol not found.",
    ErrorCode.UPSTREAM_HANDSHAKE_TIMEOUT: "Timed out authenticating with the Questrade stream.",
    ErrorCode.UPSTREAM_DISCONNECTED: "The Questrade stream connection was lost.",
}

_TOKEN_CODES = {ErrorCode.TOKEN_MISSING, ErrorCode.TOKEN_INVALID, ErrorCode.TOKEN_EXPIRED}


class QuoteBrokerError(Exception):
    """Base class for typed failures"""

    code: ErrorCode = ErrorCode.PROVIDER_API_ERROR
    status_code: int = 502

    def __init__(self, message: str, code: Optional[ErrorCode] = None, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code
        if status_code is not None:
            self.status_code = status_code

    @property
    def user_message(self) -> str:
        return USER_MESSAGES.get(self.code, self.message)

    @property
    def token_related(self) -> bool:
        return self.code in _TOKEN_CODES

    def to_dict(self) -> dict:
        return {
            "success": False,
            "error": self.message,
            "errorCode": self.code.value,
            "userMessage": self.user_message,
            "tokenRelated": self.token_related,
        }


class TokenError(QuoteBrokerError):
    code = ErrorCode.TOKEN_INVALID
    status_code = 401


class IdentityNotFoundError(QuoteBrokerError):
    code = ErrorCode.IDENTITY_NOT_FOUND
    status_code = 404


class ProviderAPIError(QuoteBrokerError):
    """Non-auth upstream failure (5xx, 429, transport errors, malformed payloads)"""
    code = ErrorCode.PROVIDER_API_ERROR
    status_code = 502

    def __init__(self, message: str, upstream_status: Optional[int] = None):
        super().__init__(message)
        self.upstream_status = upstream_status


class SymbolNotFoundError(QuoteBrokerError):
    code = ErrorCode.SYMBOL_NOT_FOUND
    status_code = 404


class UpstreamHandshakeTimeout(QuoteBrokerError):
    code = ErrorCode.UPSTREAM_HANDSHAKE_TIMEOUT
    status_code = 504


class UpstreamDisconnected(QuoteBrokerError):
    code = ErrorCode.UPSTREAM_DISCONNECTED
    status_code = 502
