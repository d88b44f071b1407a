from __future__ import annotations

import logging
import re
from typing import Any, Dict, Optional

logger = logging.getLogger("devtools.errors")

# JSON-RPC 2.0 error codes
PARSE_ERROR = -32700
INVALID_REQUEST = -32600
METHOD_NOT_FOUND = -32601
INTERNAL_ERROR = -32603

# Patterns that might leak sensitive information
SENSITIVE_PATTERNS = [
    r"api[_-]?key[=:\s]+\S+",
    r"password[=:\s]+\S+",
    r"token[=:\s]+\S+",
    r"secret[=:\s]+\S+",
    r"bearer\s+\S+",
    r"/home/\S+",
    r"/Users/\S+",
    r"traceback",
]


class BridgeError(Exception):
    """Base exception for all bridge errors."""

    code = INTERNAL_ERROR

    def __init__(self, message: str, details: Optional[dict] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} ({self.details})"
        return self.message


# =============================================================================
# Transport Errors
# =============================================================================


class PortExhaustedError(BridgeError):
    """No port in the configured range could be bound."""


class PeerNotConnectedError(BridgeError):
    """No plugin connection is active."""


class PeerConnectionClosedError(BridgeError):
    """The plugin connection dropped while a request was pending."""


# =============================================================================
# Request Errors
# =============================================================================


class PeerTimeoutError(BridgeError):
    """The plugin did not answer within the request timeout."""


class PeerCallError(BridgeError):
    """The plugin answered with an error."""


class ProtocolError(BridgeError):
    """Malformed or unsupported JSON-RPC frame."""

    def __init__(self, message: str, code: int = INVALID_REQUEST, details: Optional[dict] = None):
        super().__init__(message, details)
        self.code = code


class InvalidRequestError(ProtocolError):
    def __init__(self, message: str = "Invalid Request", details: Optional[dict] = None):
        super().__init__(message, INVALID_REQUEST, details)


class MethodNotFoundError(ProtocolError):
    def __init__(self, method: str):
        super().__init__(f"Unknown method: {method}", METHOD_NOT_FOUND, {"method": method})
        self.method = method

    def __str__(self) -> str:
        return self.message


# =============================================================================
# Startup Errors
# =============================================================================


class ConfigurationError(BridgeError):
    """Invalid startup configuration."""


class ChildSpawnError(BridgeError):
    """The supervisor could not start the bridge process."""


def _sanitize_error_message(message: str) -> str:
    """Remove potentially sensitive information from error messages.

    Error text travels to the MCP client, so local paths and credentials
    are replaced before it leaves the process.
    """
    sanitized = message

    for pattern in SENSITIVE_PATTERNS:
        sanitized = re.sub(pattern, "[REDACTED]", sanitized, flags=re.IGNORECASE)

    if len(sanitized) > 500:
        sanitized = sanitized[:500] + "... [truncated]"

    return sanitized


def jsonrpc_error(exc: BaseException) -> Dict[str, Any]:
    """Map an exception to a JSON-RPC error object.

    BridgeErrors carry their own code and a message meant for the client;
    anything else is an internal error whose text is sanitized.
    """
    if isinstance(exc, BridgeError):
        return {"code": exc.code, "message": _sanitize_error_message(exc.message)}

    logger.error(f"[internal_error] {type(exc).__name__}: {exc}")
    message = str(exc) or type(exc).__name__
    return {"code": INTERNAL_ERROR, "message": _sanitize_error_message(message)}
