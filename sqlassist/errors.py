# sqlassist/errors.py
"""
Error taxonomy shared by the execution engine, the generation pipeline and the API layer.

Every error carries an ``error_code`` that ends up in the JSON error envelope:
{ "request_id", "status": "error", "error_code", "message", "details" }
"""

from typing import Optional, Dict, Any

E_INTERNAL = "E_INTERNAL"
E_SQL_REJECTED = "E_SQL_REJECTED"
E_EXECUTION_FAILED = "E_EXECUTION_FAILED"
E_QUERY_TIMEOUT = "E_QUERY_TIMEOUT"
E_CONTEXT_UNAVAILABLE = "E_CONTEXT_UNAVAILABLE"
E_GENERATION_FAILED = "E_GENERATION_FAILED"
E_GENERATION_TIMEOUT = "E_GENERATION_TIMEOUT"
E_TRANSPORT = "E_TRANSPORT"
E_NOT_FOUND = "E_NOT_FOUND"
E_FORBIDDEN = "E_FORBIDDEN"


class SQLAssistError(Exception):
    error_code = E_INTERNAL

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}


class ValidationRejected(SQLAssistError):
    """Caller SQL violates the safety validator. Always recoverable."""
    error_code = E_SQL_REJECTED


class ExecutionFailed(SQLAssistError):
    """A valid statement failed inside the engine (bad column, permission, ...)."""
    error_code = E_EXECUTION_FAILED


class QueryTimeout(ExecutionFailed):
    error_code = E_QUERY_TIMEOUT


class ContextUnavailable(SQLAssistError):
    """Schema metadata could not be obtained."""
    error_code = E_CONTEXT_UNAVAILABLE


class GenerationFailed(SQLAssistError):
    """The LLM errored or returned something unusable."""
    error_code = E_GENERATION_FAILED


class GenerationTimeout(GenerationFailed):
    error_code = E_GENERATION_TIMEOUT


class TransportFailure(SQLAssistError):
    """Warehouse or LLM connectivity is down. No fallback is attempted."""
    error_code = E_TRANSPORT


def error_envelope(request_id: Optional[str], code: str, message: str,
                   details: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    return {
        "request_id": request_id,
        "status": "error",
        "error_code": code,
        "message": message,
        "details": details or {},
    }
