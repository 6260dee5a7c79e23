"""Tagged result envelope for dashboard queries.

A failed query is reported as data rather than an HTTP error so the UI can
offer a retry.
"""
from pydantic import BaseModel
from typing import Any, Optional
from enum import Enum


class QueryErrorCode(str, Enum):
    UNAVAILABLE = "UNAVAILABLE"
    DATA_INTEGRITY_VIOLATION = "DATA_INTEGRITY_VIOLATION"
    NOT_FOUND = "NOT_FOUND"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class QueryError(BaseModel):
    code: QueryErrorCode
    message: str
    retryable: bool = False


class QueryResult(BaseModel):
    success: bool
    data: Optional[Any] = None
    error: Optional[QueryError] = None

    @classmethod
    def ok(cls, data: Any) -> "QueryResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, code: QueryErrorCode, message: str, retryable: bool = False) -> "QueryResult":
        return cls(success=False, error=QueryError(code=code, message=message, retryable=retryable))
