"""
Custom exceptions for the crudgraph system.

Request errors carry an HTTP status and a message key. Storage faults carry
an engine fault code and are translated once at the execution boundary
(see error_map.ErrorTranslator).
"""

from __future__ import annotations

from typing import Any, Optional


class CrudGraphError(Exception):
    """Base exception for all crudgraph errors."""
    pass


class RequestError(CrudGraphError):
    """
    Error that maps directly to an HTTP response.

    Attributes:
        status_code: HTTP status returned to the caller
        code: Message key (e.g. "invalid_filter_field")
        data: Optional details for the caller
    """

    status_code: int = 500

    def __init__(
        self,
        code: str,
        data: Optional[dict[str, Any]] = None,
        status_code: Optional[int] = None,
    ):
        self.code = code
        self.data = data
        if status_code is not None:
            self.status_code = status_code
        super().__init__(code)

    @property
    def message(self) -> str:
        return self.code

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"status_code": self.status_code, "message": self.message}
        if self.data:
            body["data"] = self.data
        return body


class ValidationError(RequestError):
    """Raised when request parameters or payloads are invalid."""

    status_code = 400


class IAMError(RequestError):
    """Raised when an access check fails."""

    status_code = 403

    def __init__(self, code: str = "no_permission", data: Optional[dict[str, Any]] = None):
        super().__init__(code, data)


class NotFoundError(RequestError):
    """Raised when a record does not exist."""

    status_code = 404


class ConflictError(RequestError):
    """Raised when a write conflicts with existing data."""

    status_code = 409


class StorageError(RequestError):
    """A translated storage fault. Status and message come from the fault map."""

    def __init__(self, status_code: int, message: str, fault_code: Optional[str] = None):
        self._message = message
        self.fault_code = fault_code
        super().__init__(message, status_code=status_code)

    @property
    def message(self) -> str:
        return self._message


class StorageFault(CrudGraphError):
    """
    Raised by storage adapters.

    Args:
        code: Fault code (a FaultCode value)
        message: Raw engine message
        meta: Extra fault details (entity, target field, ...)
    """

    def __init__(self, code: str, message: str = "", meta: Optional[dict[str, Any]] = None):
        self.code = code
        self.meta = meta or {}
        super().__init__(message or code)


class GraphConfigError(CrudGraphError):
    """Raised when schema configuration is invalid."""
    pass


class MiddlewareError(CrudGraphError):
    """Raised when a middleware registration is invalid."""
    pass
