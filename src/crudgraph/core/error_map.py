"""
Error translator - storage fault codes to (status, message).

Storage adapters raise StorageFault with a FaultCode. The orchestrator
translates each fault once, at the execution boundary:

    translator = ErrorTranslator(production=True)
    error = translator.translate(fault, data={"email": "a@b.c"})
    error.status_code, error.message
    # 409, "Duplicate entry for User. Record with email: 'a@b.c' already exists"

Request errors (validation, authorization, not found) bypass the map.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Optional

from .errors import RequestError, StorageError, StorageFault

logger = logging.getLogger(__name__)

GENERIC_MESSAGE = "Something went wrong"


class FaultCode(str, Enum):
    """Engine-independent storage fault codes."""
    CONNECTION_FAILED = "connection_failed"
    VALUE_TOO_LONG = "value_too_long"
    RECORD_NOT_FOUND = "record_not_found"
    UNIQUE_VIOLATION = "unique_violation"
    FOREIGN_KEY_VIOLATION = "foreign_key_violation"
    CONSTRAINT_VIOLATION = "constraint_violation"
    INVALID_STORED_VALUE = "invalid_stored_value"
    INVALID_VALUE = "invalid_value"
    DATA_VALIDATION = "data_validation"
    QUERY_PARSE = "query_parse"
    QUERY_VALIDATION = "query_validation"
    RAW_QUERY_FAILED = "raw_query_failed"
    NULL_VIOLATION = "null_violation"
    MISSING_VALUE = "missing_value"
    MISSING_ARGUMENT = "missing_argument"
    REQUIRED_RELATION_VIOLATION = "required_relation_violation"
    RELATED_RECORD_NOT_FOUND = "related_record_not_found"
    QUERY_INTERPRETATION = "query_interpretation"
    RECORDS_NOT_CONNECTED = "records_not_connected"
    CONNECTED_RECORDS_NOT_FOUND = "connected_records_not_found"
    INPUT_ERROR = "input_error"
    VALUE_OUT_OF_RANGE = "value_out_of_range"
    TABLE_NOT_FOUND = "table_not_found"
    COLUMN_NOT_FOUND = "column_not_found"
    INCONSISTENT_COLUMN_DATA = "inconsistent_column_data"
    POOL_TIMEOUT = "pool_timeout"
    REQUIRED_RECORD_NOT_FOUND = "required_record_not_found"
    UNSUPPORTED_FEATURE = "unsupported_feature"
    MULTIPLE_ERRORS = "multiple_errors"
    TRANSACTION_ERROR = "transaction_error"
    TRANSACTION_TIMEOUT = "transaction_timeout"
    FULLTEXT_INDEX_NOT_FOUND = "fulltext_index_not_found"
    INTEGER_OVERFLOW = "integer_overflow"
    WRITE_CONFLICT = "write_conflict"


@dataclass(frozen=True)
class FaultInfo:
    status: int
    message: Optional[str]


FAULT_MAP: dict[FaultCode, FaultInfo] = {
    FaultCode.CONNECTION_FAILED: FaultInfo(500, "Connection to the database could not be established"),
    FaultCode.VALUE_TOO_LONG: FaultInfo(400, "The provided value for the column is too long"),
    FaultCode.RECORD_NOT_FOUND: FaultInfo(404, "The record searched for in the where condition does not exist"),
    # message built from the fault meta
    FaultCode.UNIQUE_VIOLATION: FaultInfo(409, None),
    FaultCode.FOREIGN_KEY_VIOLATION: FaultInfo(400, "Foreign key constraint failed"),
    FaultCode.CONSTRAINT_VIOLATION: FaultInfo(400, "A constraint failed on the database"),
    FaultCode.INVALID_STORED_VALUE: FaultInfo(400, "The value stored in the database is invalid for the field type"),
    FaultCode.INVALID_VALUE: FaultInfo(400, "The provided value is not valid"),
    FaultCode.DATA_VALIDATION: FaultInfo(400, "Data validation error"),
    FaultCode.QUERY_PARSE: FaultInfo(400, "Failed to parse the query"),
    FaultCode.QUERY_VALIDATION: FaultInfo(400, "Failed to validate the query"),
    FaultCode.RAW_QUERY_FAILED: FaultInfo(500, "Raw query failed"),
    FaultCode.NULL_VIOLATION: FaultInfo(400, "Null constraint violation"),
    FaultCode.MISSING_VALUE: FaultInfo(400, "Missing a required value"),
    FaultCode.MISSING_ARGUMENT: FaultInfo(400, "Missing the required argument"),
    FaultCode.REQUIRED_RELATION_VIOLATION: FaultInfo(400, "The change would violate the required relation"),
    FaultCode.RELATED_RECORD_NOT_FOUND: FaultInfo(404, "A related record could not be found"),
    FaultCode.QUERY_INTERPRETATION: FaultInfo(400, "Query interpretation error"),
    FaultCode.RECORDS_NOT_CONNECTED: FaultInfo(400, "The records for relation are not connected"),
    FaultCode.CONNECTED_RECORDS_NOT_FOUND: FaultInfo(404, "The required connected records were not found"),
    FaultCode.INPUT_ERROR: FaultInfo(400, "Input error"),
    FaultCode.VALUE_OUT_OF_RANGE: FaultInfo(400, "Value out of range for the type"),
    FaultCode.TABLE_NOT_FOUND: FaultInfo(404, "The table does not exist in the current database"),
    FaultCode.COLUMN_NOT_FOUND: FaultInfo(404, "The column does not exist in the current database"),
    FaultCode.INCONSISTENT_COLUMN_DATA: FaultInfo(400, "Inconsistent column data"),
    FaultCode.POOL_TIMEOUT: FaultInfo(408, "Timed out fetching a new connection from the connection pool"),
    FaultCode.REQUIRED_RECORD_NOT_FOUND: FaultInfo(404, "Operation failed: required records not found"),
    FaultCode.UNSUPPORTED_FEATURE: FaultInfo(400, "Database provider does not support this feature"),
    FaultCode.MULTIPLE_ERRORS: FaultInfo(500, "Multiple errors occurred during query execution"),
    FaultCode.TRANSACTION_ERROR: FaultInfo(500, "Transaction API error"),
    FaultCode.TRANSACTION_TIMEOUT: FaultInfo(408, "Transaction timed out"),
    FaultCode.FULLTEXT_INDEX_NOT_FOUND: FaultInfo(404, "Cannot find a fulltext index for the search"),
    FaultCode.INTEGER_OVERFLOW: FaultInfo(400, "A number in the query exceeds 64 bit signed integer"),
    FaultCode.WRITE_CONFLICT: FaultInfo(409, "Transaction failed due to write conflict or deadlock"),
}


def lookup(code: Any) -> Optional[FaultInfo]:
    try:
        return FAULT_MAP.get(FaultCode(code))
    except ValueError:
        return None


class ErrorTranslator:
    """
    Translates exceptions into RequestError instances.

    Args:
        production: Hide raw messages of unmapped faults
    """

    def __init__(self, production: bool = False):
        self.production = production

    def translate(self, error: Exception, data: Optional[dict[str, Any]] = None) -> RequestError:
        """
        Map an exception to a RequestError.

        Args:
            error: Raised exception
            data: Payload of the failed write (used for duplicate messages)

        Returns:
            The error itself for RequestError, else a StorageError
        """
        if isinstance(error, RequestError):
            return error

        if isinstance(error, StorageFault):
            info = lookup(error.code)
            if info is not None:
                message = info.message
                if info.message is None:
                    message = self.duplicate_message(error, data or {})
                return StorageError(info.status, message, fault_code=getattr(error.code, "value", str(error.code)))

        logger.error(f"Unmapped storage error: {error}", exc_info=error)
        message = GENERIC_MESSAGE if self.production else (str(error) or GENERIC_MESSAGE)
        return StorageError(500, message)

    def to_response(self, error: Exception, data: Optional[dict[str, Any]] = None) -> tuple[int, str]:
        translated = self.translate(error, data)
        return translated.status_code, translated.message

    @staticmethod
    def duplicate_message(fault: StorageFault, data: dict[str, Any]) -> str:
        target = fault.meta.get("target")
        if isinstance(target, (list, tuple)):
            target = ",".join(str(t) for t in target)
        entity = fault.meta.get("entity")
        value = data.get(target) if isinstance(target, str) else None
        if value is None:
            value = fault.meta.get("value")
        return f"Duplicate entry for {entity}. Record with {target}: '{value}' already exists"
