#!/usr/bin/env python3
# -*-coding: utf-8-*-
"""
ROM Curator - Consolidated Exception Classes

All exception classes used by the curator live here so that controllers,
codecs and the store raise and catch the same types.
"""

from datetime import datetime
from typing import Dict, Any, Optional


class BaseError(Exception):
    """Base class for all project-specific errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.error_code = error_code or "ERROR"
        self.details = details or {}
        self.timestamp = datetime.now()

    def to_dict(self) -> Dict[str, Any]:
        """Converts the exception to a dictionary for structured logging."""
        return {
            'error_code': self.error_code,
            'message': str(self),
            'details': self.details,
            'timestamp': self.timestamp.isoformat()
        }


# =====================================================================================================
# Security-related errors
# =====================================================================================================

class SecurityError(BaseError):
    """Base class for security-related errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code or "SECURITY_ERROR", details)


class PathTraversalError(SecurityError):
    """Raised when a path traversal attempt is detected."""

    def __init__(self, message: str, path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        path_details = details or {}
        if path:
            path_details['path'] = str(path)
        super().__init__(message, "PATH_TRAVERSAL", path_details)


class InvalidPathError(SecurityError):
    """Raised when path validation fails."""

    def __init__(self, message: str, path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        path_details = details or {}
        if path:
            path_details['path'] = str(path)
        super().__init__(message, "INVALID_PATH", path_details)


# =====================================================================================================
# Configuration-related errors
# =====================================================================================================

class ConfigurationError(BaseError):
    """Base class for configuration errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        config_details = details or {}
        if file_path:
            config_details['file_path'] = file_path
        super().__init__(message, error_code or "CONFIG_ERROR", config_details)


class ValidationError(ConfigurationError):
    """Raised when configuration validation fails."""

    def __init__(self, message: str, field_name: Optional[str] = None,
                 expected_type: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        validation_details = details or {}
        if field_name:
            validation_details['field_name'] = field_name
        if expected_type:
            validation_details['expected_type'] = expected_type
        super().__init__(message, "VALIDATION_ERROR", None, validation_details)


# =====================================================================================================
# Catalog errors
# =====================================================================================================

class CatalogError(BaseError):
    """Base class for reference catalog problems."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code or "CATALOG_ERROR", details)


class CatalogParseError(CatalogError):
    """Raised when a DAT document cannot be read at all."""

    def __init__(self, message: str, source: Optional[str] = None,
                 line: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        parse_details = details or {}
        if source:
            parse_details['source'] = str(source)
        if line is not None:
            parse_details['line'] = int(line)
        super().__init__(message, "CATALOG_PARSE_ERROR", parse_details)


class StructuralError(CatalogError):
    """Raised for records that break the parent/clone invariants (cycles, self references)."""

    def __init__(self, message: str, game: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        struct_details = details or {}
        if game:
            struct_details['game'] = game
        super().__init__(message, "STRUCTURAL_ERROR", struct_details)


# =====================================================================================================
# Container errors
# =====================================================================================================

class ContainerError(BaseError):
    """Base class for container codec errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        container_details = details or {}
        if file_path:
            container_details['file_path'] = str(file_path)
        super().__init__(message, error_code or "CONTAINER_ERROR", container_details)


class UnsupportedContainerError(ContainerError):
    """Raised when a file carries a container signature no codec handles."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 signature: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        unsupported_details = details or {}
        if signature:
            unsupported_details['signature'] = signature
        super().__init__(message, "UNSUPPORTED_CONTAINER", file_path, unsupported_details)


class ContainerFormatError(ContainerError):
    """Raised when a container is truncated or structurally corrupt."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, "CONTAINER_FORMAT", file_path, details)


class SizeMismatchError(ContainerError):
    """Raised when a disc image's logical size disagrees with the decoded or written length."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 expected: Optional[int] = None, actual: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        size_details = details or {}
        if expected is not None:
            size_details['expected'] = int(expected)
        if actual is not None:
            size_details['actual'] = int(actual)
        super().__init__(message, "SIZE_MISMATCH", file_path, size_details)
        self.expected = expected
        self.actual = actual


class ExternalToolError(BaseError):
    """Raised when an external tool (chdman) is missing or fails."""

    def __init__(self, message: str, tool: Optional[str] = None,
                 exit_code: Optional[int] = None,
                 details: Optional[Dict[str, Any]] = None):
        tool_details = details or {}
        if tool:
            tool_details['tool'] = tool
        if exit_code is not None:
            tool_details['exit_code'] = int(exit_code)
        super().__init__(message, "EXTERNAL_TOOL_ERROR", tool_details)


# =====================================================================================================
# IO and data-related errors
# =====================================================================================================

class DataError(BaseError):
    """Base class for data-related errors."""

    def __init__(self, message: str, error_code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        super().__init__(message, error_code or "DATA_ERROR", details)


class DatabaseError(DataError):
    """Raised when database errors occur."""

    def __init__(self, message: str, query: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        db_details = details or {}
        if query:
            # Only the statement kind ends up in logs
            db_details['query_type'] = query.split()[0] if query else "UNKNOWN"
        super().__init__(message, "DB_ERROR", db_details)


class TransactionError(DatabaseError):
    """Raised when a store transaction was rolled back; nothing from the batch was committed."""

    def __init__(self, message: str, operation: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        tx_details = details or {}
        if operation:
            tx_details['operation'] = operation
        super().__init__(message, None, tx_details)
        self.error_code = "TRANSACTION_ROLLED_BACK"


class StoreLockedError(DatabaseError):
    """Raised when another live process holds the catalog store lock."""


class FileOperationError(DataError):
    """Raised when file operation errors occur."""

    def __init__(self, message: str, file_path: Optional[str] = None,
                 operation: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        file_details = details or {}
        if file_path:
            file_details['file_path'] = str(file_path)
        if operation:
            file_details['operation'] = operation
        super().__init__(message, "FILE_OP_ERROR", file_details)
