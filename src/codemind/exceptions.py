"""Custom exceptions for the Code-Mind note engine.

Provides a structured exception hierarchy with error codes and
machine-readable error information. Parse-time problems are never raised;
they are reported as diagnostics on the ParseResult. Only operational
failures of Store mutations and file access use these exceptions.
"""
from enum import Enum
from typing import Any, Dict, Optional


class ErrorCode(Enum):
    """Error codes for machine-readable error identification."""

    # Note errors (1xxx)
    NOTE_NOT_FOUND = 1001
    NOTE_PARENT_NOT_FOUND = 1002
    NOTE_CIRCULAR_REFERENCE = 1003
    NOTE_ALREADY_EXISTS = 1004
    NOTE_VALIDATION_FAILED = 1005

    # Identifier errors (2xxx)
    ID_GENERATION_FAILED = 2001

    # File errors (4xxx)
    FILE_NOT_FOUND = 4001
    FILE_READ_FAILED = 4002
    FILE_WRITE_FAILED = 4003

    # Configuration errors (6xxx)
    CONFIG_INVALID = 6001

    # Validation errors (7xxx)
    VALIDATION_FAILED = 7001


class CodemindError(Exception):
    """Base exception for all Code-Mind errors.

    Attributes:
        message: Human-readable error message
        code: Machine-readable error code
        details: Additional context about the error
    """

    def __init__(
        self,
        message: str,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to a dictionary for serialization."""
        return {
            "error": self.__class__.__name__,
            "code": self.code.value,
            "code_name": self.code.name,
            "message": self.message,
            "details": self.details,
        }

    def __str__(self) -> str:
        if self.details:
            detail_str = ", ".join(f"{k}={v}" for k, v in self.details.items())
            return f"[{self.code.name}] {self.message} ({detail_str})"
        return f"[{self.code.name}] {self.message}"


class NoteNotFoundError(CodemindError):
    """Raised when a note cannot be found."""

    def __init__(self, note_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"Note with ID '{note_id}' not found",
            code=ErrorCode.NOTE_NOT_FOUND,
            details={"note_id": note_id},
        )
        self.note_id = note_id


class ParentNotFoundError(CodemindError):
    """Raised when a note names a parent that does not exist."""

    def __init__(self, parent_id: str, note_id: Optional[str] = None):
        details: Dict[str, Any] = {"parent_id": parent_id}
        if note_id:
            details["note_id"] = note_id
        super().__init__(
            f"Parent note '{parent_id}' not found",
            code=ErrorCode.NOTE_PARENT_NOT_FOUND,
            details=details,
        )
        self.parent_id = parent_id
        self.note_id = note_id


class CircularReferenceError(CodemindError):
    """Raised when re-parenting a note would make its parent chain cycle."""

    def __init__(self, note_id: str, parent_id: str):
        super().__init__(
            f"Making '{parent_id}' the parent of '{note_id}' would create a cycle",
            code=ErrorCode.NOTE_CIRCULAR_REFERENCE,
            details={"note_id": note_id, "parent_id": parent_id},
        )
        self.note_id = note_id
        self.parent_id = parent_id


class NoteAlreadyExistsError(CodemindError):
    """Raised when an explicitly supplied note ID is already in use."""

    def __init__(self, note_id: str):
        super().__init__(
            f"Note with ID '{note_id}' already exists",
            code=ErrorCode.NOTE_ALREADY_EXISTS,
            details={"note_id": note_id},
        )
        self.note_id = note_id


class IdGenerationError(CodemindError):
    """Raised when no unused ID could be produced."""

    def __init__(self, attempts: int):
        super().__init__(
            f"Unable to generate a unique ID after {attempts} attempts",
            code=ErrorCode.ID_GENERATION_FAILED,
            details={"attempts": attempts},
        )
        self.attempts = attempts


class StorageError(CodemindError):
    """Raised for storage/persistence errors."""

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        path: Optional[str] = None,
        code: ErrorCode = ErrorCode.FILE_READ_FAILED,
        original_error: Optional[Exception] = None,
    ):
        details: Dict[str, Any] = {}
        if operation:
            details["operation"] = operation
        if path:
            # Don't expose full paths in error messages
            details["path_hint"] = path.split("/")[-1] if "/" in path else path
        if original_error:
            details["original_error"] = str(original_error)[:200]

        super().__init__(message, code=code, details=details)
        self.operation = operation
        self.path = path
        self.original_error = original_error


class NoteFileNotFoundError(StorageError):
    """Raised when the project notes file does not exist."""

    def __init__(self, path: str):
        super().__init__(
            "Notes file not found",
            operation="load",
            path=path,
            code=ErrorCode.FILE_NOT_FOUND,
        )


class ConfigurationError(CodemindError):
    """Raised when a setting cannot be applied."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        code: ErrorCode = ErrorCode.CONFIG_INVALID,
    ):
        details: Dict[str, Any] = {}
        if config_key:
            details["config_key"] = config_key

        super().__init__(message, code=code, details=details)
        self.config_key = config_key


class ValidationError(CodemindError):
    """Raised for general validation errors."""

    def __init__(
        self,
        message: str,
        field: Optional[str] = None,
        value: Optional[Any] = None,
        code: ErrorCode = ErrorCode.VALIDATION_FAILED,
    ):
        details: Dict[str, Any] = {}
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)[:100]

        super().__init__(message, code=code, details=details)
        self.field = field
        self.value = value
