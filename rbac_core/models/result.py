"""
Uniform result envelope exchanged with storage and credential collaborators.

Expected failures travel as Result(success=False, error=...) and never as exceptions.
"""
from dataclasses import dataclass
from enum import Enum
from typing import Any, Generic, Optional, TypeVar

T = TypeVar("T")


class ErrorCode(str, Enum):
    """Error taxonomy shared by guards, services and repositories."""
    INVALID_CREDENTIALS = "INVALID_CREDENTIALS"
    USER_INACTIVE = "USER_INACTIVE"
    USER_NOT_FOUND = "USER_NOT_FOUND"
    ROLE_INACTIVE = "ROLE_INACTIVE"
    ROLE_NOT_FOUND = "ROLE_NOT_FOUND"
    DUPLICATE_ROLE_KEY = "DUPLICATE_ROLE_KEY"
    DUPLICATE_USERNAME = "DUPLICATE_USERNAME"
    DUPLICATE_EMAIL = "DUPLICATE_EMAIL"
    NO_PERMISSIONS = "NO_PERMISSIONS"
    INVALID_PERMISSIONS = "INVALID_PERMISSIONS"
    DELETE_NOT_ALLOWED = "DELETE_NOT_ALLOWED"
    MODIFICATION_NOT_ALLOWED = "MODIFICATION_NOT_ALLOWED"
    SESSION_EXPIRED = "SESSION_EXPIRED"
    STORAGE_ERROR = "STORAGE_ERROR"
    AUDIT_LOG_ERROR = "AUDIT_LOG_ERROR"
    INVALID_PASSWORD = "INVALID_PASSWORD"


@dataclass(frozen=True)
class ServiceError:
    code: str
    message: str
    details: Any = None


@dataclass(frozen=True)
class Result(Generic[T]):
    """Either {success: True, data} or {success: False, error}."""
    success: bool
    data: Optional[T] = None
    error: Optional[ServiceError] = None

    @classmethod
    def ok(cls, data: Optional[T] = None) -> "Result[T]":
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, code: str, message: str, details: Any = None) -> "Result[T]":
        return cls(success=False, error=ServiceError(code=_code_value(code), message=message, details=details))

    @classmethod
    def from_error(cls, error: ServiceError) -> "Result[T]":
        """Re-wrap another result's error under this result's data type."""
        return cls(success=False, error=error)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.code if self.error else None

    def to_dict(self) -> dict:
        if self.success:
            return {"success": True, "data": self.data}
        return {
            "success": False,
            "error": {
                "code": self.error.code,
                "message": self.error.message,
                "details": self.error.details,
            },
        }


def _code_value(code) -> str:
    return code.value if isinstance(code, Enum) else str(code)


class InvalidTransitionError(Exception):
    """
    Raised when the core is driven through a transition its state machine forbids.

    This is a programming error on the caller's side, not an expected failure.
    """
    def __init__(self, message: str, current_state: Optional[str] = None):
        self.message = message
        self.current_state = current_state
        super().__init__(self.message)
