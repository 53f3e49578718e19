"""
Error Taxonomy and Result Types

Expected failures (bad input, unauthorized approvers, unknown vouchers,
illegal transitions, hash mismatches, failed store writes) are returned to
callers as typed results so that collaborators can branch on them
deterministically.
Exceptions are reserved for programmer errors and configuration faults.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Generic, Optional, TypeVar


T = TypeVar("T")


class ErrorCode(Enum):
    """Categories of expected failures"""
    VALIDATION_ERROR = "validation_error"
    UNAUTHORIZED = "unauthorized"
    NOT_FOUND = "not_found"
    INVALID_STATE_TRANSITION = "invalid_state_transition"
    CRYPTO_MISMATCH = "crypto_mismatch"
    STORAGE_ERROR = "storage_error"


class CryptoMismatchReason(Enum):
    """Which integrity check failed during binding verification"""
    SIGNATURE_TAMPERED = "signature_tampered"
    VOUCHER_MODIFIED = "voucher_modified"
    BINDING_COMPROMISED = "binding_compromised"


@dataclass(frozen=True)
class EngineError:
    """A categorized failure with context for the caller and the audit trail"""
    code: ErrorCode
    message: str
    context: Dict[str, Any] = field(default_factory=dict)
    
    def to_dict(self) -> Dict[str, Any]:
        return {
            'code': self.code.value,
            'message': self.message,
            'context': self.context,
        }


class ResultError(Exception):
    """Raised when unwrapping a failed result"""
    
    def __init__(self, error: EngineError):
        super().__init__(f"{error.code.value}: {error.message}")
        self.error = error


@dataclass(frozen=True)
class Result(Generic[T]):
    """Discriminated success/failure outcome of an engine operation"""
    value: Optional[T] = None
    error: Optional[EngineError] = None
    message: str = ""
    
    @property
    def success(self) -> bool:
        return self.error is None
    
    @property
    def code(self) -> Optional[ErrorCode]:
        return self.error.code if self.error else None
    
    @classmethod
    def ok(cls, value: T, message: str = "") -> 'Result[T]':
        return cls(value=value, message=message)
    
    @classmethod
    def fail(cls, code: ErrorCode, message: str, **context: Any) -> 'Result[T]':
        return cls(error=EngineError(code, message, dict(context)), message=message)
    
    def unwrap(self) -> T:
        """Return the value or raise ResultError for a failed result"""
        if self.error is not None:
            raise ResultError(self.error)
        return self.value


class PolicyConfigurationError(ValueError):
    """Raised when policy configuration fails validation at load time"""


class BackendSyncError(Exception):
    """Raised by sync clients when the backend rejects or cannot receive a call"""
    
    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code
