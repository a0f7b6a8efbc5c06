"""
Settlement Engine - Error Taxonomy.

============================================================
PURPOSE
============================================================
Error classification for rejected requests and settlement
failures.

ERROR CATEGORIES:
1. Validation Errors - Request shape or funds checks failed
2. Position Errors - Unknown or already-settled positions
3. Price Errors - No reference price available
4. Ledger Errors - Balance ledger refused an operation
5. Persistence Errors - Repository failures
6. Internal Errors - Anything else

RETRYABLE vs NON-RETRYABLE:
- Retryable: the scheduler tries again on the next tick
- Non-retryable: the caller must fix and resubmit

============================================================
"""

from enum import Enum
from typing import Dict
from dataclasses import dataclass


# ============================================================
# ERROR CATEGORIES
# ============================================================

class ErrorCategory(Enum):
    """Error category classification."""

    VALIDATION = "VALIDATION"
    POSITION = "POSITION"
    PRICE = "PRICE"
    LEDGER = "LEDGER"
    PERSISTENCE = "PERSISTENCE"
    INTERNAL = "INTERNAL"


class ErrorSeverity(Enum):
    """Error severity levels."""

    WARNING = "WARNING"
    """Non-critical, informational."""

    ERROR = "ERROR"
    """Standard error, needs attention."""

    CRITICAL = "CRITICAL"
    """Funds or settlement integrity at risk."""


# ============================================================
# ERROR CODE REGISTRY
# ============================================================

@dataclass
class ErrorCodeInfo:
    """Information about an error code."""

    code: str
    category: ErrorCategory
    severity: ErrorSeverity
    is_retryable: bool
    description: str
    recommended_action: str


ERROR_CODES: Dict[str, ErrorCodeInfo] = {
    # ========== VALIDATION ERRORS ==========
    "VAL_INVALID_REQUEST": ErrorCodeInfo(
        code="VAL_INVALID_REQUEST",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Trade request is malformed",
        recommended_action="Fix the request and resubmit",
    ),
    "VAL_MISSING_FIELD": ErrorCodeInfo(
        code="VAL_MISSING_FIELD",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="A required field is missing",
        recommended_action="Provide the missing field",
    ),
    "VAL_INVALID_FIELD": ErrorCodeInfo(
        code="VAL_INVALID_FIELD",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="A field has an unsupported value",
        recommended_action="Correct the field value",
    ),
    "VAL_INVALID_AMOUNT": ErrorCodeInfo(
        code="VAL_INVALID_AMOUNT",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Amount must be positive",
        recommended_action="Submit a positive amount",
    ),
    "VAL_INVALID_LEVERAGE": ErrorCodeInfo(
        code="VAL_INVALID_LEVERAGE",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Leverage must be at least 1 and within the configured maximum",
        recommended_action="Adjust leverage",
    ),
    "VAL_UNSUPPORTED_ACTION": ErrorCodeInfo(
        code="VAL_UNSUPPORTED_ACTION",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Action does not open a position on this instrument",
        recommended_action="Use an opening action",
    ),
    "VAL_INSUFFICIENT_BALANCE": ErrorCodeInfo(
        code="VAL_INSUFFICIENT_BALANCE",
        category=ErrorCategory.VALIDATION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Insufficient trading funds for the reservation",
        recommended_action="Transfer funds or reduce the amount",
    ),

    # ========== POSITION ERRORS ==========
    "POS_NOT_FOUND": ErrorCodeInfo(
        code="POS_NOT_FOUND",
        category=ErrorCategory.POSITION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Position does not exist",
        recommended_action="Verify the position id",
    ),
    "POS_ALREADY_TERMINAL": ErrorCodeInfo(
        code="POS_ALREADY_TERMINAL",
        category=ErrorCategory.POSITION,
        severity=ErrorSeverity.WARNING,
        is_retryable=False,
        description="Position has already been settled or cancelled",
        recommended_action="No action possible",
    ),

    # ========== PRICE ERRORS ==========
    "PRC_UNAVAILABLE": ErrorCodeInfo(
        code="PRC_UNAVAILABLE",
        category=ErrorCategory.PRICE,
        severity=ErrorSeverity.WARNING,
        is_retryable=True,
        description="No current or last-known price",
        recommended_action="Retry on next tick",
    ),

    # ========== LEDGER ERRORS ==========
    "LED_OPERATION_FAILED": ErrorCodeInfo(
        code="LED_OPERATION_FAILED",
        category=ErrorCategory.LEDGER,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=True,
        description="Balance ledger rejected the operation",
        recommended_action="Check ledger health; settlement retries next tick",
    ),

    # ========== PERSISTENCE ERRORS ==========
    "PER_WRITE_FAILED": ErrorCodeInfo(
        code="PER_WRITE_FAILED",
        category=ErrorCategory.PERSISTENCE,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Position could not be persisted",
        recommended_action="Check database connectivity",
    ),
    "PER_READ_FAILED": ErrorCodeInfo(
        code="PER_READ_FAILED",
        category=ErrorCategory.PERSISTENCE,
        severity=ErrorSeverity.ERROR,
        is_retryable=True,
        description="Stored positions or activities could not be read",
        recommended_action="Check database connectivity and schema",
    ),

    # ========== INTERNAL ERRORS ==========
    "INT_UNEXPECTED": ErrorCodeInfo(
        code="INT_UNEXPECTED",
        category=ErrorCategory.INTERNAL,
        severity=ErrorSeverity.CRITICAL,
        is_retryable=False,
        description="Unexpected internal error",
        recommended_action="Investigate logs",
    ),
}


# ============================================================
# HELPER FUNCTIONS
# ============================================================

def get_error_info(code: str) -> ErrorCodeInfo:
    """
    Get error information for a code.

    Unknown codes map to INT_UNEXPECTED.
    """
    return ERROR_CODES.get(code, ERROR_CODES["INT_UNEXPECTED"])


def is_retryable(code: str) -> bool:
    """Check if an error code is retryable."""
    return get_error_info(code).is_retryable


def describe(code: str) -> str:
    """Human-readable description with the recommended action."""
    info = get_error_info(code)
    return f"{info.description}. {info.recommended_action}."
