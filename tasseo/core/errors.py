"""
Tasseo Engine - Error Taxonomy

Structured error classification for the analysis pipeline.
Every raised error carries a stable error_code that can be aggregated in logs
and referenced in incident notes.

Error Code Format: TSE-{CATEGORY}-{NUMBER}

Categories:
- CONFIG (001-099): Configuration and environment errors
- DB (100-199): Store connectivity and query errors
- NET (200-299): Network and HTTP errors
- VENDOR (300-399): Model provider / bot platform errors
- VALIDATION (500-599): Malformed jobs and ledger input
- LEDGER (600-699): Credit ledger failures
- SESSION (700-799): Retopic continuation outcomes
- INTERNAL (900-999): Contract violations and unexpected errors

Pipeline classes:
- Expected outcome: SessionExpiredError, FacetAlreadyCoveredError (never retried)
- Transient: TransientError, LedgerUnavailableError, network/5xx/429 (retried)
- Fatal: InvalidJobError, LedgerInputError, AccountShapeError, DeliveryContractError
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
from postgrest.exceptions import APIError
from pydantic import ValidationError

logger = logging.getLogger(__name__)


# =============================================================================
# ERROR CODES
# =============================================================================


class ErrorCategory(str, Enum):
    """Error category for classification."""

    CONFIG = "CONFIG"
    DB = "DB"
    NET = "NET"
    VENDOR = "VENDOR"
    VALIDATION = "VALIDATION"
    LEDGER = "LEDGER"
    SESSION = "SESSION"
    INTERNAL = "INTERNAL"


@dataclass(frozen=True)
class ErrorCode:
    """Immutable error code definition."""

    code: str
    category: ErrorCategory
    message: str
    retryable: bool = False

    def __str__(self) -> str:
        return self.code


ERR_DB_QUERY = ErrorCode(
    code="TSE-DB-100",
    category=ErrorCategory.DB,
    message="Store query failed",
    retryable=True,
)
ERR_DB_NOT_FOUND = ErrorCode(
    code="TSE-DB-101",
    category=ErrorCategory.DB,
    message="Record not found",
)
ERR_NET_TRANSIENT = ErrorCode(
    code="TSE-NET-200",
    category=ErrorCategory.NET,
    message="Transient network failure",
    retryable=True,
)
ERR_VENDOR_MODEL = ErrorCode(
    code="TSE-VENDOR-300",
    category=ErrorCategory.VENDOR,
    message="Model provider returned an unusable response",
    retryable=True,
)
ERR_VENDOR_TRANSPORT = ErrorCode(
    code="TSE-VENDOR-310",
    category=ErrorCategory.VENDOR,
    message="Bot platform call failed",
    retryable=True,
)
ERR_VENDOR_API = ErrorCode(
    code="TSE-VENDOR-320",
    category=ErrorCategory.VENDOR,
    message="Bot platform rejected the request",
)
ERR_VENDOR_ARTIFACT_TOO_LARGE = ErrorCode(
    code="TSE-VENDOR-330",
    category=ErrorCategory.VENDOR,
    message="Source artifact exceeds the transport size limit",
)
ERR_VALIDATION_JOB = ErrorCode(
    code="TSE-VALIDATION-500",
    category=ErrorCategory.VALIDATION,
    message="Job payload failed validation",
)
ERR_VALIDATION_LEDGER_INPUT = ErrorCode(
    code="TSE-VALIDATION-510",
    category=ErrorCategory.VALIDATION,
    message="Ledger input must be positive integers and a known credit type",
)
ERR_LEDGER_UNAVAILABLE = ErrorCode(
    code="TSE-LEDGER-600",
    category=ErrorCategory.LEDGER,
    message="Credit ledger unavailable",
    retryable=True,
)
ERR_LEDGER_SHAPE = ErrorCode(
    code="TSE-LEDGER-610",
    category=ErrorCategory.LEDGER,
    message="Unknown credit account shape",
)
ERR_SESSION_EXPIRED = ErrorCode(
    code="TSE-SESSION-700",
    category=ErrorCategory.SESSION,
    message="Retopic session expired",
)
ERR_SESSION_FACET_COVERED = ErrorCode(
    code="TSE-SESSION-710",
    category=ErrorCategory.SESSION,
    message="Facet already read in this session",
)
ERR_INTERNAL_DELIVERY = ErrorCode(
    code="TSE-INTERNAL-900",
    category=ErrorCategory.INTERNAL,
    message="Delivery produced no chunks",
)
ERR_INTERNAL_UNEXPECTED = ErrorCode(
    code="TSE-INTERNAL-999",
    category=ErrorCategory.INTERNAL,
    message="Unexpected internal error",
)


# =============================================================================
# EXCEPTIONS
# =============================================================================


class TasseoError(Exception):
    """Base class for all pipeline errors."""

    error_code: ErrorCode = ERR_INTERNAL_UNEXPECTED

    def __init__(self, message: str | None = None, *, error_code: ErrorCode | None = None):
        if error_code is not None:
            self.error_code = error_code
        super().__init__(message or self.error_code.message)

    @property
    def retryable(self) -> bool:
        return self.error_code.retryable


class TransientError(TasseoError):
    """A failure that is expected to succeed when retried."""

    error_code = ERR_NET_TRANSIENT


class LedgerUnavailableError(TasseoError):
    """The ledger RPC surface could not be reached or answered with an error."""

    error_code = ERR_LEDGER_UNAVAILABLE


class LedgerInputError(TasseoError, ValueError):
    """Identity/amount/credit type rejected before any store call."""

    error_code = ERR_VALIDATION_LEDGER_INPUT


class AccountShapeError(TasseoError, TypeError):
    """A ledger entry point received an account shape it does not handle."""

    error_code = ERR_LEDGER_SHAPE


class TransportApiError(TasseoError):
    """Non-retryable Bot API error (bad request, forbidden, ...)."""

    error_code = ERR_VENDOR_API

    def __init__(self, method: str, status: int, description: str):
        super().__init__(f"{method} failed ({status}): {description}")
        self.method = method
        self.status = status
        self.description = description


class ArtifactTooLargeError(TasseoError):
    error_code = ERR_VENDOR_ARTIFACT_TOO_LARGE


class RecordNotFoundError(TasseoError, LookupError):
    error_code = ERR_DB_NOT_FOUND


class DeliveryContractError(TasseoError, RuntimeError):
    """The splitter returned zero chunks for a response."""

    error_code = ERR_INTERNAL_DELIVERY


class SessionExpiredError(TasseoError):
    """
    Retopic preconditions failed: missing record, wrong owner, not completed,
    or no cached intermediate result. An expected outcome, never retried.
    """

    error_code = ERR_SESSION_EXPIRED

    def __init__(self, reason: str):
        super().__init__(f"session expired: {reason}")
        self.reason = reason


class FacetAlreadyCoveredError(TasseoError):
    """Requested facet is already completed within the session group."""

    error_code = ERR_SESSION_FACET_COVERED

    def __init__(self, facet: str, session_group_id: Any = None):
        super().__init__(f"facet already covered: {facet}")
        self.facet = facet
        self.session_group_id = session_group_id


class InvalidJobError(TasseoError):
    """Raised when a queue message does not conform to the AnalysisJob schema."""

    error_code = ERR_VALIDATION_JOB

    def __init__(self, message: str, raw_payload: dict[str, Any] | None = None):
        super().__init__(message)
        self.raw_payload = raw_payload
        self.validation_errors: list[dict[str, Any]] = []

    @classmethod
    def from_validation_error(
        cls,
        error: ValidationError,
        raw_payload: dict[str, Any] | None = None,
    ) -> "InvalidJobError":
        """Create from a Pydantic ValidationError."""
        instance = cls(str(error), raw_payload)
        instance.validation_errors = error.errors()
        return instance


# =============================================================================
# CLASSIFIER
# =============================================================================

RETRYABLE_HTTP_STATUSES = frozenset({408, 429, 500, 502, 503, 504})

# Postgres SQLSTATE classes that indicate a retryable condition:
# 08 connection exception, 53 insufficient resources, 57 operator intervention,
# 40001 serialization failure, 40P01 deadlock.
_RETRYABLE_SQLSTATE_PREFIXES = ("08", "53", "57")
_RETRYABLE_SQLSTATES = frozenset({"40001", "40P01"})


def is_transient(exc: BaseException) -> bool:
    """
    Decide whether an exception is worth an in-attempt retry.

    Transport errors, timeouts, 429/5xx responses and retryable SQLSTATEs are
    transient. Validation, contract and expected-outcome errors are not.
    """
    if isinstance(exc, TasseoError):
        return exc.retryable
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)):
        return True
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code in RETRYABLE_HTTP_STATUSES
    if isinstance(exc, APIError):
        code = str(exc.code or "")
        return code in _RETRYABLE_SQLSTATES or code.startswith(_RETRYABLE_SQLSTATE_PREFIXES)
    return False


def error_code_for(exc: BaseException) -> ErrorCode:
    """Map an arbitrary exception to its taxonomy entry for logging."""
    if isinstance(exc, TasseoError):
        return exc.error_code
    if isinstance(exc, (httpx.TransportError, TimeoutError, ConnectionError)):
        return ERR_NET_TRANSIENT
    if isinstance(exc, httpx.HTTPStatusError):
        return ERR_VENDOR_TRANSPORT
    if isinstance(exc, APIError):
        return ERR_DB_QUERY
    if isinstance(exc, ValidationError):
        return ERR_VALIDATION_JOB
    return ERR_INTERNAL_UNEXPECTED


def describe_error(exc: BaseException) -> str:
    """Compact `[code] Type: message` string stored as a record's error detail."""
    return f"[{error_code_for(exc)}] {type(exc).__name__}: {exc}"


def is_connect_failure(exc: BaseException) -> bool:
    """True when the request never reached the server, so replaying it cannot double-apply."""
    return isinstance(exc, (httpx.ConnectError, httpx.ConnectTimeout, ConnectionRefusedError))
